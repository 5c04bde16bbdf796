"""The verified identity handed to the core by the upstream resolver."""
from dataclasses import dataclass
from typing import Optional

from taskledger.models.enums import Role


@dataclass(frozen=True)
class Principal:
    """
    Verified caller identity.

    Token verification happens upstream; the core never re-verifies.
    """
    subject_id: str
    role: Role
    email: str
    name: Optional[str] = None
    credential_instance_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Name snapshot for ledger rows; falls back to the email local part."""
        if self.name and self.name.strip():
            return self.name.strip()
        return self.email.split("@")[0]

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
