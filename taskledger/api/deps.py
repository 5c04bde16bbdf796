"""
Principal dependencies.

Credential verification happens in the gateway in front of this service.
The gateway forwards the verified identity in trusted headers, which these
dependencies turn into a Principal.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from taskledger.models.enums import Role
from taskledger.services.principal import Principal


def get_principal(
    x_subject_id: Optional[str] = Header(None),
    x_subject_role: Optional[str] = Header(None),
    x_subject_email: Optional[str] = Header(None),
    x_subject_name: Optional[str] = Header(None),
    x_credential_id: Optional[str] = Header(None)
) -> Principal:
    """Resolve the verified caller, or 401."""
    if not x_subject_id or not x_subject_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": "No verified principal on request"}
        )
    try:
        role = Role(x_subject_role or Role.USER.value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": f"Unknown role '{x_subject_role}'"}
        )

    return Principal(
        subject_id=x_subject_id,
        role=role,
        email=x_subject_email,
        name=x_subject_name,
        credential_instance_id=x_credential_id
    )


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Resolve the caller and insist on the admin role, or 403."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Forbidden", "message": "Access denied"}
        )
    return principal
