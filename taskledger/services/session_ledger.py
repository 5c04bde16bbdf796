"""
Session ledger: records logins and correlates logouts and expiries.

A session is open while its login entry is ACTIVE. Closing is correlated by
(subject_id, credential_instance_id), never by subject alone, so a logout on
one device leaves the sessions of other devices open.
"""
import math
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from taskledger.database import atomic, storage_guard
from taskledger.models.enums import Role, SessionAction, SessionStatus
from taskledger.models.session_event import SessionEvent
from taskledger.services.errors import InvalidRequest, NotFound, StorageConflict
from taskledger.services.principal import Principal

log = structlog.get_logger(__name__)


def session_duration_minutes(login_time: datetime, logout_time: datetime) -> int:
    """
    Whole minutes between login and logout, rounded half up.

    Clock skew can put logout before login; the result is floored at 0.
    """
    seconds = (logout_time - login_time).total_seconds()
    return max(0, math.floor(seconds / 60 + 0.5))


class SessionLedger:
    """Owns the append/correlate/close lifecycle of ledger entries."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.utcnow,
        retry_limit: int = 3
    ):
        self.db = db
        self.clock = clock
        self.retry_limit = retry_limit

    def record_login(
        self,
        principal: Principal,
        credential_instance_id: str,
        source_address: Optional[str] = None,
        client_agent: Optional[str] = None
    ) -> SessionEvent:
        """
        Append an ACTIVE login entry.

        No check for an existing active session: each issued credential has
        its own instance id, and sessions of different credentials coexist.
        """
        if not credential_instance_id:
            raise InvalidRequest("A credential instance id is required to record a login")

        now = self.clock()
        event = SessionEvent(
            subject_id=principal.subject_id,
            display_name=principal.display_name,
            email=principal.email,
            role=principal.role,
            action=SessionAction.LOGIN,
            login_time=now,
            credential_instance_id=credential_instance_id,
            source_address=source_address,
            client_agent=client_agent,
            status=SessionStatus.ACTIVE,
            created_at=now
        )
        with atomic(self.db):
            self.db.add(event)
        with storage_guard(self.db):
            self.db.refresh(event)

        log.info(
            "login_recorded",
            event_id=event.id,
            subject_id=principal.subject_id,
            credential_instance_id=credential_instance_id
        )
        return event

    def record_failed_login(
        self,
        attempted_email: str,
        role: Role = Role.USER,
        source_address: Optional[str] = None,
        client_agent: Optional[str] = None
    ) -> SessionEvent:
        """Append an audit-only failed_login entry. It is never correlated."""
        attempted_email = (attempted_email or "").strip()
        if not attempted_email:
            raise InvalidRequest("An email is required to record a failed login")

        event = SessionEvent(
            subject_id=None,
            display_name=attempted_email.split("@")[0],
            email=attempted_email,
            role=role,
            action=SessionAction.FAILED_LOGIN,
            source_address=source_address,
            client_agent=client_agent,
            status=None,
            created_at=self.clock()
        )
        with atomic(self.db):
            self.db.add(event)
        with storage_guard(self.db):
            self.db.refresh(event)

        log.info("failed_login_recorded", event_id=event.id, email=attempted_email)
        return event

    def _latest_active_login(self, subject_id: str, credential_instance_id: str):
        stmt = (
            select(SessionEvent)
            .where(
                SessionEvent.subject_id == subject_id,
                SessionEvent.credential_instance_id == credential_instance_id,
                SessionEvent.action == SessionAction.LOGIN,
                SessionEvent.status == SessionStatus.ACTIVE
            )
            .order_by(SessionEvent.created_at.desc(), SessionEvent.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        with storage_guard(self.db):
            return self.db.scalars(stmt).first()

    def record_logout(
        self,
        subject_id: str,
        credential_instance_id: Optional[str]
    ) -> Optional[SessionEvent]:
        """
        Close the most recent ACTIVE login of this subject and credential.

        Returns None when there is nothing to close (stale, replayed or
        post-expiry logout). The close is a conditional update on
        status = ACTIVE; losing that race re-reads the candidate.
        """
        if not credential_instance_id:
            log.info("logout_no_active_session", subject_id=subject_id, reason="no_credential")
            return None

        for attempt in range(1, self.retry_limit + 1):
            candidate = self._latest_active_login(subject_id, credential_instance_id)
            if candidate is None:
                log.info(
                    "logout_no_active_session",
                    subject_id=subject_id,
                    credential_instance_id=credential_instance_id
                )
                return None

            logout_time = self.clock()
            duration = session_duration_minutes(candidate.login_time, logout_time)

            with atomic(self.db):
                result = self.db.execute(
                    update(SessionEvent)
                    .where(
                        SessionEvent.id == candidate.id,
                        SessionEvent.status == SessionStatus.ACTIVE
                    )
                    .values(
                        status=SessionStatus.LOGGED_OUT,
                        logout_time=logout_time,
                        session_duration_minutes=duration
                    )
                    .execution_options(synchronize_session=False)
                )

            if result.rowcount == 1:
                with storage_guard(self.db):
                    self.db.refresh(candidate)
                log.info(
                    "logout_recorded",
                    event_id=candidate.id,
                    subject_id=subject_id,
                    session_duration_minutes=duration
                )
                return candidate

            log.warning("logout_conflict_retry", event_id=candidate.id, attempt=attempt)

        raise StorageConflict(
            f"Could not close session for credential {credential_instance_id} "
            f"after {self.retry_limit} attempts"
        )

    def expire_by_credential(self, credential_instance_id: str) -> int:
        """
        Mark every ACTIVE login of a revoked credential as EXPIRED.

        Abandoned sessions get no logout_time and no duration. Re-running is
        a no-op and returns 0.
        """
        if not credential_instance_id:
            raise InvalidRequest("A credential instance id is required")

        with atomic(self.db):
            result = self.db.execute(
                update(SessionEvent)
                .where(
                    SessionEvent.credential_instance_id == credential_instance_id,
                    SessionEvent.action == SessionAction.LOGIN,
                    SessionEvent.status == SessionStatus.ACTIVE
                )
                .values(status=SessionStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )

        log.info(
            "credential_expired",
            credential_instance_id=credential_instance_id,
            expired_count=result.rowcount
        )
        return result.rowcount

    def get_event(self, event_id: int) -> SessionEvent:
        with storage_guard(self.db):
            event = self.db.get(SessionEvent, event_id, populate_existing=True)
        if event is None:
            raise NotFound("User log not found")
        return event
