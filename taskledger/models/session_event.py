"""Session ledger entries: one row per login attempt or session."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Index, Enum as SQLEnum
from taskledger.database import Base
from taskledger.models.enums import Role, SessionAction, SessionStatus


class SessionEvent(Base):
    """
    A login entry (open or closed session) or a failed login attempt.

    Invariants:
    - display_name, email and role are a snapshot taken at event time,
      never a live reference to the current profile
    - logout_time and session_duration_minutes are only ever set together,
      when a logout is correlated
    - failed_login entries carry no status and no login/logout time
    - once status leaves ACTIVE the row is never mutated again, only deleted
    """
    __tablename__ = "session_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    subject_id = Column(String, nullable=True)  # None for failed logins

    # Identity snapshot
    display_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    role = Column(SQLEnum(Role), nullable=False)

    action = Column(SQLEnum(SessionAction), nullable=False)
    login_time = Column(DateTime, nullable=True)
    logout_time = Column(DateTime, nullable=True)

    # Correlation key between a login and its logout (JWT jti)
    credential_instance_id = Column(String, nullable=True)

    # Provenance
    source_address = Column(String, nullable=True)
    client_agent = Column(String, nullable=True)

    session_duration_minutes = Column(Integer, nullable=True)
    status = Column(SQLEnum(SessionStatus), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_session_events_subject_created", "subject_id", "created_at"),
        Index("ix_session_events_email_created", "email", "created_at"),
        Index("ix_session_events_action_created", "action", "created_at"),
        Index("ix_session_events_credential_status", "credential_instance_id", "status"),
    )
