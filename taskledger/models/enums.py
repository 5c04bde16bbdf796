"""Enums for the ledger and tasks - these define the valid values for states and roles."""
from enum import Enum


class Role(str, Enum):
    """Role of a principal at event time."""
    USER = "user"
    ADMIN = "admin"


class SessionAction(str, Enum):
    """What a ledger entry records."""
    LOGIN = "login"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    FAILED_LOGIN = "failed_login"


class SessionStatus(str, Enum):
    """Lifecycle of a login entry. Only ACTIVE is non-terminal."""
    ACTIVE = "active"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"


class TaskStatus(str, Enum):
    """Completion status of a task, derived from progress except on toggle."""
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
