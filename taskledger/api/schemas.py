"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from taskledger.models.enums import (
    Role,
    SessionAction,
    SessionStatus,
    TaskPriority,
    TaskStatus
)
from taskledger.services.query_engine import LogFilter

DataT = TypeVar("DataT")


class ApiResponse(BaseModel, Generic[DataT]):
    """Envelope returned by every successful call."""
    success: bool = True
    message: Optional[str] = None
    data: Optional[DataT] = None


# Session ledger schemas
class SessionEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_id: Optional[str]
    display_name: str
    email: str
    role: Role
    action: SessionAction
    login_time: Optional[datetime]
    logout_time: Optional[datetime]
    credential_instance_id: Optional[str]
    source_address: Optional[str]
    client_agent: Optional[str]
    session_duration_minutes: Optional[int]
    status: Optional[SessionStatus]
    created_at: datetime


class FailedLoginCreate(BaseModel):
    email: str = Field(..., min_length=1)
    role: Role = Role.USER


class CredentialExpire(BaseModel):
    credential_instance_id: str = Field(..., min_length=1)


class ExpireResult(BaseModel):
    expired_count: int


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    limit: int
    has_next_page: bool
    has_prev_page: bool


class LogListResponse(BaseModel):
    success: bool = True
    data: List[SessionEventResponse]
    pagination: Pagination
    filters: LogFilter


class BulkDeleteRequest(BaseModel):
    ids: Optional[List[int]] = None
    filters: Optional[LogFilter] = None


class BulkDeleteResponse(BaseModel):
    success: bool = True
    message: str
    deleted_count: int


# Task schemas
class TaskCreate(BaseModel):
    # progress is validated by the state machine so bad values surface as InvalidProgress
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    progress: Optional[Any] = None


class TaskUpdate(BaseModel):
    """Any subset of the editable fields; unset fields are left alone."""
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    progress: Optional[Any] = None


class ProgressUpdate(BaseModel):
    progress: Optional[Any] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    title: str
    description: str
    priority: TaskPriority
    due_date: Optional[date]
    progress: int
    status: TaskStatus
    created_at: datetime
    updated_at: datetime


class TaskCounts(BaseModel):
    all: int
    complete: int
    incomplete: int


class TaskListResponse(BaseModel):
    success: bool = True
    data: List[TaskResponse]
    counts: TaskCounts
    total: int


class TaskSummary(BaseModel):
    total: int
    completed: int
    incomplete: int
    high_priority: int
    medium_priority: int
    low_priority: int


# Error response
class ErrorResponse(BaseModel):
    """Structured failure; error is the kind (NotFound, InvalidProgress, ...)."""
    success: bool = False
    error: str
    message: str
