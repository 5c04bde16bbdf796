"""API routes for sessions, ledger reporting and tasks."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from taskledger.api.deps import get_principal, require_admin
from taskledger.api.schemas import (
    ApiResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    CredentialExpire,
    ErrorResponse,
    ExpireResult,
    FailedLoginCreate,
    LogListResponse,
    Pagination,
    ProgressUpdate,
    SessionEventResponse,
    TaskCounts,
    TaskCreate,
    TaskListResponse,
    TaskResponse,
    TaskSummary,
    TaskUpdate
)
from taskledger.core.config import Settings, get_settings
from taskledger.database import get_db
from taskledger.models.enums import Role, SessionAction, TaskPriority, TaskStatus
from taskledger.services.bulk_mutation import BulkMutationCoordinator
from taskledger.services.errors import InvalidRequest
from taskledger.services.principal import Principal
from taskledger.services.query_engine import LedgerStats, LogFilter, SessionEventQueries, SortSpec
from taskledger.services.session_ledger import SessionLedger
from taskledger.services.task_state_machine import TaskStateMachine

router = APIRouter()

ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _ledger(db: Session, settings: Settings) -> SessionLedger:
    return SessionLedger(db, retry_limit=settings.update_retry_limit)


def _tasks(db: Session, settings: Settings) -> TaskStateMachine:
    return TaskStateMachine(db, retry_limit=settings.update_retry_limit)


# Session endpoints
@router.post(
    "/sessions/login",
    response_model=ApiResponse[SessionEventResponse],
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS
)
def record_login(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Open a session for the verified principal under its credential instance."""
    if not principal.credential_instance_id:
        raise InvalidRequest("X-Credential-Id header is required to record a login")

    event = _ledger(db, settings).record_login(
        principal,
        principal.credential_instance_id,
        source_address=request.client.host if request.client else None,
        client_agent=request.headers.get("user-agent")
    )
    return ApiResponse(message="Login recorded", data=SessionEventResponse.model_validate(event))


@router.post(
    "/sessions/failed-login",
    response_model=ApiResponse[SessionEventResponse],
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS
)
def record_failed_login(
    attempt: FailedLoginCreate,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Audit a failed login attempt. No principal exists for it."""
    event = _ledger(db, settings).record_failed_login(
        attempt.email,
        attempt.role,
        source_address=request.client.host if request.client else None,
        client_agent=request.headers.get("user-agent")
    )
    return ApiResponse(message="Failed login recorded", data=SessionEventResponse.model_validate(event))


@router.post("/sessions/logout", response_model=ApiResponse[SessionEventResponse], responses=ERRORS)
def record_logout(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """
    Close the caller's session for this credential instance.

    A logout with nothing to close succeeds with data = null.
    """
    event = _ledger(db, settings).record_logout(
        principal.subject_id, principal.credential_instance_id
    )
    if event is None:
        return ApiResponse(message="No active session", data=None)
    return ApiResponse(message="Logout recorded", data=SessionEventResponse.model_validate(event))


@router.post("/sessions/expire", response_model=ApiResponse[ExpireResult], responses=ERRORS)
def expire_credential(
    body: CredentialExpire,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Expire every open session of a revoked credential."""
    count = _ledger(db, settings).expire_by_credential(body.credential_instance_id)
    return ApiResponse(
        message=f"{count} sessions expired",
        data=ExpireResult(expired_count=count)
    )


# Ledger reporting endpoints (admin only)
@router.get("/logs", response_model=LogListResponse, responses=ERRORS)
def list_logs(
    page: int = 1,
    limit: Optional[int] = None,
    action: Optional[SessionAction] = None,
    role: Optional[Role] = None,
    email: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """List ledger entries with filtering, sorting and pagination."""
    filters = LogFilter(
        action=action, role=role, email=email, start_date=start_date, end_date=end_date
    )
    queries = SessionEventQueries(db, max_page_size=settings.max_page_size)
    result = queries.filter_and_page(
        filters,
        SortSpec(field=sort_by, descending=sort_order == "desc"),
        page=page,
        page_size=settings.default_page_size if limit is None else limit
    )

    return LogListResponse(
        data=[SessionEventResponse.model_validate(item) for item in result.items],
        pagination=Pagination(
            current_page=result.page,
            total_pages=result.total_pages,
            total_count=result.total_count,
            limit=result.page_size,
            has_next_page=result.has_next_page,
            has_prev_page=result.has_prev_page
        ),
        filters=filters
    )


@router.get("/logs/stats", response_model=ApiResponse[LedgerStats], responses=ERRORS)
def log_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Aggregate counts, mean session length and recent activity."""
    queries = SessionEventQueries(db, max_page_size=settings.max_page_size)
    stats = queries.report(
        LogFilter(start_date=start_date, end_date=end_date),
        now=datetime.utcnow(),
        recent_days=settings.recent_activity_days
    )
    return ApiResponse(data=stats)


@router.get("/logs/{log_id}", response_model=ApiResponse[SessionEventResponse], responses=ERRORS)
def get_log(
    log_id: int,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    event = _ledger(db, settings).get_event(log_id)
    return ApiResponse(data=SessionEventResponse.model_validate(event))


@router.delete("/logs/{log_id}", response_model=ApiResponse[SessionEventResponse], responses=ERRORS)
def delete_log(
    log_id: int,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Delete one ledger entry."""
    event = BulkMutationCoordinator(db).delete_one(log_id)
    return ApiResponse(
        message="User log deleted successfully",
        data=SessionEventResponse.model_validate(event)
    )


@router.delete("/logs", response_model=BulkDeleteResponse, responses=ERRORS)
def bulk_delete_logs(
    body: BulkDeleteRequest,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Delete by an ids array or by a filters object - exactly one of the two."""
    deleted_count = BulkMutationCoordinator(db).delete(ids=body.ids, filters=body.filters)
    return BulkDeleteResponse(
        message=f"{deleted_count} user logs deleted successfully",
        deleted_count=deleted_count
    )


# Task endpoints (owner-scoped)
@router.get("/tasks", response_model=TaskListResponse, responses=ERRORS)
def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    priority: Optional[TaskPriority] = None,
    search: Optional[str] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """List the caller's tasks, newest first, with status counts."""
    tasks, counts = _tasks(db, settings).list_tasks(
        principal.subject_id, status=status_filter, priority=priority, search=search
    )
    return TaskListResponse(
        data=[TaskResponse.model_validate(task) for task in tasks],
        counts=TaskCounts(**counts),
        total=len(tasks)
    )


@router.get("/tasks/stats/summary", response_model=ApiResponse[TaskSummary], responses=ERRORS)
def task_summary(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    summary = _tasks(db, settings).summary(principal.subject_id)
    return ApiResponse(data=TaskSummary(**summary))


@router.post(
    "/tasks",
    response_model=ApiResponse[TaskResponse],
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS
)
def create_task(
    task_data: TaskCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Create a task; status is derived from the initial progress."""
    task = _tasks(db, settings).create_task(
        principal.subject_id,
        title=task_data.title,
        description=task_data.description,
        priority=task_data.priority,
        due_date=task_data.due_date,
        progress=task_data.progress
    )
    return ApiResponse(message="Task created successfully", data=TaskResponse.model_validate(task))


@router.get("/tasks/{task_id}", response_model=ApiResponse[TaskResponse], responses=ERRORS)
def get_task(
    task_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    task = _tasks(db, settings).get_task(principal.subject_id, task_id)
    return ApiResponse(data=TaskResponse.model_validate(task))


@router.put("/tasks/{task_id}", response_model=ApiResponse[TaskResponse], responses=ERRORS)
def update_task(
    task_id: int,
    task_data: TaskUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Update any subset of title, description, priority, due_date and progress."""
    task = _tasks(db, settings).update_fields(
        principal.subject_id, task_id, task_data.model_dump(exclude_unset=True)
    )
    return ApiResponse(message="Task updated successfully", data=TaskResponse.model_validate(task))


@router.patch("/tasks/{task_id}/status", response_model=ApiResponse[TaskResponse], responses=ERRORS)
def toggle_task_status(
    task_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Flip complete/incomplete without touching progress."""
    task = _tasks(db, settings).toggle_status(principal.subject_id, task_id)
    return ApiResponse(
        message=f"Task marked as {task.status.value}",
        data=TaskResponse.model_validate(task)
    )


@router.patch("/tasks/{task_id}/progress", response_model=ApiResponse[TaskResponse], responses=ERRORS)
def update_task_progress(
    task_id: int,
    body: ProgressUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """Set progress; reaching 100 completes the task, leaving 100 reopens it."""
    task = _tasks(db, settings).set_progress(principal.subject_id, task_id, body.progress)
    return ApiResponse(
        message=f"Progress updated to {task.progress}%",
        data=TaskResponse.model_validate(task)
    )


@router.delete("/tasks/{task_id}", response_model=ApiResponse[TaskResponse], responses=ERRORS)
def delete_task(
    task_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    task = _tasks(db, settings).delete_task(principal.subject_id, task_id)
    return ApiResponse(message="Task deleted successfully", data=TaskResponse.model_validate(task))
