"""
State machine that keeps a task's status consistent with its progress.

Two transition functions act on status:
- a progress write derives status from the new progress
- a manual toggle flips status and leaves progress alone

Every write is a compare-and-set on the task's version, retried a bounded
number of times when another writer got there first.
"""
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
from pydantic import BaseModel
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from taskledger.database import atomic, storage_guard
from taskledger.models.enums import TaskPriority, TaskStatus
from taskledger.models.task import Task
from taskledger.services.errors import InvalidProgress, InvalidRequest, NotFound, StorageConflict
from taskledger.services.query_engine import QueryEngine, SortSpec, escape_like

log = structlog.get_logger(__name__)

Transition = Callable[[Task], Dict[str, Any]]

EDITABLE_FIELDS = ("title", "description", "priority", "due_date", "progress")


def validate_progress(value: Any) -> int:
    """Return progress as an int, or raise InvalidProgress. Never clamps."""
    if isinstance(value, bool):
        raise InvalidProgress("Progress must be an integer between 0 and 100")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidProgress("Progress must be an integer between 0 and 100")
        value = int(value)
    if not isinstance(value, int) or not 0 <= value <= 100:
        raise InvalidProgress("Progress must be an integer between 0 and 100")
    return value


def derive_status(current: TaskStatus, progress: int) -> TaskStatus:
    """
    Status after writing ``progress``.

    100 forces COMPLETE; anything lower after COMPLETE forces INCOMPLETE;
    otherwise the current status stands (40 -> 80 changes nothing).
    """
    if progress == 100:
        return TaskStatus.COMPLETE
    if current == TaskStatus.COMPLETE:
        return TaskStatus.INCOMPLETE
    return current


def _required_text(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidRequest(f"{field.capitalize()} is required")
    return value


class TaskFilter(BaseModel):
    """Predicate over one owner's tasks."""
    owner_id: str
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    search: Optional[str] = None

    def clauses(self) -> list:
        clauses = [Task.owner_id == self.owner_id]
        if self.status is not None:
            clauses.append(Task.status == self.status)
        if self.priority is not None:
            clauses.append(Task.priority == self.priority)
        if self.search and self.search.strip():
            pattern = f"%{escape_like(self.search.strip().lower())}%"
            clauses.append(or_(
                func.lower(Task.title).like(pattern, escape="\\"),
                func.lower(Task.description).like(pattern, escape="\\")
            ))
        return clauses


class TaskStateMachine:
    """Owner-scoped task operations with atomic status derivation."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.utcnow,
        retry_limit: int = 3
    ):
        self.db = db
        self.clock = clock
        self.retry_limit = retry_limit

    def _load(self, owner_id: str, task_id: int) -> Task:
        stmt = (
            select(Task)
            .where(Task.id == task_id, Task.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        with storage_guard(self.db):
            task = self.db.scalars(stmt).first()
        if task is None:
            raise NotFound("Task not found")
        return task

    def get_task(self, owner_id: str, task_id: int) -> Task:
        return self._load(owner_id, task_id)

    def list_tasks(
        self,
        owner_id: str,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        search: Optional[str] = None
    ) -> Tuple[list, Dict[str, int]]:
        """Matching tasks newest first, plus all/complete/incomplete counts for the owner."""
        queries = QueryEngine(self.db, Task)
        tasks = queries.list_all(
            TaskFilter(owner_id=owner_id, status=status, priority=priority, search=search),
            SortSpec(field="created_at", descending=True)
        )
        by_status = queries.count_by(Task.status, TaskFilter(owner_id=owner_id))
        complete = by_status.get(TaskStatus.COMPLETE, 0)
        incomplete = by_status.get(TaskStatus.INCOMPLETE, 0)
        counts = {"all": complete + incomplete, "complete": complete, "incomplete": incomplete}
        return tasks, counts

    def create_task(
        self,
        owner_id: str,
        title: Optional[str],
        description: Optional[str],
        priority: Optional[TaskPriority] = None,
        due_date: Optional[date] = None,
        progress: Any = 0
    ) -> Task:
        title = _required_text(title, "title")
        description = _required_text(description, "description")
        progress = validate_progress(0 if progress is None else progress)

        now = self.clock()
        task = Task(
            owner_id=owner_id,
            title=title,
            description=description,
            priority=priority or TaskPriority.MEDIUM,
            due_date=due_date,
            progress=progress,
            status=derive_status(TaskStatus.INCOMPLETE, progress),
            version=1,
            created_at=now,
            updated_at=now
        )
        with atomic(self.db):
            self.db.add(task)
        with storage_guard(self.db):
            self.db.refresh(task)

        log.info("task_created", task_id=task.id, owner_id=owner_id)
        return task

    def apply_transition(self, owner_id: str, task_id: int, transition: Transition) -> Task:
        """
        Read the task, compute new column values, write them only if the
        version is unchanged. A lost race re-reads and recomputes.

        ``transition`` receives a fresh snapshot and returns the values to
        write; it must not mutate the snapshot.
        """
        for attempt in range(1, self.retry_limit + 1):
            task = self._load(owner_id, task_id)
            expected_version = task.version
            values = dict(transition(task))
            values["version"] = expected_version + 1
            values["updated_at"] = self.clock()

            with atomic(self.db):
                result = self.db.execute(
                    update(Task)
                    .where(Task.id == task_id, Task.version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

            if result.rowcount == 1:
                with storage_guard(self.db):
                    self.db.refresh(task)
                return task

            log.warning("update_conflict_retry", task_id=task_id, attempt=attempt)

        raise StorageConflict(
            f"Task {task_id} was modified concurrently; gave up after {self.retry_limit} attempts"
        )

    def set_progress(self, owner_id: str, task_id: int, progress: Any) -> Task:
        progress = validate_progress(progress)

        def transition(task: Task) -> Dict[str, Any]:
            return {"progress": progress, "status": derive_status(task.status, progress)}

        task = self.apply_transition(owner_id, task_id, transition)
        log.info("progress_updated", task_id=task.id, progress=task.progress, status=task.status.value)
        return task

    def toggle_status(self, owner_id: str, task_id: int) -> Task:
        """
        Flip status without touching progress.

        This is the one transition allowed to leave status and progress
        disagreeing; a later progress write re-derives status as usual.
        """
        def transition(task: Task) -> Dict[str, Any]:
            if task.status == TaskStatus.COMPLETE:
                return {"status": TaskStatus.INCOMPLETE}
            return {"status": TaskStatus.COMPLETE}

        task = self.apply_transition(owner_id, task_id, transition)
        log.info("status_toggled", task_id=task.id, status=task.status.value)
        return task

    def update_fields(self, owner_id: str, task_id: int, changes: Dict[str, Any]) -> Task:
        """
        Apply any subset of title, description, priority, due_date, progress.

        Text is trimmed; progress goes through the same derivation as
        set_progress. Unknown keys are rejected.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Cannot update fields: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        if "title" in changes:
            values["title"] = _required_text(changes["title"], "title")
        if "description" in changes:
            values["description"] = _required_text(changes["description"], "description")
        if "priority" in changes:
            if changes["priority"] is None:
                raise InvalidRequest("Priority cannot be empty")
            try:
                values["priority"] = TaskPriority(changes["priority"])
            except ValueError:
                raise InvalidRequest(f"Unknown priority '{changes['priority']}'")
        if "due_date" in changes:
            values["due_date"] = changes["due_date"]
        progress = None
        if "progress" in changes:
            progress = validate_progress(changes["progress"])
            values["progress"] = progress

        def transition(task: Task) -> Dict[str, Any]:
            if progress is None:
                return values
            return {**values, "status": derive_status(task.status, progress)}

        task = self.apply_transition(owner_id, task_id, transition)
        log.info("task_updated", task_id=task.id, fields=sorted(values))
        return task

    def delete_task(self, owner_id: str, task_id: int) -> Task:
        """Delete one task and return its last state."""
        task = self._load(owner_id, task_id)
        self.db.expunge(task)
        with atomic(self.db):
            result = self.db.execute(
                delete(Task).where(Task.id == task_id, Task.owner_id == owner_id)
            )
        if result.rowcount == 0:
            raise NotFound("Task not found")

        log.info("task_deleted", task_id=task_id, owner_id=owner_id)
        return task

    def summary(self, owner_id: str) -> Dict[str, int]:
        """Status and priority counts over the owner's tasks."""
        def count_when(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        stmt = select(
            func.count(Task.id),
            count_when(Task.status == TaskStatus.COMPLETE),
            count_when(Task.status == TaskStatus.INCOMPLETE),
            count_when(Task.priority == TaskPriority.HIGH),
            count_when(Task.priority == TaskPriority.MEDIUM),
            count_when(Task.priority == TaskPriority.LOW),
        ).where(Task.owner_id == owner_id)
        with storage_guard(self.db):
            row = self.db.execute(stmt).one()
        return {
            "total": row[0],
            "completed": row[1],
            "incomplete": row[2],
            "high_priority": row[3],
            "medium_priority": row[4],
            "low_priority": row[5],
        }
