"""
Generic filter + sort + paginate + count layer over one SQLAlchemy model.

Predicates are small pydantic models exposing ``clauses()``; the same
predicate drives listing, counting, aggregation and bulk deletion.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, field_validator
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from taskledger.database import storage_guard
from taskledger.models.enums import Role, SessionAction
from taskledger.models.session_event import SessionEvent
from taskledger.services.errors import InvalidRequest


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class LogFilter(BaseModel):
    """
    Predicate over session ledger entries.

    - action, role: exact match
    - email: case-insensitive substring
    - start_date / end_date: inclusive range on created_at
    """
    action: Optional[SessionAction] = None
    role: Optional[Role] = None
    email: Optional[str] = None
    subject_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored timestamps are naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @field_validator("email")
    @classmethod
    def _blank_email_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value.strip() if value else value

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def clauses(self) -> list:
        clauses = []
        if self.action is not None:
            clauses.append(SessionEvent.action == self.action)
        if self.role is not None:
            clauses.append(SessionEvent.role == self.role)
        if self.email:
            pattern = f"%{escape_like(self.email.lower())}%"
            clauses.append(func.lower(SessionEvent.email).like(pattern, escape="\\"))
        if self.subject_id is not None:
            clauses.append(SessionEvent.subject_id == self.subject_id)
        if self.start_date is not None:
            clauses.append(SessionEvent.created_at >= self.start_date)
        if self.end_date is not None:
            clauses.append(SessionEvent.created_at <= self.end_date)
        return clauses


class SortSpec(BaseModel):
    """Single sort field + direction."""
    field: str = "created_at"
    descending: bool = True


class Page(BaseModel):
    """One page of results plus the navigation flags."""
    items: List[Any]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.total_count else 0

    @property
    def has_next_page(self) -> bool:
        return self.page * self.page_size < self.total_count

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1


class LedgerStats(BaseModel):
    """Count aggregates over ledger entries."""
    total_logs: int = 0
    total_logins: int = 0
    total_logouts: int = 0
    failed_logins: int = 0
    admin_logs: int = 0
    user_logs: int = 0
    # Mean over entries with a positive duration; None when there are none
    average_session_duration: Optional[float] = None
    recent_activity: int = 0


class QueryEngine:
    """Read-only query layer for one model."""

    def __init__(self, db: Session, model, max_page_size: int = 200):
        self.db = db
        self.model = model
        self.max_page_size = max_page_size

    def _run(self, stmt):
        with storage_guard(self.db):
            return self.db.execute(stmt)

    def order_by(self, sort: Optional[SortSpec]) -> list:
        """Resolve a SortSpec into ORDER BY clauses, id as tiebreaker."""
        sort = sort or SortSpec()
        column = self.model.__table__.columns.get(sort.field)
        if column is None:
            raise InvalidRequest(f"Cannot sort by unknown field '{sort.field}'")
        column = getattr(self.model, sort.field)
        if sort.descending:
            return [column.desc(), self.model.id.desc()]
        return [column.asc(), self.model.id.asc()]

    def filter_and_page(
        self,
        predicate,
        sort: Optional[SortSpec] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page:
        """
        Return one page of matching rows and the total match count.

        page is 1-based. page_size is capped at max_page_size.
        """
        if page < 1:
            raise InvalidRequest("page must be 1 or greater")
        if page_size < 1:
            raise InvalidRequest("page size must be 1 or greater")
        page_size = min(page_size, self.max_page_size)

        clauses = predicate.clauses()
        total_count = self.count(predicate)

        stmt = (
            select(self.model)
            .where(*clauses)
            .order_by(*self.order_by(sort))
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list(self._run(stmt).scalars().all())
        return Page(items=items, total_count=total_count, page=page, page_size=page_size)

    def list_all(self, predicate, sort: Optional[SortSpec] = None) -> Sequence:
        stmt = select(self.model).where(*predicate.clauses()).order_by(*self.order_by(sort))
        return list(self._run(stmt).scalars().all())

    def count(self, predicate) -> int:
        stmt = select(func.count(self.model.id)).where(*predicate.clauses())
        return self._run(stmt).scalar_one()

    def count_since(self, window_start: datetime, predicate) -> int:
        """Count matches with created_at >= window_start."""
        stmt = (
            select(func.count(self.model.id))
            .where(*predicate.clauses())
            .where(self.model.created_at >= window_start)
        )
        return self._run(stmt).scalar_one()

    def count_by(self, column, predicate) -> dict:
        """Per-value counts of ``column`` over the matches."""
        stmt = (
            select(column, func.count(self.model.id))
            .where(*predicate.clauses())
            .group_by(column)
        )
        return {value: count for value, count in self._run(stmt).all()}


class SessionEventQueries(QueryEngine):
    """Reporting reads over the session ledger."""

    def __init__(self, db: Session, max_page_size: int = 200):
        super().__init__(db, SessionEvent, max_page_size=max_page_size)

    def aggregate(self, predicate: LogFilter) -> LedgerStats:
        def count_when(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        duration = SessionEvent.session_duration_minutes
        stmt = select(
            func.count(SessionEvent.id),
            count_when(SessionEvent.action == SessionAction.LOGIN),
            count_when(SessionEvent.action == SessionAction.LOGOUT),
            count_when(SessionEvent.action == SessionAction.FAILED_LOGIN),
            count_when(SessionEvent.role == Role.ADMIN),
            count_when(SessionEvent.role == Role.USER),
            # null and zero durations fall to NULL and are skipped by AVG
            func.avg(case((duration > 0, duration), else_=None)),
        ).where(*predicate.clauses())

        row = self._run(stmt).one()
        average = row[6]
        return LedgerStats(
            total_logs=row[0],
            total_logins=row[1],
            total_logouts=row[2],
            failed_logins=row[3],
            admin_logs=row[4],
            user_logs=row[5],
            average_session_duration=float(average) if average is not None else None,
        )

    def report(self, predicate: LogFilter, now: datetime, recent_days: int = 7) -> LedgerStats:
        """Aggregate stats plus the recent-activity count for the summary view."""
        stats = self.aggregate(predicate)
        stats.recent_activity = self.count_since(now - timedelta(days=recent_days), predicate)
        return stats
