"""Admin deletes over the session ledger, by id set or by predicate."""
from typing import Iterable, Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.orm import Session

from taskledger.database import atomic, storage_guard
from taskledger.models.session_event import SessionEvent
from taskledger.services.errors import InvalidRequest, NotFound
from taskledger.services.query_engine import LogFilter

log = structlog.get_logger(__name__)


class BulkMutationCoordinator:
    """
    Applies destructive admin operations as single DELETE statements.

    Nothing is materialised before deleting; the store resolves the id set
    or predicate itself.
    """

    def __init__(self, db: Session):
        self.db = db

    def delete_one(self, event_id: int) -> SessionEvent:
        """Delete a single entry and return what it held."""
        with storage_guard(self.db):
            event = self.db.get(SessionEvent, event_id)
        if event is None:
            raise NotFound("User log not found")
        self.db.expunge(event)

        with atomic(self.db):
            result = self.db.execute(delete(SessionEvent).where(SessionEvent.id == event_id))
        if result.rowcount == 0:
            raise NotFound("User log not found")

        log.info("log_deleted", event_id=event_id)
        return event

    def delete_by_ids(self, ids: Iterable[int]) -> int:
        """Delete exactly these ids. Unknown ids are ignored, not errors."""
        id_set = set(ids)
        if not id_set:
            return 0

        with atomic(self.db):
            result = self.db.execute(
                delete(SessionEvent)
                .where(SessionEvent.id.in_(id_set))
                .execution_options(synchronize_session=False)
            )

        log.info("logs_deleted", mode="ids", requested=len(id_set), deleted_count=result.rowcount)
        return result.rowcount

    def delete_by_filter(self, predicate: LogFilter) -> int:
        """Delete every entry matching the predicate in one statement."""
        if predicate.is_empty():
            raise InvalidRequest("Filters must name at least one field")

        with atomic(self.db):
            result = self.db.execute(
                delete(SessionEvent)
                .where(*predicate.clauses())
                .execution_options(synchronize_session=False)
            )

        log.info(
            "logs_deleted",
            mode="filter",
            filters=predicate.model_dump(mode="json", exclude_none=True),
            deleted_count=result.rowcount
        )
        return result.rowcount

    def delete(
        self,
        ids: Optional[Iterable[int]] = None,
        filters: Optional[LogFilter] = None
    ) -> int:
        """
        Dispatch a bulk delete request.

        Exactly one of ids (non-empty) or filters must be given.
        """
        ids = list(ids) if ids is not None else []
        if ids and filters is not None:
            raise InvalidRequest("Provide either an ids array or a filters object, not both")
        if ids:
            return self.delete_by_ids(ids)
        if filters is not None:
            return self.delete_by_filter(filters)
        raise InvalidRequest("Either ids array or filters object is required")
