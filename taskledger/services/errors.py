"""
Error taxonomy for the ledger and task core.

Every error carries a ``kind`` that the HTTP layer reports verbatim, so
callers never see a raw internal exception.
"""


class CoreError(Exception):
    """Base class for failures surfaced as structured results."""
    kind = "CoreError"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFound(CoreError):
    """The id does not resolve to a record the caller may act on."""
    kind = "NotFound"
    status_code = 404


class InvalidProgress(CoreError):
    """Progress outside [0, 100] or not an integer."""
    kind = "InvalidProgress"
    status_code = 400


class InvalidRequest(CoreError):
    """Malformed request: bad bulk-delete shape, missing fields, bad paging."""
    kind = "InvalidRequest"
    status_code = 400


class StorageConflict(CoreError):
    """An atomic update kept losing races after the retry limit."""
    kind = "StorageConflict"
    status_code = 409


class StorageUnavailable(CoreError):
    """The persistence layer failed."""
    kind = "StorageUnavailable"
    status_code = 503
