from __future__ import annotations


class RoutineSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class TransientUpstreamError(RoutineSyncError):
    """Rate limit, server error or network failure; safe to retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FetchFailedError(RoutineSyncError):
    """Retries exhausted; the whole fetch is abandoned."""

    def __init__(self, message: str, attempts: int, status_code: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class UpstreamClientError(RoutineSyncError):
    def __init__(self, status_code: int, provider_message: str) -> None:
        super().__init__(f"HTTP {status_code}: {provider_message}")
        self.status_code = status_code
        self.provider_message = provider_message


class MissingCredentialError(RoutineSyncError):
    pass


class NotFoundError(RoutineSyncError):
    pass


class SyncDisabledError(RoutineSyncError):
    pass


class ValidationGapError(RoutineSyncError):
    """A single item cannot be processed; callers skip it and continue."""


class MissingDueDateError(ValidationGapError):
    pass


class RecurrenceError(ValidationGapError):
    pass


class SyncRunFailedError(RoutineSyncError):
    pass


class DuplicateRecordError(RoutineSyncError):
    """A record with the same kind and id already exists."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} record already exists: {record_id}")
        self.kind = kind
        self.record_id = record_id
