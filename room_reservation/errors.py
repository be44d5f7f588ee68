from __future__ import annotations


class ReservationError(Exception):
    """Base class for every error the reservation service reports to callers."""

    code = "error"


class ReservationValidationError(ReservationError, ValueError):
    code = "validation"


class MissingFieldsError(ReservationValidationError):
    def __init__(self, missing_fields: list[str]) -> None:
        super().__init__(f"Missing required fields: {', '.join(missing_fields)}")
        self.missing_fields = list(missing_fields)


class ReservationReferenceError(ReservationError):
    """The room or employee referenced by a request does not exist."""

    code = "reference"


class ReservationConflictError(ReservationError):
    code = "conflict"

    def __init__(self, message: str, conflicting_ids: list[int] | None = None) -> None:
        super().__init__(message)
        self.conflicting_ids = list(conflicting_ids or [])


class RecordNotFoundError(ReservationError, LookupError):
    code = "not_found"


class ReservationStorageError(ReservationError, RuntimeError):
    code = "storage"


class ReservationTimeoutError(ReservationStorageError):
    """The store did not answer in time. Nothing was written; safe to retry."""

    code = "timeout"
