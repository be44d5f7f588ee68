from .booking import (
	ReservationRequest,
	conflicting_ids,
	has_time_overlap,
	parse_reservation_request,
	request_reservation,
)
from .errors import (
	MissingFieldsError,
	RecordNotFoundError,
	ReservationConflictError,
	ReservationError,
	ReservationReferenceError,
	ReservationStorageError,
	ReservationTimeoutError,
	ReservationValidationError,
)
from .settings import Settings, SettingsError, load_settings
from .sql_store import (
	EmployeeRecord,
	ReservationRecord,
	ReservationSqlRepository,
	RoomRecord,
)

__all__ = [
	"ReservationRequest",
	"conflicting_ids",
	"has_time_overlap",
	"parse_reservation_request",
	"request_reservation",
	"MissingFieldsError",
	"RecordNotFoundError",
	"ReservationConflictError",
	"ReservationError",
	"ReservationReferenceError",
	"ReservationStorageError",
	"ReservationTimeoutError",
	"ReservationValidationError",
	"Settings",
	"SettingsError",
	"load_settings",
	"EmployeeRecord",
	"ReservationRecord",
	"ReservationSqlRepository",
	"RoomRecord",
]
