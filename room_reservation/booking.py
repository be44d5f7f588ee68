from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any, Iterable, Protocol

from .errors import MissingFieldsError, ReservationValidationError

if TYPE_CHECKING:
    from .sql_store import ReservationRecord, ReservationSqlRepository

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMATS = ("%H:%M", "%H:%M:%S")
REQUIRED_FIELDS = ("room_id", "employee_id", "date", "start_time", "end_time")


# signed 64-bit, the widest INTEGER SQLite stores
MAX_IDENTIFIER = 2**63 - 1


class TimeSlot(Protocol):
    id: int
    start_time: time
    end_time: time


@dataclass(frozen=True)
class ReservationRequest:
    room_id: int
    employee_id: int
    date: date
    start_time: time
    end_time: time
    title: str | None = None


def has_time_overlap(new_start: time, new_end: time, exist_start: time, exist_end: time) -> bool:
    """Return True when two time intervals overlap by even one second.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    return new_start < exist_end and new_end > exist_start


def conflicting_ids(new_start: time, new_end: time, existing: Iterable[TimeSlot]) -> list[int]:
    """Ids of the slots in ``existing`` that overlap ``[new_start, new_end)``; empty when the range is free."""
    return [slot.id for slot in existing if has_time_overlap(new_start, new_end, slot.start_time, slot.end_time)]


def parse_reservation_request(
    room_id: Any,
    employee_id: Any,
    date_value: Any,
    start_time: Any,
    end_time: Any,
    title: Any = None,
) -> ReservationRequest:
    """Validate raw reservation fields and convert them to typed values.

    Accepts ints or digit strings for the ids, ``date``/``time`` objects or
    ``YYYY-MM-DD`` / ``HH:MM[:SS]`` strings for the rest. Raises
    ``ReservationValidationError`` for missing or malformed fields and when
    the range is empty or reversed (overnight ranges included).
    """
    raw = {
        "room_id": room_id,
        "employee_id": employee_id,
        "date": date_value,
        "start_time": start_time,
        "end_time": end_time,
    }
    missing = [name for name in REQUIRED_FIELDS if _is_missing(raw[name])]
    if missing:
        raise MissingFieldsError(missing)

    request = ReservationRequest(
        room_id=parse_identifier(room_id, "room_id"),
        employee_id=parse_identifier(employee_id, "employee_id"),
        date=parse_date(date_value),
        start_time=parse_time(start_time, "start_time"),
        end_time=parse_time(end_time, "end_time"),
        title=None if title is None else str(title),
    )
    if request.start_time >= request.end_time:
        raise ReservationValidationError("start_time must be earlier than end_time.")
    return request


def request_reservation(
    repository: ReservationSqlRepository,
    room_id: Any,
    employee_id: Any,
    date_value: Any,
    start_time: Any,
    end_time: Any,
    title: Any = None,
) -> ReservationRecord:
    request = parse_reservation_request(room_id, employee_id, date_value, start_time, end_time, title)
    return repository.add_reservation(request)


def parse_identifier(value: Any, field: str) -> int:
    # bool is an int subclass; True must not silently become room 1
    if isinstance(value, bool):
        raise ReservationValidationError(f"{field} must be an integer.")
    if isinstance(value, int):
        identifier = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        identifier = int(value.strip())
    else:
        raise ReservationValidationError(f"{field} must be an integer.")

    if identifier <= 0:
        raise ReservationValidationError(f"{field} must be a positive integer.")
    if identifier > MAX_IDENTIFIER:
        raise ReservationValidationError(f"{field} is out of range.")
    return identifier


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        raise ReservationValidationError("date must be a calendar date without a time part.")
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), DATE_FORMAT).date()
    except ValueError as error:
        raise ReservationValidationError("date must use the YYYY-MM-DD format.") from error


def parse_time(value: Any, field: str) -> time:
    if isinstance(value, time):
        if value.tzinfo is not None:
            raise ReservationValidationError(f"{field} must be a local time without a timezone.")
        return value.replace(microsecond=0)
    text = str(value).strip()
    for time_format in TIME_FORMATS:
        try:
            return datetime.strptime(text, time_format).time()
        except ValueError:
            continue
    raise ReservationValidationError(f"{field} must use the HH:MM or HH:MM:SS format.")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False
