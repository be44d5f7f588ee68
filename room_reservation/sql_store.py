from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterator
import logging

from sqlalchemy import create_engine, delete, event, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DataError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .booking import MAX_IDENTIFIER, ReservationRequest, conflicting_ids
from .errors import (
    RecordNotFoundError,
    ReservationConflictError,
    ReservationError,
    ReservationReferenceError,
    ReservationStorageError,
    ReservationTimeoutError,
    ReservationValidationError,
)
from .event_log import YamlEventLog
from .locking import KeyedLockRegistry
from .settings import Settings

logger = logging.getLogger(__name__)

_PG_FOREIGN_KEY_VIOLATION = "23503"
_PG_UNIQUE_VIOLATION = "23505"
_PG_CHECK_VIOLATION = "23514"
_PG_TIMEOUT_CODES = {"57014", "55P03"}

# execution option marking connections that will write
WRITE_OPTION = "room_reservation_write"


@dataclass(frozen=True)
class RoomRecord:
    id: int
    name: str
    capacity: int
    description: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "capacity": self.capacity,
            "description": self.description,
            "created_at": _format_timestamp(self.created_at),
        }

    @staticmethod
    def from_model(row: models.Room) -> "RoomRecord":
        return RoomRecord(
            id=row.id,
            name=row.name,
            capacity=row.capacity,
            description=row.description,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class EmployeeRecord:
    id: int
    first_name: str
    last_name: str
    email: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "created_at": _format_timestamp(self.created_at),
        }

    @staticmethod
    def from_model(row: models.Employee) -> "EmployeeRecord":
        return EmployeeRecord(
            id=row.id,
            first_name=row.first_name,
            last_name=row.last_name,
            email=row.email,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class ReservationRecord:
    id: int
    room_id: int
    employee_id: int
    date: date
    start_time: time
    end_time: time
    title: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "employee_id": self.employee_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.isoformat(timespec="seconds"),
            "end_time": self.end_time.isoformat(timespec="seconds"),
            "title": self.title,
            "created_at": _format_timestamp(self.created_at),
        }

    @staticmethod
    def from_model(row: models.Reservation) -> "ReservationRecord":
        return ReservationRecord(
            id=row.id,
            room_id=row.room_id,
            employee_id=row.employee_id,
            date=row.date,
            start_time=row.start_time,
            end_time=row.end_time,
            title=row.title,
            created_at=row.created_at,
        )


class ReservationSqlRepository:
    """Relational store for rooms, employees and reservations.

    Every public method checks a session out of the engine's pool and returns
    it before returning. Reservation inserts for the same (room_id, date) are
    serialized through ``locks``; other keys proceed independently.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/room_reservation.db",
        data_dir: str | Path | None = "data",
        lock_timeout: float = 5.0,
        store_timeout: float = 5.0,
    ) -> None:
        self.engine = build_engine(database_url, store_timeout)
        self.locks = KeyedLockRegistry(timeout=lock_timeout)
        self.event_log = YamlEventLog(data_dir) if data_dir is not None else None
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_session_factory = sessionmaker(
            bind=self.engine.execution_options(**{WRITE_OPTION: True}),
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReservationSqlRepository":
        return cls(
            database_url=settings.database_url,
            data_dir=settings.data_dir,
            lock_timeout=settings.lock_timeout,
            store_timeout=settings.store_timeout,
        )

    def create_schema(self) -> None:
        try:
            models.Base.metadata.create_all(self.engine)
        except SQLAlchemyError as error:
            raise _translate_database_error(error) from error

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self, write: bool = False) -> Iterator[Session]:
        """Transaction per call. Pass ``write=True`` when the body modifies rows."""
        factory = self._write_session_factory if write else self._session_factory
        session = factory()
        try:
            yield session
            session.commit()
        except ReservationError:
            session.rollback()
            raise
        except SQLAlchemyError as error:
            session.rollback()
            raise _translate_database_error(error) from error
        finally:
            session.close()

    # reservations

    def list_reservations(self, room_id: int | None = None, on_date: date | None = None) -> list[ReservationRecord]:
        statement = select(models.Reservation)
        if room_id is not None:
            statement = statement.where(models.Reservation.room_id == room_id)
        if on_date is not None:
            statement = statement.where(models.Reservation.date == on_date)
        statement = statement.order_by(
            models.Reservation.date,
            models.Reservation.start_time,
            models.Reservation.id,
        )
        with self.session_scope() as session:
            return [ReservationRecord.from_model(row) for row in session.scalars(statement)]

    def count_reservations(self, room_id: int, on_date: date) -> int:
        statement = (
            select(func.count())
            .select_from(models.Reservation)
            .where(models.Reservation.room_id == room_id, models.Reservation.date == on_date)
        )
        with self.session_scope() as session:
            return int(session.scalar(statement) or 0)

    def add_reservation(self, request: ReservationRequest) -> ReservationRecord:
        """Insert ``request`` unless it overlaps a reservation for the same room and date.

        The overlap scan and the insert run in one transaction while holding
        the (room_id, date) lock, so two overlapping requests cannot both
        commit. Raises ``ReservationConflictError`` on overlap and
        ``ReservationReferenceError`` when the room or employee is unknown;
        the store is left unchanged in both cases.
        """
        if request.start_time >= request.end_time:
            raise ReservationValidationError("start_time must be earlier than end_time.")

        try:
            with self.locks.hold((request.room_id, request.date)):
                record = self._insert_if_free(request)
        except ReservationConflictError as error:
            logger.info(
                "Rejected reservation for room %s on %s %s-%s: overlaps %s",
                request.room_id,
                request.date,
                request.start_time,
                request.end_time,
                error.conflicting_ids,
            )
            self._record_event("RESERVATION_CONFLICT", {**_request_payload(request), "conflicts_with": error.conflicting_ids})
            raise

        self._record_event("RESERVATION_CREATED", {"reservation_id": record.id, **_request_payload(request)})
        return record

    def _insert_if_free(self, request: ReservationRequest) -> ReservationRecord:
        with self.session_scope(write=True) as session:
            if self.engine.dialect.name == "postgresql":
                session.execute(
                    text("SELECT pg_advisory_xact_lock(:room_id, :day)"),
                    {"room_id": request.room_id, "day": request.date.toordinal()},
                )

            existing = session.scalars(
                select(models.Reservation).where(
                    models.Reservation.room_id == request.room_id,
                    models.Reservation.date == request.date,
                )
            ).all()
            conflicts = conflicting_ids(request.start_time, request.end_time, existing)
            if conflicts:
                raise ReservationConflictError("Reservation overlaps with an existing reservation.", conflicts)

            row = models.Reservation(
                room_id=request.room_id,
                employee_id=request.employee_id,
                date=request.date,
                start_time=request.start_time,
                end_time=request.end_time,
                title=request.title,
            )
            session.add(row)
            session.flush()
            return ReservationRecord.from_model(row)

    # rooms

    def list_rooms(self) -> list[RoomRecord]:
        with self.session_scope() as session:
            rows = session.scalars(select(models.Room).order_by(models.Room.id))
            return [RoomRecord.from_model(row) for row in rows]

    def add_room(self, name: str, capacity: Any = 0, description: str | None = None) -> RoomRecord:
        name = _require_text(name, "name")
        capacity = _parse_capacity(capacity)
        with self.session_scope(write=True) as session:
            row = models.Room(name=name, capacity=capacity, description=description)
            session.add(row)
            session.flush()
            record = RoomRecord.from_model(row)

        self._record_event("ROOM_CREATED", {"room_id": record.id, "name": record.name, "capacity": record.capacity})
        return record

    def delete_room(self, room_id: int) -> None:
        with self.session_scope(write=True) as session:
            result = session.execute(delete(models.Room).where(models.Room.id == room_id))
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Room {room_id} not found.")

        self._record_event("ROOM_DELETED", {"room_id": room_id})

    # employees

    def list_employees(self) -> list[EmployeeRecord]:
        with self.session_scope() as session:
            rows = session.scalars(select(models.Employee).order_by(models.Employee.id))
            return [EmployeeRecord.from_model(row) for row in rows]

    def add_employee(self, first_name: str, last_name: str, email: str | None = None) -> EmployeeRecord:
        first_name = _require_text(first_name, "first_name")
        last_name = _require_text(last_name, "last_name")
        with self.session_scope(write=True) as session:
            row = models.Employee(first_name=first_name, last_name=last_name, email=_optional_text(email))
            session.add(row)
            session.flush()
            record = EmployeeRecord.from_model(row)

        self._record_event("EMPLOYEE_CREATED", {"employee_id": record.id})
        return record

    def update_employee(
        self,
        employee_id: int,
        first_name: str,
        last_name: str,
        email: str | None = None,
    ) -> EmployeeRecord:
        first_name = _require_text(first_name, "first_name")
        last_name = _require_text(last_name, "last_name")
        with self.session_scope(write=True) as session:
            row = session.get(models.Employee, employee_id)
            if row is None:
                raise RecordNotFoundError(f"Employee {employee_id} not found.")
            row.first_name = first_name
            row.last_name = last_name
            row.email = _optional_text(email)
            session.flush()
            record = EmployeeRecord.from_model(row)

        self._record_event("EMPLOYEE_UPDATED", {"employee_id": employee_id})
        return record

    def delete_employee(self, employee_id: int) -> None:
        with self.session_scope(write=True) as session:
            result = session.execute(delete(models.Employee).where(models.Employee.id == employee_id))
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Employee {employee_id} not found.")

        self._record_event("EMPLOYEE_DELETED", {"employee_id": employee_id})

    def _record_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.record(event_type, payload)
        except ReservationStorageError:
            # the database change is already committed
            logger.exception("Could not append %s to the event log", event_type)


def build_engine(database_url: str, store_timeout: float = 5.0) -> Engine:
    url = make_url(database_url)
    backend = url.get_backend_name()
    engine_options: dict[str, Any] = {"pool_pre_ping": True}

    if backend == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine_options["connect_args"] = {"timeout": store_timeout, "check_same_thread": False}
    else:
        engine_options["pool_timeout"] = store_timeout
        if backend == "postgresql":
            timeout_ms = int(store_timeout * 1000)
            engine_options["connect_args"] = {"options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}"}

    engine = create_engine(url, **engine_options)
    if backend == "sqlite":
        _configure_sqlite(engine)
    return engine


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # let SQLAlchemy's "begin" event own transaction start
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        # writers take the database write lock up front; readers stay deferred
        if connection.get_execution_options().get(WRITE_OPTION):
            connection.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            connection.exec_driver_sql("BEGIN")


def _translate_database_error(error: SQLAlchemyError) -> ReservationError:
    original = getattr(error, "orig", None)
    message = str(original if original is not None else error)
    lowered = message.lower()
    sqlstate = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)

    if isinstance(error, IntegrityError):
        if sqlstate == _PG_FOREIGN_KEY_VIOLATION or "foreign key" in lowered:
            return ReservationReferenceError("Referenced room or employee does not exist.")
        if sqlstate == _PG_CHECK_VIOLATION or "check constraint" in lowered:
            return ReservationValidationError(f"Constraint check failed: {message}")
        if sqlstate == _PG_UNIQUE_VIOLATION or "unique" in lowered or "duplicate" in lowered:
            return ReservationValidationError(f"Duplicate value: {message}")

    if isinstance(error, DataError):
        return ReservationValidationError(f"Value out of range: {message}")

    if isinstance(error, PoolTimeoutError) or (
        isinstance(error, OperationalError)
        and (sqlstate in _PG_TIMEOUT_CODES or "locked" in lowered or "timeout" in lowered)
    ):
        return ReservationTimeoutError(f"Database did not respond in time: {message}")

    logger.error("Unexpected database error: %s", message)
    return ReservationStorageError(f"Database error: {message}")


def _request_payload(request: ReservationRequest) -> dict[str, Any]:
    return {
        "room_id": request.room_id,
        "employee_id": request.employee_id,
        "date": request.date.isoformat(),
        "start_time": request.start_time.isoformat(timespec="seconds"),
        "end_time": request.end_time.isoformat(timespec="seconds"),
        "title": request.title,
    }


def _require_text(value: Any, field: str) -> str:
    if value is None or not str(value).strip():
        raise ReservationValidationError(f"{field} must not be empty")
    return str(value).strip()


def _optional_text(value: Any) -> str | None:
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def _parse_capacity(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ReservationValidationError("capacity must be a non-negative integer")
    try:
        capacity = int(value)
    except (TypeError, ValueError) as error:
        raise ReservationValidationError("capacity must be a non-negative integer") from error
    if capacity < 0 or capacity > MAX_IDENTIFIER or (isinstance(value, float) and not value.is_integer()):
        raise ReservationValidationError("capacity must be a non-negative integer")
    return capacity


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value is not None else None
