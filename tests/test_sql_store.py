import sqlite3
import tempfile
import threading
import unittest
from unittest import mock
from datetime import date, time
from pathlib import Path

from sqlalchemy.exc import DataError, OperationalError

from room_reservation import (
    RecordNotFoundError,
    ReservationConflictError,
    ReservationReferenceError,
    ReservationSqlRepository,
    ReservationStorageError,
    ReservationTimeoutError,
    ReservationValidationError,
    request_reservation,
)
from room_reservation.booking import ReservationRequest, has_time_overlap
from room_reservation.sql_store import _translate_database_error

JAN_10 = date(2025, 1, 10)
JAN_11 = date(2025, 1, 11)


def make_repository(temp_dir: str, lock_timeout: float = 5.0) -> ReservationSqlRepository:
    base = Path(temp_dir)
    repository = ReservationSqlRepository(
        database_url=f"sqlite:///{base / 'db' / 'rooms.db'}",
        data_dir=base / "data",
        lock_timeout=lock_timeout,
    )
    repository.create_schema()
    return repository


class StoreTestCase(unittest.TestCase):
    lock_timeout = 5.0

    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.temp_path = Path(temp_dir.name)
        self.repo = make_repository(temp_dir.name, lock_timeout=self.lock_timeout)
        self.addCleanup(self.repo.dispose)

        self.room1 = self.repo.add_room("Sala Andes", capacity=8)
        self.room2 = self.repo.add_room("Sala Caribe", capacity=4, description="Segundo piso")
        self.employee = self.repo.add_employee("Ana", "Pérez", "ana@example.com")


class TestReservationGuard(StoreTestCase):
    def test_partial_overlap_is_rejected(self) -> None:
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")

        with self.assertRaises(ReservationConflictError) as context:
            request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:30", "10:30")

        self.assertEqual(len(context.exception.conflicting_ids), 1)
        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 1)

    def test_back_to_back_is_accepted(self) -> None:
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        after = request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "10:00", "11:00")
        before = request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "08:00", "09:00")

        self.assertEqual(after.start_time, time(10, 0))
        self.assertEqual(before.end_time, time(9, 0))
        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 3)

    def test_reversed_range_never_reaches_store(self) -> None:
        store = mock.Mock(spec=ReservationSqlRepository)

        with self.assertRaises(ReservationValidationError):
            request_reservation(store, self.room1.id, self.employee.id, "2025-01-10", "11:00", "10:30")

        store.add_reservation.assert_not_called()

    def test_unknown_room_is_reference_error(self) -> None:
        with self.assertRaises(ReservationReferenceError):
            request_reservation(self.repo, 99, self.employee.id, "2025-01-10", "09:00", "10:00")

        self.assertEqual(self.repo.list_reservations(), [])

    def test_unknown_employee_is_reference_error(self) -> None:
        with self.assertRaises(ReservationReferenceError):
            request_reservation(self.repo, self.room1.id, 42, "2025-01-10", "09:00", "10:00")

        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 0)

    def test_free_room_returns_new_record(self) -> None:
        created = request_reservation(
            self.repo, self.room2.id, self.employee.id, "2025-01-11", "08:00", "09:00", "Planning"
        )

        self.assertIsInstance(created.id, int)
        self.assertEqual(created.room_id, self.room2.id)
        self.assertEqual(created.date, JAN_11)
        self.assertEqual(created.title, "Planning")
        self.assertIsNotNone(created.created_at)
        self.assertEqual(self.repo.list_reservations(room_id=self.room2.id), [created])

    def test_same_interval_other_room_or_date_is_independent(self) -> None:
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        request_reservation(self.repo, self.room2.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-11", "09:00", "10:00")

        self.assertEqual(len(self.repo.list_reservations()), 3)

    def test_rejections_leave_count_unchanged(self) -> None:
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        attempts = [
            (self.room1.id, self.employee.id, "2025-01-10", "09:15", "09:45"),
            (self.room1.id, self.employee.id, "2025-01-10", "10:00", "09:00"),
            (self.room1.id, 77, "2025-01-10", "12:00", "13:00"),
            (self.room1.id, self.employee.id, "2025-01-10", None, "13:00"),
        ]

        for args in attempts:
            with self.subTest(args=args):
                before = self.repo.count_reservations(self.room1.id, JAN_10)
                with self.assertRaises((ReservationConflictError, ReservationValidationError, ReservationReferenceError)):
                    request_reservation(self.repo, *args)
                self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), before)

    def test_committed_reservations_never_overlap(self) -> None:
        slots = [
            ("08:00", "09:00"),
            ("08:30", "09:30"),
            ("09:00", "09:45"),
            ("09:30", "10:15"),
            ("09:45", "10:00"),
            ("07:00", "12:00"),
            ("10:00", "10:30"),
        ]
        for start, end in slots:
            try:
                request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", start, end)
            except ReservationConflictError:
                pass

        committed = self.repo.list_reservations(room_id=self.room1.id, on_date=JAN_10)
        self.assertEqual(
            [(row.start_time, row.end_time) for row in committed],
            [(time(8, 0), time(9, 0)), (time(9, 0), time(9, 45)), (time(9, 45), time(10, 0)), (time(10, 0), time(10, 30))],
        )
        for index, first in enumerate(committed):
            for second in committed[index + 1:]:
                self.assertFalse(has_time_overlap(first.start_time, first.end_time, second.start_time, second.end_time))

    def test_store_rejects_reversed_request_object(self) -> None:
        request = ReservationRequest(self.room1.id, self.employee.id, JAN_10, time(10, 0), time(9, 0))

        with self.assertRaises(ReservationValidationError):
            self.repo.add_reservation(request)


class TestConcurrentReservations(StoreTestCase):
    def _race(self, requests: list[tuple]) -> list[object]:
        barrier = threading.Barrier(len(requests))
        outcomes: list[object] = [None] * len(requests)

        def worker(index: int, args: tuple) -> None:
            barrier.wait()
            try:
                outcomes[index] = request_reservation(self.repo, *args)
            except Exception as error:  # collected for assertions
                outcomes[index] = error

        threads = [threading.Thread(target=worker, args=(index, args)) for index, args in enumerate(requests)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return outcomes

    def test_identical_concurrent_requests_yield_one_success(self) -> None:
        args = (self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        outcomes = self._race([args, args])

        conflicts = [item for item in outcomes if isinstance(item, ReservationConflictError)]
        successes = [item for item in outcomes if not isinstance(item, Exception)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 1)

    def test_many_overlapping_requests_commit_exactly_one(self) -> None:
        requests = [
            (self.room1.id, self.employee.id, "2025-01-10", f"09:{minute:02d}", "10:30")
            for minute in range(0, 40, 5)
        ]
        outcomes = self._race(requests)

        successes = [item for item in outcomes if not isinstance(item, Exception)]
        self.assertEqual(len(successes), 1)
        self.assertTrue(all(isinstance(item, ReservationConflictError) for item in outcomes if item not in successes))

    def test_different_rooms_and_dates_all_succeed(self) -> None:
        requests = [
            (self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00"),
            (self.room2.id, self.employee.id, "2025-01-10", "09:00", "10:00"),
            (self.room1.id, self.employee.id, "2025-01-11", "09:00", "10:00"),
            (self.room2.id, self.employee.id, "2025-01-11", "09:00", "10:00"),
        ]
        outcomes = self._race(requests)

        self.assertFalse([item for item in outcomes if isinstance(item, Exception)])
        self.assertEqual(len(self.repo.list_reservations()), 4)


class TestLockScope(StoreTestCase):
    lock_timeout = 0.2

    def test_held_key_times_out_without_writing(self) -> None:
        with self.repo.locks.hold((self.room1.id, JAN_10)):
            with self.assertRaises(ReservationTimeoutError):
                request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")

        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 0)

    def test_held_key_does_not_block_other_keys(self) -> None:
        with self.repo.locks.hold((self.room1.id, JAN_10)):
            other_room = request_reservation(self.repo, self.room2.id, self.employee.id, "2025-01-10", "09:00", "10:00")
            other_day = request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-11", "09:00", "10:00")

        self.assertEqual(other_room.room_id, self.room2.id)
        self.assertEqual(other_day.date, JAN_11)

    def test_timeout_is_a_retriable_storage_error(self) -> None:
        with self.repo.locks.hold((self.room1.id, JAN_10)):
            with self.assertRaises(ReservationTimeoutError):
                request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")

        created = request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        self.assertEqual(created.start_time, time(9, 0))


class TestRoomsAndEmployees(StoreTestCase):
    def test_rooms_are_listed_in_creation_order(self) -> None:
        rooms = self.repo.list_rooms()

        self.assertEqual([room.name for room in rooms], ["Sala Andes", "Sala Caribe"])
        self.assertEqual(rooms[1].description, "Segundo piso")

    def test_room_validation(self) -> None:
        with self.assertRaises(ReservationValidationError):
            self.repo.add_room("   ")
        with self.assertRaises(ReservationValidationError):
            self.repo.add_room("Sala Negativa", capacity=-1)
        with self.assertRaises(ReservationValidationError):
            self.repo.add_room("Sala Andes")

        with self.assertRaises(ReservationValidationError):
            self.repo.add_room("Sala Enorme", capacity=10**20)

        self.assertEqual(self.repo.add_room("Sala Sin Capacidad").capacity, 0)

    def test_deleting_room_cascades_to_reservations(self) -> None:
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        request_reservation(self.repo, self.room2.id, self.employee.id, "2025-01-10", "09:00", "10:00")

        self.repo.delete_room(self.room1.id)

        remaining = self.repo.list_reservations()
        self.assertEqual([row.room_id for row in remaining], [self.room2.id])
        with self.assertRaises(RecordNotFoundError):
            self.repo.delete_room(self.room1.id)

    def test_deleting_employee_cascades_to_reservations(self) -> None:
        other = self.repo.add_employee("Luis", "Gómez")
        request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        request_reservation(self.repo, self.room1.id, other.id, "2025-01-10", "10:00", "11:00")

        self.repo.delete_employee(self.employee.id)

        remaining = self.repo.list_reservations()
        self.assertEqual([row.employee_id for row in remaining], [other.id])

    def test_update_employee(self) -> None:
        updated = self.repo.update_employee(self.employee.id, "Ana María", "Pérez", "")

        self.assertEqual(updated.first_name, "Ana María")
        self.assertIsNone(updated.email)
        self.assertEqual(self.repo.list_employees()[0].first_name, "Ana María")

        with self.assertRaises(RecordNotFoundError):
            self.repo.update_employee(500, "X", "Y")
        with self.assertRaises(ReservationValidationError):
            self.repo.update_employee(self.employee.id, "", "Y")

    def test_duplicate_employee_email_is_rejected(self) -> None:
        with self.assertRaises(ReservationValidationError):
            self.repo.add_employee("Otra", "Ana", "ana@example.com")


class TestEventTrail(StoreTestCase):
    def test_store_events_are_appended_to_yaml(self) -> None:
        created = request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        with self.assertRaises(ReservationConflictError):
            request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:30", "10:30")

        event_types = [row["event_type"] for row in self.repo.event_log.events()]
        self.assertEqual(
            event_types,
            ["ROOM_CREATED", "ROOM_CREATED", "EMPLOYEE_CREATED", "RESERVATION_CREATED", "RESERVATION_CONFLICT"],
        )
        created_event = self.repo.event_log.events("RESERVATION_CREATED")[0]
        self.assertEqual(created_event["payload"]["reservation_id"], created.id)
        conflict_event = self.repo.event_log.events("RESERVATION_CONFLICT")[0]
        self.assertEqual(conflict_event["payload"]["conflicts_with"], [created.id])

    def test_repository_without_data_dir_skips_event_log(self) -> None:
        repository = ReservationSqlRepository(
            database_url=f"sqlite:///{self.temp_path / 'plain.db'}",
            data_dir=None,
        )
        self.addCleanup(repository.dispose)
        repository.create_schema()

        room = repository.add_room("Sala Solo")
        self.assertIsNone(repository.event_log)
        self.assertEqual(room.name, "Sala Solo")


class TestSqliteTransactions(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.repo.dispose()
        self.db_path = self.temp_path / "db" / "rooms.db"
        self.repo = ReservationSqlRepository(
            database_url=f"sqlite:///{self.db_path}",
            data_dir=self.temp_path / "data",
            store_timeout=0.2,
        )
        self.addCleanup(self.repo.dispose)

    def hold_write_lock(self) -> sqlite3.Connection:
        other = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.addCleanup(other.close)
        other.execute("BEGIN IMMEDIATE")
        self.addCleanup(other.execute, "ROLLBACK")
        return other

    def test_reads_proceed_while_another_connection_writes(self) -> None:
        self.hold_write_lock()

        self.assertEqual([room.name for room in self.repo.list_rooms()], ["Sala Andes", "Sala Caribe"])
        self.assertEqual(self.repo.list_reservations(), [])
        self.assertEqual(self.repo.count_reservations(self.room1.id, JAN_10), 0)

    def test_writes_time_out_while_another_connection_writes(self) -> None:
        self.hold_write_lock()

        with self.assertRaises(ReservationTimeoutError):
            request_reservation(self.repo, self.room1.id, self.employee.id, "2025-01-10", "09:00", "10:00")
        with self.assertRaises(ReservationTimeoutError):
            self.repo.add_room("Sala Bloqueada")


class TestStorageFailures(StoreTestCase):
    def test_missing_table_is_a_storage_error(self) -> None:
        with self.repo.engine.begin() as connection:
            connection.exec_driver_sql("DROP TABLE reservations")

        with self.assertLogs("room_reservation.sql_store", level="ERROR"):
            with self.assertRaises(ReservationStorageError) as context:
                self.repo.list_reservations()

        self.assertNotIsInstance(context.exception, ReservationTimeoutError)
        self.assertEqual(context.exception.code, "storage")

    def test_generic_operational_error_is_not_retriable(self) -> None:
        error = OperationalError("INSERT INTO reservations", {}, Exception("disk I/O error"))

        with self.assertLogs("room_reservation.sql_store", level="ERROR"):
            translated = _translate_database_error(error)

        self.assertIs(type(translated), ReservationStorageError)
        self.assertIn("disk I/O error", str(translated))

    def test_out_of_range_value_is_a_validation_error(self) -> None:
        error = DataError("SELECT 1", {}, Exception("integer out of range"))

        self.assertIsInstance(_translate_database_error(error), ReservationValidationError)

    def test_locked_database_is_retriable(self) -> None:
        error = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        self.assertIsInstance(_translate_database_error(error), ReservationTimeoutError)


if __name__ == "__main__":
    unittest.main()
