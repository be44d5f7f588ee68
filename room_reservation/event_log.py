from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any
import logging
import os
import threading

import yaml

from .errors import ReservationStorageError

logger = logging.getLogger(__name__)

EVENT_LOG_FILENAME = "reservation_events.yaml"


class YamlEventLog:
    """Append-only audit trail of store events kept as a YAML list.

    A log that no longer parses is moved aside as ``<stem>.corrupt.<timestamp>.yaml``
    and a fresh one is started. I/O failures are raised as ``ReservationStorageError``
    and leave the file untouched.
    """

    def __init__(self, base_dir: str | Path = "data", filename: str = EVENT_LOG_FILENAME) -> None:
        self.base_dir = Path(base_dir)
        self.path = self.base_dir / filename
        self._lock = threading.Lock()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._save([])

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        entry = {
            "event_time": (event_time or datetime.now()).isoformat(timespec="seconds"),
            "event_type": event_type,
            "payload": payload,
        }
        with self._lock:
            rows = self._load()
            rows.append(entry)
            self._save(rows)

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._load()
        return [row for row in rows if event_type is None or row.get("event_type") == event_type]

    def _load(self) -> list[dict[str, Any]]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as error:
            raise ReservationStorageError(f"Cannot read event log {self.path}") from error

        try:
            document = yaml.safe_load(raw.decode("utf-8"))
        except (UnicodeDecodeError, yaml.YAMLError) as error:
            self._quarantine(error)
            return []

        if document is None:
            return []
        if not isinstance(document, list):
            self._quarantine(ValueError("top-level YAML is not a list"))
            return []

        rows = [row for row in document if isinstance(row, dict)]
        if len(rows) != len(document):
            logger.warning("Skipped %d non-mapping entries in %s", len(document) - len(rows), self.path.name)
        return rows

    def _save(self, rows: list[dict[str, Any]]) -> None:
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            with staging.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(rows, handle, allow_unicode=True, sort_keys=False)
            os.replace(staging, self.path)
        except OSError as error:
            staging.unlink(missing_ok=True)
            raise ReservationStorageError(f"Cannot write event log {self.path}") from error

    def _quarantine(self, reason: Exception) -> None:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backup = self.path.with_name(f"{self.path.stem}.corrupt.{stamp}{self.path.suffix}")
        try:
            os.replace(self.path, backup)
        except OSError as error:
            raise ReservationStorageError(f"Cannot move corrupted event log {self.path} aside") from error
        logger.warning("Event log %s was unreadable (%s); moved to %s", self.path.name, reason, backup.name)
