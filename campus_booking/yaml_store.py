from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
import hashlib
import shutil
import threading
from uuid import uuid4

import yaml
from filelock import FileLock

from .booking import BookingStatus, find_conflicts
from .errors import BookingError, BookingStorageError

BOOKINGS_FILE_NAME = "bookings.yaml"
EVENTS_FILE_NAME = "booking_events.yaml"
LOCK_DIR_NAME = ".locks"
TABLE_LOCK_FILE_NAME = "table.lock"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BookingRecord:
    booking_id: str
    owner_id: str
    resource_type: str
    resource_name: str
    start: datetime
    end: datetime
    status: BookingStatus
    created_at: datetime
    updated_at: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, str]:
        payload = {
            "booking_id": self.booking_id,
            "owner_id": self.owner_id,
            "resource_type": self.resource_type,
            "resource_name": self.resource_name,
            "start": self.start.isoformat(timespec="seconds"),
            "end": self.end.isoformat(timespec="seconds"),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload

    def to_public_dict(self) -> dict[str, str]:
        """Reduced projection shown to callers without an identity."""
        return {
            "booking_id": self.booking_id,
            "resource_type": self.resource_type,
            "resource_name": self.resource_name,
            "start": self.start.isoformat(timespec="seconds"),
            "end": self.end.isoformat(timespec="seconds"),
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "BookingRecord":
        return BookingRecord(
            booking_id=str(data["booking_id"]),
            owner_id=str(data["owner_id"]),
            resource_type=str(data["resource_type"]),
            resource_name=str(data["resource_name"]),
            start=_aware_instant(data["start"]),
            end=_aware_instant(data["end"]),
            status=BookingStatus.parse(data["status"]),
            created_at=_aware_instant(data["created_at"]),
            updated_at=_aware_instant(data["updated_at"]),
            reason=(str(data.get("reason")) if data.get("reason") is not None else None),
        )


def _aware_instant(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    if parsed.utcoffset() is None:
        raise ValueError(f"timestamp has no timezone offset: {value!r}")
    return parsed


class _DirectoryLocks:
    """Locks shared by every repository opened on one data directory.

    Each scope pairs a thread lock with a file lock, so writers in this
    process and writers in other processes are serialised alike.
    """

    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir
        self.table_thread_lock = threading.RLock()
        self.table_file_lock = FileLock(str(lock_dir / TABLE_LOCK_FILE_NAME))
        self._registry_lock = threading.Lock()
        self._resource_locks: dict[str, tuple[threading.Lock, FileLock]] = {}

    def resource_lock_path(self, resource_name: str) -> Path:
        digest = hashlib.sha1(resource_name.encode("utf-8")).hexdigest()
        return self.lock_dir / f"resource-{digest}.lock"

    def for_resource(self, resource_name: str) -> tuple[threading.Lock, FileLock]:
        with self._registry_lock:
            pair = self._resource_locks.get(resource_name)
            if pair is None:
                pair = (threading.Lock(), FileLock(str(self.resource_lock_path(resource_name))))
                self._resource_locks[resource_name] = pair
            return pair


_DIRECTORY_LOCKS: dict[Path, _DirectoryLocks] = {}
_DIRECTORY_LOCKS_GUARD = threading.Lock()


def _locks_for(base_dir: Path) -> _DirectoryLocks:
    key = base_dir.resolve()
    with _DIRECTORY_LOCKS_GUARD:
        locks = _DIRECTORY_LOCKS.get(key)
        if locks is None:
            locks = _DirectoryLocks(key / LOCK_DIR_NAME)
            _DIRECTORY_LOCKS[key] = locks
        return locks


class BookingYamlRepository:
    """Durable booking table kept as a YAML list, with a YAML event log beside it.

    Every read-modify-write of the table runs under the data directory's table
    lock and replaces the file atomically, so readers always see a committed
    table. ``lock_resources`` hands out the per-resource scope that callers
    hold across a conflict check and the write that depends on it. Both locks
    belong to the directory, not to this object: every repository opened on
    the same directory, in this process or another, shares them.
    """

    def __init__(self, base_dir: str | Path = "data") -> None:
        self.base_dir = Path(base_dir)
        self.bookings_file = self.base_dir / BOOKINGS_FILE_NAME
        self.log_file = self.base_dir / EVENTS_FILE_NAME
        self._ensure_files()
        self._locks = _locks_for(self.base_dir)

    def _ensure_files(self) -> None:
        (self.base_dir / LOCK_DIR_NAME).mkdir(parents=True, exist_ok=True)
        for path in (self.bookings_file, self.log_file):
            if not path.exists():
                path.write_text("[]\n", encoding="utf-8")

    @contextmanager
    def _table_scope(self) -> Iterator[None]:
        with self._locks.table_thread_lock, self._locks.table_file_lock:
            yield

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif path != self.log_file:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise BookingStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = utc_now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        backed_up = True
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            backed_up = False

        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name) if backed_up else None,
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or utc_now()).isoformat(timespec="seconds")
        with self._table_scope():
            events = self._read_yaml_list(self.log_file)
            events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
            self._write_yaml_list(self.log_file, events)

    def log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        self._log_event(event_type, payload, event_time)

    def get_events(self) -> list[dict[str, Any]]:
        return self._read_yaml_list(self.log_file)

    def resource_lock_path(self, resource_name: str) -> Path:
        return self._locks.resource_lock_path(resource_name)

    @contextmanager
    def lock_resources(self, *resource_names: str) -> Iterator[None]:
        """Hold the exclusive scope of every named resource.

        Locks are taken in sorted order so two writers touching the same pair
        of resources cannot deadlock.
        """
        with ExitStack() as stack:
            for name in sorted(set(resource_names)):
                thread_lock, file_lock = self._locks.for_resource(name)
                stack.enter_context(thread_lock)
                stack.enter_context(file_lock)
            yield

    def get_bookings(self) -> list[BookingRecord]:
        with self._table_scope():
            rows = self._read_yaml_list(self.bookings_file)
            records: list[BookingRecord] = []
            for row in rows:
                try:
                    records.append(BookingRecord.from_dict(row))
                except (KeyError, TypeError, ValueError, BookingError) as error:
                    self._log_event(
                        "YAML_ROW_SKIPPED",
                        {
                            "file": str(self.bookings_file.name),
                            "booking_id": str(row.get("booking_id")) if row.get("booking_id") is not None else None,
                            "reason": f"row cannot be decoded: {error!r}",
                        },
                    )
        return records

    def get_booking(self, booking_id: str) -> BookingRecord | None:
        for record in self.get_bookings():
            if record.booking_id == booking_id:
                return record
        return None

    def find_conflicts(
        self,
        resource_name: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> list[BookingRecord]:
        candidates = [record for record in self.get_bookings() if record.resource_name == resource_name]
        return find_conflicts(candidates, resource_name, start, end, exclude_id=exclude_id)

    def add_booking(
        self,
        *,
        owner_id: str,
        resource_type: str,
        resource_name: str,
        start: datetime,
        end: datetime,
        reason: str | None = None,
        status: BookingStatus = BookingStatus.PENDING,
        now: datetime | None = None,
    ) -> BookingRecord:
        """Append a booking as given. Conflict checking is the caller's job."""
        effective_now = now or utc_now()
        record = BookingRecord(
            booking_id=str(uuid4()),
            owner_id=owner_id,
            resource_type=resource_type,
            resource_name=resource_name,
            start=start,
            end=end,
            status=status,
            created_at=effective_now,
            updated_at=effective_now,
            reason=reason,
        )
        with self._table_scope():
            rows = self._read_yaml_list(self.bookings_file)
            rows.append(record.to_dict())
            self._write_yaml_list(self.bookings_file, rows)

        self._log_event(
            "BOOKING_CREATED",
            {
                "booking_id": record.booking_id,
                "owner_id": owner_id,
                "resource_name": resource_name,
                "start": record.start.isoformat(timespec="seconds"),
                "end": record.end.isoformat(timespec="seconds"),
                "status": record.status.value,
            },
            effective_now,
        )
        return record

    def save_booking(self, record: BookingRecord, event_type: str = "BOOKING_UPDATED", now: datetime | None = None) -> BookingRecord:
        effective_now = now or utc_now()
        updated = replace(record, updated_at=effective_now)

        with self._table_scope():
            rows = self._read_yaml_list(self.bookings_file)
            found_index = _find_row_index(rows, record.booking_id)
            if found_index < 0:
                raise BookingStorageError(f"booking_id not found in table: {record.booking_id}")
            rows[found_index] = updated.to_dict()
            self._write_yaml_list(self.bookings_file, rows)

        self._log_event(
            event_type,
            {
                "booking_id": updated.booking_id,
                "resource_name": updated.resource_name,
                "start": updated.start.isoformat(timespec="seconds"),
                "end": updated.end.isoformat(timespec="seconds"),
                "status": updated.status.value,
            },
            effective_now,
        )
        return updated

    def delete_booking(self, booking_id: str, now: datetime | None = None) -> BookingRecord | None:
        effective_now = now or utc_now()
        with self._table_scope():
            rows = self._read_yaml_list(self.bookings_file)
            found_index = _find_row_index(rows, booking_id)
            if found_index < 0:
                return None
            deleted = BookingRecord.from_dict(rows.pop(found_index))
            self._write_yaml_list(self.bookings_file, rows)

        self._log_event(
            "BOOKING_DELETED",
            {
                "booking_id": deleted.booking_id,
                "resource_name": deleted.resource_name,
                "status": deleted.status.value,
            },
            effective_now,
        )
        return deleted


def _find_row_index(rows: list[dict[str, Any]], booking_id: str) -> int:
    for index, row in enumerate(rows):
        if str(row.get("booking_id")) == booking_id:
            return index
    return -1
