from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Protocol

from .errors import InvalidRequest, InvalidTransition, InvalidWindow


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES

    @classmethod
    def parse(cls, value: Any) -> "BookingStatus":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        raise InvalidRequest(f"Unknown booking status: {value!r}")


LIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED})

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.APPROVED, BookingStatus.REJECTED}),
    BookingStatus.APPROVED: frozenset({BookingStatus.REJECTED, BookingStatus.COMPLETED}),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


class BookingLike(Protocol):
    booking_id: str
    resource_name: str
    start: datetime
    end: datetime
    status: BookingStatus


@dataclass(frozen=True)
class ConflictSummary:
    booking_id: str
    resource_name: str
    start: datetime
    end: datetime
    status: BookingStatus

    @staticmethod
    def from_booking(booking: BookingLike) -> "ConflictSummary":
        return ConflictSummary(
            booking_id=booking.booking_id,
            resource_name=booking.resource_name,
            start=booking.start,
            end=booking.end,
            status=booking.status,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "booking_id": self.booking_id,
            "resource_name": self.resource_name,
            "start": self.start.isoformat(timespec="seconds"),
            "end": self.end.isoformat(timespec="seconds"),
            "status": self.status.value,
        }


def validate_window(start: Any, end: Any) -> None:
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise InvalidWindow("Booking start and end must be datetimes.")
    if start.utcoffset() is None or end.utcoffset() is None:
        raise InvalidWindow("Booking start and end must carry a timezone.")
    if start >= end:
        raise InvalidWindow("Booking start time must be earlier than end time.")


def windows_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Return True when two booking windows share at least one instant.

    Windows are half-open ranges: [start, end)
    so touching boundaries (e.g. 09:00-10:00 and 10:00-11:00) do not overlap.
    """
    validate_window(start_a, end_a)
    validate_window(start_b, end_b)

    return start_a < end_b and start_b < end_a


def find_conflicts(
    bookings: Iterable[BookingLike],
    resource_name: str,
    start: datetime,
    end: datetime,
    exclude_id: str | None = None,
) -> list[BookingLike]:
    """Return the live bookings on ``resource_name`` whose window intersects [start, end).

    ``exclude_id`` drops the booking being edited or approved from its own conflict set.
    """
    validate_window(start, end)

    conflicts = [
        booking
        for booking in bookings
        if booking.resource_name == resource_name
        and booking.status.is_live
        and booking.booking_id != exclude_id
        and windows_overlap(start, end, booking.start, booking.end)
    ]
    conflicts.sort(key=lambda booking: (booking.start, booking.booking_id))
    return conflicts
