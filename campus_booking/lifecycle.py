from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterator

from .actors import Actor
from .booking import BookingStatus, ConflictSummary, validate_transition, validate_window
from .errors import Conflict, Forbidden, InvalidRequest, NotFound
from .yaml_store import BookingRecord, BookingYamlRepository, utc_now

UPDATABLE_FIELDS = ("resource_type", "resource_name", "start", "end", "reason")


class BookingLifecycleController:
    """Applies create/edit/status/delete requests to the booking table.

    Every write that admits a booking into the live set runs its conflict
    check and its write inside the repository's lock for that resource.
    """

    def __init__(
        self,
        repository: BookingYamlRepository,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.clock: Callable[[], datetime] = now_provider or utc_now

    def create(
        self,
        actor: Actor | None,
        resource_type: str,
        resource_name: str,
        start: datetime,
        end: datetime,
        reason: str | None = None,
        on_behalf_of: str | None = None,
    ) -> BookingRecord:
        actor = _require_actor(actor)
        resource_type = _normalize_label(resource_type, "resource_type")
        resource_name = _normalize_label(resource_name, "resource_name")
        validate_window(start, end)

        owner_id = actor.user_id
        if on_behalf_of is not None and actor.is_privileged:
            owner_id = _normalize_label(on_behalf_of, "user_id")

        with self.repository.lock_resources(resource_name):
            self._ensure_free(resource_name, start, end)
            return self.repository.add_booking(
                owner_id=owner_id,
                resource_type=resource_type,
                resource_name=resource_name,
                start=start,
                end=end,
                reason=reason,
                now=self.clock(),
            )

    def update(self, actor: Actor | None, booking_id: str, **fields: Any) -> BookingRecord:
        """Apply the given fields; None leaves a field unchanged and an empty reason clears it."""
        actor = _require_actor(actor)
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            raise InvalidRequest(f"Fields cannot be updated: {', '.join(unknown)}")
        changes = {key: value for key, value in fields.items() if value is not None}
        if not changes:
            raise InvalidRequest("No updates provided")
        for key in ("resource_type", "resource_name"):
            if key in changes:
                changes[key] = _normalize_label(changes[key], key)
        if "reason" in changes:
            changes["reason"] = str(changes["reason"]).strip() or None

        with self._held_booking(booking_id, changes.get("resource_name")) as current:
            if not (actor.is_privileged or actor.owns(current.owner_id)):
                raise Forbidden("Access denied")
            if current.status is BookingStatus.APPROVED and not actor.is_privileged:
                raise Forbidden("Approved bookings cannot be edited by the requester.")

            updated = replace(current, **changes)
            validate_window(updated.start, updated.end)
            window_changed = (
                updated.resource_name != current.resource_name
                or updated.start != current.start
                or updated.end != current.end
            )
            if current.status.is_live and window_changed:
                self._ensure_free(updated.resource_name, updated.start, updated.end, exclude_id=current.booking_id)

            return self.repository.save_booking(updated, now=self.clock())

    def set_status(
        self,
        actor: Actor | None,
        booking_id: str,
        status: BookingStatus | str,
        override: bool = False,
    ) -> BookingRecord:
        actor = _require_actor(actor)
        if not actor.is_privileged:
            raise Forbidden("Only admin or staff can change booking status.")
        if override and not actor.is_admin:
            raise Forbidden("Only admins can override the booking status flow.")
        target = BookingStatus.parse(status)

        with self._held_booking(booking_id) as current:
            if not override:
                validate_transition(current.status, target)

            revives = target.is_live and not current.status.is_live
            if target is BookingStatus.APPROVED or revives:
                self._ensure_free(
                    current.resource_name,
                    current.start,
                    current.end,
                    exclude_id=current.booking_id,
                    at_approval=target is BookingStatus.APPROVED,
                )

            updated = replace(current, status=target)
            return self.repository.save_booking(updated, event_type="BOOKING_STATUS_CHANGED", now=self.clock())

    def delete(self, actor: Actor | None, booking_id: str) -> BookingRecord:
        actor = _require_actor(actor)
        with self._held_booking(booking_id) as current:
            if not actor.is_privileged:
                if not actor.owns(current.owner_id):
                    raise Forbidden("Access denied")
                if current.status is BookingStatus.APPROVED:
                    raise Forbidden("Approved bookings can only be deleted by admin or staff.")

            deleted = self.repository.delete_booking(current.booking_id, now=self.clock())
        if deleted is None:
            raise NotFound("Booking not found")
        return deleted

    def check_availability(
        self,
        resource_name: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> list[ConflictSummary]:
        resource_name = _normalize_label(resource_name, "resource_name")
        validate_window(start, end)
        conflicts = self.repository.find_conflicts(resource_name, start, end, exclude_id=exclude_id)
        return [ConflictSummary.from_booking(record) for record in conflicts]

    def list_bookings(self, actor: Actor | None) -> list[dict[str, Any]]:
        records = self.repository.get_bookings()
        records.sort(key=lambda record: record.created_at, reverse=True)

        if actor is None:
            return [record.to_public_dict() for record in records if record.status is BookingStatus.APPROVED]
        if actor.is_privileged:
            return [record.to_dict() for record in records]
        return [record.to_dict() for record in records if actor.owns(record.owner_id)]

    def get_booking(self, actor: Actor | None, booking_id: str) -> BookingRecord:
        actor = _require_actor(actor)
        record = self._get_existing(booking_id)
        if not (actor.is_privileged or actor.owns(record.owner_id)):
            raise Forbidden("Access denied")
        return record

    @contextmanager
    def _held_booking(self, booking_id: str, *extra_resources: str | None) -> Iterator[BookingRecord]:
        """Yield the booking re-read while its resource (and any extras) are locked."""
        extras = [name for name in extra_resources if name]
        while True:
            seen = self._get_existing(booking_id)
            with self.repository.lock_resources(seen.resource_name, *extras):
                current = self._get_existing(booking_id)
                if current.resource_name == seen.resource_name:
                    yield current
                    return

    def _get_existing(self, booking_id: str) -> BookingRecord:
        record = self.repository.get_booking(str(booking_id))
        if record is None:
            raise NotFound("Booking not found")
        return record

    def _ensure_free(
        self,
        resource_name: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
        at_approval: bool = False,
    ) -> None:
        conflicts = self.repository.find_conflicts(resource_name, start, end, exclude_id=exclude_id)
        if not conflicts:
            return

        self.repository.log_event(
            "BOOKING_CONFLICT",
            {
                "booking_id": exclude_id,
                "resource_name": resource_name,
                "start": start.isoformat(timespec="seconds"),
                "end": end.isoformat(timespec="seconds"),
                "conflicting_ids": [record.booking_id for record in conflicts],
                "at_approval": at_approval,
            },
            self.clock(),
        )
        if at_approval:
            message = "Booking overlaps an existing booking and cannot be approved."
        else:
            message = "Time slot already booked"
        raise Conflict(message, [ConflictSummary.from_booking(record) for record in conflicts], at_approval=at_approval)


def _require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise Forbidden("Authentication required")
    return actor


def _normalize_label(value: Any, field_name: str) -> str:
    if value is None:
        raise InvalidRequest(f"{field_name} must not be None")

    normalized = str(value).strip()
    if not normalized:
        raise InvalidRequest(f"{field_name} must not be empty")
    return normalized
