from __future__ import annotations

from typing import Any, Iterable


class BookingStorageError(RuntimeError):
    pass


class BookingError(Exception):
    """Base for every per-request failure raised by the booking core.

    ``kind`` names the failure for callers, ``http_status`` is the status code
    the HTTP boundary should answer with.
    """

    kind = "BookingError"
    http_status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.kind, "message": self.message}


class InvalidRequest(BookingError):
    kind = "InvalidRequest"
    http_status = 400


class InvalidWindow(BookingError):
    kind = "InvalidWindow"
    http_status = 400


class NotFound(BookingError):
    kind = "NotFound"
    http_status = 404


class Forbidden(BookingError):
    kind = "Forbidden"
    http_status = 403


class Conflict(BookingError):
    kind = "Conflict"
    http_status = 409

    def __init__(self, message: str, conflicts: Iterable[Any], at_approval: bool = False) -> None:
        super().__init__(message)
        self.conflicts = list(conflicts)
        self.at_approval = at_approval

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["at_approval"] = self.at_approval
        payload["conflicts"] = [conflict.to_dict() for conflict in self.conflicts]
        return payload


class InvalidTransition(BookingError):
    kind = "InvalidTransition"
    http_status = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking status transition: {current} -> {target}")
        self.current = current
        self.target = target
