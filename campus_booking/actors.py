from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import InvalidRequest


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    FACULTY = "faculty"
    STUDENT = "student"
    MAINTENANCE = "maintenance"

    @classmethod
    def parse(cls, value: str) -> "Role":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for role in cls:
            if role.value == normalized:
                return role
        raise InvalidRequest(f"Unknown role: {value!r}")


PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.STAFF})


def is_privileged(role: Role) -> bool:
    """Admins and staff have site-wide booking oversight."""
    return role in PRIVILEGED_ROLES


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role

    @property
    def is_privileged(self) -> bool:
        return is_privileged(self.role)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def owns(self, owner_id: str) -> bool:
        return self.user_id == owner_id
