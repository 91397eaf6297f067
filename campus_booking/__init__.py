from .actors import Actor, Role, is_privileged
from .booking import (
	ALLOWED_TRANSITIONS,
	BookingStatus,
	ConflictSummary,
	find_conflicts,
	validate_transition,
	validate_window,
	windows_overlap,
)
from .errors import (
	BookingError,
	BookingStorageError,
	Conflict,
	Forbidden,
	InvalidRequest,
	InvalidTransition,
	InvalidWindow,
	NotFound,
)
from .lifecycle import BookingLifecycleController
from .yaml_store import BookingRecord, BookingYamlRepository

__all__ = [
	"Actor",
	"Role",
	"is_privileged",
	"ALLOWED_TRANSITIONS",
	"BookingStatus",
	"ConflictSummary",
	"find_conflicts",
	"validate_transition",
	"validate_window",
	"windows_overlap",
	"BookingError",
	"BookingStorageError",
	"Conflict",
	"Forbidden",
	"InvalidRequest",
	"InvalidTransition",
	"InvalidWindow",
	"NotFound",
	"BookingLifecycleController",
	"BookingRecord",
	"BookingYamlRepository",
]
