"""
Data model and error taxonomy for campus event seating.

Defines:
- Event, Registration, User and Principal records shared by the engine and stores
- Registration status and user role constants
- CampusError hierarchy carrying an HTTP status and structured details
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from bson import ObjectId


# -----------------------------
# Constants
# -----------------------------

REGISTERED = "registered"
WAITLISTED = "waitlisted"
CANCELLED = "cancelled"
ACTIVE_STATUSES = (REGISTERED, WAITLISTED)

STUDENT = "student"
ORGANIZER = "organizer"
ADMIN = "admin"
ROLES = (STUDENT, ORGANIZER, ADMIN)

EVENT_STATUSES = ("upcoming", "ongoing", "completed", "cancelled")
CATEGORIES = ("Technical", "Cultural", "Sports", "Academic", "Social")

COOLDOWN = timedelta(minutes=15)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh identifier. ObjectIds increase monotonically per process."""
    return str(ObjectId())


# -----------------------------
# Data Models
# -----------------------------


@dataclass
class Event:
    """An event with finite seating.

    Invariants:
    - 1 <= capacity
    - 0 <= seats_available <= capacity
    - start_time < end_time
    """

    event_id: str
    title: str
    organizer_id: str
    start_time: datetime
    end_time: datetime
    capacity: int
    seats_available: int
    venue: str = ""
    description: str = ""
    category: str = "Academic"
    price: float = 0.0
    is_paid: bool = False
    image_url: str = ""
    status: str = "upcoming"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def occupied_seats(self) -> int:
        return self.capacity - self.seats_available


@dataclass
class Registration:
    """A student's claim on an event.

    Status is "registered" (holds a seat), "waitlisted" (queued) or
    "cancelled" (terminal). Waitlist order is (created_at, registration_id).
    """

    registration_id: str
    event_id: str
    student_id: str
    status: str
    created_at: datetime = field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None
    cancellation_reason: str = ""
    cancellation_details: str = ""
    ticket_code: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def queue_key(self):
        return (self.created_at, self.registration_id)


@dataclass
class User:
    """Directory entry used to address notifications."""

    user_id: str
    name: str
    email: str
    role: str = STUDENT


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an operation."""

    id: str
    role: str = STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


@dataclass(frozen=True)
class CooldownStatus:
    blocked: bool
    remaining_seconds: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)


@dataclass(frozen=True)
class RegistrationResult:
    status: str
    registration: Registration
    seats_available: int


@dataclass(frozen=True)
class CancellationResult:
    freed_seat: bool
    promoted_student_id: Optional[str] = None
    seats_available: Optional[int] = None


# -----------------------------
# Errors
# -----------------------------


class CampusError(Exception):
    """Base class for failures reported back to the caller."""

    http_status = 400

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, object] = details


class ValidationError(CampusError):
    http_status = 400


class Unauthenticated(CampusError):
    http_status = 401


class Unauthorized(CampusError):
    http_status = 403


class NotFound(CampusError):
    http_status = 404


class EventClosed(CampusError):
    http_status = 400


class AlreadyRegistered(CampusError):
    http_status = 409

    def __init__(self, existing_status: str) -> None:
        super().__init__(
            f"Already {existing_status} for this event", existing_status=existing_status
        )
        self.existing_status = existing_status


class ScheduleConflict(CampusError):
    http_status = 409

    def __init__(self, conflicting: Event) -> None:
        super().__init__(
            f"Schedule conflict with '{conflicting.title}'",
            conflicting_event_id=conflicting.event_id,
            conflicting_event=conflicting.title,
        )
        self.conflicting = conflicting


class Banned(CampusError):
    http_status = 403

    def __init__(self, remaining_minutes: int) -> None:
        unit = "minute" if remaining_minutes == 1 else "minutes"
        super().__init__(
            f"You cancelled this registration recently. Try again in {remaining_minutes} {unit}.",
            remaining_minutes=remaining_minutes,
        )
        self.remaining_minutes = remaining_minutes


class AlreadyCancelled(CampusError):
    http_status = 400

    def __init__(self) -> None:
        super().__init__("Registration is already cancelled")


class InvalidCapacity(CampusError):
    http_status = 400


class StoreConflict(CampusError):
    """A store-level update kept colliding with concurrent writers."""

    http_status = 500


class DuplicateRegistration(Exception):
    """Raised by stores when an active registration for the pair already exists."""
