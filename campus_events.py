"""
Campus Event Seating

Implements:
- Event lifecycle with capacity management and cascading delete
- Student registration with seat allocation and a FIFO waitlist
- Cancellation with immediate promotion of the waitlist head
- A 15 minute re-registration cooldown after cancelling
- Schedule conflict detection across a student's registered events
- Reporting for organizers and a daily reminder sweep

Notifications (email, real-time push) are dispatched after each state change
commits and never affect its outcome.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from campus_models import (
    ACTIVE_STATUSES,
    ADMIN,
    CANCELLED,
    CATEGORIES,
    COOLDOWN,
    EVENT_STATUSES,
    ORGANIZER,
    REGISTERED,
    STUDENT,
    WAITLISTED,
    AlreadyCancelled,
    AlreadyRegistered,
    Banned,
    CancellationResult,
    CooldownStatus,
    DuplicateRegistration,
    Event,
    EventClosed,
    InvalidCapacity,
    NotFound,
    Principal,
    Registration,
    RegistrationResult,
    ScheduleConflict,
    Unauthorized,
    User,
    ValidationError,
    new_id,
    utcnow,
)
from event_stores import BaseStore, InMemoryStore
from notifications import Notifier, encode_ticket, ticket_payload

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "category", "venue", "start_time", "end_time", "price", "image_url", "status")


class CampusEvents:
    """Main facade over events, registrations and the waitlist.

    Responsibilities:
    - Keep seats_available == capacity - registered count for every event
    - Allow at most one active registration per (event, student)
    - Promote the earliest waitlisted registration when a seat is released
    - Enforce the cancellation cooldown and schedule conflicts on registration
    """

    def __init__(
        self,
        store: Optional[BaseStore] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        ticket_encoder: Callable[[str], Optional[str]] = encode_ticket,
    ) -> None:
        self.store: BaseStore = store or InMemoryStore()
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.ticket_encoder = ticket_encoder

    # -------- Helpers --------

    def _require_event(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFound("Event not found", event_id=event_id)
        return event

    @staticmethod
    def _authorize(event: Event, principal: Principal) -> None:
        if event.organizer_id != principal.id and principal.role != ADMIN:
            raise Unauthorized("Unauthorized: You are not the organizer or an admin.")

    @staticmethod
    def _require_student(principal: Principal) -> None:
        if principal.role != STUDENT:
            raise Unauthorized("Only students can register for or cancel event seats")

    @staticmethod
    def _validate_window(start: datetime, end: datetime) -> None:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValidationError("Start and end times must be timezone-aware")
        if start >= end:
            raise ValidationError("Event must end after it starts")

    def _email_of(self, user_id: str) -> Optional[str]:
        user = self.store.get_user(user_id)
        return user.email if user else None

    @staticmethod
    def _email_payload(event: Event, reg: Registration) -> dict:
        return {
            "event_name": event.title,
            "event_time": event.start_time,
            "venue": event.venue,
            "status": reg.status,
            "ticket_code": reg.ticket_code,
        }

    # -------- Users --------

    def add_user(self, user: User) -> None:
        """Add a user to the notification directory."""
        self.store.add_user(user)

    # -------- Events --------

    def create_event(
        self,
        principal: Principal,
        title: str,
        start_time: datetime,
        end_time: datetime,
        capacity: int,
        venue: str = "",
        description: str = "",
        category: str = "Academic",
        price: float = 0.0,
        image_url: str = "",
    ) -> Event:
        """Create an event owned by the calling organizer with every seat free."""
        if principal.role not in (ORGANIZER, ADMIN):
            raise Unauthorized("Only organizers can create events")
        if capacity < 1:
            raise ValidationError("Capacity must be at least 1")
        if price < 0:
            raise ValidationError("Price cannot be negative")
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown category: {category}")
        self._validate_window(start_time, end_time)

        event = Event(
            event_id=new_id(),
            title=title,
            organizer_id=principal.id,
            start_time=start_time,
            end_time=end_time,
            capacity=capacity,
            seats_available=capacity,
            venue=venue,
            description=description,
            category=category,
            price=price,
            is_paid=price > 0,
            image_url=image_url,
            created_at=self.clock(),
        )
        self.store.add_event(event)
        logger.info("Event %s created by %s with %d seats", event.event_id, principal.id, capacity)
        return event

    def get_event(self, event_id: str) -> Event:
        return self._require_event(event_id)

    def list_events(self, category: Optional[str] = None, search: Optional[str] = None) -> List[Event]:
        needle = search.lower() if search else None
        return [
            e
            for e in self.store.list_events()
            if (category is None or e.category == category) and (needle is None or needle in e.title.lower())
        ]

    def update_event(self, event_id: str, principal: Principal, **changes: object) -> Event:
        """Update descriptive fields; a "capacity" change goes through update_capacity."""
        event = self._require_event(event_id)
        self._authorize(event, principal)

        unknown = set(changes) - set(EDITABLE_FIELDS) - {"capacity"}
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        new_capacity = changes.pop("capacity", None)

        for key, value in changes.items():
            setattr(event, key, value)
        if event.status not in EVENT_STATUSES:
            raise ValidationError(f"Unknown status: {event.status}")
        if event.category not in CATEGORIES:
            raise ValidationError(f"Unknown category: {event.category}")
        if event.price < 0:
            raise ValidationError("Price cannot be negative")
        self._validate_window(event.start_time, event.end_time)
        event.is_paid = event.price > 0

        if new_capacity is not None:
            self.update_capacity(event_id, int(new_capacity), principal)
        self.store.save_event(event)
        return self._require_event(event_id)

    def update_capacity(self, event_id: str, new_capacity: int, principal: Principal) -> Event:
        """Change capacity, shifting seats_available by the same amount.

        Fails when the new capacity is below the seats already taken. Growing an
        event does not promote anyone from its waitlist.
        """
        with self.store.event_lock(event_id):
            event = self._require_event(event_id)
            self._authorize(event, principal)
            if new_capacity < 1:
                raise InvalidCapacity("Capacity must be at least 1")
            if new_capacity < event.occupied_seats:
                raise InvalidCapacity(
                    "New capacity cannot be less than the number of booked seats.",
                    booked_seats=event.occupied_seats,
                )
            seats = event.seats_available + (new_capacity - event.capacity)
            self.store.set_capacity(event_id, new_capacity, seats)
            event = self._require_event(event_id)

        self._publish_event_update(event)
        return event

    def delete_event(self, event_id: str, principal: Principal, reason: str = "", details: str = "") -> int:
        """Delete an event and every registration for it.

        The event is first closed to new registrations. Students holding an
        active registration are then notified outside the event lock, and
        failed notifications do not stop the delete. Returns how many active
        registrations were cancelled.
        """
        event = self._require_event(event_id)
        self._authorize(event, principal)

        with self.store.event_lock(event_id):
            event = self._require_event(event_id)
            event.status = "cancelled"
            self.store.save_event(event)
            active = self.store.list_event_registrations(event_id, ACTIVE_STATUSES)
            recipients = [self._email_of(reg.student_id) for reg in active]

        payload = {
            "event_name": event.title,
            "event_time": event.start_time,
            "venue": event.venue,
            "reason": details if reason == "Other" and details else reason,
        }
        for recipient in recipients:
            self.notifier.send(recipient, "cancellation", payload)

        with self.store.event_lock(event_id):
            removed = self.store.delete_event_registrations(event_id)
            self.store.delete_event(event_id)

        logger.info("Event %s deleted by %s (%d registrations removed)", event_id, principal.id, removed)
        self.notifier.publish("eventDeleted", {"eventId": event_id, "reason": reason})
        return len(active)

    # -------- Conflict checking --------

    def find_schedule_conflict(
        self, student_id: str, start: datetime, end: datetime, exclude_event_id: Optional[str] = None
    ) -> Optional[Event]:
        """Return an event the student is registered for that overlaps [start, end), if any."""
        return self.store.find_schedule_conflict(student_id, start, end, exclude_event_id)

    # -------- Cooldown --------

    def check_cooldown(self, prior: Optional[Registration]) -> CooldownStatus:
        """Decide whether a prior cancellation still blocks re-registration."""
        if prior is None or prior.status != CANCELLED or prior.cancelled_at is None:
            return CooldownStatus(blocked=False)
        elapsed = self.clock() - prior.cancelled_at
        if elapsed >= COOLDOWN:
            return CooldownStatus(blocked=False)
        remaining = (COOLDOWN - elapsed).total_seconds()
        return CooldownStatus(blocked=True, remaining_seconds=math.ceil(remaining))

    def purge_expired_cancellation(self, event_id: str, student_id: str) -> int:
        """Delete cancelled registrations for the pair whose cooldown has run out."""
        removed = self.store.delete_cancelled(event_id, student_id, cancelled_before=self.clock() - COOLDOWN)
        if removed:
            logger.info("Purged %d expired cancellation(s) for %s on %s", removed, student_id, event_id)
        return removed

    # -------- Registration --------

    def issue_ticket(self, event_id: str, student_id: str) -> Optional[str]:
        """Encode the ticket for a pair; failures are logged and yield None."""
        try:
            return self.ticket_encoder(ticket_payload(event_id, student_id))
        except Exception:
            logger.exception("Ticket encoding failed for %s on %s", student_id, event_id)
            return None

    def register(self, event_id: str, principal: Principal) -> RegistrationResult:
        """Register a student, granting a seat if one is free and waitlisting otherwise.

        Checks, in order: the event exists and is open, no active registration
        exists for the pair, the cancellation cooldown has passed, and the
        student has no overlapping registered event.
        """
        self._require_student(principal)
        student_id = principal.id
        event = self._require_event(event_id)
        if event.status == "cancelled":
            raise EventClosed("This event has been cancelled")
        ticket = self.issue_ticket(event_id, student_id)

        with self.store.event_lock(event_id):
            # The event may have been closed or deleted while waiting for the lock.
            event = self._require_event(event_id)
            if event.status == "cancelled":
                raise EventClosed("This event has been cancelled")
            existing = self.store.find_active_registration(event_id, student_id)
            if existing is not None:
                raise AlreadyRegistered(existing.status)

            cooldown = self.check_cooldown(self.store.find_latest_cancelled(event_id, student_id))
            if cooldown.blocked:
                raise Banned(cooldown.remaining_minutes)
            self.purge_expired_cancellation(event_id, student_id)

            conflict = self.find_schedule_conflict(student_id, event.start_time, event.end_time, event_id)
            if conflict is not None:
                raise ScheduleConflict(conflict)

            seats_left = self.store.take_seat(event_id)
            reg = Registration(
                registration_id=new_id(),
                event_id=event_id,
                student_id=student_id,
                status=REGISTERED if seats_left is not None else WAITLISTED,
                created_at=self.clock(),
                ticket_code=ticket,
            )
            try:
                self.store.add_registration(reg)
            except DuplicateRegistration:
                if seats_left is not None:
                    self.store.release_seat(event_id)
                existing = self.store.find_active_registration(event_id, student_id)
                raise AlreadyRegistered(existing.status if existing else REGISTERED)
            except Exception:
                # No row was written, so the seat taken above goes back.
                if seats_left is not None:
                    self.store.release_seat(event_id)
                raise

            event = self._require_event(event_id)
            registered = self.store.count_registrations(event_id, REGISTERED)

        logger.info("Student %s %s for event %s", student_id, reg.status, event_id)
        self.notifier.send(self._email_of(student_id), "confirmation", self._email_payload(event, reg))
        self.notifier.publish(
            "registrationCreated",
            {
                "registrationId": reg.registration_id,
                "eventId": event_id,
                "studentId": student_id,
                "status": reg.status,
            },
        )
        self.notifier.publish(
            "eventUpdated",
            {"eventId": event_id, "seatsAvailable": event.seats_available, "totalRegistered": registered},
        )
        return RegistrationResult(status=reg.status, registration=reg, seats_available=event.seats_available)

    # -------- Cancellation and promotion --------

    def _promote_locked(self, event_id: str) -> Optional[Registration]:
        # The seat is reserved before promotion and handed back if nobody is promoted.
        if self.store.take_seat(event_id) is None:
            return None
        try:
            promoted = self.store.promote_next(event_id)
        except Exception:
            self.store.release_seat(event_id)
            raise
        if promoted is None:
            self.store.release_seat(event_id)
        return promoted

    def _announce_promotion(self, event: Event, promoted: Registration) -> None:
        logger.info("Promoted %s from waitlist on event %s", promoted.student_id, event.event_id)
        self.notifier.send(self._email_of(promoted.student_id), "promotion", self._email_payload(event, promoted))
        self.notifier.publish(
            "promotion",
            {
                "eventId": event.event_id,
                "promotedRegistrationId": promoted.registration_id,
                "studentId": promoted.student_id,
            },
        )

    def promote(self, event_id: str) -> Optional[Registration]:
        """Promote the earliest waitlisted registration into a free seat, if both exist."""
        with self.store.event_lock(event_id):
            event = self._require_event(event_id)
            if event.seats_available <= 0:
                return None
            promoted = self._promote_locked(event_id)
            event = self._require_event(event_id)
        if promoted is not None:
            self._announce_promotion(event, promoted)
            self._publish_event_update(event)
        return promoted

    def cancel(self, event_id: str, principal: Principal, reason: str = "", details: str = "") -> CancellationResult:
        """Cancel a student's registration.

        A released seat is offered to the waitlist head within the same
        critical section, so other requests never observe a free seat while
        someone is still waiting. If the promotion itself fails the
        cancellation stands and the seat stays free for a later promote().
        """
        self._require_student(principal)
        student_id = principal.id
        with self.store.event_lock(event_id):
            reg = self.store.find_active_registration(event_id, student_id)
            if reg is None:
                if self.store.find_latest_cancelled(event_id, student_id) is not None:
                    raise AlreadyCancelled()
                raise NotFound("Registration not found")

            freed = reg.status == REGISTERED
            if freed:
                self.store.release_seat(event_id)
            try:
                cancelled = self.store.mark_cancelled(reg.registration_id, self.clock(), reason, details)
            except Exception:
                if freed:
                    self.store.take_seat(event_id)
                raise
            if not cancelled:
                if freed:
                    self.store.take_seat(event_id)
                raise AlreadyCancelled()

            promoted = None
            if freed:
                try:
                    promoted = self._promote_locked(event_id)
                except Exception:
                    logger.exception("Waitlist promotion failed for event %s", event_id)
            event = self.store.get_event(event_id)
            registered = self.store.count_registrations(event_id, REGISTERED)

        logger.info("Student %s cancelled %s registration for event %s", student_id, reg.status, event_id)
        if event is not None:
            if promoted is not None:
                self._announce_promotion(event, promoted)
            self.notifier.publish(
                "eventUpdated",
                {
                    "eventId": event_id,
                    "seatsAvailable": event.seats_available,
                    "totalRegistered": registered,
                    "cancelledRegistrationId": reg.registration_id,
                },
            )
        return CancellationResult(
            freed_seat=freed,
            promoted_student_id=promoted.student_id if promoted else None,
            seats_available=event.seats_available if event else None,
        )

    def _publish_event_update(self, event: Event) -> None:
        self.notifier.publish(
            "eventUpdated",
            {
                "eventId": event.event_id,
                "seatsAvailable": event.seats_available,
                "totalRegistered": self.store.count_registrations(event.event_id, REGISTERED),
            },
        )

    # -------- Reporting --------

    def my_registrations(self, student_id: str) -> List[Tuple[Registration, Optional[Event]]]:
        """Return the student's registrations, newest first, each with its event."""
        regs = self.store.list_student_registrations(student_id)
        events: Dict[str, Optional[Event]] = {}
        for r in regs:
            if r.event_id not in events:
                events[r.event_id] = self.store.get_event(r.event_id)
        return [(r, events[r.event_id]) for r in regs]

    def event_summary(self, event_id: str) -> Dict[str, object]:
        """Return seat and registration counts for an event, with cancellation reasons."""
        ev = self._require_event(event_id)
        regs = self.store.list_event_registrations(event_id)
        counts = Counter(r.status for r in regs)
        reasons = Counter(r.cancellation_reason or "Unspecified" for r in regs if r.status == CANCELLED)
        return {
            "EventID": ev.event_id,
            "Title": ev.title,
            "Capacity": ev.capacity,
            "SeatsAvailable": ev.seats_available,
            "Registered": counts[REGISTERED],
            "Waitlisted": counts[WAITLISTED],
            "Cancelled": counts[CANCELLED],
            "CancellationReasons": dict(reasons),
            "Status": ev.status,
        }

    # -------- Reminders --------

    def send_reminders(self, now: Optional[datetime] = None, tz: str = "UTC") -> int:
        """Email every registered student whose event starts during the next calendar day.

        The day boundaries are taken in ``tz``, the zone the daily sweep runs in.
        Returns the number of reminders dispatched.
        """
        local_now = (now or self.clock()).astimezone(ZoneInfo(tz))
        start = datetime.combine(local_now.date() + timedelta(days=1), time.min, tzinfo=local_now.tzinfo)
        start = start.astimezone(timezone.utc)
        end = start + timedelta(days=1)
        regs = self.store.list_registered_starting_between(start, end)
        if not regs:
            logger.info("No events scheduled for tomorrow")
            return 0

        sent = 0
        for reg in regs:
            event = self.store.get_event(reg.event_id)
            if event is None:
                continue
            self.notifier.send(self._email_of(reg.student_id), "reminder", self._email_payload(event, reg))
            sent += 1
        logger.info("Dispatched %d event reminders", sent)
        return sent
