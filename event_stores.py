"""
Storage backends for events, registrations and the user directory.

Both backends expose the same atomic primitives the seating engine relies on:
- take_seat: decrement seats_available only while it is above zero
- release_seat: increment seats_available without exceeding capacity
- promote_next: flip the head of the waitlist to "registered"
- event_lock: serialize all mutations of one event
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, runtime_checkable

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from campus_models import (
    ACTIVE_STATUSES,
    CANCELLED,
    REGISTERED,
    WAITLISTED,
    DuplicateRegistration,
    Event,
    Registration,
    StoreConflict,
    User,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


def times_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Return True if [a_start, a_end) and [b_start, b_end) overlap.

    Back-to-back windows (one ends exactly when the other starts) do not overlap.
    """
    return a_end > b_start and a_start < b_end


@runtime_checkable
class BaseStore(Protocol):
    # Events
    def add_event(self, event: Event) -> None: ...
    def get_event(self, event_id: str) -> Optional[Event]: ...
    def list_events(self) -> Iterable[Event]: ...
    def save_event(self, event: Event) -> None: ...
    def set_capacity(self, event_id: str, capacity: int, seats_available: int) -> None: ...
    def delete_event(self, event_id: str) -> bool: ...
    def take_seat(self, event_id: str) -> Optional[int]: ...
    def release_seat(self, event_id: str) -> Optional[int]: ...
    def event_lock(self, event_id: str): ...

    # Users
    def add_user(self, user: User) -> None: ...
    def get_user(self, user_id: str) -> Optional[User]: ...

    # Registrations
    def add_registration(self, reg: Registration) -> None: ...
    def find_active_registration(self, event_id: str, student_id: str) -> Optional[Registration]: ...
    def find_latest_cancelled(self, event_id: str, student_id: str) -> Optional[Registration]: ...
    def mark_cancelled(self, registration_id: str, cancelled_at: datetime, reason: str, details: str) -> bool: ...
    def delete_cancelled(self, event_id: str, student_id: str, cancelled_before: datetime) -> int: ...
    def promote_next(self, event_id: str) -> Optional[Registration]: ...
    def count_registrations(self, event_id: str, status: str) -> int: ...
    def list_event_registrations(self, event_id: str, statuses: Sequence[str] = ...) -> List[Registration]: ...
    def list_student_registrations(self, student_id: str, statuses: Sequence[str] = ...) -> List[Registration]: ...
    def find_schedule_conflict(
        self, student_id: str, start: datetime, end: datetime, exclude_event_id: Optional[str] = None
    ) -> Optional[Event]: ...
    def list_registered_starting_between(self, start: datetime, end: datetime) -> List[Registration]: ...
    def delete_event_registrations(self, event_id: str) -> int: ...


ALL_STATUSES = (REGISTERED, WAITLISTED, CANCELLED)


class InMemoryStore:
    """Default in-memory store.

    A single mutex makes every primitive atomic; event_lock hands out one lock
    per event so multi-step operations on the same event are serialized.
    """

    def __init__(self) -> None:
        self.events: Dict[str, Event] = {}
        self.users: Dict[str, User] = {}
        self.registrations: Dict[str, Registration] = {}
        self._mutex = threading.Lock()
        self._event_locks: Dict[str, list] = {}

    @contextmanager
    def event_lock(self, event_id: str) -> Iterator[None]:
        # Entries are [lock, holders + waiters] and go away when the count drops to zero.
        with self._mutex:
            entry = self._event_locks.setdefault(event_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._event_locks[event_id]

    # Events
    def add_event(self, event: Event) -> None:
        with self._mutex:
            if event.event_id in self.events:
                raise ValueError(f"Event ID already exists: {event.event_id}")
            self.events[event.event_id] = replace(event)

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._mutex:
            ev = self.events.get(event_id)
            return replace(ev) if ev else None

    def list_events(self) -> Iterable[Event]:
        with self._mutex:
            items = sorted(self.events.values(), key=lambda e: (e.start_time, e.event_id))
            return [replace(e) for e in items]

    def save_event(self, event: Event) -> None:
        """Persist descriptive fields. Seat counters are left to the atomic primitives."""
        with self._mutex:
            current = self.events.get(event.event_id)
            if current is None:
                return
            self.events[event.event_id] = replace(
                event, capacity=current.capacity, seats_available=current.seats_available
            )

    def set_capacity(self, event_id: str, capacity: int, seats_available: int) -> None:
        with self._mutex:
            ev = self.events[event_id]
            ev.capacity = capacity
            ev.seats_available = seats_available

    def delete_event(self, event_id: str) -> bool:
        with self._mutex:
            return self.events.pop(event_id, None) is not None

    def take_seat(self, event_id: str) -> Optional[int]:
        with self._mutex:
            ev = self.events.get(event_id)
            if ev is None or ev.seats_available <= 0:
                return None
            ev.seats_available -= 1
            return ev.seats_available

    def release_seat(self, event_id: str) -> Optional[int]:
        with self._mutex:
            ev = self.events.get(event_id)
            if ev is None:
                return None
            ev.seats_available = min(ev.capacity, ev.seats_available + 1)
            return ev.seats_available

    # Users
    def add_user(self, user: User) -> None:
        with self._mutex:
            if user.user_id in self.users:
                raise ValueError(f"User ID already exists: {user.user_id}")
            self.users[user.user_id] = replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._mutex:
            u = self.users.get(user_id)
            return replace(u) if u else None

    # Registrations
    def _pair(self, event_id: str, student_id: str, statuses: Sequence[str]) -> List[Registration]:
        return [
            r
            for r in self.registrations.values()
            if r.event_id == event_id and r.student_id == student_id and r.status in statuses
        ]

    def add_registration(self, reg: Registration) -> None:
        with self._mutex:
            if reg.is_active and self._pair(reg.event_id, reg.student_id, ACTIVE_STATUSES):
                raise DuplicateRegistration(f"{reg.event_id}:{reg.student_id}")
            self.registrations[reg.registration_id] = replace(reg)

    def find_active_registration(self, event_id: str, student_id: str) -> Optional[Registration]:
        with self._mutex:
            found = self._pair(event_id, student_id, ACTIVE_STATUSES)
            return replace(found[0]) if found else None

    def find_latest_cancelled(self, event_id: str, student_id: str) -> Optional[Registration]:
        with self._mutex:
            found = [r for r in self._pair(event_id, student_id, (CANCELLED,)) if r.cancelled_at]
            if not found:
                return None
            return replace(max(found, key=lambda r: r.cancelled_at))

    def mark_cancelled(self, registration_id: str, cancelled_at: datetime, reason: str, details: str) -> bool:
        with self._mutex:
            reg = self.registrations.get(registration_id)
            if reg is None or reg.status == CANCELLED:
                return False
            reg.status = CANCELLED
            reg.cancelled_at = cancelled_at
            reg.cancellation_reason = reason
            reg.cancellation_details = details
            return True

    def delete_cancelled(self, event_id: str, student_id: str, cancelled_before: datetime) -> int:
        with self._mutex:
            stale = [
                r.registration_id
                for r in self._pair(event_id, student_id, (CANCELLED,))
                if r.cancelled_at is None or r.cancelled_at <= cancelled_before
            ]
            for rid in stale:
                del self.registrations[rid]
            return len(stale)

    def promote_next(self, event_id: str) -> Optional[Registration]:
        with self._mutex:
            waiting = [
                r for r in self.registrations.values() if r.event_id == event_id and r.status == WAITLISTED
            ]
            if not waiting:
                return None
            head = min(waiting, key=lambda r: r.queue_key)
            head.status = REGISTERED
            return replace(head)

    def count_registrations(self, event_id: str, status: str) -> int:
        with self._mutex:
            return sum(1 for r in self.registrations.values() if r.event_id == event_id and r.status == status)

    def list_event_registrations(self, event_id: str, statuses: Sequence[str] = ALL_STATUSES) -> List[Registration]:
        with self._mutex:
            items = [r for r in self.registrations.values() if r.event_id == event_id and r.status in statuses]
            return [replace(r) for r in sorted(items, key=lambda r: r.queue_key)]

    def list_student_registrations(
        self, student_id: str, statuses: Sequence[str] = ALL_STATUSES
    ) -> List[Registration]:
        with self._mutex:
            items = [r for r in self.registrations.values() if r.student_id == student_id and r.status in statuses]
            return [replace(r) for r in sorted(items, key=lambda r: r.queue_key, reverse=True)]

    def find_schedule_conflict(
        self, student_id: str, start: datetime, end: datetime, exclude_event_id: Optional[str] = None
    ) -> Optional[Event]:
        with self._mutex:
            for r in sorted(self.registrations.values(), key=lambda r: r.queue_key):
                if r.student_id != student_id or r.status != REGISTERED or r.event_id == exclude_event_id:
                    continue
                ev = self.events.get(r.event_id)
                if ev and times_overlap(ev.start_time, ev.end_time, start, end):
                    return replace(ev)
            return None

    def list_registered_starting_between(self, start: datetime, end: datetime) -> List[Registration]:
        with self._mutex:
            out = []
            for r in self.registrations.values():
                ev = self.events.get(r.event_id)
                if r.status == REGISTERED and ev and start <= ev.start_time < end:
                    out.append(replace(r))
            return sorted(out, key=lambda r: r.queue_key)

    def delete_event_registrations(self, event_id: str) -> int:
        with self._mutex:
            doomed = [rid for rid, r in self.registrations.items() if r.event_id == event_id]
            for rid in doomed:
                del self.registrations[rid]
            return len(doomed)


class MongoStore:
    """MongoDB-backed store using PyMongo.

    Collections:
    - events: one document per event, seat counters updated in place
    - registrations: one document per registration; active rows carry active=True
    - users: notification directory
    - locks: short-lived per-event lease documents

    The partial unique index on (event_id, student_id) over active rows is what
    stops two concurrent attempts from both creating an active registration.
    """

    def __init__(
        self,
        uri: str,
        db_name: str = "campus_events",
        collection_prefix: str = "",
        lock_ttl_seconds: float = 10.0,
        lock_retries: int = 50,
        lock_backoff_seconds: float = 0.02,
    ) -> None:
        self.client = MongoClient(uri, tz_aware=True)
        self.db = self.client[db_name]
        p = collection_prefix
        self.c_events: Collection = self.db[f"{p}events"]
        self.c_regs: Collection = self.db[f"{p}registrations"]
        self.c_users: Collection = self.db[f"{p}users"]
        self.c_locks: Collection = self.db[f"{p}locks"]
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff_seconds
        self._ensure_indexes()

    # Indexes for integrity and query performance
    def _ensure_indexes(self) -> None:
        self.c_events.create_index([("category", ASCENDING), ("venue", ASCENDING)])
        self.c_events.create_index([("start_time", ASCENDING)])
        self.c_regs.create_index(
            [("event_id", ASCENDING), ("student_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"active": True},
            name="unique_active_event_student",
        )
        self.c_regs.create_index([("event_id", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)])
        self.c_regs.create_index([("student_id", ASCENDING), ("created_at", DESCENDING)])

    @contextmanager
    def event_lock(self, event_id: str) -> Iterator[None]:
        token = new_id()
        for attempt in range(self.lock_retries):
            now = utcnow()
            try:
                self.c_locks.find_one_and_update(
                    {"_id": event_id, "expires_at": {"$lt": now}},
                    {"$set": {"owner": token, "expires_at": now + self.lock_ttl}},
                    upsert=True,
                )
                break
            except DuplicateKeyError:
                # Lease held by someone else: upsert collided with the live document.
                time.sleep(self.lock_backoff * (attempt + 1))
        else:
            logger.warning("event_lock: gave up on event %s after %d attempts", event_id, self.lock_retries)
            raise StoreConflict("The event is busy, please retry")
        try:
            yield
        finally:
            self.c_locks.delete_one({"_id": event_id, "owner": token})

    # Helpers for serialization
    @staticmethod
    def _event_doc(ev: Event) -> dict:
        d = asdict(ev)
        d["_id"] = d.pop("event_id")
        return d

    @staticmethod
    def _event_from(doc: dict) -> Event:
        return Event(
            event_id=doc["_id"],
            title=doc["title"],
            organizer_id=doc["organizer_id"],
            start_time=doc["start_time"],
            end_time=doc["end_time"],
            capacity=int(doc["capacity"]),
            seats_available=int(doc["seats_available"]),
            venue=doc.get("venue", ""),
            description=doc.get("description", ""),
            category=doc.get("category", "Academic"),
            price=float(doc.get("price", 0)),
            is_paid=bool(doc.get("is_paid", False)),
            image_url=doc.get("image_url", ""),
            status=doc.get("status", "upcoming"),
            created_at=doc.get("created_at", utcnow()),
        )

    @staticmethod
    def _reg_doc(r: Registration) -> dict:
        d = asdict(r)
        d["_id"] = d.pop("registration_id")
        d["active"] = r.is_active
        return d

    @staticmethod
    def _reg_from(doc: dict) -> Registration:
        return Registration(
            registration_id=doc["_id"],
            event_id=doc["event_id"],
            student_id=doc["student_id"],
            status=doc["status"],
            created_at=doc["created_at"],
            cancelled_at=doc.get("cancelled_at"),
            cancellation_reason=doc.get("cancellation_reason", ""),
            cancellation_details=doc.get("cancellation_details", ""),
            ticket_code=doc.get("ticket_code"),
        )

    # Events
    def add_event(self, event: Event) -> None:
        try:
            self.c_events.insert_one(self._event_doc(event))
        except DuplicateKeyError as e:  # pragma: no cover
            raise ValueError(f"Event ID already exists: {event.event_id}") from e

    def get_event(self, event_id: str) -> Optional[Event]:
        doc = self.c_events.find_one({"_id": event_id})
        return self._event_from(doc) if doc else None

    def list_events(self) -> Iterable[Event]:
        for doc in self.c_events.find({}, sort=[("start_time", ASCENDING), ("_id", ASCENDING)]):
            yield self._event_from(doc)

    def save_event(self, event: Event) -> None:
        doc = self._event_doc(event)
        for key in ("_id", "capacity", "seats_available", "created_at"):
            doc.pop(key)
        self.c_events.update_one({"_id": event.event_id}, {"$set": doc})

    def set_capacity(self, event_id: str, capacity: int, seats_available: int) -> None:
        self.c_events.update_one(
            {"_id": event_id}, {"$set": {"capacity": capacity, "seats_available": seats_available}}
        )

    def delete_event(self, event_id: str) -> bool:
        return self.c_events.delete_one({"_id": event_id}).deleted_count == 1

    def take_seat(self, event_id: str) -> Optional[int]:
        doc = self.c_events.find_one_and_update(
            {"_id": event_id, "seats_available": {"$gt": 0}},
            {"$inc": {"seats_available": -1}},
            projection={"seats_available": 1},
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seats_available"]) if doc else None

    def release_seat(self, event_id: str) -> Optional[int]:
        doc = self.c_events.find_one_and_update(
            {"_id": event_id},
            [{"$set": {"seats_available": {"$min": ["$capacity", {"$add": ["$seats_available", 1]}]}}}],
            projection={"seats_available": 1},
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seats_available"]) if doc else None

    # Users
    def add_user(self, user: User) -> None:
        d = asdict(user)
        d["_id"] = d.pop("user_id")
        try:
            self.c_users.insert_one(d)
        except DuplicateKeyError as e:
            raise ValueError(f"User ID already exists: {user.user_id}") from e

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self.c_users.find_one({"_id": user_id})
        if not doc:
            return None
        return User(user_id=doc["_id"], name=doc["name"], email=doc["email"], role=doc.get("role", "student"))

    # Registrations
    def add_registration(self, reg: Registration) -> None:
        try:
            self.c_regs.insert_one(self._reg_doc(reg))
        except DuplicateKeyError as e:
            raise DuplicateRegistration(f"{reg.event_id}:{reg.student_id}") from e

    def find_active_registration(self, event_id: str, student_id: str) -> Optional[Registration]:
        doc = self.c_regs.find_one({"event_id": event_id, "student_id": student_id, "active": True})
        return self._reg_from(doc) if doc else None

    def find_latest_cancelled(self, event_id: str, student_id: str) -> Optional[Registration]:
        doc = self.c_regs.find_one(
            {"event_id": event_id, "student_id": student_id, "status": CANCELLED, "cancelled_at": {"$ne": None}},
            sort=[("cancelled_at", DESCENDING)],
        )
        return self._reg_from(doc) if doc else None

    def mark_cancelled(self, registration_id: str, cancelled_at: datetime, reason: str, details: str) -> bool:
        res = self.c_regs.update_one(
            {"_id": registration_id, "status": {"$ne": CANCELLED}},
            {
                "$set": {
                    "status": CANCELLED,
                    "active": False,
                    "cancelled_at": cancelled_at,
                    "cancellation_reason": reason,
                    "cancellation_details": details,
                }
            },
        )
        return res.modified_count == 1

    def delete_cancelled(self, event_id: str, student_id: str, cancelled_before: datetime) -> int:
        res = self.c_regs.delete_many(
            {
                "event_id": event_id,
                "student_id": student_id,
                "status": CANCELLED,
                "$or": [{"cancelled_at": None}, {"cancelled_at": {"$lte": cancelled_before}}],
            }
        )
        return res.deleted_count

    def promote_next(self, event_id: str) -> Optional[Registration]:
        doc = self.c_regs.find_one_and_update(
            {"event_id": event_id, "status": WAITLISTED},
            {"$set": {"status": REGISTERED}},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        return self._reg_from(doc) if doc else None

    def count_registrations(self, event_id: str, status: str) -> int:
        return self.c_regs.count_documents({"event_id": event_id, "status": status})

    def list_event_registrations(self, event_id: str, statuses: Sequence[str] = ALL_STATUSES) -> List[Registration]:
        cursor = self.c_regs.find(
            {"event_id": event_id, "status": {"$in": list(statuses)}},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
        )
        return [self._reg_from(d) for d in cursor]

    def list_student_registrations(
        self, student_id: str, statuses: Sequence[str] = ALL_STATUSES
    ) -> List[Registration]:
        cursor = self.c_regs.find(
            {"student_id": student_id, "status": {"$in": list(statuses)}},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )
        return [self._reg_from(d) for d in cursor]

    def find_schedule_conflict(
        self, student_id: str, start: datetime, end: datetime, exclude_event_id: Optional[str] = None
    ) -> Optional[Event]:
        event_ids = self.c_regs.distinct("event_id", {"student_id": student_id, "status": REGISTERED})
        if exclude_event_id is not None:
            event_ids = [eid for eid in event_ids if eid != exclude_event_id]
        if not event_ids:
            return None
        doc = self.c_events.find_one(
            {
                "_id": {"$in": event_ids},
                # Overlap: existing.start < new.end AND existing.end > new.start
                "start_time": {"$lt": end},
                "end_time": {"$gt": start},
            }
        )
        return self._event_from(doc) if doc else None

    def list_registered_starting_between(self, start: datetime, end: datetime) -> List[Registration]:
        event_ids = [
            d["_id"]
            for d in self.c_events.find({"start_time": {"$gte": start, "$lt": end}}, projection={"_id": 1})
        ]
        if not event_ids:
            return []
        cursor = self.c_regs.find(
            {"event_id": {"$in": event_ids}, "status": REGISTERED},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
        )
        return [self._reg_from(d) for d in cursor]

    def delete_event_registrations(self, event_id: str) -> int:
        return self.c_regs.delete_many({"event_id": event_id}).deleted_count
