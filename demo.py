"""Demo script to exercise CampusEvents with a small sample dataset.

Run: python demo.py

Supports two backends:
- In-memory (default)
- MongoDB (set DB_BACKEND=mongodb and MONGODB_URI in .env)
"""

import logging
import os
from datetime import datetime, time, timedelta, timezone
from typing import Dict

from dotenv import load_dotenv

from campus_events import CampusEvents
from campus_models import ADMIN, ORGANIZER, STUDENT, CampusError, Principal, User
from event_stores import MongoStore

load_dotenv()

ORGANIZERS = [
    User("O01", "AI Club", "ai.club@example.com", ORGANIZER),
    User("O02", "Drama Club", "drama.club@example.com", ORGANIZER),
]
STUDENTS = [
    User("S01", "Alice Johnson", "alice@example.com"),
    User("S02", "Bob Smith", "bob@example.com"),
    User("S03", "Carol Lee", "carol@example.com"),
    User("S04", "David Kim", "david@example.com"),
]


def _at(day: int, hh: int, mm: int = 0) -> datetime:
    base = datetime.now(timezone.utc).date() + timedelta(days=7 + day)
    return datetime.combine(base, time(hh, mm), tzinfo=timezone.utc)


def seed_sample_data(system: CampusEvents) -> Dict[str, int]:
    """Seed users, events and registrations. Existing users and titles are skipped."""
    added = {"users": 0, "events": 0, "registrations": 0, "waitlisted": 0}

    for user in ORGANIZERS + STUDENTS:
        try:
            system.add_user(user)
            added["users"] += 1
        except ValueError:
            pass  # already exists

    existing = {e.title for e in system.list_events()}
    ai = Principal("O01", ORGANIZER)
    drama = Principal("O02", ORGANIZER)
    for owner, title, start, end, venue, seats, category in [
        (ai, "AI Workshop", _at(0, 10), _at(0, 12), "Seminar Hall", 50, "Technical"),
        (ai, "Tiny Session", _at(1, 9), _at(1, 10), "Room 101", 1, "Academic"),
        (drama, "Drama Night", _at(2, 18), _at(2, 20), "Auditorium", 100, "Cultural"),
        (drama, "Improv Jam", _at(0, 11), _at(0, 13), "Black Box", 20, "Cultural"),
    ]:
        if title in existing:
            continue
        system.create_event(owner, title=title, start_time=start, end_time=end, capacity=seats,
                            venue=venue, category=category)
        added["events"] += 1

    by_title = {e.title: e.event_id for e in system.list_events()}
    for sid, title in [("S01", "AI Workshop"), ("S02", "AI Workshop"), ("S03", "Tiny Session"),
                       ("S04", "Tiny Session"), ("S02", "Drama Night")]:
        try:
            result = system.register(by_title[title], Principal(sid, STUDENT))
            added["registrations"] += 1
            if result.status == "waitlisted":
                added["waitlisted"] += 1
        except CampusError:
            pass  # already registered
    return added


def print_event_summary(system: CampusEvents, event_id: str) -> None:
    s = system.event_summary(event_id)
    print(f"Event Summary ({s['EventID']} - {s['Title']}):")
    print(f"Seats: {s['SeatsAvailable']}/{s['Capacity']} free | "
          f"{s['Registered']} Registered, {s['Waitlisted']} Waitlisted, {s['Cancelled']} Cancelled")
    if s["CancellationReasons"]:
        print("Cancellation reasons: " + ", ".join(f"{k} ({v})" for k, v in s["CancellationReasons"].items()))
    print(f"Status: {s['Status']}")
    print()


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING").upper())
    backend = os.getenv("DB_BACKEND", "memory").lower()
    if backend == "mongodb":
        uri = os.getenv("MONGODB_URI")
        db_name = os.getenv("DB_NAME", "campus_events")
        prefix = os.getenv("COLLECTION_PREFIX", "")
        if not uri:
            raise SystemExit("DB_BACKEND=mongodb requires MONGODB_URI in environment/.env")
        system = CampusEvents(store=MongoStore(uri=uri, db_name=db_name, collection_prefix=prefix))
    else:
        system = CampusEvents()
    print(f"Seeded: {seed_sample_data(system)}\n")

    by_title = {e.title: e for e in system.list_events()}
    tiny = by_title["Tiny Session"]
    print_event_summary(system, tiny.event_id)

    # S03 holds the only seat; cancelling promotes S04 from the waitlist
    result = system.cancel(tiny.event_id, Principal("S03", STUDENT), reason="Schedule Conflict (New)")
    print(f"S03 cancelled; promoted: {result.promoted_student_id}\n")
    print_event_summary(system, tiny.event_id)

    # Re-registering straight away hits the cooldown
    try:
        system.register(tiny.event_id, Principal("S03", STUDENT))
    except CampusError as e:
        print(f"S03 re-register: {e.message}\n")

    # Improv Jam overlaps the AI Workshop S01 is registered for
    try:
        system.register(by_title["Improv Jam"].event_id, Principal("S01", STUDENT))
    except CampusError as e:
        print(f"S01 -> Improv Jam: {e.message}\n")

    # Capacity cannot drop below booked seats (S01 and S02 hold AI Workshop seats)
    try:
        system.update_capacity(by_title["AI Workshop"].event_id, 1, Principal("A01", ADMIN))
    except CampusError as e:
        print(f"Capacity change rejected: {e.message}\n")

    cancelled = system.delete_event(by_title["Drama Night"].event_id, Principal("O02", ORGANIZER),
                                    reason="Venue unavailable")
    print(f"Drama Night deleted, {cancelled} registration(s) cancelled")


if __name__ == "__main__":
    main()
