from datetime import datetime, timedelta, timezone

import pytest

from campus_events import CampusEvents
from campus_models import ORGANIZER, STUDENT, Principal, User
from event_stores import InMemoryStore
from notifications import Notifier


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSink:
    """Collects emails and realtime messages; optionally fails every call."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.emails = []
        self.messages = []

    def send(self, recipient, kind, payload):
        self.emails.append((recipient, kind, payload))
        if self.fail:
            raise RuntimeError("mail server down")

    def publish(self, topic, payload):
        self.messages.append((topic, payload))
        if self.fail:
            raise RuntimeError("no socket")

    def kinds(self):
        return [k for _, k, _ in self.emails]

    def topics(self):
        return [t for t, _ in self.messages]


ORGANIZER_P = Principal("O01", ORGANIZER)


def at(hh: int, mm: int = 0, day: int = 20) -> datetime:
    return datetime(2025, 9, day, hh, mm, tzinfo=timezone.utc)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def system(clock, sink):
    s = CampusEvents(
        store=InMemoryStore(),
        notifier=Notifier(email=sink, realtime=sink),
        clock=clock,
        ticket_encoder=lambda text: f"code:{text}",
    )
    s.add_user(User("O01", "AI Club", "ai.club@example.com", ORGANIZER))
    for n in range(1, 61):
        sid = f"S{n:02d}"
        s.add_user(User(sid, f"Student {n}", f"{sid.lower()}@example.com", STUDENT))
    return s


def student(n: int) -> Principal:
    return Principal(f"S{n:02d}", STUDENT)


def make_event(system, capacity=2, start=None, end=None, title="AI Workshop", owner=ORGANIZER_P):
    return system.create_event(
        owner,
        title=title,
        start_time=start or at(10),
        end_time=end or at(11),
        capacity=capacity,
        venue="Seminar Hall",
        category="Technical",
    )


def assert_seat_invariant(system, event_id):
    ev = system.get_event(event_id)
    registered = system.store.count_registrations(event_id, "registered")
    assert 0 <= ev.seats_available <= ev.capacity
    assert ev.seats_available == ev.capacity - registered
