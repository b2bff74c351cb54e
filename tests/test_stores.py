from datetime import timedelta

import pytest

from campus_models import CANCELLED, DuplicateRegistration, Event, Registration, new_id
from event_stores import BaseStore, InMemoryStore, times_overlap

from conftest import at


def _event(capacity=2, seats=None, start=None, end=None):
    return Event(
        event_id=new_id(),
        title="Robotics Expo",
        organizer_id="O01",
        start_time=start or at(14),
        end_time=end or at(17),
        capacity=capacity,
        seats_available=capacity if seats is None else seats,
    )


def _reg(event_id, student_id, status="registered", created_at=None):
    return Registration(
        registration_id=new_id(),
        event_id=event_id,
        student_id=student_id,
        status=status,
        created_at=created_at or at(9, day=1),
    )


@pytest.fixture()
def store():
    return InMemoryStore()


def test_memory_store_satisfies_protocol(store):
    assert isinstance(store, BaseStore)


def test_times_overlap_is_open_interval():
    assert times_overlap(at(10), at(11), at(10, 59), at(11, 30))
    assert not times_overlap(at(10), at(11), at(11), at(12))
    assert not times_overlap(at(11), at(12), at(10), at(11))
    assert times_overlap(at(10), at(12), at(10, 30), at(11))


def test_take_seat_stops_at_zero(store):
    ev = _event(capacity=1)
    store.add_event(ev)

    assert store.take_seat(ev.event_id) == 0
    assert store.take_seat(ev.event_id) is None
    assert store.get_event(ev.event_id).seats_available == 0


def test_release_seat_capped_at_capacity(store):
    ev = _event(capacity=2, seats=1)
    store.add_event(ev)

    assert store.release_seat(ev.event_id) == 2
    assert store.release_seat(ev.event_id) == 2
    assert store.release_seat("missing") is None


def test_returned_records_are_copies(store):
    ev = _event()
    store.add_event(ev)
    fetched = store.get_event(ev.event_id)
    fetched.seats_available = 0

    assert store.get_event(ev.event_id).seats_available == 2


def test_save_event_leaves_seat_counters_alone(store):
    ev = _event(capacity=3)
    store.add_event(ev)
    store.take_seat(ev.event_id)

    changed = store.get_event(ev.event_id)
    changed.title = "Robotics Expo 2"
    changed.seats_available = 3
    store.save_event(changed)

    saved = store.get_event(ev.event_id)
    assert saved.title == "Robotics Expo 2"
    assert saved.seats_available == 2


def test_unique_active_registration_per_pair(store):
    ev = _event()
    store.add_event(ev)
    store.add_registration(_reg(ev.event_id, "S01"))

    with pytest.raises(DuplicateRegistration):
        store.add_registration(_reg(ev.event_id, "S01", status="waitlisted"))

    # Historical cancelled rows do not count toward uniqueness
    store.add_registration(_reg(ev.event_id, "S02", status=CANCELLED))
    store.add_registration(_reg(ev.event_id, "S02"))
    assert store.find_active_registration(ev.event_id, "S02").status == "registered"


def test_promote_next_picks_earliest(store):
    ev = _event(capacity=1, seats=0)
    store.add_event(ev)
    late = _reg(ev.event_id, "S03", "waitlisted", created_at=at(9, 5, day=1))
    early = _reg(ev.event_id, "S02", "waitlisted", created_at=at(9, 1, day=1))
    store.add_registration(late)
    store.add_registration(early)

    promoted = store.promote_next(ev.event_id)
    assert promoted.student_id == "S02"
    assert promoted.status == "registered"
    assert store.promote_next(ev.event_id).student_id == "S03"
    assert store.promote_next(ev.event_id) is None


def test_mark_cancelled_only_once(store):
    ev = _event()
    store.add_event(ev)
    reg = _reg(ev.event_id, "S01")
    store.add_registration(reg)

    assert store.mark_cancelled(reg.registration_id, at(12, day=1), "Other", "Travel") is True
    assert store.mark_cancelled(reg.registration_id, at(13, day=1), "Other", "Again") is False

    cancelled = store.find_latest_cancelled(ev.event_id, "S01")
    assert cancelled.cancelled_at == at(12, day=1)
    assert cancelled.cancellation_details == "Travel"


def test_delete_cancelled_respects_cutoff(store):
    ev = _event()
    store.add_event(ev)
    reg = _reg(ev.event_id, "S01")
    store.add_registration(reg)
    store.mark_cancelled(reg.registration_id, at(12, day=1), "", "")

    assert store.delete_cancelled(ev.event_id, "S01", at(12, day=1) - timedelta(seconds=1)) == 0
    assert store.delete_cancelled(ev.event_id, "S01", at(12, day=1)) == 1


def test_schedule_conflict_ignores_non_registered(store):
    ev = _event(start=at(10), end=at(11))
    store.add_event(ev)
    store.add_registration(_reg(ev.event_id, "S01", status="waitlisted"))

    assert store.find_schedule_conflict("S01", at(10, 30), at(11, 30)) is None


def test_delete_event_registrations(store):
    ev = _event()
    other = _event()
    store.add_event(ev)
    store.add_event(other)
    for sid in ("S01", "S02"):
        store.add_registration(_reg(ev.event_id, sid))
    store.add_registration(_reg(other.event_id, "S01"))

    assert store.delete_event_registrations(ev.event_id) == 2
    assert store.delete_event(ev.event_id) is True
    assert store.count_registrations(other.event_id, "registered") == 1


def test_student_registrations_newest_first(store):
    first, second = _event(), _event()
    store.add_event(first)
    store.add_event(second)
    store.add_registration(_reg(first.event_id, "S01", created_at=at(9, day=1)))
    store.add_registration(_reg(second.event_id, "S01", created_at=at(10, day=1)))

    regs = store.list_student_registrations("S01")
    assert [r.event_id for r in regs] == [second.event_id, first.event_id]
