import os

import pytest
from fastapi.testclient import TestClient

from conftest import FakeClock, RecordingSink, at

ORGANIZER = {"X-User-Id": "O01", "X-User-Role": "organizer"}


def as_student(sid: str) -> dict:
    return {"X-User-Id": sid, "X-User-Role": "student"}


@pytest.fixture()
def clock():
    return FakeClock(at(9, day=1))


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def client(clock, sink):
    # Ensure memory backend for tests
    os.environ["DB_BACKEND"] = "memory"
    import campus_events as ce
    import server as srv
    from notifications import Notifier

    # Reset global system per test, with inline notifications
    srv.system = ce.CampusEvents(
        notifier=Notifier(email=sink, realtime=sink),
        clock=clock,
        ticket_encoder=lambda text: None,
    )
    with TestClient(srv.app) as c:
        yield c


def create_event(client, **kwargs) -> str:
    payload = {
        "title": "AI Workshop",
        "description": "Hands-on intro to neural nets",
        "category": "Technical",
        "venue": "Seminar Hall",
        "start_time": "2025-09-20T10:00:00Z",
        "end_time": "2025-09-20T12:00:00Z",
        "capacity": 50,
    }
    payload.update(kwargs)
    r = client.post("/api/events", json=payload, headers=ORGANIZER)
    assert r.status_code == 201, r.text
    return r.json()["event"]["event_id"]


def create_student(client, student_id="S01", name="Alice"):
    r = client.post("/api/users", json={"user_id": student_id, "name": name,
                                        "email": f"{student_id.lower()}@example.com"})
    assert r.status_code in (201, 400), r.text


def register(client, event_id, sid):
    return client.post(f"/api/registrations/{event_id}", headers=as_student(sid))


def cancel(client, event_id, sid, reason="Schedule Conflict (New)", details=""):
    return client.request("DELETE", f"/api/registrations/{event_id}", headers=as_student(sid),
                          json={"reason": reason, "otherDetails": details})


def test_create_and_fetch_event(client: TestClient):
    event_id = create_event(client)

    r = client.get(f"/api/events/{event_id}")
    assert r.status_code == 200
    ev = r.json()
    assert ev["capacity"] == 50
    assert ev["seats_available"] == 50
    assert ev["is_paid"] is False
    assert ev["start_time"] == "2025-09-20T10:00:00+00:00"

    assert client.get("/api/events/unknown").status_code == 404


def test_event_creation_validation(client: TestClient):
    r = client.post("/api/events", headers=ORGANIZER, json={
        "title": "Broken", "start_time": "2025-09-20T10:00:00Z", "end_time": "2025-09-20T09:00:00Z",
        "capacity": 10,
    })
    assert r.status_code == 400

    r = client.post("/api/events", headers=ORGANIZER, json={
        "title": "Empty", "start_time": "2025-09-20T10:00:00Z", "end_time": "2025-09-20T11:00:00Z",
        "capacity": 0,
    })
    assert r.status_code == 422

    r = client.post("/api/events", headers=as_student("S01"), json={
        "title": "Sneaky", "start_time": "2025-09-20T10:00:00Z", "end_time": "2025-09-20T11:00:00Z",
        "capacity": 10,
    })
    assert r.status_code == 403


def test_requests_need_a_principal(client: TestClient):
    event_id = create_event(client)
    r = client.post(f"/api/registrations/{event_id}")
    assert r.status_code == 401


def test_registration_waitlist_and_promotion(client: TestClient, sink):
    event_id = create_event(client, title="Tiny Session", capacity=1)
    create_student(client, "S01", "A")
    create_student(client, "S02", "B")

    r1 = register(client, event_id, "S01")
    assert r1.status_code == 201
    assert r1.json()["status"] == "registered"
    assert r1.json()["message"] == "Registered successfully"

    r2 = register(client, event_id, "S02")
    assert r2.status_code == 201
    assert r2.json()["status"] == "waitlisted"

    s = client.get(f"/api/events/{event_id}/summary").json()
    assert s["Registered"] == 1
    assert s["Waitlisted"] == 1
    assert s["SeatsAvailable"] == 0

    rc = cancel(client, event_id, "S01")
    assert rc.status_code == 200
    assert rc.json()["freed_seat"] is True
    assert rc.json()["promoted_student_id"] == "S02"
    assert rc.json()["seats_available"] == 0
    assert ("s02@example.com", "promotion") in [(to, kind) for to, kind, _ in sink.emails]

    s = client.get(f"/api/events/{event_id}/summary").json()
    assert s["Registered"] == 1
    assert s["Waitlisted"] == 0
    assert s["CancellationReasons"] == {"Schedule Conflict (New)": 1}


def test_duplicate_registration_returns_409(client: TestClient):
    event_id = create_event(client)
    assert register(client, event_id, "S01").status_code == 201

    r = register(client, event_id, "S01")
    assert r.status_code == 409
    assert r.json()["existing_status"] == "registered"
    assert r.json()["detail"] == "Already registered for this event"


def test_cancel_errors(client: TestClient):
    event_id = create_event(client)
    assert cancel(client, event_id, "S01").status_code == 404

    register(client, event_id, "S01")
    assert cancel(client, event_id, "S01").status_code == 200
    r = cancel(client, event_id, "S01")
    assert r.status_code == 400
    assert r.json()["detail"] == "Registration is already cancelled"


def test_cooldown_ban(client: TestClient, clock):
    event_id = create_event(client)
    register(client, event_id, "S01")
    cancel(client, event_id, "S01")

    clock.advance(minutes=5)
    r = register(client, event_id, "S01")
    assert r.status_code == 403
    assert r.json()["remaining_minutes"] == 10

    clock.advance(minutes=10, seconds=1)
    r = register(client, event_id, "S01")
    assert r.status_code == 201
    assert r.json()["status"] == "registered"


def test_schedule_conflict_returns_409(client: TestClient):
    first = create_event(client, title="AI Workshop")
    second = create_event(client, title="Guitar Jam",
                          start_time="2025-09-20T11:00:00Z", end_time="2025-09-20T12:30:00Z")
    register(client, first, "S01")

    r = register(client, second, "S01")
    assert r.status_code == 409
    assert r.json()["conflicting_event"] == "AI Workshop"
    assert r.json()["conflicting_event_id"] == first


def test_capacity_update(client: TestClient):
    event_id = create_event(client, capacity=3)
    for sid in ("S01", "S02"):
        register(client, event_id, sid)

    r = client.patch(f"/api/events/{event_id}/capacity", json={"capacity": 1}, headers=ORGANIZER)
    assert r.status_code == 400

    r = client.patch(f"/api/events/{event_id}/capacity", json={"capacity": 5},
                     headers={"X-User-Id": "O02", "X-User-Role": "organizer"})
    assert r.status_code == 403

    r = client.patch(f"/api/events/{event_id}/capacity", json={"capacity": 5}, headers=ORGANIZER)
    assert r.status_code == 200
    assert r.json()["capacity"] == 5
    assert r.json()["seats_available"] == 3


def test_update_event(client: TestClient):
    event_id = create_event(client)
    r = client.put(f"/api/events/{event_id}", json={"price": 100, "venue": "Auditorium"}, headers=ORGANIZER)
    assert r.status_code == 200
    assert r.json()["event"]["is_paid"] is True
    assert r.json()["event"]["venue"] == "Auditorium"


def test_delete_event_cascades(client: TestClient, sink):
    event_id = create_event(client, capacity=2)
    for sid in ("S01", "S02", "S03"):
        create_student(client, sid)
        register(client, event_id, sid)

    r = client.request("DELETE", f"/api/events/{event_id}", headers=as_student("S01"))
    assert r.status_code == 403

    r = client.request("DELETE", f"/api/events/{event_id}", headers=ORGANIZER,
                       json={"reason": "Other", "otherDetails": "Speaker cancelled"})
    assert r.status_code == 200
    assert r.json()["cancelled"] == 3
    cancellations = [p for _, kind, p in sink.emails if kind == "cancellation"]
    assert len(cancellations) == 3
    assert cancellations[0]["reason"] == "Speaker cancelled"

    assert client.get(f"/api/events/{event_id}").status_code == 404
    assert client.get("/api/registrations/me", headers=as_student("S01")).json() == []


def test_my_registrations(client: TestClient, clock):
    first = create_event(client, title="AI Workshop")
    second = create_event(client, title="Drama Night", category="Cultural",
                          start_time="2025-09-22T18:00:00Z", end_time="2025-09-22T20:00:00Z")
    register(client, first, "S01")
    clock.advance(minutes=1)
    register(client, second, "S01")

    r = client.get("/api/registrations/me", headers=as_student("S01"))
    assert r.status_code == 200
    assert "no-store" in r.headers["cache-control"]
    assert [row["event"]["title"] for row in r.json()] == ["Drama Night", "AI Workshop"]


def test_list_events_filters(client: TestClient):
    create_event(client, title="AI Workshop")
    create_event(client, title="Drama Night", category="Cultural")

    titles = [e["title"] for e in client.get("/api/events", params={"category": "Cultural"}).json()]
    assert titles == ["Drama Night"]
    titles = [e["title"] for e in client.get("/api/events", params={"search": "ai work"}).json()]
    assert titles == ["AI Workshop"]


def test_duplicate_user_returns_400(client: TestClient):
    create_student(client, "S09")
    r = client.post("/api/users", json={"user_id": "S09", "name": "Dup", "email": "dup@example.com"})
    assert r.status_code == 400


def test_only_students_can_register(client: TestClient):
    event_id = create_event(client)
    r = client.post(f"/api/registrations/{event_id}", headers=ORGANIZER)
    assert r.status_code == 403

    assert register(client, event_id, "S01").status_code == 201
    r = client.request("DELETE", f"/api/registrations/{event_id}",
                       headers={"X-User-Id": "S01", "X-User-Role": "admin"}, json={"reason": "Other"})
    assert r.status_code == 403
