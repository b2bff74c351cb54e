"""FastAPI server exposing the campus event seating API.

Run locally:
  uvicorn server:app --reload

Environment:
  DB_BACKEND=memory|mongodb
  MONGODB_URI=... (when DB_BACKEND=mongodb)
  DB_NAME=campus_events
  COLLECTION_PREFIX=dev_
  LOCK_RETRIES=50
  RESEND_API_KEY=... (emails are only logged when unset)
  EMAIL_FROM=Smart Campus <no-reply@example.com>
  ENABLE_SCHEDULER=1
  REMINDER_TIMEZONE=Asia/Kolkata
  LOG_LEVEL=INFO
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from campus_events import CampusEvents
from campus_models import (
    CATEGORIES,
    EVENT_STATUSES,
    ROLES,
    STUDENT,
    CampusError,
    Event,
    Principal,
    Registration,
    Unauthenticated,
    User,
)
from event_stores import MongoStore
from notifications import LoggingEmailSink, Notifier, RealtimeHub, ResendEmailSink
from reminders import start_reminder_scheduler

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

hub = RealtimeHub()


def get_system() -> CampusEvents:
    backend = os.getenv("DB_BACKEND", "memory").lower()
    api_key = os.getenv("RESEND_API_KEY")
    email = (
        ResendEmailSink(api_key, os.getenv("EMAIL_FROM", "Smart Campus <no-reply@example.com>"))
        if api_key
        else LoggingEmailSink()
    )
    notifier = Notifier(email=email, realtime=hub, executor=ThreadPoolExecutor(max_workers=4))
    if backend == "mongodb":
        uri = os.getenv("MONGODB_URI")
        db_name = os.getenv("DB_NAME", "campus_events")
        prefix = os.getenv("COLLECTION_PREFIX", "")
        if not uri:
            raise RuntimeError("DB_BACKEND=mongodb requires MONGODB_URI")
        retries = int(os.getenv("LOCK_RETRIES", "50"))
        store = MongoStore(uri=uri, db_name=db_name, collection_prefix=prefix, lock_retries=retries)
        return CampusEvents(store=store, notifier=notifier)
    return CampusEvents(notifier=notifier)


system = get_system()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if os.getenv("ENABLE_SCHEDULER", "0") == "1":
        scheduler = start_reminder_scheduler(system, os.getenv("REMINDER_TIMEZONE", "UTC"))
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Campus Event Seating", lifespan=lifespan)

# Enable CORS for local dev if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("CLIENT_ORIGIN", "*")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CampusError)
async def campus_error_handler(request: Request, exc: CampusError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message, **exc.details})


def resolve_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header(STUDENT),
) -> Principal:
    if not x_user_id:
        raise Unauthenticated("Not authenticated")
    if x_user_role not in ROLES:
        raise Unauthenticated(f"Unknown role: {x_user_role}")
    return Principal(id=x_user_id, role=x_user_role)


# ---------- Pydantic Schemas ----------


def _as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class UserIn(BaseModel):
    user_id: str
    name: str
    email: EmailStr
    role: str = STUDENT

    @field_validator("role")
    @classmethod
    def _v_role(cls, v: str) -> str:
        if v not in ROLES:
            raise ValueError(f"role must be one of {', '.join(ROLES)}")
        return v


class EventIn(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    category: str = "Academic"
    venue: str = ""
    start_time: datetime
    end_time: datetime
    capacity: int = Field(ge=1)
    price: float = Field(default=0, ge=0)
    image_url: str = ""

    @field_validator("start_time", "end_time")
    @classmethod
    def _v_time(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("category")
    @classmethod
    def _v_category(cls, v: str) -> str:
        if v not in CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(CATEGORIES)}")
        return v


class EventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    venue: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    capacity: Optional[int] = None
    price: Optional[float] = None
    image_url: Optional[str] = None
    status: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _v_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else v

    @field_validator("status")
    @classmethod
    def _v_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in EVENT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(EVENT_STATUSES)}")
        return v


class CapacityUpdate(BaseModel):
    capacity: int


class CancellationIn(BaseModel):
    reason: str = ""
    details: str = Field(default="", alias="otherDetails")

    model_config = {"populate_by_name": True}


# ---------- Serialization ----------


def event_out(e: Event) -> dict:
    return {
        "event_id": e.event_id,
        "title": e.title,
        "description": e.description,
        "category": e.category,
        "venue": e.venue,
        "organizer_id": e.organizer_id,
        "start_time": e.start_time.isoformat(),
        "end_time": e.end_time.isoformat(),
        "capacity": e.capacity,
        "seats_available": e.seats_available,
        "price": e.price,
        "is_paid": e.is_paid,
        "image_url": e.image_url,
        "status": e.status,
    }


def registration_out(r: Registration, event: Optional[Event] = None) -> dict:
    out = {
        "registration_id": r.registration_id,
        "event_id": r.event_id,
        "student_id": r.student_id,
        "status": r.status,
        "created_at": r.created_at.isoformat(),
        "cancelled_at": r.cancelled_at.isoformat() if r.cancelled_at else None,
        "cancellation_reason": r.cancellation_reason,
        "ticket_code": r.ticket_code,
    }
    if event is not None:
        out["event"] = event_out(event)
    return out


# ---------- Routes ----------


@app.post("/api/users", status_code=201)
def create_user(payload: UserIn):
    try:
        system.add_user(User(user_id=payload.user_id, name=payload.name, email=payload.email, role=payload.role))
        return {"ok": True}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/events")
def list_events(category: Optional[str] = None, search: Optional[str] = None):
    return [event_out(e) for e in system.list_events(category=category, search=search)]


@app.post("/api/events", status_code=201)
def create_event(payload: EventIn, principal: Principal = Depends(resolve_principal)):
    ev = system.create_event(principal, **payload.model_dump())
    return {"message": "Event created successfully", "event": event_out(ev)}


@app.get("/api/events/{event_id}")
def get_event(event_id: str):
    return event_out(system.get_event(event_id))


@app.put("/api/events/{event_id}")
def update_event(event_id: str, payload: EventUpdate, principal: Principal = Depends(resolve_principal)):
    changes = payload.model_dump(exclude_none=True)
    ev = system.update_event(event_id, principal, **changes)
    return {"message": "Event updated successfully", "event": event_out(ev)}


@app.patch("/api/events/{event_id}/capacity")
def update_capacity(event_id: str, payload: CapacityUpdate, principal: Principal = Depends(resolve_principal)):
    return event_out(system.update_capacity(event_id, payload.capacity, principal))


@app.delete("/api/events/{event_id}")
def delete_event(
    event_id: str,
    payload: Optional[CancellationIn] = None,
    principal: Principal = Depends(resolve_principal),
):
    payload = payload or CancellationIn()
    cancelled = system.delete_event(event_id, principal, payload.reason, payload.details)
    return {"message": "Event deleted successfully", "cancelled": cancelled}


@app.get("/api/events/{event_id}/summary")
def event_summary(event_id: str):
    return system.event_summary(event_id)


@app.get("/api/registrations/me")
def my_registrations(principal: Principal = Depends(resolve_principal)):
    rows = system.my_registrations(principal.id)
    return JSONResponse(
        content=[registration_out(r, ev) for r, ev in rows],
        headers={"Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate"},
    )


@app.post("/api/registrations/{event_id}", status_code=201)
def register_for_event(event_id: str, principal: Principal = Depends(resolve_principal)):
    result = system.register(event_id, principal)
    message = "Registered successfully" if result.status == "registered" else "Waitlisted"
    return {
        "message": message,
        "status": result.status,
        "registration_id": result.registration.registration_id,
        "seats_available": result.seats_available,
    }


@app.delete("/api/registrations/{event_id}")
def cancel_registration(
    event_id: str,
    payload: Optional[CancellationIn] = None,
    principal: Principal = Depends(resolve_principal),
):
    payload = payload or CancellationIn()
    result = system.cancel(event_id, principal, payload.reason, payload.details)
    return {
        "message": "Registration cancelled",
        "freed_seat": result.freed_seat,
        "promoted_student_id": result.promoted_student_id,
        "seats_available": result.seats_available,
    }


@app.websocket("/ws")
async def realtime(websocket: WebSocket):
    await websocket.accept()
    queue = hub.subscribe()
    try:
        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(queue)


@app.post("/api/mock/seed")
def seed_mock_data():
    from demo import seed_sample_data

    counts = seed_sample_data(system)
    summaries = [system.event_summary(e.event_id) for e in system.list_events()]
    return {"inserted": counts, "events": summaries}
