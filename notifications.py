"""
Outbound side effects: email, real-time push and ticket codes.

Everything here runs after a seating change has been committed. The Notifier
swallows and logs collaborator failures so they never reach the caller.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
from concurrent.futures import Executor
from datetime import datetime
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import qrcode
import resend

logger = logging.getLogger(__name__)

EMAIL_KINDS = ("confirmation", "promotion", "cancellation", "reminder", "reset")


class NotificationSink(Protocol):
    def send(self, recipient: str, kind: str, payload: Dict[str, Any]) -> None: ...


class RealtimeSink(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...


# -----------------------------
# Tickets
# -----------------------------


def ticket_payload(event_id: str, student_id: str) -> str:
    return f"event_id:{event_id}|student_id:{student_id}"


def encode_ticket(text: str) -> Optional[str]:
    """Encode text as a QR code and return it as a PNG data URL."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, "PNG")
    return "data:image/png;base64," + base64.b64encode(buffered.getvalue()).decode("utf-8")


def ticket_png(ticket_code: str) -> bytes:
    """Decode a data URL produced by encode_ticket back into PNG bytes."""
    _, _, data = ticket_code.partition("base64,")
    return base64.b64decode(data)


# -----------------------------
# Email
# -----------------------------


def _when(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%A, %B %d, %Y at %I:%M %p %Z")
    return str(value or "")


def render_email(kind: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    """Return (subject, html) for a notification kind."""
    event_name = payload.get("event_name", "")
    if kind == "reset":
        subject = "Password Reset Request for Smart Campus"
        html = f"""
        <h2>Password Reset Required</h2>
        <p>We received a password reset request for your account.</p>
        <p>This link is only valid for <strong>1 hour</strong>:
        <a href="{payload.get("reset_url", "")}">Reset your password</a></p>
        <p>If you did not request a password reset, you can safely ignore this email.</p>
        """
        return subject, html

    if kind == "cancellation":
        subject = f"CANCELLED: {event_name}"
        reason = payload.get("reason") or "No reason given"
        html = f"""
        <h2>Event Cancelled</h2>
        <p>We are sorry to let you know that <strong>{event_name}</strong>
        scheduled for {_when(payload.get("event_time"))} has been cancelled.</p>
        <p><strong>Reason:</strong> {reason}</p>
        """
        return subject, html

    headers = {
        "confirmation": (f"CONFIRMATION: You are {payload.get('status', 'registered')} for {event_name}",
                         "Registration Confirmed", "Thank you for registering!"),
        "promotion": (f"GOOD NEWS: A seat opened up for {event_name}",
                      "You are off the waitlist", "A seat became available and it is now yours."),
        "reminder": (f"REMINDER: Your ticket for {event_name} is tomorrow!",
                     "24hr Event Reminder", "This is a friendly reminder that your event starts tomorrow."),
    }
    if kind not in headers:
        raise ValueError(f"Unknown notification kind: {kind}")
    subject, title, intro = headers[kind]
    ticket_line = (
        "<p>Your digital ticket is attached. Please show the QR code at the entrance.</p>"
        if payload.get("ticket_code")
        else ""
    )
    html = f"""
    <h2>{title}</h2>
    <p>{intro} Below are your event details.</p>
    <p><strong>Event:</strong> {event_name}</p>
    <p><strong>Status:</strong> {payload.get("status", "")}</p>
    <p><strong>Venue:</strong> {payload.get("venue", "")}</p>
    <p><strong>Time:</strong> {_when(payload.get("event_time"))}</p>
    {ticket_line}
    """
    return subject, html


class ResendEmailSink:
    """Sends notification emails through the Resend API."""

    def __init__(self, api_key: str, sender: str) -> None:
        self.api_key = api_key
        self.sender = sender

    def send(self, recipient: str, kind: str, payload: Dict[str, Any]) -> None:
        subject, html = render_email(kind, payload)
        params: Dict[str, Any] = {
            "from": self.sender,
            "to": [recipient],
            "subject": subject,
            "html": html,
        }
        if payload.get("ticket_code"):
            params["attachments"] = [{"filename": "ticket.png", "content": list(ticket_png(payload["ticket_code"]))}]
        resend.api_key = self.api_key
        resend.Emails.send(params)
        logger.info("Sent %s email to %s", kind, recipient)


class LoggingEmailSink:
    """Renders emails and logs them instead of sending. Used when no API key is configured."""

    def send(self, recipient: str, kind: str, payload: Dict[str, Any]) -> None:
        subject, _ = render_email(kind, payload)
        logger.info("[email:%s] to=%s subject=%s", kind, recipient, subject)


# -----------------------------
# Real-time
# -----------------------------


class NullRealtimeSink:
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        pass


class RealtimeHub:
    """In-process fan-out of real-time events to WebSocket subscribers.

    publish() may be called from worker threads; each subscriber queue is fed
    on its own event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.append((asyncio.get_running_loop(), queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [(lp, q) for lp, q in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        message = {"topic": topic, "payload": payload}
        with self._lock:
            subscribers = list(self._subscribers)
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, message)
            except RuntimeError:
                logger.warning("Dropping realtime subscriber on closed loop")
                self.unsubscribe(queue)


# -----------------------------
# Dispatch
# -----------------------------


class Notifier:
    """Best-effort, post-commit dispatcher.

    With an executor the work is handed off and the caller returns immediately;
    without one it runs inline. Either way exceptions are logged, never raised.
    """

    def __init__(
        self,
        email: Optional[NotificationSink] = None,
        realtime: Optional[RealtimeSink] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.email: NotificationSink = email or LoggingEmailSink()
        self.realtime: RealtimeSink = realtime or NullRealtimeSink()
        self.executor = executor

    def send(self, recipient: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        if not recipient:
            logger.warning("No address for %s notification, skipping", kind)
            return
        self._submit(f"send {kind} to {recipient}", self.email.send, recipient, kind, payload)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self._submit(f"publish {topic}", self.realtime.publish, topic, payload)

    def _submit(self, label: str, fn: Callable[..., None], *args: Any) -> None:
        if self.executor is not None:
            self.executor.submit(self._run, label, fn, *args)
        else:
            self._run(label, fn, *args)

    @staticmethod
    def _run(label: str, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Notification failed: %s", label)


def send_password_reset(notifier: Notifier, email: str, reset_url: str) -> None:
    notifier.send(email, "reset", {"reset_url": reset_url})
