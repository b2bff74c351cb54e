"""Daily reminder sweep for tomorrow's events."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from campus_events import CampusEvents

logger = logging.getLogger(__name__)


def run_reminder_job(system: CampusEvents, timezone: str = "UTC") -> int:
    try:
        return system.send_reminders(tz=timezone)
    except Exception:
        logger.exception("Reminder sweep failed")
        return 0


def start_reminder_scheduler(system: CampusEvents, timezone: str = "UTC") -> BackgroundScheduler:
    """Schedule run_reminder_job every day at midnight in ``timezone`` and start the scheduler."""
    scheduler = BackgroundScheduler(timezone=timezone)
    scheduler.add_job(
        run_reminder_job,
        CronTrigger(hour=0, minute=0, timezone=timezone),
        args=[system, timezone],
        id="event-reminders",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Daily reminder job scheduled (%s)", timezone)
    return scheduler
