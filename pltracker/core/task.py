"""
Recurring task schedules. A task's next run time lives in the task_schedules
table so a restart picks up where the previous process left off instead of
refreshing immediately.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from queue import Queue
from typing import Any, Dict, Optional

from sqlalchemy import select

from pltracker.core.db import session_scope
from pltracker.core.models import TaskSchedule

logger = logging.getLogger(__name__)


class TaskType:
    DAILY = "daily"
    HOURLY = "hourly"
    INTERVAL_SECONDS = "interval_seconds"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _parse_clock(value: Any) -> tuple:
    parts = str(value or "00:00").strip().split(":")
    hour = int(parts[0]) if parts and parts[0] else 0
    minute = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    return hour, minute


def compute_next_run(
    schedule_type: str,
    schedule_config: Optional[Dict[str, Any]],
    last_run: Optional[datetime],
) -> datetime:
    """Next run after last_run (naive UTC). Unknown schedules fall back to one day."""
    base = last_run or _utc_now()
    schedule_config = schedule_config or {}

    if schedule_type == TaskType.DAILY:
        hour, minute = _parse_clock(schedule_config.get("time"))
        candidate = base.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return candidate if candidate > base else candidate + timedelta(days=1)

    if schedule_type == TaskType.HOURLY:
        return base + timedelta(hours=1)

    if schedule_type == TaskType.INTERVAL_SECONDS:
        return base + timedelta(seconds=int(schedule_config.get("interval_seconds", 86400)))

    return base + timedelta(days=1)


def _find_schedule(session, task_name: str) -> Optional[TaskSchedule]:
    return session.execute(
        select(TaskSchedule).where(TaskSchedule.task_name == task_name)
    ).scalars().first()


def get_next_run_from_db(task_name: str) -> Optional[datetime]:
    """Stored next_run_at, or None when the task has never run (run it now)."""
    try:
        with session_scope() as session:
            row = _find_schedule(session, task_name)
            return row.next_run_at if row is not None else None
    except Exception as e:
        logger.debug(f"get_next_run_from_db {task_name}: {e}")
        return None


def upsert_task_schedule(
    task_name: str,
    schedule_type: str,
    schedule_config: Optional[Dict[str, Any]],
    next_run_at: Optional[datetime] = None,
) -> None:
    """
    Create or update the schedule row. A new row starts with next_run_at unset;
    an existing row keeps its next_run_at unless one is passed.
    """
    with session_scope() as session:
        row = _find_schedule(session, task_name)
        now = _utc_now()
        if row is None:
            session.add(TaskSchedule(
                task_name=task_name,
                schedule_type=schedule_type,
                schedule_config=schedule_config,
                next_run_at=next_run_at,
                created_at=now,
                updated_at=now,
            ))
            return
        row.schedule_type = schedule_type
        row.schedule_config = schedule_config
        if next_run_at is not None:
            row.next_run_at = next_run_at
        row.updated_at = now


def update_after_run(task_name: str, error: Optional[str] = None) -> None:
    """Stamp last_run_at and last_error, and move next_run_at forward from now."""
    with session_scope() as session:
        row = _find_schedule(session, task_name)
        if row is None:
            logger.warning(f"No schedule row for {task_name}; next run not recorded")
            return
        now = _utc_now()
        row.last_run_at = now
        row.last_error = error
        row.next_run_at = compute_next_run(row.schedule_type, row.schedule_config, now)
        row.updated_at = now


class BaseTask(ABC):
    """A named recurring job. run() does the work and ends with update_after_run()."""

    def __init__(self, task_name: str, schedule_type: str, schedule_config: Optional[Dict[str, Any]] = None):
        self.task_name = task_name
        self.schedule_type = schedule_type
        self.schedule_config = schedule_config or {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_next_run(self, last_run: Optional[datetime] = None) -> datetime:
        return compute_next_run(self.schedule_type, self.schedule_config, last_run)

    def ensure_scheduled(self, next_run_at: Optional[datetime] = None) -> None:
        upsert_task_schedule(self.task_name, self.schedule_type, self.schedule_config, next_run_at=next_run_at)

    @abstractmethod
    def run(self, config: Dict[str, Any], result_queue: Queue, **kwargs: Any) -> None:
        pass
