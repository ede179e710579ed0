"""
Tables: store_entries backs the key-value store, task_schedules keeps the
periodic refresh schedule across restarts.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, select

from pltracker.core.db import Base, session_scope


def _utc_now() -> datetime:
    """UTC now as naive datetime for DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StoreEntry(Base):
    """One key of the persistent key-value store. value is any JSON document."""
    __tablename__ = "store_entries"

    key = Column(String(255), primary_key=True)  # e.g. "pl.meta", "pl.course.12345"
    value = Column(JSON, nullable=True)
    revision = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=_utc_now, onupdate=_utc_now, nullable=False)


class TaskSchedule(Base):
    """When the periodic refresh last ran, how it ended and when it runs next."""
    __tablename__ = "task_schedules"

    task_name = Column(String(255), primary_key=True)
    schedule_type = Column(String(64), nullable=False)
    schedule_config = Column(JSON, nullable=True)  # {"interval_seconds": 3600} or {"time": "07:00"}
    next_run_at = Column(DateTime(timezone=False), nullable=True)  # null: due now
    last_run_at = Column(DateTime(timezone=False), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), default=_utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=_utc_now, onupdate=_utc_now, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_name": self.task_name,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }


def get_all_task_schedules() -> List[Dict[str, Any]]:
    """Schedule rows for GET /api/tasks, ordered by name. Datetimes are naive UTC."""
    with session_scope() as session:
        rows = session.execute(select(TaskSchedule).order_by(TaskSchedule.task_name)).scalars().all()
        return [row.to_dict() for row in rows]
