"""
Background task: periodic refresh of all known courses, persisting next_run in DB.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

from pltracker.core.task import (
    BaseTask,
    TaskType,
    update_after_run,
)

from .errors import to_error_message
from .views import format_refresh_summary

TASK_NAME = "Assessment Refresh"


class RefreshTask(BaseTask):
    """Send a REFRESH_REQUEST on a schedule and record the outcome on the task schedule row."""

    def __init__(
        self,
        config: Dict[str, Any],
        refresh: Callable[[], Awaitable[Dict[str, Any]]],
        submit: Callable[[Awaitable[Any]], Any],
        task_name: str = TASK_NAME,
    ):
        schedule_type, schedule_config = self._schedule_from_config(config)
        super().__init__(task_name, schedule_type, schedule_config)
        self.config = config
        self.refresh = refresh
        self.submit = submit

    def _schedule_from_config(self, config: Dict[str, Any]) -> tuple:
        refresh_at = config.get("refresh_at")
        if refresh_at:
            return TaskType.DAILY, {"time": str(refresh_at)}
        interval = int(config.get("refresh_interval") or 3600)
        return TaskType.INTERVAL_SECONDS, {"interval_seconds": max(60, interval)}

    def run(
        self,
        config: Dict[str, Any],
        result_queue: Any,
        config_data: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        self.logger.info("Assessment tracker: refreshing courses")
        response: Optional[Dict[str, Any]] = None
        error: Optional[str] = None
        try:
            response = self.submit(self.refresh())
            if response.get("ok"):
                self.logger.info(format_refresh_summary(response.get("refresh_summary")))
            else:
                error = response.get("error") or "Refresh failed."
                self.logger.warning(f"Assessment refresh failed: {error}")
        except Exception as e:
            self.logger.exception("Assessment refresh raised")
            error = to_error_message(e)
        update_after_run(self.task_name, error=error)
        result_queue.put((self.task_name, response))
