"""
Scheduling and the shared event loop.

Registered tasks run on threading timers at the next_run_at stored in the
database and are re-armed after every run. Async work (refreshes, browser
control) goes to one background asyncio loop through run_coroutine(), so every
caller shares the same loop-bound resources.
"""
import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from queue import Queue
from threading import Timer
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pltracker.core.task import get_next_run_from_db

RETRY_DELAY = timedelta(minutes=5)


class TaskManager:
    def __init__(self):
        self.timers: Dict[str, Timer] = {}
        self.result_queue = Queue()
        self.logger = logging.getLogger("TaskManager")
        self._runnables: Dict[str, Callable[..., None]] = {}
        self._run_args: Dict[str, tuple] = {}  # task_name -> (config, config_data)
        self._next_run_fns: Dict[str, Callable[[datetime], datetime]] = {}
        self._lock = threading.Lock()
        self._start_loop()

    def _start_loop(self) -> None:
        self.async_loop = asyncio.new_event_loop()

        def run_loop():
            asyncio.set_event_loop(self.async_loop)
            self.async_loop.run_forever()

        self.async_thread = threading.Thread(target=run_loop, name="tracker-loop", daemon=True)
        self.async_thread.start()

    def run_coroutine(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Block the calling thread until coro finishes on the background loop."""
        return asyncio.run_coroutine_threadsafe(coro, self.async_loop).result(timeout)

    def schedule_task(self, name: str, callback: Callable[[], None], delay: float) -> None:
        """Run callback once after delay seconds, replacing any pending timer with that name."""
        with self._lock:
            pending = self.timers.pop(name, None)
            if pending is not None:
                pending.cancel()
            timer = Timer(delay, self._fire, args=(name, callback))
            timer.daemon = True
            timer.scheduled_time = datetime.now(timezone.utc).timestamp() + delay
            self.timers[name] = timer
            timer.start()
        self.logger.info(f"Task {name} scheduled in {int(delay)}s")

    def _fire(self, name: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            self.logger.exception(f"Task {name} failed: {e}")

    def register_task(
        self,
        task_name: str,
        runnable: Callable[..., None],
        next_run: Optional[Callable[[datetime], datetime]] = None,
    ) -> None:
        """
        runnable(config, result_queue, **kwargs) does the work and records its next run in the DB.
        next_run(now) is the fallback when that record was not written.
        """
        self._runnables[task_name] = runnable
        if next_run is not None:
            self._next_run_fns[task_name] = next_run

    def schedule_registered_task(
        self,
        task_name: str,
        config: Dict[str, Any],
        config_data: Optional[Dict[str, Any]] = None,
        after_run: bool = False,
    ) -> None:
        """
        Arm a timer for the stored next_run_at; overdue or never-run tasks start now.
        Right after a run the stored time must be in the future, otherwise the
        registered next_run fallback (or RETRY_DELAY) is used.
        """
        if task_name not in self._runnables:
            self.logger.warning(f"No task registered: {task_name}")
            return
        self._run_args[task_name] = (config, config_data)
        next_run = get_next_run_from_db(task_name)
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if after_run and (next_run is None or next_run <= now):
            fallback = self._next_run_fns.get(task_name)
            next_run = fallback(now) if fallback is not None else now + RETRY_DELAY
            self.logger.warning(f"No future run recorded for {task_name}; next run at {next_run} UTC")
        delay = 0 if next_run is None else max(0, (next_run - now).total_seconds())
        self.schedule_task(task_name, lambda: self._run_and_rearm(task_name), delay)

    def _run_and_rearm(self, task_name: str) -> None:
        config, config_data = self._run_args[task_name]
        try:
            if config_data is not None:
                self._runnables[task_name](config, self.result_queue, config_data=config_data)
            else:
                self._runnables[task_name](config, self.result_queue)
        except Exception as e:
            self.logger.exception(f"Task {task_name} failed: {e}")
        self.schedule_registered_task(task_name, config, config_data, after_run=True)

    def get_active_timers(self) -> List[Dict[str, Any]]:
        """Pending timers with their due time (for GET /api/tasks)."""
        with self._lock:
            timers = list(self.timers.items())
        return [
            {"name": name, "next_run_at": datetime.fromtimestamp(timer.scheduled_time, tz=timezone.utc)}
            for name, timer in timers
            if timer.is_alive()
        ]

    def stop(self) -> None:
        with self._lock:
            for timer in self.timers.values():
                timer.cancel()
            self.timers.clear()
        self.async_loop.call_soon_threadsafe(self.async_loop.stop)
