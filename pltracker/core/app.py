import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional

from .config import Config
from .db import init_db
from .store import SqlKeyValueStore
from .task_manager import TaskManager


class TrackerApp:
    """
    Wires configuration, storage, the refresh orchestrator and the task manager.
    All refresh work runs on the task manager's background loop so per-origin
    refresh locks are shared by the API, the CLI and the periodic task.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.logger = logging.getLogger(self.__class__.__name__)

        self.config = Config(config_path=config_path)
        self.config.register_change_callback(self.handle_config_change)

        self._setup_logging()

        init_db(self.config.data)
        self.store = SqlKeyValueStore()

        from pltracker.assessments import service
        service.ensure_meta_initialized(self.store)
        self.seed_meta_from_config()

        self.task_manager = TaskManager()
        self.fetcher = None
        self.tab_provider = None
        self.orchestrator = None
        self._build_orchestrator()

    def _setup_logging(self) -> None:
        """Configure logging to write to both file and stdout"""
        log_config = self.config.data.get("logging") or {}
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
        root_logger.setLevel(getattr(logging, str(log_config.get("level", "INFO")).upper(), logging.INFO))

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
        )

        log_file = log_config.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        logging.info("PrairieLearn tracker starting...")

    def _client_options(self) -> Dict[str, Any]:
        """Fetcher, tab provider and limits built from the current config."""
        from pltracker.assessments.fetcher import RequestsFetcher
        from pltracker.assessments.pipeline import REFRESH_CONCURRENCY
        from pltracker.assessments.tabs import (
            EXISTING_TAB_TIMEOUT_MS,
            NEW_TAB_TIMEOUT_MS,
            PlaywrightTabProvider,
        )

        tracker_config = self.config.tracker
        browser_config = self.config.browser
        concurrency = int(tracker_config.get("concurrency") or REFRESH_CONCURRENCY)

        tab_provider = None
        if browser_config.get("enabled", True):
            tab_provider = PlaywrightTabProvider.from_config(browser_config, concurrency=concurrency)
        else:
            self.logger.info("Browser support disabled; page-context fallback unavailable")

        return {
            "fetcher": RequestsFetcher.from_config(tracker_config),
            "tab_provider": tab_provider,
            "concurrency": concurrency,
            "existing_tab_timeout_ms": int(browser_config.get("existing_tab_timeout") or EXISTING_TAB_TIMEOUT_MS),
            "new_tab_timeout_ms": int(browser_config.get("new_tab_timeout") or NEW_TAB_TIMEOUT_MS),
        }

    def _build_orchestrator(self) -> None:
        from pltracker.assessments.orchestrator import RefreshOrchestrator

        options = self._client_options()
        self.fetcher = options["fetcher"]
        self.tab_provider = options["tab_provider"]
        self.orchestrator = RefreshOrchestrator(self.store, **options)

    async def _replace_clients(self) -> None:
        # the orchestrator and its per-origin locks outlive config reloads
        options = self._client_options()
        await self.orchestrator.replace_clients(**options)
        self.fetcher = options["fetcher"]
        self.tab_provider = options["tab_provider"]

    def seed_meta_from_config(self) -> None:
        """Copy tracker.origin / tracker.course_instance_ids into meta when meta has none yet."""
        from pltracker.assessments import service
        from pltracker.assessments.identifiers import sanitize_course_instance_ids
        from pltracker.assessments.origin import normalize_origin

        meta = service.get_meta(self.store) or {}
        patch: Dict[str, Any] = {}
        origin = normalize_origin(self.config.tracker.get("origin"))
        if origin and not meta.get("origin"):
            patch["origin"] = origin
        ids = sanitize_course_instance_ids(self.config.tracker.get("course_instance_ids"))
        if ids and not meta.get("course_instance_ids"):
            patch["course_instance_ids"] = ids
        if patch:
            self.logger.info(f"Seeding tracker metadata from config: {sorted(patch)}")
            service.update_meta(self.store, patch)

    def handle_config_change(self, new_config: Dict[str, Any]) -> None:
        """Swap in clients built from the new config once running refreshes finish."""
        self.logger.info("Handling config change")
        try:
            self.submit(self._replace_clients())
            self.seed_meta_from_config()
        except Exception as e:
            self.logger.error(f"Error handling config change: {e}", exc_info=True)

    def submit(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the task manager loop and wait for its result."""
        return self.task_manager.run_coroutine(coro, timeout=timeout)

    async def dispatch(self, message: Any, sender_url: Optional[str] = None) -> Dict[str, Any]:
        """Handle a message on the task manager loop; awaitable from any other loop."""
        from pltracker.assessments.messages import handle_message

        future = asyncio.run_coroutine_threadsafe(
            handle_message(message, self.store, self.orchestrator, sender_url=sender_url),
            self.task_manager.async_loop,
        )
        return await asyncio.wrap_future(future)

    def send(self, message: Any, sender_url: Optional[str] = None) -> Dict[str, Any]:
        """Blocking form of dispatch for threads without a running loop (CLI, timers)."""
        from pltracker.assessments.messages import handle_message

        return self.submit(handle_message(message, self.store, self.orchestrator, sender_url=sender_url))

    def schedule_refresh_task(self) -> None:
        from pltracker.assessments.messages import REFRESH_REQUEST, handle_message
        from pltracker.assessments.task import RefreshTask

        def refresh():
            return handle_message({"type": REFRESH_REQUEST}, self.store, self.orchestrator)

        task = RefreshTask(self.config.tracker, refresh=refresh, submit=self.submit)
        task.ensure_scheduled()
        self.task_manager.register_task(task.task_name, task.run, next_run=task.get_next_run)
        self.task_manager.schedule_registered_task(task.task_name, self.config.tracker, self.config.data)

    async def _close_clients(self) -> None:
        if self.tab_provider is not None:
            await self.tab_provider.stop()
        if self.fetcher is not None:
            self.fetcher.close()

    def run(self) -> None:
        """Serve the API and the periodic refresh until interrupted."""
        from pltracker.api import run_api_server

        try:
            self.config.start_watching()
            self.schedule_refresh_task()
            thread = run_api_server(self)
            if thread is None:
                self.logger.info("Running refresh schedule only (API disabled)")
            self.task_manager.async_thread.join()
        except KeyboardInterrupt:
            self.logger.info("Interrupted, shutting down")
        finally:
            self.close()

    def close(self) -> None:
        try:
            self.submit(self._close_clients(), timeout=30)
        except Exception as e:
            self.logger.warning(f"Error closing clients: {e}")
        self.task_manager.stop()
        self.config.cleanup()
