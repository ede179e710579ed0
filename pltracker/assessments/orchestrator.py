"""
Refresh orchestration.

A refresh first fetches every course directly from the background session. If
that fails for every course (typically Cloudflare or an expired background
cookie), the same pipeline is re-run from inside a PrairieLearn browser tab,
and its result replaces the direct one only when it is an improvement. The
winning attempt is then persisted: snapshots overwrite their course keys and
the metadata record gets a refresh summary.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from pltracker.core.store import KeyValueStore

from . import service
from .discovery import fetch_course_instance_ids_from_home
from .errors import ConfigurationError, PageContextError, TabError, to_error_message
from .fetcher import Fetcher
from .identifiers import sanitize_course_instance_ids
from .origin import normalize_origin, origin_from_url
from .page_context import PAGE_CONTEXT_REFRESH_REQUEST
from .pipeline import REFRESH_CONCURRENCY, now_iso, run_refresh_attempt
from .records import (
    MODE_BACKGROUND,
    MODE_PAGE_CONTEXT,
    RefreshAttempt,
    RefreshError,
    errors_to_dicts,
    refresh_error_from_dict,
    snapshot_from_dict,
    summarize_refresh_errors,
)
from .tabs import EXISTING_TAB_TIMEOUT_MS, NEW_TAB_TIMEOUT_MS, TabProvider, ensure_tab

NO_IMPROVEMENT_MESSAGE = "Page-context refresh did not improve results."
ALL_COURSES = "*"


def _int_or(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return int(value)


class RefreshOrchestrator:

    def __init__(
        self,
        store: KeyValueStore,
        fetcher: Fetcher,
        tab_provider: Optional[TabProvider] = None,
        concurrency: int = REFRESH_CONCURRENCY,
        existing_tab_timeout_ms: int = EXISTING_TAB_TIMEOUT_MS,
        new_tab_timeout_ms: int = NEW_TAB_TIMEOUT_MS,
    ):
        self.store = store
        self.fetcher = fetcher
        self.tab_provider = tab_provider
        self.concurrency = concurrency
        self.existing_tab_timeout_ms = existing_tab_timeout_ms
        self.new_tab_timeout_ms = new_tab_timeout_ms
        self.logger = logging.getLogger(self.__class__.__name__)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, origin: str) -> asyncio.Lock:
        lock = self._locks.get(origin)
        if lock is None:
            lock = self._locks[origin] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _all_locks(self) -> AsyncIterator[None]:
        held = []
        try:
            for origin in sorted(self._locks):
                lock = self._locks[origin]
                await lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()

    async def replace_clients(
        self,
        fetcher: Fetcher,
        tab_provider: Optional[TabProvider] = None,
        concurrency: Optional[int] = None,
        existing_tab_timeout_ms: Optional[int] = None,
        new_tab_timeout_ms: Optional[int] = None,
    ) -> None:
        """
        Swap in new clients once no refresh is running, then close the old ones.
        Refreshes that start meanwhile wait on their origin lock and use the new clients.
        """
        async with self._all_locks():
            old_fetcher, old_tab_provider = self.fetcher, self.tab_provider
            self.fetcher = fetcher
            self.tab_provider = tab_provider
            if concurrency is not None:
                self.concurrency = concurrency
            if existing_tab_timeout_ms is not None:
                self.existing_tab_timeout_ms = existing_tab_timeout_ms
            if new_tab_timeout_ms is not None:
                self.new_tab_timeout_ms = new_tab_timeout_ms

            if old_tab_provider is not None and old_tab_provider is not tab_provider:
                await old_tab_provider.stop()
            if old_fetcher is not fetcher:
                old_fetcher.close()
        self.logger.info("Refresh clients replaced")

    async def handle_home_courses_discovered(self, payload: Optional[Dict[str, Any]], sender_url: Optional[str] = None) -> Dict[str, Any]:
        payload = payload or {}
        origin = normalize_origin(payload.get("origin")) or origin_from_url(sender_url)
        if not origin:
            raise ConfigurationError("Could not determine PrairieLearn origin from home page.")

        course_instance_ids = sanitize_course_instance_ids(payload.get("course_instance_ids"))
        if not course_instance_ids:
            raise ConfigurationError("No PrairieLearn course IDs found on the home page.")

        service.update_meta(self.store, {
            "origin": origin,
            "course_instance_ids": course_instance_ids,
            "last_discovery_at": now_iso(),
            "last_error": None,
        })
        return await self.refresh_courses(origin, course_instance_ids)

    async def handle_refresh_request(self, payload: Optional[Dict[str, Any]] = None, sender_url: Optional[str] = None) -> Dict[str, Any]:
        payload = payload or {}
        meta = service.get_meta(self.store) or {}

        origin = (
            normalize_origin(payload.get("origin"))
            or normalize_origin(meta.get("origin"))
            or origin_from_url(sender_url)
        )
        if not origin:
            raise ConfigurationError(
                "No PrairieLearn origin is known yet. Open PrairieLearn home page (/) once while logged in."
            )

        course_instance_ids = sanitize_course_instance_ids(payload.get("course_instance_ids"))
        if not course_instance_ids:
            course_instance_ids = sanitize_course_instance_ids(meta.get("course_instance_ids"))
        if not course_instance_ids:
            try:
                course_instance_ids = await fetch_course_instance_ids_from_home(self.fetcher, origin)
            except Exception as e:
                self.logger.info(f"Direct course discovery failed, trying page context: {e}")
                course_instance_ids = []

        if not course_instance_ids:
            # The page-context side discovers ids from the live home page itself.
            async with self._lock_for(origin):
                attempt = await self.run_page_context_attempt(origin, [])
                discovered = sanitize_course_instance_ids([s.course_instance_id for s in attempt.snapshots])
                return self.persist_refresh_attempt(origin, discovered, attempt)

        service.update_meta(self.store, {
            "origin": origin,
            "course_instance_ids": course_instance_ids,
            "last_discovery_at": now_iso(),
            "last_error": None,
        })
        return await self.refresh_courses(origin, course_instance_ids)

    async def refresh_courses(self, origin: str, course_instance_ids: Sequence[str]) -> Dict[str, Any]:
        ids = sanitize_course_instance_ids(list(course_instance_ids))
        if not ids:
            raise ConfigurationError("Cannot refresh courses without course IDs.")

        async with self._lock_for(origin):
            attempt = await self.run_background_attempt(origin, ids)

            if attempt.succeeded == 0 and attempt.failed == len(ids):
                self.logger.warning(f"Direct refresh failed for all {len(ids)} course(s); escalating to page context")
                attempt = await self._escalate(origin, ids, attempt)

            return self.persist_refresh_attempt(origin, ids, attempt)

    async def _escalate(self, origin: str, ids: List[str], attempt: RefreshAttempt) -> RefreshAttempt:
        try:
            page_attempt = await self.run_page_context_attempt(origin, ids)
        except Exception as e:
            self.logger.warning(f"Page-context fallback failed: {e}")
            note = RefreshError(ALL_COURSES, f"Page-context fallback failed: {to_error_message(e)}")
            return attempt._replace(errors=list(attempt.errors) + [note])

        if page_attempt.succeeded > 0 or page_attempt.failed < attempt.failed:
            self.logger.info(f"Page-context refresh recovered {page_attempt.succeeded} course(s)")
            return page_attempt

        note = RefreshError(ALL_COURSES, NO_IMPROVEMENT_MESSAGE)
        return attempt._replace(errors=list(attempt.errors) + [note])

    async def run_background_attempt(self, origin: str, course_instance_ids: Sequence[str]) -> RefreshAttempt:
        return await run_refresh_attempt(
            self.fetcher, origin, course_instance_ids, MODE_BACKGROUND, concurrency=self.concurrency
        )

    async def run_page_context_attempt(self, origin: str, course_instance_ids: Sequence[str]) -> RefreshAttempt:
        if self.tab_provider is None:
            raise TabError("Page-context refresh is unavailable: browser support is disabled.")

        session = await ensure_tab(
            self.tab_provider, origin, self.existing_tab_timeout_ms, self.new_tab_timeout_ms
        )
        try:
            response = await self.tab_provider.send_message(session.tab_id, {
                "type": PAGE_CONTEXT_REFRESH_REQUEST,
                "payload": {"origin": origin, "course_instance_ids": list(course_instance_ids)},
            })
            if not isinstance(response, dict) or not response.get("ok"):
                error = response.get("error") if isinstance(response, dict) else None
                raise PageContextError(error or "Page-context refresh message failed.")
            return self._attempt_from_response(response, origin, course_instance_ids)
        finally:
            if session.created:
                try:
                    await self.tab_provider.close_tab(session.tab_id)
                except Exception as e:
                    self.logger.debug(f"Ignoring tab cleanup error: {e}")

    def _attempt_from_response(self, response: Dict[str, Any], origin: str, course_instance_ids: Sequence[str]) -> RefreshAttempt:
        raw_snapshots = response.get("snapshots") if isinstance(response.get("snapshots"), list) else []
        raw_errors = response.get("errors") if isinstance(response.get("errors"), list) else []
        snapshots = [snapshot_from_dict(s) for s in raw_snapshots if isinstance(s, dict)]
        errors = [refresh_error_from_dict(e) for e in raw_errors]
        return RefreshAttempt(
            mode=response.get("mode") or MODE_PAGE_CONTEXT,
            origin=normalize_origin(response.get("origin")) or origin,
            requested_course_count=_int_or(response.get("requested_course_count"), len(course_instance_ids)),
            succeeded=_int_or(response.get("succeeded"), len(snapshots)),
            failed=_int_or(response.get("failed"), len(errors)),
            snapshots=snapshots,
            errors=errors,
            started_at=response.get("started_at") or now_iso(),
            finished_at=response.get("finished_at") or now_iso(),
        )

    def persist_refresh_attempt(self, origin: str, course_instance_ids: Sequence[str], attempt: RefreshAttempt) -> Dict[str, Any]:
        errors = errors_to_dicts(attempt.errors)
        requested = attempt.requested_course_count
        if not isinstance(requested, int):
            requested = len(course_instance_ids)

        summary = {
            "origin": origin,
            "mode": attempt.mode or MODE_BACKGROUND,
            "requested_course_count": requested,
            "succeeded": len(attempt.snapshots),
            "failed": len(errors),
            "errors": errors,
            "started_at": attempt.started_at or now_iso(),
            "finished_at": attempt.finished_at or now_iso(),
        }

        service.save_refresh_results(self.store, attempt.snapshots, {
            "origin": origin,
            "course_instance_ids": list(course_instance_ids),
            "last_refresh_at": summary["finished_at"],
            "last_refresh_summary": summary,
            "last_error": summarize_refresh_errors(errors),
        })
        self.logger.info(
            f"Refresh ({summary['mode']}) at {origin}: {summary['succeeded']}/{requested} succeeded, {summary['failed']} failed"
        )
        return summary
