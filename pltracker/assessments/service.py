"""
Service layer: tracker metadata and course snapshots in the key-value store.

Meta lives at "pl.meta" and is only ever patched: update_meta() reads the
current record, merges the patch over it and writes it back with a bumped
version. Two concurrent patches can interleave between the read and the write;
the later write wins. Snapshots live at "pl.course.<id>" and are replaced
wholesale on every successful fetch.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pltracker.core.store import KeyValueStore

from .identifiers import COURSE_KEY_PREFIX, META_KEY, course_storage_key, is_course_instance_id
from .records import CourseSnapshot, snapshot_to_dict
from .timestamps import to_iso

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _initial_meta() -> Dict[str, Any]:
    return {
        "created_at": _now_iso(),
        "origin": None,
        "course_instance_ids": [],
        "last_discovery_at": None,
        "last_refresh_at": None,
        "last_error": None,
        "last_refresh_summary": None,
        "updated_at": None,
        "version": 0,
    }


def get_meta(store: KeyValueStore) -> Optional[Dict[str, Any]]:
    meta = store.get(META_KEY)
    return meta if isinstance(meta, dict) else None


def ensure_meta_initialized(store: KeyValueStore) -> Dict[str, Any]:
    """Create the meta record once; an existing record is returned untouched."""
    meta = get_meta(store)
    if meta is not None:
        return meta
    meta = _initial_meta()
    store.set(META_KEY, meta)
    logger.info("Initialized tracker metadata")
    return meta


def merge_meta(existing: Optional[Dict[str, Any]], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = {**(existing or {}), **patch}
    merged["updated_at"] = _now_iso()
    merged["version"] = int((existing or {}).get("version") or 0) + 1
    return merged


def update_meta(store: KeyValueStore, patch: Dict[str, Any]) -> Dict[str, Any]:
    meta = merge_meta(get_meta(store), patch)
    store.set(META_KEY, meta)
    return meta


def save_refresh_results(
    store: KeyValueStore,
    snapshots: List[CourseSnapshot],
    meta_patch: Dict[str, Any],
) -> Dict[str, Any]:
    """Overwrite each snapshot's course key and patch meta in one store write."""
    updates: Dict[str, Any] = {}
    for snapshot in snapshots:
        course_instance_id = str(snapshot.course_instance_id or "").strip()
        if not is_course_instance_id(course_instance_id):
            logger.debug(f"Skipping snapshot with invalid course id {snapshot.course_instance_id!r}")
            continue
        updates[course_storage_key(course_instance_id)] = snapshot_to_dict(snapshot)

    meta = merge_meta(get_meta(store), meta_patch)
    updates[META_KEY] = meta
    store.set_many(updates)
    logger.info(f"Saved {len(updates) - 1} course snapshot(s)")
    return meta


def get_course_snapshots(store: KeyValueStore) -> List[Dict[str, Any]]:
    """Stored snapshot dicts that carry an assessments list."""
    return [
        value
        for _key, value in store.items(prefix=COURSE_KEY_PREFIX)
        if isinstance(value, dict) and isinstance(value.get("assessments"), list)
    ]
