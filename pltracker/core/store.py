"""
Persistent key-value store. Values are JSON documents; writes are whole-value
overwrites per key (last writer wins).
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select

from pltracker.core.db import session_scope
from pltracker.core.models import StoreEntry

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """get / set / enumerate over JSON values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set_many(self, values: Dict[str, Any]) -> None:
        """Write all keys in one transaction."""
        pass

    @abstractmethod
    def items(self, prefix: Optional[str] = None) -> List[Tuple[str, Any]]:
        """Return (key, value) pairs, optionally restricted to keys starting with prefix."""
        pass

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: self.get(key) for key in keys}


class SqlKeyValueStore(KeyValueStore):
    """KeyValueStore backed by the StoreEntry table. Requires init_db()."""

    def get(self, key: str) -> Optional[Any]:
        with session_scope() as session:
            row = session.get(StoreEntry, key)
            if row is None:
                return None
            return copy.deepcopy(row.value)

    def set_many(self, values: Dict[str, Any]) -> None:
        if not values:
            return
        with session_scope() as session:
            for key, value in values.items():
                row = session.get(StoreEntry, key)
                if row is None:
                    session.add(StoreEntry(key=key, value=value, revision=1))
                else:
                    row.value = value
                    row.revision = (row.revision or 0) + 1
        logger.debug(f"Store wrote {len(values)} key(s)")

    def items(self, prefix: Optional[str] = None) -> List[Tuple[str, Any]]:
        stmt = select(StoreEntry).order_by(StoreEntry.key)
        if prefix:
            stmt = stmt.where(StoreEntry.key.startswith(prefix, autoescape=True))
        with session_scope() as session:
            rows = session.execute(stmt).scalars().all()
            return [(r.key, copy.deepcopy(r.value)) for r in rows]
