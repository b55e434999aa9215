"""Process-local cache of prepared statements for hot query shapes.

Statements are immutable SQLAlchemy constructs with bound parameters,
so one cached instance is safely shared by concurrent callers.
``close()`` swaps in a fresh map; a handle obtained before the close
stays valid for the caller holding it.
"""

import logging
import threading
from typing import Callable, Hashable

from sqlalchemy.sql import Executable

logger = logging.getLogger(__name__)


class StatementCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stmts: dict[Hashable, Executable] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable, build: Callable[[], Executable]) -> Executable:
        with self._lock:
            stmt = self._stmts.get(key)
            if stmt is not None:
                self._hits += 1
                return stmt
            self._misses += 1
            stmt = build()
            self._stmts[key] = stmt
            return stmt

    def close(self) -> None:
        with self._lock:
            dropped = len(self._stmts)
            self._stmts = {}
        logger.debug(f"Statement cache closed, {dropped} statements dropped")

    def stats(self) -> dict:
        with self._lock:
            return {"size": len(self._stmts), "hits": self._hits, "misses": self._misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._stmts)


statement_cache = StatementCache()
