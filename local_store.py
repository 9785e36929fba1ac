"""
Local Store Module
==================
Persistent keyed object store on sqlite, used for drafts and the catalog
cache. Survives process restarts.

- One table per named store: (key TEXT PRIMARY KEY, data TEXT)
- Keys and values are JSON encoded (draft keys may be str or int)
- Async API; all sqlite work runs on a single worker thread with one
  connection, so calls are serialized and transactional per call
"""

import asyncio
import json
import logging
import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple, TypeVar


logger = logging.getLogger(__name__)


T = TypeVar("T")

_STORE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class LocalStoreError(Exception):
    """Raised when a local store operation fails."""
    pass


def _encode_key(key: Any) -> str:
    return json.dumps(key)


def _decode_key(raw: str) -> Any:
    return json.loads(raw)


class LocalStore:
    """
    Keyed object store with get/put/delete/get_all/keys/clear by primary key.

    Opened once at startup and closed at teardown.
    """

    def __init__(self, path: str, stores: Iterable[str]):
        self.path = Path(path)
        self.stores = tuple(stores)

        for name in self.stores:
            if not _STORE_NAME_RE.match(name):
                raise ValueError(f"Invalid store name: {name!r}")

        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def open(self):
        """Open the database and create missing store tables."""
        if self.is_open:
            return

        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="local-store"
        )

        try:
            self._conn = await self._run(self._connect)
        except LocalStoreError:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise

        logger.info(
            f"Local store opened: {self.path}",
            extra={"stores": list(self.stores)}
        )

    async def close(self):
        """Close the connection and stop the worker thread."""
        if not self.is_open:
            return

        conn = self._conn
        await self._run(conn.close)
        self._conn = None
        self._executor.shutdown(wait=True)
        self._executor = None

        logger.info(f"Local store closed: {self.path}")

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), check_same_thread=False)

        with conn:
            for name in self.stores:
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {name} ("
                    "key TEXT PRIMARY KEY, "
                    "data TEXT NOT NULL)"
                )

        return conn

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    async def get(self, store: str, key: Any) -> Optional[Any]:
        """Get one value by key (None if absent)."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            row = conn.execute(
                f"SELECT data FROM {store} WHERE key = ?",
                (_encode_key(key),)
            ).fetchone()
            return json.loads(row[0]) if row else None

        return await self._run_with_conn(op)

    async def put(self, store: str, key: Any, value: Any):
        """Insert or replace one value."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            payload = json.dumps(value)
            with conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {store} (key, data) VALUES (?, ?)",
                    (_encode_key(key), payload)
                )

        await self._run_with_conn(op)

    async def delete(self, store: str, key: Any) -> bool:
        """Delete one value. Returns True if a row was removed."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            with conn:
                cur = conn.execute(
                    f"DELETE FROM {store} WHERE key = ?",
                    (_encode_key(key),)
                )
            return cur.rowcount > 0

        return await self._run_with_conn(op)

    async def get_all(self, store: str) -> List[Any]:
        """All values in a store, in key order."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            rows = conn.execute(f"SELECT data FROM {store} ORDER BY key").fetchall()
            return [json.loads(row[0]) for row in rows]

        return await self._run_with_conn(op)

    async def keys(self, store: str) -> List[Any]:
        """All keys in a store, decoded to their original type."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            rows = conn.execute(f"SELECT key FROM {store} ORDER BY key").fetchall()
            return [_decode_key(row[0]) for row in rows]

        return await self._run_with_conn(op)

    async def clear(self, store: str):
        """Remove every value from a store."""
        self._check_store(store)

        def op(conn: sqlite3.Connection):
            with conn:
                conn.execute(f"DELETE FROM {store}")

        await self._run_with_conn(op)

    async def replace_all(
        self,
        store: str,
        entries: Iterable[Tuple[Any, Any]]
    ) -> Tuple[int, int]:
        """
        Clear the store then write every (key, value) pair.

        Writes are best-effort per entry: an entry that fails to encode or
        insert is logged and skipped without rolling back the others.

        Returns:
            (written, failed)
        """
        self._check_store(store)
        entries = list(entries)

        def op(conn: sqlite3.Connection):
            written = 0
            failed = 0

            with conn:
                conn.execute(f"DELETE FROM {store}")

                for key, value in entries:
                    try:
                        conn.execute(
                            f"INSERT OR REPLACE INTO {store} (key, data) VALUES (?, ?)",
                            (_encode_key(key), json.dumps(value))
                        )
                        written += 1
                    except (sqlite3.Error, TypeError, ValueError) as e:
                        failed += 1
                        logger.warning(
                            f"Skipped entry {key!r} in {store}: {str(e)}"
                        )

            return written, failed

        return await self._run_with_conn(op)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _check_store(self, store: str):
        if store not in self.stores:
            raise LocalStoreError(f"Unknown store: {store}")

    async def _run_with_conn(self, op: Callable[[sqlite3.Connection], T]) -> T:
        if not self.is_open:
            raise LocalStoreError(f"Local store not open: {self.path}")

        conn = self._conn
        return await self._run(lambda: op(conn))

    async def _run(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()

        try:
            return await loop.run_in_executor(self._executor, func)
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            raise LocalStoreError(str(e)) from e
