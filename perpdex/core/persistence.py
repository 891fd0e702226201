from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple


@dataclass
class Event:
    ts: float
    kind: str
    data: Dict[str, Any]
    id: Optional[int] = None


class StateStore:
    """sqlite-backed record store.

    Records live in a single ``kv`` table addressed by derived keys
    (``market:<key>``, ``position:<key>``, ``balance:<owner>:<mint>``) and
    lifecycle events go to an append-only ``events`` table. Writes made
    inside :meth:`transaction` commit or roll back together; writes made
    outside one commit immediately.
    """

    def __init__(self, db_path: str) -> None:
        self.path = db_path
        self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()
        self._depth = 0
        self._pending: List[Callable[[], None]] = []
        self._setup()

    class _EnhancedJSONEncoder(json.JSONEncoder):
        def default(self, o: Any):  # type: ignore[override]
            if isinstance(o, Decimal):
                return str(o)
            if isinstance(o, (bytes, bytearray)):
                return bytes(o).hex()
            return super().default(o)

    @staticmethod
    def _dumps(obj: Any) -> str:
        return json.dumps(obj, ensure_ascii=False, sort_keys=True, cls=StateStore._EnhancedJSONEncoder)

    def _setup(self) -> None:
        c = self._conn.cursor()
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                k TEXT PRIMARY KEY,
                v TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts REAL NOT NULL,
                kind TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["StateStore"]:
        # Re-entrant: only the outermost block issues BEGIN/COMMIT/ROLLBACK
        committed: List[Callable[[], None]] = []
        with self._lock:
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("ROLLBACK")
                    self._pending.clear()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("COMMIT")
                    committed, self._pending = self._pending, []
        for fn in committed:
            fn()

    def after_commit(self, fn: Callable[[], None]) -> None:
        """Run ``fn`` once the outermost transaction commits, or now if none is open.

        Callbacks queued inside a transaction that rolls back are discarded.
        """
        with self._lock:
            if self._depth > 0:
                self._pending.append(fn)
                return
        fn()

    def put(self, key: str, value: Dict[str, Any]) -> None:
        payload = self._dumps(value)
        with self._lock:
            self._conn.execute("INSERT OR REPLACE INTO kv (k, v) VALUES (?, ?)", (key, payload))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT v FROM kv WHERE k = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def exists(self, key: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM kv WHERE k = ?", (key,)).fetchone()
        return row is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM kv WHERE k = ?", (key,))
        return cur.rowcount > 0

    def iter_prefix(self, prefix: str) -> Iterable[Tuple[str, Dict[str, Any]]]:
        # Escape LIKE wildcards so the prefix matches literally
        pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        with self._lock:
            rows = self._conn.execute(
                "SELECT k, v FROM kv WHERE k LIKE ? ESCAPE '\\' ORDER BY k ASC", (pattern,)
            ).fetchall()
        for k, v in rows:
            yield k, json.loads(v)

    def append_event(self, event: Event) -> int:
        payload = self._dumps(event.data)
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO events (ts, kind, data) VALUES (?, ?, ?)", (event.ts, event.kind, payload)
            )
        event.id = int(cur.lastrowid)
        return event.id

    def iter_events(self, kind: Optional[str] = None, since_id: int = 0) -> Iterable[Event]:
        with self._lock:
            if kind is None:
                cur = self._conn.execute(
                    "SELECT id, ts, kind, data FROM events WHERE id > ? ORDER BY id ASC", (since_id,)
                )
            else:
                cur = self._conn.execute(
                    "SELECT id, ts, kind, data FROM events WHERE kind = ? AND id > ? ORDER BY id ASC",
                    (kind, since_id),
                )
            rows = cur.fetchall()
        for eid, ts, k, data in rows:
            yield Event(ts=ts, kind=k, data=json.loads(data), id=eid)

    def close(self) -> None:
        self._conn.close()
