# FILE: proofledger/store.py
"""
Ledger stores: key/value world state with exact-match selector queries and
per-key version history.

  - LedgerStore:
      Abstract API consumed by the ingestion and reconciliation logic.
      Point get/put/delete, selector queries returning (key, value) pairs,
      and the full write history of a key (puts and deletes, oldest first).

  - InMemoryLedgerStore:
      Process-local backend for tests and single-worker development.

  - SQLiteLedgerStore:
      Durable single-file backend. The `docType` discriminator of every JSON
      document is extracted at write time into an indexed column, which
      serves as the secondary index for kind-scoped queries; the remaining
      selector fields are matched on the decoded document so both backends
      share one matching rule.

Design constraints:

  - Stores hold opaque bytes. Only the selector matcher looks inside values,
    and only for documents that decode to JSON objects.
  - Query and history iterators are context managers and must be closed on
    every exit path; use `with store.query(sel) as it: rows = list(it)`.
  - No business logic lives here.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

DOC_TYPE_FIELD = "docType"


# ------------------------------
# Metrics
# ------------------------------

_STORE_OPS = Counter(
    "proofledger_store_ops_total",
    "Ledger store operations",
    ["backend", "op"],
)
_STORE_ERRORS = Counter(
    "proofledger_store_errors_total",
    "Ledger store operations that raised",
    ["backend", "op"],
)
_STORE_LAT = Histogram(
    "proofledger_store_latency_seconds",
    "Ledger store operation latency",
    ["backend", "op"],
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.01, 0.02, 0.05, 0.1, 0.5),
)


# ------------------------------
# Exceptions
# ------------------------------


class LedgerError(RuntimeError):
    pass


class StoreError(LedgerError):
    """A store operation failed (I/O, corruption, closed backend)."""


class EntityNotFound(LedgerError):
    pass


# ------------------------------
# Data models
# ------------------------------


@dataclass(frozen=True)
class KV:
    key: str
    value: bytes


@dataclass(frozen=True)
class HistoryEntry:
    """
    One version of a key.

    tx_id:
        Identifier of the invocation that wrote this version ("" if unknown).
    timestamp:
        UTC RFC3339 time of the write.
    is_delete:
        True when this version is a deletion marker; value is then empty.
    """
    tx_id: str
    timestamp: str
    is_delete: bool
    value: bytes


class QueryIterator:
    """
    Scoped iterator over query or history results.

    Iteration after close() raises StoreError. Closing is idempotent.
    """

    def __init__(self, rows: Iterable[Any], *, on_close=None):
        self._it: Iterator[Any] = iter(rows)
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "QueryIterator":
        return self

    def __next__(self) -> Any:
        if self._closed:
            raise StoreError("iterator already closed")
        return next(self._it)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "QueryIterator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ------------------------------
# Selector matching
# ------------------------------


def _json_equal(have: Any, want: Any) -> bool:
    # JSON has one number type: 5 and 5.0 are the same value, true is not 1.
    if isinstance(have, bool) or isinstance(want, bool):
        return isinstance(have, bool) and isinstance(want, bool) and have == want
    if isinstance(have, (int, float)) and isinstance(want, (int, float)):
        # int/float comparison is exact and never overflows
        return have == want
    return type(have) is type(want) and have == want


def selector_matches(doc: Any, selector: Mapping[str, Any]) -> bool:
    """Exact match of every selector field against a decoded document."""
    if not isinstance(doc, dict):
        return False
    for field, want in selector.items():
        if field not in doc:
            return False
        if not _json_equal(doc[field], want):
            return False
    return True


def _decode_doc(value: bytes) -> Any:
    try:
        return json.loads(value.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def drain_results(it: Iterable[KV]) -> List[Dict[str, Any]]:
    """
    Drain a query iterator into [{"Key": ..., "Record": ...}].

    Values that are not valid JSON are returned as text under "Record".
    The caller still owns closing the iterator.
    """
    out: List[Dict[str, Any]] = []
    for kv in it:
        text = kv.value.decode("utf-8", errors="replace")
        try:
            record: Any = json.loads(text)
        except ValueError:
            logger.warning("stored value is not JSON", extra={"key": kv.key})
            record = text
        out.append({"Key": kv.key, "Record": record})
    return out


def _doc_type_of(value: bytes) -> Optional[str]:
    doc = _decode_doc(value)
    if isinstance(doc, dict):
        dt = doc.get(DOC_TYPE_FIELD)
        if isinstance(dt, str):
            return dt
    return None


def _utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _check_key(key: str) -> str:
    if not isinstance(key, str) or not key:
        raise StoreError("ledger key must be a non-empty string")
    return key


def _check_value(value: bytes) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise StoreError("ledger value must be bytes")
    return bytes(value)


# ------------------------------
# Abstract interface
# ------------------------------


class LedgerStore(ABC):
    """
    Abstract ledger API (storage only).

    Implementations must be thread-safe. Writes carry an optional tx_id that
    is recorded in the key history.
    """

    backend = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Current value of key, or None if absent or deleted."""

    @abstractmethod
    def put(self, key: str, value: bytes, *, tx_id: str = "") -> None:
        """Write (create or overwrite) key."""

    @abstractmethod
    def delete(self, key: str, *, tx_id: str = "") -> None:
        """Delete key. Deleting an absent key is not an error."""

    @abstractmethod
    def query(self, selector: Mapping[str, Any]) -> QueryIterator:
        """Iterator of KV pairs whose JSON documents match every selector field."""

    @abstractmethod
    def history(self, key: str) -> QueryIterator:
        """Iterator of HistoryEntry for key, oldest first."""

    def close(self) -> None:
        pass


def _observe(backend: str, op: str, t0: float) -> None:
    _STORE_OPS.labels(backend, op).inc()
    _STORE_LAT.labels(backend, op).observe(max(0.0, time.perf_counter() - t0))


# ------------------------------
# In-memory backend
# ------------------------------


class InMemoryLedgerStore(LedgerStore):
    """Process-local in-memory store (good for tests or single-worker dev)."""

    backend = "memory"

    def __init__(self):
        self._state: Dict[str, bytes] = {}
        self._history: Dict[str, List[HistoryEntry]] = {}
        self._lk = threading.RLock()

    def get(self, key: str) -> Optional[bytes]:
        t0 = time.perf_counter()
        with self._lk:
            out = self._state.get(_check_key(key))
        _observe(self.backend, "get", t0)
        return out

    def put(self, key: str, value: bytes, *, tx_id: str = "") -> None:
        t0 = time.perf_counter()
        key = _check_key(key)
        value = _check_value(value)
        with self._lk:
            self._state[key] = value
            self._history.setdefault(key, []).append(
                HistoryEntry(tx_id=tx_id, timestamp=_utc_now_iso(), is_delete=False, value=value)
            )
        _observe(self.backend, "put", t0)

    def delete(self, key: str, *, tx_id: str = "") -> None:
        t0 = time.perf_counter()
        key = _check_key(key)
        with self._lk:
            if self._state.pop(key, None) is not None:
                self._history.setdefault(key, []).append(
                    HistoryEntry(tx_id=tx_id, timestamp=_utc_now_iso(), is_delete=True, value=b"")
                )
        _observe(self.backend, "delete", t0)

    def query(self, selector: Mapping[str, Any]) -> QueryIterator:
        t0 = time.perf_counter()
        with self._lk:
            snapshot = list(self._state.items())
        rows = []
        for key, value in sorted(snapshot):
            if selector_matches(_decode_doc(value), selector):
                rows.append(KV(key, value))
        _observe(self.backend, "query", t0)
        return QueryIterator(rows)

    def history(self, key: str) -> QueryIterator:
        t0 = time.perf_counter()
        with self._lk:
            rows = list(self._history.get(_check_key(key), []))
        _observe(self.backend, "history", t0)
        return QueryIterator(rows)


# ------------------------------
# SQLite backend
# ------------------------------

_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS state (
    key      TEXT PRIMARY KEY,
    value    BLOB NOT NULL,
    doc_type TEXT
);
CREATE INDEX IF NOT EXISTS idx_state_doc_type ON state(doc_type);

CREATE TABLE IF NOT EXISTS history (
    seq       INTEGER PRIMARY KEY AUTOINCREMENT,
    key       TEXT NOT NULL,
    tx_id     TEXT NOT NULL DEFAULT '',
    ts        TEXT NOT NULL,
    is_delete INTEGER NOT NULL,
    value     BLOB
);
CREATE INDEX IF NOT EXISTS idx_history_key ON history(key, seq);
"""


class SQLiteLedgerStore(LedgerStore):
    """
    Durable single-file store. Single shared connection with
    check_same_thread=False guarded by a re-entrant lock; writes run in
    IMMEDIATE transactions so the state row and its history row land together.
    """

    backend = "sqlite"

    def __init__(self, path: str = "proofledger.db"):
        self._path = path
        self._lk = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    def _write(self, op: str, stmts) -> None:
        t0 = time.perf_counter()
        with self._lk:
            try:
                self._conn.execute("BEGIN IMMEDIATE;")
                try:
                    for sql, args in stmts:
                        self._conn.execute(sql, args)
                    self._conn.execute("COMMIT;")
                except Exception:
                    self._conn.execute("ROLLBACK;")
                    raise
            except sqlite3.Error as e:
                _STORE_ERRORS.labels(self.backend, op).inc()
                raise StoreError(f"sqlite {op} failed: {e}") from e
        _observe(self.backend, op, t0)

    def get(self, key: str) -> Optional[bytes]:
        t0 = time.perf_counter()
        key = _check_key(key)
        with self._lk:
            try:
                row = self._conn.execute("SELECT value FROM state WHERE key=?", (key,)).fetchone()
            except sqlite3.Error as e:
                _STORE_ERRORS.labels(self.backend, "get").inc()
                raise StoreError(f"sqlite get failed: {e}") from e
        _observe(self.backend, "get", t0)
        return bytes(row[0]) if row else None

    def put(self, key: str, value: bytes, *, tx_id: str = "") -> None:
        key = _check_key(key)
        value = _check_value(value)
        self._write(
            "put",
            [
                (
                    "INSERT INTO state (key, value, doc_type) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, doc_type=excluded.doc_type",
                    (key, value, _doc_type_of(value)),
                ),
                (
                    "INSERT INTO history (key, tx_id, ts, is_delete, value) VALUES (?, ?, ?, 0, ?)",
                    (key, tx_id or "", _utc_now_iso(), value),
                ),
            ],
        )

    def delete(self, key: str, *, tx_id: str = "") -> None:
        key = _check_key(key)
        with self._lk:
            if self.get(key) is None:
                return
            self._write(
                "delete",
                [
                    ("DELETE FROM state WHERE key=?", (key,)),
                    (
                        "INSERT INTO history (key, tx_id, ts, is_delete, value) VALUES (?, ?, ?, 1, ?)",
                        (key, tx_id or "", _utc_now_iso(), b""),
                    ),
                ],
            )

    def query(self, selector: Mapping[str, Any]) -> QueryIterator:
        t0 = time.perf_counter()
        doc_type = selector.get(DOC_TYPE_FIELD)
        with self._lk:
            try:
                if isinstance(doc_type, str):
                    cur = self._conn.execute(
                        "SELECT key, value FROM state WHERE doc_type=? ORDER BY key", (doc_type,)
                    )
                else:
                    cur = self._conn.execute("SELECT key, value FROM state ORDER BY key")
                fetched = cur.fetchall()
                cur.close()
            except sqlite3.Error as e:
                _STORE_ERRORS.labels(self.backend, "query").inc()
                raise StoreError(f"sqlite query failed: {e}") from e
        rows = [
            KV(str(k), bytes(v))
            for k, v in fetched
            if selector_matches(_decode_doc(bytes(v)), selector)
        ]
        _observe(self.backend, "query", t0)
        return QueryIterator(rows)

    def history(self, key: str) -> QueryIterator:
        t0 = time.perf_counter()
        key = _check_key(key)
        with self._lk:
            try:
                fetched = self._conn.execute(
                    "SELECT tx_id, ts, is_delete, value FROM history WHERE key=? ORDER BY seq",
                    (key,),
                ).fetchall()
            except sqlite3.Error as e:
                _STORE_ERRORS.labels(self.backend, "history").inc()
                raise StoreError(f"sqlite history failed: {e}") from e
        rows = [
            HistoryEntry(
                tx_id=str(tx or ""),
                timestamp=str(ts),
                is_delete=bool(is_del),
                value=bytes(v or b""),
            )
            for tx, ts, is_del, v in fetched
        ]
        _observe(self.backend, "history", t0)
        return QueryIterator(rows)

    def close(self) -> None:
        with self._lk:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.warning("failed to close sqlite ledger store", exc_info=True)


# ------------------------------
# Factory
# ------------------------------


def make_store(dsn: Optional[str]) -> LedgerStore:
    """
    Factory for LedgerStore backends.

    Accepted DSNs:
      - None, "" or "mem://"            -> InMemoryLedgerStore
      - "sqlite:///:memory:"            -> SQLiteLedgerStore(path=":memory:")
      - "sqlite:///path/to/ledger.db"   -> SQLiteLedgerStore(path="path/to/ledger.db")
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryLedgerStore()
    dsn = dsn.strip()
    if dsn.lower().startswith("sqlite:///"):
        path = dsn[len("sqlite:///"):]
        if path in (":memory:", ":mem:"):
            path = ":memory:"
        if not path:
            raise ValueError("sqlite dsn requires a path")
        return SQLiteLedgerStore(path=path)
    raise ValueError(f"Unsupported ledger store dsn: {dsn}")
