from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from telemetry.config import TelemetrySettings
from telemetry.sql import (
    CREATE_EVENTS_TABLE_SQL,
    INSERT_EVENTS_SQL,
    SLOWEST_SQL_TEMPLATE,
    SUMMARY_SQL_TEMPLATE,
)

logger = logging.getLogger(__name__)


def _safe_float(v) -> float | None:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _where(
    *, collection: str | None, query_type: str | None, since_ms: int | None = None
) -> tuple[list[str], list[Any]]:
    where: list[str] = []
    params: list[Any] = []
    if collection:
        where.append("collection = ?")
        params.append(collection)
    if query_type:
        where.append("query_type = ?")
        params.append(query_type)
    if since_ms is not None:
        where.append("ts_ms >= ?")
        params.append(int(since_ms))
    return where, params


@dataclass
class TelemetryStore:
    """
    Per-query latency events in a local DuckDB file.

    `record()` never blocks a request: events go onto a bounded queue and a single
    writer thread batches them into DuckDB. A full queue drops the event.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    max_queued: int = 10_000
    batch_size: int = 250
    flush_interval_s: float = 0.5
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[tuple]" = field(init=False, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)
    dropped: int = 0

    def __post_init__(self) -> None:
        self._q = queue.Queue(maxsize=self.max_queued)

    @classmethod
    def open(cls, settings: TelemetrySettings) -> "TelemetryStore":
        settings.path.parent.mkdir(parents=True, exist_ok=True)
        store = cls(
            path=settings.path,
            conn=duckdb.connect(str(settings.path)),
            max_queued=settings.max_queued,
            batch_size=settings.batch_size,
            flush_interval_s=settings.flush_interval_s,
        )
        store.ensure_schema()
        return store

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="telemetry-writer", daemon=True)
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        """Stop the writer thread; queued events are flushed on the way out."""
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        collection: str,
        query_type: str,
        plan: str,
        format: str,
        limit: int,
        number_returned: int,
        total_ms: float,
    ) -> None:
        self.start()
        try:
            self._q.put_nowait(
                (
                    int(time.time() * 1000),
                    str(collection),
                    str(query_type),
                    str(plan),
                    str(format),
                    int(limit),
                    int(number_returned),
                    float(total_ms),
                )
            )
        except queue.Full:
            # drop telemetry on overload
            self.dropped += 1

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Wait until queued events are written (used by tests).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                break
            time.sleep(0.01)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        """
        Run a read query inside the serving process.

        DuckDB locks the file across processes, so reads go through here rather than
        a second connection.
        """
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        collection: str | None = None,
        query_type: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = _where(collection=collection, query_type=query_type, since_ms=since_ms)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)

        out: list[dict[str, Any]] = []
        for qtype, fmt, n, avg_ms, p50, p95, p99, avg_returned in rows:
            out.append(
                {
                    "queryType": qtype,
                    "format": fmt,
                    "n": int(n),
                    "avgTotalMs": _safe_float(avg_ms),
                    "p50TotalMs": _safe_float(p50),
                    "p95TotalMs": _safe_float(p95),
                    "p99TotalMs": _safe_float(p99),
                    "avgReturned": _safe_float(avg_returned),
                }
            )
        return out

    def slowest(
        self,
        *,
        collection: str | None = None,
        query_type: str | None = None,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        where, params = _where(collection=collection, query_type=query_type)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        params.append(int(max(1, min(200, limit))))
        rows = self.query(SLOWEST_SQL_TEMPLATE.format(where_sql=where_sql), params)

        out: list[dict[str, Any]] = []
        for ts_ms, coll, qtype, plan, fmt, limit_n, returned, total_ms in rows:
            out.append(
                {
                    "tsMs": int(ts_ms),
                    "collection": coll,
                    "queryType": qtype,
                    "plan": plan,
                    "format": fmt,
                    "limit": int(limit_n),
                    "numberReturned": int(returned),
                    "totalMs": _safe_float(total_ms),
                }
            )
        return out

    def reset(self) -> None:
        # Stop the writer first so it cannot write to a closed connection.
        self.stop(timeout_s=2.0)
        with self._lock:
            self.conn.close()
            self.path.unlink(missing_ok=True)

    def _run(self) -> None:
        batch: list[tuple] = []
        last_flush = time.time()

        def flush_batch() -> None:
            nonlocal batch
            if not batch:
                return
            try:
                with self._lock:
                    self.conn.executemany(INSERT_EVENTS_SQL, batch)
                    # Make results visible to readers immediately.
                    self.conn.execute("CHECKPOINT;")
            except duckdb.Error:
                logger.exception("Dropping %d telemetry events", len(batch))
            finally:
                for _ in batch:
                    self._q.task_done()
                batch = []

        while not self._stop.is_set():
            try:
                batch.append(self._q.get(timeout=0.1))
            except queue.Empty:
                pass

            # Flush on size or time.
            now = time.time()
            due = batch and (now - last_flush) >= self.flush_interval_s
            if len(batch) >= self.batch_size or due or (batch and self._q.empty()):
                flush_batch()
                last_flush = now

        # Drain remaining
        while True:
            try:
                batch.append(self._q.get_nowait())
            except queue.Empty:
                break
        flush_batch()
