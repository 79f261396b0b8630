# studio_ingest/services/tracing.py
# Attempt observers: where extraction/generation attempts are reported.
# The pipeline only ever talks to an AttemptObserver; wrap real sinks in
# SafeObserver so a broken sink can never fail an upload or a preview.

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from studio_ingest.core.config import IngestConfig
from studio_ingest.core.logging import get_logger, image_logger
from studio_ingest.repositories.db import Repository, utcnow

log = get_logger("tracing")

TRACE_TYPES = (
    "metadata_extraction",
    "preview_extraction",
    "thumbnail_generation",
    "enhancement",
)


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class AttemptEvent:
    image_id: str
    session_id: str
    operation: str
    method: str
    order: int
    success: bool
    failure_reason: Optional[str] = None
    result_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionStarted:
    image_id: str
    session_id: str
    source_filename: str
    operation: str = "upload"


@dataclass(frozen=True)
class SessionEnded:
    image_id: str
    session_id: str
    success: bool
    error: Optional[str] = None


class AttemptObserver:
    """No-op observer. Subclass and override what you need."""

    def attempt(self, event: AttemptEvent) -> None:
        pass

    def session_started(self, event: SessionStarted) -> None:
        pass

    def session_ended(self, event: SessionEnded) -> None:
        pass


NullObserver = AttemptObserver


class LoggingObserver(AttemptObserver):
    def attempt(self, event: AttemptEvent) -> None:
        ilog = image_logger(log, event.image_id, event.session_id)
        if event.success:
            ilog.info("%s: #%d %s ok %s", event.operation, event.order, event.method, event.result_info)
        else:
            ilog.info("%s: #%d %s failed: %s", event.operation, event.order, event.method, event.failure_reason)

    def session_started(self, event: SessionStarted) -> None:
        image_logger(log, event.image_id, event.session_id).info(
            "session start (%s): %s", event.operation, event.source_filename)

    def session_ended(self, event: SessionEnded) -> None:
        ilog = image_logger(log, event.image_id, event.session_id)
        if event.success:
            ilog.info("session end: ok")
        else:
            ilog.warning("session end: failed: %s", event.error)


class SqliteTraceObserver(AttemptObserver, Repository):
    """Persists attempts to ingest_traces for the diagnostics views."""

    def attempt(self, event: AttemptEvent) -> None:
        with self._write() as c:
            c.execute(
                """INSERT INTO ingest_traces (image_id, session_id, trace_type, method, method_order,
                                              success, failure_reason, result_info, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (event.image_id, event.session_id, event.operation, event.method, event.order,
                 int(event.success), event.failure_reason, json.dumps(event.result_info), utcnow()),
            )

    def for_image(self, image_id: str) -> list[dict]:
        with self._read() as c:
            rows = c.execute(
                "SELECT * FROM ingest_traces WHERE image_id = ? ORDER BY id", (image_id,)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["success"] = bool(d["success"])
            d["result_info"] = json.loads(d["result_info"]) if d["result_info"] else {}
            out.append(d)
        return out

    def winning_methods(self, image_id: str) -> dict[str, str]:
        """Last successful method per trace type."""
        wins: dict[str, str] = {}
        for row in self.for_image(image_id):
            if row["success"]:
                wins[row["trace_type"]] = row["method"]
        return wins

    def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=retention_days)).isoformat(timespec="seconds")
        with self._write() as c:
            return c.execute("DELETE FROM ingest_traces WHERE created_at < ?", (cutoff,)).rowcount


class ObserverGroup(AttemptObserver):
    def __init__(self, observers: Iterable[AttemptObserver]) -> None:
        self.observers = list(observers)

    def attempt(self, event: AttemptEvent) -> None:
        for o in self.observers:
            o.attempt(event)

    def session_started(self, event: SessionStarted) -> None:
        for o in self.observers:
            o.session_started(event)

    def session_ended(self, event: SessionEnded) -> None:
        for o in self.observers:
            o.session_ended(event)


class SafeObserver(AttemptObserver):
    """Fire-and-forget: sink errors are logged and dropped."""

    def __init__(self, inner: AttemptObserver) -> None:
        self.inner = inner

    def _call(self, name: str, event) -> None:
        try:
            getattr(self.inner, name)(event)
        except Exception:
            log.warning("trace observer %s.%s failed", type(self.inner).__name__, name, exc_info=True)

    def attempt(self, event: AttemptEvent) -> None:
        self._call("attempt", event)

    def session_started(self, event: SessionStarted) -> None:
        self._call("session_started", event)

    def session_ended(self, event: SessionEnded) -> None:
        self._call("session_ended", event)


def build_observer(config: IngestConfig, db_path: Path) -> AttemptObserver:
    """Observer for one pipeline invocation, per [tracing] settings."""
    if not config.get("tracing.enabled", True):
        return AttemptObserver()
    sink = str(config.get("tracing.sink", "sqlite"))
    if sink == "sqlite":
        inner: AttemptObserver = ObserverGroup([
            SqliteTraceObserver(db_path, busy_timeout_ms=int(config.get("db.busy_timeout_ms", 30000))),
            LoggingObserver(),
        ])
    elif sink == "log":
        inner = LoggingObserver()
    else:
        return AttemptObserver()
    return SafeObserver(inner)
