# studio_ingest/services/fallback.py
# Ordered fallback chains.
#
# A chain is data: a list of (method name, callable). Each callable returns a
# MethodResult on success, None when it found nothing, or raises. The runner
# stops at the first success and reports one AttemptEvent per method tried.

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Mapping, Optional, Sequence, TypeVar

from studio_ingest.core.errors import (
    ConfigurationError,
    IngestError,
    SourceUnreadableError,
    ToolExecutionError,
    ToolTimeoutError,
    ToolUnavailableError,
)
from studio_ingest.core.logging import get_logger
from studio_ingest.services.tracing import AttemptEvent, AttemptObserver

log = get_logger("fallback")

T = TypeVar("T")

# failure kinds recorded on attempts
NOT_FOUND = "not_found"
TOO_SMALL = "too_small"
TOOL_UNAVAILABLE = "tool_unavailable"
TIMEOUT = "timeout"
TOOL_FAILED = "tool_failed"
DECODE_ERROR = "decode_error"
UNKNOWN_METHOD = "unknown_method"


class MethodFailed(Exception):
    """Raised by a chain method to report a typed, expected failure."""

    def __init__(self, reason: str, kind: str = DECODE_ERROR) -> None:
        super().__init__(reason)
        self.reason = reason
        self.kind = kind


@dataclass
class MethodResult(Generic[T]):
    value: T
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class Attempt:
    method: str
    order: int
    success: bool
    failure_reason: Optional[str] = None
    failure_kind: Optional[str] = None
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChainOutcome(Generic[T]):
    status: str                      # "success" | "failure"
    value: Optional[T] = None
    method: Optional[str] = None
    order: Optional[int] = None
    info: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def tool_unavailable(self) -> bool:
        """Some method could not run because the external tool is missing."""
        return any(a.failure_kind == TOOL_UNAVAILABLE for a in self.attempts)


def _classify(exc: Exception) -> tuple[str, str]:
    if isinstance(exc, MethodFailed):
        return exc.kind, exc.reason
    if isinstance(exc, ToolUnavailableError):
        return TOOL_UNAVAILABLE, str(exc)
    if isinstance(exc, ToolTimeoutError):
        return TIMEOUT, str(exc)
    if isinstance(exc, ToolExecutionError):
        return TOOL_FAILED, str(exc)
    return DECODE_ERROR, f"{type(exc).__name__}: {exc}"


def build_chain(names: Sequence[str], table: Mapping[str, Callable[[], Optional[MethodResult]]],
                *, always_last: Optional[str] = None) -> list[tuple[str, Optional[Callable]]]:
    """
    Resolve configured method names against the strategy table.
    Unknown names are kept (with no callable) so the attempt is still reported.
    `always_last` is appended after the configured names if not already last.
    """
    ordered = [n for n in names if n != always_last]
    if always_last:
        ordered.append(always_last)
    return [(n, table.get(n)) for n in ordered]


def run_chain(chain: Sequence[tuple[str, Optional[Callable[[], Optional[MethodResult]]]]], *,
              observer: AttemptObserver, image_id: str, session_id: str, operation: str) -> ChainOutcome:
    """
    Try each method in order until one succeeds.
    Only SourceUnreadableError and ConfigurationError escape; every other
    failure is an attempt.
    """
    outcome: ChainOutcome = ChainOutcome(status="failure")
    for order, (name, fn) in enumerate(chain, start=1):
        started = time.perf_counter()
        result = None
        kind = reason = None
        if fn is None:
            kind, reason = UNKNOWN_METHOD, f"no strategy registered for '{name}'"
        else:
            try:
                result = fn()
                if result is None:
                    kind, reason = NOT_FOUND, f"{name}: nothing found"
            except (SourceUnreadableError, ConfigurationError):
                raise
            except IngestError as e:
                kind, reason = _classify(e)
            except Exception as e:  # decoder bugs, corrupt files, ...
                log.debug("%s method %s raised", operation, name, exc_info=True)
                kind, reason = _classify(e)
        duration_ms = round((time.perf_counter() - started) * 1000, 1)

        if result is not None:
            info = {"duration_ms": duration_ms, **result.info}
            attempt = Attempt(name, order, True, info=info)
        else:
            info = {"duration_ms": duration_ms}
            attempt = Attempt(name, order, False, failure_reason=reason, failure_kind=kind, info=info)
        outcome.attempts.append(attempt)
        observer.attempt(AttemptEvent(
            image_id=image_id,
            session_id=session_id,
            operation=operation,
            method=name,
            order=order,
            success=attempt.success,
            failure_reason=attempt.failure_reason,
            result_info=info,
        ))

        if result is not None:
            outcome.status = "success"
            outcome.value = result.value
            outcome.method = name
            outcome.order = order
            outcome.info = info
            outcome.error = outcome.error_kind = None
            return outcome

        outcome.error, outcome.error_kind = reason, kind

    if not outcome.attempts:
        outcome.error, outcome.error_kind = "no methods configured", UNKNOWN_METHOD
    return outcome
