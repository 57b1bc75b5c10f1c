"""
Timing helpers for observability.

- Durations use monotonic time (immune to clock changes)
- One metric = one METRIC_TIMER log event, never aggregated
- Prefer `timed()` so a timer can never leak
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


def emit_timer(
    name: str,
    duration_ms: int,
    *,
    session_id: str | None = None,
    channel: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a single duration metric."""
    log_event({
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        "session_id": session_id,
        "channel": channel,
        "details": details or {},
    })


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    channel: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Measure the duration of the enclosed block.

    Yields a mutable details dict so the block can attach outcome fields
    (e.g. {"outcome": "timeout"}) before the metric is emitted.

    The metric is emitted exactly once, even if the block raises or is
    cancelled.

    Usage:
        with timed("assistance_latency", session_id=sid) as extra:
            result = await generate(...)
            extra["attempts"] = 1
    """
    extra: dict[str, Any] = dict(details or {})
    start_ns = time.monotonic_ns()
    try:
        yield extra
    finally:
        emit_timer(
            name,
            (time.monotonic_ns() - start_ns) // 1_000_000,
            session_id=session_id,
            channel=channel,
            details=extra,
        )
