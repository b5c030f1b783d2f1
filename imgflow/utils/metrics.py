"""
Process-local counters and latency samples for the task engine.

Counter names used by the engine:
    task.completed / task.completed_stale / task.retry / task.failed
    task.timeout
    batch.rounds
    <provider>.<step>.success / <provider>.<step>.error
    gateway.<service>.circuit_open

Latency samples are kept per provider step in a bounded window. Everything
here is served by GET /api/tasks/metrics and reset between tests.
"""

import time
from collections import Counter, deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict

from imgflow.utils.logger import get_logger

logger = get_logger()

SAMPLE_WINDOW = 500

_counters: Counter = Counter()
_samples: Dict[str, Deque[float]] = {}


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def observe(name: str, value: float) -> None:
    window = _samples.get(name)
    if window is None:
        window = _samples[name] = deque(maxlen=SAMPLE_WINDOW)
    window.append(value)


def _percentile(ordered: list, fraction: float) -> float:
    index = min(int(len(ordered) * fraction), len(ordered) - 1)
    return round(ordered[index], 1)


@asynccontextmanager
async def track_duration(provider: str, step: str = "call"):
    """Time one provider call and count it as success or error.

        async with track_duration("volcengine", "outpaint"):
            data = await call_cv_process(...)
    """
    key = f"{provider}.{step}"
    started = time.monotonic()
    outcome = "error"
    try:
        yield
        outcome = "success"
    finally:
        elapsed_ms = (time.monotonic() - started) * 1000
        observe(f"{key}.duration_ms", elapsed_ms)
        inc(f"{key}.{outcome}")
        log = logger.info if outcome == "success" else logger.warning
        log(
            "provider.call",
            extra={
                "provider": provider,
                "step": step,
                "status": outcome,
                "duration_ms": round(elapsed_ms, 1),
            },
        )


def get_snapshot() -> Dict[str, Any]:
    latencies = {}
    for name, window in _samples.items():
        if not window:
            continue
        ordered = sorted(window)
        latencies[name] = {
            "count": len(ordered),
            "p50": _percentile(ordered, 0.5),
            "p95": _percentile(ordered, 0.95),
            "max": round(ordered[-1], 1),
        }
    return {"counters": dict(_counters), "histograms": latencies}


def reset() -> None:
    _counters.clear()
    _samples.clear()
