"""
In-process job metrics.

Counters for job outcomes (jobs.<lane>.completed / failed / lease_lost) and
rolling latency samples for handlers and inference calls. Read through
get_snapshot() on /health/queues; nothing is exported.
"""
import time
from collections import Counter, defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict

from pantry_jobs.utils.logger import get_logger

logger = get_logger("pantry_jobs.metrics")

SAMPLE_WINDOW = 500

_counters: Counter = Counter()
_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=SAMPLE_WINDOW))


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def observe(name: str, value: float) -> None:
    _samples[name].append(value)


def _percentile(ordered, fraction: float) -> float:
    index = min(int(len(ordered) * fraction), len(ordered) - 1)
    return round(ordered[index], 1)


@asynccontextmanager
async def track_duration(kind: str, name: str):
    """
    Time an awaited block and count its outcome.

    Records <kind>.<name>.duration_ms plus a .success or .error counter:
        async with track_duration("handler", "image-processing"):
            result = await handler(db, job, payload)
    """
    started = time.monotonic()
    outcome = "error"
    try:
        yield
        outcome = "success"
    finally:
        elapsed_ms = (time.monotonic() - started) * 1000
        observe(f"{kind}.{name}.duration_ms", elapsed_ms)
        inc(f"{kind}.{name}.{outcome}")
        logger.debug(
            "metrics.timed",
            extra={"service": kind, "queue": name, "duration_ms": round(elapsed_ms, 1), "status": outcome},
        )


def get_snapshot() -> Dict[str, Any]:
    latencies = {}
    for name, samples in _samples.items():
        if not samples:
            continue
        ordered = sorted(samples)
        latencies[name] = {
            "count": len(ordered),
            "p50": _percentile(ordered, 0.5),
            "p95": _percentile(ordered, 0.95),
            "max": round(ordered[-1], 1),
        }
    return {"counters": dict(_counters), "latency_ms": latencies}


def reset() -> None:
    _counters.clear()
    _samples.clear()
