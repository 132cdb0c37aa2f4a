# orderwatch/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Any, Dict, List

# kind -> durations in seconds; the event loop is the only writer
_TIMINGS: Dict[str, List[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    _TIMINGS.setdefault(kind, []).append(float(seconds))


class timeit:
    """async usage:
        async with timeit("fetch.order_details"):
            await fetch(order_id)

    Failed calls are recorded too.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def _summary(kind: str, values: List[float]) -> Dict[str, Any]:
    ordered = sorted(values)
    return {
        "kind": kind,
        "n": len(ordered),
        "mean": statistics.fmean(ordered),
        "std": statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
        "max": ordered[-1],
    }


def snapshot() -> List[Dict[str, Any]]:
    """One summary per kind, sorted by kind. Computed on demand."""
    return [_summary(k, v) for k, v in sorted(_TIMINGS.items()) if v]


def reset() -> None:
    _TIMINGS.clear()
