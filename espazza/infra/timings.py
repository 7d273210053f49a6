"""In-process latency samples keyed by operation name.

Only the event loop appends, so there are no locks. Statistics are computed
when someone asks for them (``GET /api/admin/timings``).
"""
from __future__ import annotations

import statistics
import time
from collections import defaultdict
from typing import DefaultDict, Dict, List

# newest samples per kind; older ones are dropped
MAX_SAMPLES = 10_000

_SAMPLES: DefaultDict[str, List[float]] = defaultdict(list)


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES[kind]
    samples.append(float(seconds))
    if len(samples) > MAX_SAMPLES:
        del samples[: len(samples) - MAX_SAMPLES]


class timeit:
    """async usage:
        async with timeit("ledger.reserve"):
            await fn()
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


def _summary(kind: str, values: List[float]) -> Dict[str, float]:
    return {
        "kind": kind,
        "n": len(values),
        "mean": statistics.fmean(values),
        "std": statistics.stdev(values) if len(values) > 1 else 0.0,
        "max": max(values),
    }


def aggregates() -> List[Dict[str, float]]:
    return [_summary(kind, values)
            for kind, values in sorted(_SAMPLES.items()) if values]


def reset() -> None:
    _SAMPLES.clear()
