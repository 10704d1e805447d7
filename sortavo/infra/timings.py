# sortavo/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# Latencies per REST call kind, e.g. "rest.patch" -> [0.12, 0.09, ...].
# Only touched from the driver's event loop, so a plain dict will do.
_TIMINGS: Dict[str, List[float]] = {}


def now_ts() -> float:
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("rest.patch"):
            await fn()

    Failed calls are recorded too; a timeout is still a latency.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ aggregation for the run summary ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def summary() -> Dict[str, Dict[str, float]]:
    # {"rest.patch": {"n": 3, "mean": 0.12, "std": 0.01}, ...}
    out = {}
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out[kind] = {"n": len(vals), "mean": mean, "std": std}
    return out


def reset() -> None:
    _TIMINGS.clear()
