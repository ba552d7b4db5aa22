# seatxfer/infra/timings.py
from __future__ import annotations
import logging
import statistics
import time
from typing import Dict, List

from fastapi import FastAPI, Request

logger = logging.getLogger("seatxfer.http")

# ------------ hot path: append only ------------
# one list per kind; single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}

# keep memory bounded for long-running pollers
_MAX_SAMPLES = 1000


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))
    if len(lst) > _MAX_SAMPLES:
        del lst[: len(lst) - _MAX_SAMPLES]


class timeit:
    """async usage:
        async with timeit("mail.fetch"):
            await fn()
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


def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> Dict[str, Dict[str, float]]:
    """Aggregates per kind: ``{"n", "mean_ms", "std_ms", "last_ms"}``."""
    out = {}
    for kind, vals in _TIMINGS.items():
        mean, std = _mean_std(vals)
        out[kind] = {
            "n": len(vals),
            "mean_ms": round(mean * 1000, 3),
            "std_ms": round(std * 1000, 3),
            "last_ms": round(vals[-1] * 1000, 3) if vals else 0.0,
        }
    return out


def reset() -> None:
    _TIMINGS.clear()


def format_access_line(method: str, path: str, status: int,
                       duration_ms: float) -> str:
    line = f"{method} {path} {status} in {duration_ms:.0f}ms"
    if len(line) > 80:
        line = line[:79] + "…"
    return line


def install_access_log(app: FastAPI, prefix: str = "/api") -> None:
    """Log one line per request below ``prefix`` and time it per route."""

    @app.middleware("http")
    async def _access_log(request: Request, call_next):
        path = request.url.path
        if not path.startswith(prefix):
            return await call_next(request)
        t0 = now_ts()
        response = await call_next(request)
        elapsed = now_ts() - t0
        # route template, so /api/x/{id} is one kind
        route = request.scope.get("route")
        record_timing(
            f"http.{request.method} {getattr(route, 'path', path)}", elapsed
        )
        logger.info(format_access_line(
            request.method, path, response.status_code, elapsed * 1000
        ))
        return response
