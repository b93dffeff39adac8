"""
Build timing for kiln.

A BuildTimer measures the phases of one run and, separately, each entry
point. Entry points are bundled on worker threads, so recording is locked.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator


def format_duration(seconds: float) -> str:
    """Short human-readable duration: 850ms, 2.3s, 1m04s."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remaining = divmod(int(round(seconds)), 60)
    return f"{minutes}m{remaining:02d}s"


class BuildTimer:
    """Monotonic wall-clock timings for a build run."""

    def __init__(self) -> None:
        self.phases: dict[str, float] = {}
        self.entries: dict[str, float] = {}
        self._started = time.monotonic()
        self._lock = threading.Lock()

    @contextmanager
    def _measure(self, into: dict[str, float], name: str) -> Iterator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            duration = round(time.monotonic() - start, 3)
            with self._lock:
                into[name] = duration

    def phase(self, name: str):
        """Time a build phase; the duration is kept even if the phase fails."""
        return self._measure(self.phases, name)

    def entry(self, name: str):
        """Time the bundling of one entry point."""
        return self._measure(self.entries, name)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def summary(self) -> str:
        """One line per run, e.g. `prepare_output: 2ms | bundle: 1.4s | total: 1.4s`."""
        with self._lock:
            phases = dict(self.phases)
        if not phases:
            return "(no timing data)"
        parts = [f"{name}: {format_duration(duration)}" for name, duration in phases.items()]
        parts.append(f"total: {format_duration(sum(phases.values()))}")
        return " | ".join(parts)
