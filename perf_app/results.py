"""
Aggregation of per-operation timings.

A :class:`TestResult` collects the durations and errors of one test phase
(for example "time to log in" for every simulated user) and renders the
quick smoke numbers the harness prints: count, min, max and average in
whole milliseconds, plus the first error or all of them.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from perf_app.errors import CancellationError


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


@dataclass
class TestResult:
    """
    Durations and errors of one test phase.

    Attributes:
        description: Label printed above the numbers.
        show_all_errors: Print every error instead of only the first.
        values: Durations in seconds, in the order they were added.
        errors: Errors in the order they were added.
    """

    __test__ = False  # not a pytest test class

    description: str
    show_all_errors: bool = False
    values: list[float] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, duration: float) -> None:
        with self._lock:
            self.values.append(duration)

    def add_error(self, error: BaseException) -> None:
        """Record *error*.  Cancellations are clean stops and are dropped."""
        if isinstance(error, CancellationError):
            return
        with self._lock:
            self.errors.append(error)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def min(self) -> float:
        return min(self.values, default=0.0)

    @property
    def max(self) -> float:
        return max(self.values, default=0.0)

    @property
    def ave(self) -> float:
        if not self.values:
            return 0.0
        return sum(self.values) / len(self.values)

    def render(self) -> str:
        lines = [
            self.description,
            f"count: {self.count}",
            f"min: {_ms(self.min)}ms",
            f"max: {_ms(self.max)}ms",
            f"ave: {_ms(self.ave)}ms",
        ]
        if self.errors:
            lines.append(f"error count: {self.error_count}")
            if self.show_all_errors:
                lines.extend(f"{i:3d} error: {err}" for i, err in enumerate(self.errors, start=1))
            else:
                lines.append(f"first error: {self.errors[0]}")
        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return self.render()
