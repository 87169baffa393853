"""Deterministic clock for tests that reason about guest windows and ordering."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone


T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable returning a fixed instant; `advance` moves time forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


__all__ = ["FakeClock", "T0"]
