"""Test doubles: controllable clock, scripted RNG and recorded sleeps."""

from __future__ import annotations


class FakeClock:
    """Manually advanced clock usable as both wall and monotonic time."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SequenceRandom:
    """``random.Random`` stand-in returning a fixed, repeating sequence."""

    def __init__(self, *values: float) -> None:
        self._values = list(values) or [0.5]
        self._index = 0

    def random(self) -> float:
        value = self._values[self._index % len(self._values)]
        self._index += 1
        return value


class RecordingSleep:
    """Async sleep that records delays and advances an optional clock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


