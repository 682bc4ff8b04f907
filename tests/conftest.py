"""Shared fixtures."""

from __future__ import annotations

import pytest

from tests.helpers import FakeClock, RecordingSleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorded_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)
