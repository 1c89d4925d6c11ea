from __future__ import annotations

import pytest

from helpers import MONDAY_9, FakeClock, make_engine
from stepwatch import WorkflowEngine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY_9)


@pytest.fixture
def engine(clock: FakeClock) -> WorkflowEngine:
    return make_engine(clock)
