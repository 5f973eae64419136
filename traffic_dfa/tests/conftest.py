from __future__ import annotations

import random

import pytest

from traffic_dfa.scheduler import ManualScheduler
from traffic_dfa.simulator import IntersectionSimulator


@pytest.fixture
def clock() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def sim(clock: ManualScheduler) -> IntersectionSimulator:
    return IntersectionSimulator(scheduler=clock, rng=random.Random(7))
