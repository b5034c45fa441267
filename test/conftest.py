from typing import List

import pytest
from fakes import VirtualClock

from study_job_client.events import EventEmitter
from study_job_client.models import JobEvent, PollingPolicy


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def events() -> List[JobEvent]:
    return []


@pytest.fixture
def emitter(events) -> EventEmitter:
    emitter = EventEmitter()
    emitter.subscribe(events.append)
    return emitter


@pytest.fixture
def policy() -> PollingPolicy:
    return PollingPolicy(interval_ms=1000, max_attempts=5, initial_delay_ms=2000)
