import pytest

from study_job_client.events import EventEmitter
from study_job_client.models import JobEvent, JobEventType, JobKind


def make_event() -> JobEvent:
    return JobEvent(type=JobEventType.started, kind=JobKind.generation, handle_id="job-1")


def test_unsubscribe_stops_delivery():
    emitter = EventEmitter()
    received = []
    unsubscribe = emitter.subscribe(received.append)

    emitter.emit(make_event())
    unsubscribe()
    unsubscribe()
    emitter.emit(make_event())

    assert len(received) == 1


def test_raising_subscriber_does_not_block_others():
    emitter = EventEmitter()
    received = []

    def broken(event):
        raise RuntimeError("display layer crashed")

    emitter.subscribe(broken)
    emitter.subscribe(received.append)
    emitter.emit(make_event())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_coroutine_subscribers_are_scheduled():
    emitter = EventEmitter()
    received = []

    async def on_event(event):
        received.append(event.handle_id)

    emitter.subscribe(on_event)
    emitter.emit(make_event())
    await emitter.drain()

    assert received == ["job-1"]
