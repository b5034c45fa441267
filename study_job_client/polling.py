import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from loguru import logger

from study_job_client.errors import TransportError
from study_job_client.events import EventEmitter
from study_job_client.models import (
    JobEvent,
    JobEventType,
    JobHandle,
    JobStatus,
    Observation,
    PollingPolicy,
    utc_now,
)
from study_job_client.stability import StabilityDetector

ObserveFn = Callable[[], Awaitable[Observation]]
SleepFn = Callable[[float], Awaitable[Any]]

_TERMINAL_EVENTS = {
    JobStatus.completed: JobEventType.settled,
    JobStatus.failed: JobEventType.failed,
    JobStatus.timed_out: JobEventType.timed_out,
    JobStatus.cancelled: JobEventType.cancelled,
}


class PollRun:
    """Book-keeping for one active poller."""

    def __init__(self, key: Hashable, handle: JobHandle) -> None:
        self.key = key
        self.handle = handle
        self.task: Optional["asyncio.Task[JobHandle]"] = None
        self.timer: Optional[asyncio.Future] = None
        self.cancelled = False


class PollingRegistry:
    """Jobs currently being polled, one entry per key.

    Check-and-insert happens synchronously before the poller's first await,
    so the event loop alone serialises access.
    """

    def __init__(self) -> None:
        self._runs: Dict[Hashable, PollRun] = {}

    def get(self, key: Hashable) -> Optional[PollRun]:
        run = self._runs.get(key)
        if run is not None and run.task is not None and run.task.done():
            del self._runs[key]
            return None
        return run

    def claim(self, run: PollRun) -> PollRun:
        """Insert ``run`` unless a live run already owns its key; return the owner."""
        existing = self.get(run.key)
        if existing is not None:
            return existing
        self._runs[run.key] = run
        return run

    def release(self, run: PollRun) -> None:
        if self._runs.get(run.key) is run:
            del self._runs[run.key]

    def keys(self):
        return list(self._runs)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._runs)


class PollingEngine:
    """Bounded, cancellable, single-flight polling of remote jobs."""

    def __init__(
        self,
        registry: Optional[PollingRegistry] = None,
        emitter: Optional[EventEmitter] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.registry = registry or PollingRegistry()
        self.emitter = emitter or EventEmitter()
        self._sleep = sleep or asyncio.sleep
        self.logger = logger

    @staticmethod
    def key_for(handle: JobHandle) -> Hashable:
        return (handle.kind, handle.resource_id or handle.id)

    def run(
        self,
        handle: JobHandle,
        observe: ObserveFn,
        policy: PollingPolicy,
        stability: Optional[StabilityDetector] = None,
        key: Optional[Hashable] = None,
    ) -> "asyncio.Task[JobHandle]":
        """Start polling ``handle`` and return the task resolving to its final state.

        A second call for a key that is already being polled returns the
        existing task instead of starting another timer.
        """
        key = key if key is not None else self.key_for(handle)
        existing = self.registry.get(key)
        if existing is not None:
            self.logger.debug(f"Already polling {key}, joining in-flight run")
            return existing.task

        run = PollRun(key, handle)
        run.task = asyncio.get_running_loop().create_task(
            self._poll(run, observe, policy, stability)
        )
        self.registry.claim(run)
        return run.task

    def is_polling(self, key: Hashable) -> bool:
        return key in self.registry

    def cancel(self, key: Hashable) -> bool:
        """Stop the poller for ``key``; returns False when there was nothing to stop."""
        run = self.registry.get(key)
        if run is None or run.cancelled:
            return False
        run.cancelled = True
        self._finish(run, JobStatus.cancelled)
        self.registry.release(run)
        if run.timer is not None and not run.timer.done():
            run.timer.cancel()
        return True

    def cancel_all(self) -> int:
        return sum(1 for key in self.registry.keys() if self.cancel(key))

    def _delay_for(self, policy: PollingPolicy, tick: int) -> float:
        """Seconds to wait before ``tick`` (1-based)."""
        if tick == 1:
            delay_ms = float(policy.first_delay_ms)
        else:
            delay_ms = policy.interval_ms * (policy.backoff_factor ** (tick - 2))
            if policy.max_interval_ms is not None:
                delay_ms = min(delay_ms, policy.max_interval_ms)

        # Add random jitter between 0-20% of the delay
        if policy.jitter:
            delay_ms *= 1 + 0.2 * random.random()
        return delay_ms / 1000

    async def _wait(self, run: PollRun, delay: float) -> None:
        self.logger.debug(f"Job {run.handle.id} waiting {delay:.2f}s before next poll")
        timer = asyncio.ensure_future(self._sleep(delay))
        run.timer = timer
        try:
            await timer
        except asyncio.CancelledError:
            if not run.cancelled:
                raise
        finally:
            run.timer = None

    async def _poll(
        self,
        run: PollRun,
        observe: ObserveFn,
        policy: PollingPolicy,
        stability: Optional[StabilityDetector],
    ) -> JobHandle:
        handle = run.handle
        try:
            while not run.cancelled and not handle.is_terminal:
                await self._wait(run, self._delay_for(policy, handle.attempts + 1))
                if run.cancelled:
                    break

                observation: Optional[Observation] = None
                try:
                    observation = await observe()
                except TransportError as polling_error:
                    self.logger.warning(
                        f"Error polling job {handle.id} (attempt {handle.attempts + 1}): {polling_error}"
                    )
                finally:
                    if not run.cancelled:
                        handle.attempts += 1
                        handle.last_polled_at = utc_now()

                if run.cancelled or handle.is_terminal:
                    self.logger.debug(f"Discarding observation for settled job {handle.id}")
                    break

                if observation is None:
                    if stability is not None:
                        stability.reset()
                    self._mark_processing(run, None)
                else:
                    self._apply(run, observation, stability)

                if not handle.is_terminal and handle.attempts >= policy.max_attempts:
                    self._finish(run, JobStatus.timed_out)
        except asyncio.CancelledError:
            run.cancelled = True
            self._finish(run, JobStatus.cancelled)
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error polling job {handle.id}: {e}")
            handle.error = str(e)
            self._finish(run, JobStatus.failed)
            raise
        finally:
            self.registry.release(run)
        return handle

    def _apply(
        self,
        run: PollRun,
        observation: Observation,
        stability: Optional[StabilityDetector],
    ) -> None:
        handle = run.handle
        previous = handle.last_observation
        handle.last_observation = observation

        if observation.status == JobStatus.failed:
            handle.error = observation.error or "Operation failed"
            self._finish(run, JobStatus.failed)
            return

        if stability is None:
            settled = observation.status == JobStatus.completed
        else:
            settled = stability.record(observation.metric)

        if settled:
            handle.result = observation.result
            self._finish(run, JobStatus.completed, metric=observation.metric)
        else:
            self._mark_processing(run, observation, previous)

    def _mark_processing(
        self,
        run: PollRun,
        observation: Optional[Observation],
        previous: Optional[Observation] = None,
    ) -> None:
        """Self-loop in Processing, emitting progress only when something moved."""
        handle = run.handle
        changed = handle.status != JobStatus.processing
        handle.transition(JobStatus.processing)
        if observation is not None and observation.metric is not None:
            changed = changed or previous is None or previous.metric != observation.metric
        if changed:
            self.emitter.emit(
                JobEvent(
                    type=JobEventType.progress,
                    kind=handle.kind,
                    handle_id=handle.id,
                    status=handle.status,
                    detail={
                        "attempts": handle.attempts,
                        "metric": observation.metric if observation else None,
                    },
                )
            )

    def _finish(self, run: PollRun, status: JobStatus, **detail: Any) -> bool:
        """Record a terminal status once; later calls are no-ops."""
        handle = run.handle
        if handle.is_terminal:
            return False
        handle.transition(status)
        if handle.error and status == JobStatus.failed:
            detail["error"] = handle.error
        detail["attempts"] = handle.attempts
        self.logger.info(f"Job {handle.id} ({handle.kind.value}) finished as {status.value}")
        self.emitter.emit(
            JobEvent(
                type=_TERMINAL_EVENTS[status],
                kind=handle.kind,
                handle_id=handle.id,
                status=status,
                detail=detail,
            )
        )
        return True
