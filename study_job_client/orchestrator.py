import asyncio
from typing import Any, Callable, Dict, Hashable, Optional

from loguru import logger

from study_job_client.admission import AdmissionController, units_for
from study_job_client.config import StudyJobSettings, get_settings
from study_job_client.errors import (
    AdmissionError,
    JobCancelled,
    JobFailedError,
    JobTimedOut,
    ResolutionError,
    ValidationError,
)
from study_job_client.events import EventCallback, EventEmitter
from study_job_client.models import (
    Artifact,
    JobEvent,
    JobEventType,
    JobHandle,
    JobKind,
    JobStatus,
    Observation,
    PollingPolicy,
)
from study_job_client.polling import PollingEngine, SleepFn
from study_job_client.resolver import ResultResolver
from study_job_client.stability import StabilityDetector
from study_job_client.submitter import JobSubmitter
from study_job_client.transport import JobBackend

# Kinds whose results are written incrementally and need a settled metric
STABILITY_KINDS = frozenset({JobKind.text_extraction, JobKind.topic_extraction})


class JobRun:
    """Cancellation handle for one orchestrated job."""

    def __init__(
        self,
        facade: "OrchestrationFacade",
        kind: JobKind,
        payload: Any,
        requested_units: int,
        resource_id: Optional[str] = None,
        baseline_metric: Optional[float] = None,
    ):
        self.facade = facade
        self.kind = kind
        self.payload = payload
        self.requested_units = requested_units
        self.resource_id = resource_id
        self.baseline_metric = baseline_metric
        self.handle: Optional[JobHandle] = None
        self.poll_key: Optional[Hashable] = None
        self.run_key: Optional[Hashable] = None
        self.cancelled = False
        self._task: Optional["asyncio.Task[Artifact]"] = None
        self.logger = logger

    @property
    def status(self) -> Optional[JobStatus]:
        return self.handle.status if self.handle is not None else None

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        """Tear the run down; repeated calls and finished runs are no-ops."""
        if self.cancelled or self.done():
            return False
        self.cancelled = True
        self.logger.info(f"Cancelling {self.kind.value} run (job={self.handle.id if self.handle else None})")
        if self.poll_key is not None:
            self.facade.engine.cancel(self.poll_key)
        self.facade._forget(self)
        return True

    async def result(self) -> Artifact:
        """Wait for the artifact; callers abandoning the wait do not stop the run."""
        return await asyncio.shield(self._task)


class OrchestrationFacade:
    """Admission, submission, polling and resolution behind one call per job."""

    def __init__(
        self,
        backend: JobBackend,
        settings: Optional[StudyJobSettings] = None,
        emitter: Optional[EventEmitter] = None,
        sleep: Optional[SleepFn] = None,
        policies: Optional[Dict[JobKind, PollingPolicy]] = None,
        cached_balance: Optional[int] = None,
    ):
        self.backend = backend
        self.settings = settings or get_settings()
        self.emitter = emitter or EventEmitter()
        self.policies = policies or {}
        self.admission = AdmissionController(backend, cached_balance=cached_balance)
        self.submitter = JobSubmitter(backend)
        self.resolver = ResultResolver(backend)
        self.engine = PollingEngine(emitter=self.emitter, sleep=sleep)
        # Dedup by study set or upload; every unfinished run, keyed by identity
        self._runs: Dict[Hashable, JobRun] = {}
        self._active: Dict[int, JobRun] = {}
        self.logger = logger

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self.emitter.subscribe(callback)

    def policy_for(self, kind: JobKind) -> PollingPolicy:
        return self.policies.get(kind) or self.settings.policy_for(kind)

    def start(
        self,
        kind: JobKind,
        payload: Any,
        requested_units: Optional[int] = None,
        resource_id: Optional[str] = None,
        baseline_metric: Optional[float] = None,
    ) -> JobRun:
        """Begin orchestrating a job and return its cancellation handle.

        Invalid payloads raise ``ValidationError`` here, before anything runs.
        A run already in flight for the same study set or upload is returned
        as-is instead of submitting again.
        """
        parsed = self.submitter.validate(kind, payload)
        if requested_units is None:
            requested_units = units_for(kind, parsed)
        if requested_units < 0:
            raise ValidationError("Requested units cannot be negative", field="requested_units")

        if resource_id is None and kind != JobKind.generation:
            resource_id = getattr(parsed, "study_set_id", None) or getattr(parsed, "upload_id", None)

        run_key = (kind, resource_id) if resource_id else None
        if run_key is not None:
            existing = self._runs.get(run_key)
            if existing is not None and not existing.done() and not existing.cancelled:
                self.logger.debug(f"Run for {run_key} already in flight")
                return existing

        run = JobRun(self, kind, parsed, requested_units, resource_id, baseline_metric)
        run.run_key = run_key
        run._task = asyncio.get_running_loop().create_task(self._execute(run))
        self._active[id(run)] = run
        if run_key is not None:
            self._runs[run_key] = run
        run._task.add_done_callback(lambda _: self._forget(run))
        return run

    async def orchestrate(
        self,
        kind: JobKind,
        payload: Any,
        requested_units: Optional[int] = None,
        **kwargs: Any,
    ) -> Artifact:
        return await self.start(kind, payload, requested_units, **kwargs).result()

    def cancel_all(self) -> None:
        for run in list(self._active.values()):
            run.cancel()
        self.engine.cancel_all()

    def _forget(self, run: JobRun) -> None:
        self._active.pop(id(run), None)
        if run.run_key is not None and self._runs.get(run.run_key) is run:
            del self._runs[run.run_key]

    def _emit(self, event_type: JobEventType, handle: JobHandle, **detail: Any) -> None:
        self.emitter.emit(
            JobEvent(
                type=event_type,
                kind=handle.kind,
                handle_id=handle.id,
                status=handle.status,
                detail=detail,
            )
        )

    def _stability_for(self, handle: JobHandle, policy: PollingPolicy, baseline: Optional[float]):
        if handle.kind not in STABILITY_KINDS:
            return None
        if handle.baseline_metric is not None:
            baseline = handle.baseline_metric
        return StabilityDetector(policy.required_stable_reads, baseline=baseline or 0)

    async def _execute(self, run: JobRun) -> Artifact:
        kind = run.kind
        if run.requested_units > 0:
            decision = await self.admission.check(kind, run.requested_units)
            if not decision.allowed:
                self.logger.info(f"Admission denied for {kind.value}: {decision.reason}")
                raise AdmissionError(decision.reason or "quota unknown", decision=decision)

        if run.cancelled:
            raise JobCancelled()

        handle = await self.submitter.submit(kind, run.payload, resource_id=run.resource_id)
        run.handle = handle
        self._emit(JobEventType.started, handle, resource_id=handle.resource_id)

        if run.cancelled:
            handle.transition(JobStatus.cancelled)
            self._emit(JobEventType.cancelled, handle, attempts=0)
            raise JobCancelled(handle)

        policy = self.policy_for(kind)
        stability = self._stability_for(handle, policy, run.baseline_metric)
        run.poll_key = PollingEngine.key_for(handle)

        handle = await self.engine.run(
            handle,
            lambda: self.backend.observe_operation(handle.kind, handle.id),
            policy,
            stability,
            key=run.poll_key,
        )
        return await self._settle(handle)

    async def _settle(self, handle: JobHandle) -> Artifact:
        if handle.status == JobStatus.failed:
            raise JobFailedError(handle)
        if handle.status == JobStatus.timed_out:
            raise JobTimedOut(handle)
        if handle.status == JobStatus.cancelled:
            raise JobCancelled(handle)

        artifact = await self.resolve(handle)
        if handle.kind == JobKind.generation:
            await self.admission.refresh()
        return artifact

    async def resolve(self, handle: JobHandle) -> Artifact:
        try:
            artifact = await self.resolver.resolve(handle)
        except ResolutionError as e:
            self._emit(
                JobEventType.resolution_failed,
                handle,
                error=e.message,
                retryable=e.retryable,
            )
            raise
        self._emit(JobEventType.resolved, handle, metric=artifact.metric)
        return artifact

    async def refetch(self, handle: JobHandle) -> Artifact:
        """Retry artifact retrieval for a completed job without re-submitting it."""
        return await self.resolve(handle)

    async def recheck(self, handle: JobHandle) -> Optional[Artifact]:
        """Observe a timed-out job once more.

        Returns the artifact when the job has since finished, ``None`` while it
        is still running, and raises ``JobFailedError`` if it failed. The
        timed-out handle itself stays terminal; a fresh handle carries the result.
        """
        if handle.status != JobStatus.timed_out:
            raise ValueError(f"Only timed-out jobs can be re-checked, got {handle.status.value}")

        observation: Observation = await self.backend.observe_operation(handle.kind, handle.id)
        fresh = JobHandle(
            id=handle.id,
            kind=handle.kind,
            resource_id=handle.resource_id,
            baseline_metric=handle.baseline_metric,
            attempts=handle.attempts + 1,
            last_observation=observation,
        )

        if observation.status == JobStatus.failed:
            fresh.error = observation.error or "Operation failed"
            fresh.transition(JobStatus.failed)
            raise JobFailedError(fresh)

        if handle.kind in STABILITY_KINDS:
            detector = StabilityDetector(1, baseline=handle.baseline_metric or 0)
            finished = detector.record(observation.metric)
        else:
            finished = observation.status == JobStatus.completed

        if not finished:
            self.logger.info(f"Job {handle.id} is still running")
            return None

        fresh.result = observation.result
        fresh.transition(JobStatus.completed)
        return await self.resolve(fresh)
