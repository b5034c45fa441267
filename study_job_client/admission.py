from typing import Any, Optional

from loguru import logger

from study_job_client.errors import StudyJobError
from study_job_client.models import AdmissionDecision, GenerationPayload, JobKind
from study_job_client.transport import JobBackend

# Credits consumed per generated flashcard or quiz question
CREDITS_PER_ITEM = 1


def units_for(kind: JobKind, payload: Any) -> int:
    """Credits an operation will consume; extraction jobs are free."""
    if kind == JobKind.generation and isinstance(payload, GenerationPayload):
        return payload.options.count * CREDITS_PER_ITEM
    return 0


class AdmissionController:
    """Advisory pre-flight credit check run right before each submission.

    The backend enforces the authoritative check at submission time; this one
    only keeps the client from starting work it already knows it cannot pay for.
    """

    def __init__(self, backend: JobBackend, cached_balance: Optional[int] = None):
        self.backend = backend
        self.cached_balance = cached_balance
        self.logger = logger

    async def check(self, kind: JobKind, requested_units: int) -> AdmissionDecision:
        from_cache = False
        try:
            snapshot = await self.backend.query_quota()
            available: Optional[int] = snapshot.available
            self.cached_balance = available
        except StudyJobError as e:
            available = self.cached_balance
            from_cache = available is not None
            self.logger.warning(
                f"Quota query failed for {kind.value} ({e}); "
                f"{'using cached balance' if from_cache else 'no cached balance'}"
            )

        if available is None:
            return AdmissionDecision(
                allowed=False,
                required_units=requested_units,
                reason="quota unknown",
            )

        if available >= requested_units:
            return AdmissionDecision(
                allowed=True,
                required_units=requested_units,
                available_units=available,
                from_cache=from_cache,
            )

        return AdmissionDecision(
            allowed=False,
            required_units=requested_units,
            available_units=available,
            reason=(
                f"Insufficient credits. You need {requested_units} credits but only "
                f"have {available}. Purchase more credits to continue."
            ),
            from_cache=from_cache,
        )

    async def refresh(self) -> Optional[int]:
        """Best-effort re-read of the balance after credits were spent."""
        try:
            snapshot = await self.backend.query_quota()
        except StudyJobError as e:
            self.logger.error(f"Failed to refresh credits: {e}")
            return self.cached_balance
        self.cached_balance = snapshot.available
        return self.cached_balance
