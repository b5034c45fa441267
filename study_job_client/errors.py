"""
Exception hierarchy for study job orchestration.

Every error raised by the client carries a human-readable message plus a
``details`` mapping with the identifiers a caller needs to act on it.
A timed-out job is deliberately not part of this hierarchy: it is an
ambiguous outcome, not a failure.
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from study_job_client.models import AdmissionDecision, JobHandle


class StudyJobError(Exception):
    """Base exception for all study job client errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(StudyJobError):
    """Raised when a request payload is rejected before submission."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, details)


class AdmissionError(StudyJobError):
    """Raised when the credit balance does not cover an operation."""

    remediation = "Purchase more credits to continue."

    def __init__(
        self,
        message: str,
        decision: Optional["AdmissionDecision"] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if decision is not None:
            details["required_units"] = decision.required_units
            details["available_units"] = decision.available_units
        self.decision = decision
        super().__init__(message, details)


class TransportError(StudyJobError):
    """Raised on transient transport failures (network, 429, 5xx)."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status is not None:
            details["status"] = status
        self.status = status
        super().__init__(message, details)


class SubmissionError(StudyJobError):
    """Raised when the backend rejects a submission for a non-transient reason."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status is not None:
            details["status"] = status
        self.status = status
        super().__init__(message, details)


class ResolutionError(StudyJobError):
    """Raised when a completed job's artifact cannot be produced."""

    retryable = False

    def __init__(
        self,
        message: str,
        handle_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if handle_id:
            details["handle_id"] = handle_id
        self.handle_id = handle_id
        super().__init__(message, details)


class ArtifactUnavailableError(ResolutionError):
    """The job succeeded but its artifact could not be fetched; re-fetch to retry."""

    retryable = True


class EmptyArtifactError(ResolutionError):
    """The job succeeded but produced an artifact with no items."""


class JobFailedError(StudyJobError):
    """Raised when the backend reports an explicit failure for a job."""

    def __init__(self, handle: "JobHandle") -> None:
        self.handle = handle
        super().__init__(
            handle.error or "Generation failed. Please try again.",
            {"handle_id": handle.id, "kind": handle.kind.value},
        )


class JobCancelled(StudyJobError):
    """Raised to the awaiting caller when a run was torn down before settling."""

    def __init__(self, handle: Optional["JobHandle"] = None) -> None:
        self.handle = handle
        details = {"handle_id": handle.id} if handle is not None else {}
        super().__init__("Job was cancelled", details)


class InvalidTransitionError(StudyJobError):
    """Raised when a job status change would leave a terminal state or regress."""

    def __init__(self, handle_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal status transition {current} -> {requested}",
            {"handle_id": handle_id},
        )


class JobTimedOut(TimeoutError):
    """The job exhausted its polling attempts without settling.

    The operation may still finish server-side; keep ``handle`` to re-check later.
    """

    def __init__(self, handle: "JobHandle") -> None:
        self.handle = handle
        super().__init__(
            f"Job {handle.id} did not settle within {handle.attempts} attempts; "
            "it may still finish, check back later"
        )
