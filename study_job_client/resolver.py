from typing import Any, Optional, Tuple

from loguru import logger

from study_job_client.errors import (
    ArtifactUnavailableError,
    EmptyArtifactError,
    ResolutionError,
)
from study_job_client.models import (
    Artifact,
    GenerationMode,
    JobHandle,
    JobKind,
    JobStatus,
)
from study_job_client.transport import JobBackend

# Artifact member holding the generated items, per generation mode
ITEM_FIELDS = {
    GenerationMode.flashcards: "flashcards",
    GenerationMode.quiz: "questions",
}


class ResultResolver:
    """Turns a completed handle into the artifact the caller asked for."""

    def __init__(self, backend: JobBackend):
        self.backend = backend
        self.logger = logger

    async def resolve(self, handle: JobHandle) -> Artifact:
        if handle.status != JobStatus.completed:
            raise ResolutionError(
                f"Job {handle.id} is {handle.status.value}, not completed",
                handle_id=handle.id,
            )

        if handle.kind != JobKind.generation:
            metric = handle.last_observation.metric if handle.last_observation else None
            return Artifact(
                kind=handle.kind, handle_id=handle.id, data=handle.result, metric=metric
            )

        mode, artifact_id = self.artifact_reference(handle.result)
        if artifact_id is None:
            raise ResolutionError(
                "Job completed but no result found", handle_id=handle.id
            )

        try:
            data = await self.backend.fetch_artifact(mode, artifact_id)
        except ArtifactUnavailableError as e:
            self.logger.error(f"Could not fetch {mode.value} {artifact_id}: {e.message}")
            raise ArtifactUnavailableError(
                e.message, handle_id=handle.id, details={"artifact_id": artifact_id}
            ) from e

        items = data.get(ITEM_FIELDS[mode]) or []
        if not items:
            raise EmptyArtifactError(
                f"Generated {mode.value} {artifact_id} contains no items",
                handle_id=handle.id,
                details={"artifact_id": artifact_id},
            )
        return Artifact(kind=handle.kind, handle_id=handle.id, data=data, metric=len(items))

    @staticmethod
    def artifact_reference(result: Any) -> Tuple[GenerationMode, Optional[str]]:
        """Find the generated artifact in a job result.

        Accepts both ``{"setId": ...}`` / ``{"quizId": ...}`` and the legacy
        ``{"set": {...}}`` / ``{"quiz": {...}}`` shapes.
        """
        if not isinstance(result, dict):
            return GenerationMode.flashcards, None

        if result.get("setId") or isinstance(result.get("set"), dict):
            legacy = result.get("set") or {}
            return GenerationMode.flashcards, result.get("setId") or legacy.get("id")

        if result.get("quizId") or isinstance(result.get("quiz"), dict):
            legacy = result.get("quiz") or {}
            return GenerationMode.quiz, result.get("quizId") or legacy.get("id")

        return GenerationMode.flashcards, None
