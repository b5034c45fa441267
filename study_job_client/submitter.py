from typing import Any, Dict, Optional, Type

import pydantic
from loguru import logger

from study_job_client.errors import ValidationError
from study_job_client.models import (
    GenerationPayload,
    JobHandle,
    JobKind,
    TextExtractionPayload,
    TopicExtractionPayload,
)
from study_job_client.transport import JobBackend

MIN_CONTENT_LENGTH = 50

PAYLOAD_MODELS: Dict[JobKind, Type[pydantic.BaseModel]] = {
    JobKind.generation: GenerationPayload,
    JobKind.text_extraction: TextExtractionPayload,
    JobKind.topic_extraction: TopicExtractionPayload,
}


class JobSubmitter:
    """Validates a request and hands it to the backend exactly once.

    Submissions are not idempotent, so nothing here retries.
    """

    def __init__(self, backend: JobBackend):
        self.backend = backend
        self.logger = logger

    def validate(self, kind: JobKind, payload: Any) -> pydantic.BaseModel:
        """Coerce ``payload`` into the kind's model or raise ``ValidationError``."""
        model = PAYLOAD_MODELS[kind]
        if isinstance(payload, model):
            parsed = payload
        else:
            try:
                parsed = model.model_validate(payload)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(part) for part in first["loc"]) or None
                raise ValidationError(first["msg"], field=field) from e

        if isinstance(parsed, GenerationPayload):
            has_backend_material = bool(parsed.upload_id or parsed.options.study_set_id)
            if not has_backend_material and len(parsed.content.strip()) < MIN_CONTENT_LENGTH:
                raise ValidationError(
                    "No content found. Please go back and upload your study material.",
                    field="content",
                    details={"min_length": MIN_CONTENT_LENGTH},
                )
        return parsed

    async def submit(
        self,
        kind: JobKind,
        payload: Any,
        resource_id: Optional[str] = None,
    ) -> JobHandle:
        parsed = self.validate(kind, payload)
        if resource_id is None and kind != JobKind.generation:
            resource_id = getattr(parsed, "study_set_id", None) or getattr(
                parsed, "upload_id", None
            )

        receipt = await self.backend.submit_operation(kind, parsed)
        self.logger.info(f"Submitted {kind.value} job {receipt.id}")
        return JobHandle(
            id=receipt.id,
            kind=kind,
            resource_id=resource_id,
            baseline_metric=receipt.baseline_metric,
        )
