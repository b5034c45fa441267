import asyncio
from typing import Any, Dict, Optional, Protocol

import aiohttp
from loguru import logger

from study_job_client.errors import (
    AdmissionError,
    ArtifactUnavailableError,
    SubmissionError,
    TransportError,
    ValidationError,
)
from study_job_client.models import (
    GenerationMode,
    GenerationPayload,
    JobKind,
    JobStatus,
    Observation,
    QuotaSnapshot,
    SubmissionReceipt,
    TextExtractionPayload,
    TopicExtractionPayload,
)

# Status codes worth retrying on a later tick
TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class JobBackend(Protocol):
    """The remote side of every job: submission, observation, artifacts, quota."""

    async def submit_operation(self, kind: JobKind, payload: Any) -> SubmissionReceipt: ...

    async def observe_operation(self, kind: JobKind, operation_id: str) -> Observation: ...

    async def fetch_artifact(self, mode: GenerationMode, artifact_id: str) -> Dict[str, Any]: ...

    async def query_quota(self) -> QuotaSnapshot: ...


class BackendHTTPError(Exception):
    """Non-transient HTTP failure; mapped to a domain error by the caller."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}")


class HttpJobBackend:
    """``JobBackend`` over the study app's REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger

    async def __aenter__(self) -> "HttpJobBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    @staticmethod
    def _error_message(body: Any) -> Optional[str]:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if body.get("message"):
                return str(body["message"])
        return None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one request and return the ``data`` member of the response envelope"""
        url = f"{self.base_url}{path}"
        body: Any = None

        try:
            async with self._get_session().request(
                method, url, json=json, headers=self._headers()
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                response.raise_for_status()
        except aiohttp.ClientResponseError as e:
            message = self._error_message(body) or e.message
            self.logger.error(f"HTTP error {e.status} at {url}: {message}")
            if e.status in TRANSIENT_STATUSES:
                raise TransportError(message, status=e.status) from e
            raise BackendHTTPError(e.status, message) from e
        except aiohttp.ClientError as e:
            self.logger.error(f"Transport error at {url}: {e}")
            raise TransportError(f"Cannot connect to the API server: {e}") from e
        except asyncio.TimeoutError as e:
            self.logger.error(f"Timed out calling {url}")
            raise TransportError(f"Request to {url} timed out") from e

        if not isinstance(body, dict) or not body.get("success", False):
            message = self._error_message(body) or f"Unexpected response from {url}"
            raise BackendHTTPError(200, message)
        return body.get("data") or {}

    async def submit_operation(self, kind: JobKind, payload: Any) -> SubmissionReceipt:
        try:
            if kind == JobKind.generation:
                return await self._submit_generation(payload)
            if kind == JobKind.text_extraction:
                return await self._submit_text_extraction(payload)
            return await self._submit_topic_extraction(payload)
        except BackendHTTPError as e:
            if e.status == 400:
                raise ValidationError(
                    e.message or "Invalid content. Please provide valid study material."
                ) from e
            if e.status == 403:
                raise AdmissionError(
                    e.message
                    or "Insufficient credits. Please purchase more credits to continue."
                ) from e
            raise SubmissionError(e.message, status=e.status) from e

    async def _submit_generation(self, payload: GenerationPayload) -> SubmissionReceipt:
        options = payload.options
        body = {
            "content": payload.content,
            "options": {
                key: value
                for key, value in {
                    "count": options.count,
                    "difficulty": options.difficulty.value,
                    "subject": options.subject,
                    "title": options.title,
                    "description": options.description,
                    "studySetId": options.study_set_id,
                    "topicIds": options.topic_ids or None,
                }.items()
                if value is not None
            },
            "uploadId": payload.upload_id,
            "async": True,
        }
        data = await self._request("POST", f"/generate/{payload.mode.value}", json=body)
        job = data.get("job") or {}
        if not job.get("id"):
            raise SubmissionError(f"Failed to start {payload.mode.value} generation")
        return SubmissionReceipt(
            id=str(job["id"]), status=JobStatus(job.get("status", "pending"))
        )

    async def _submit_text_extraction(
        self, payload: TextExtractionPayload
    ) -> SubmissionReceipt:
        # Extraction starts server-side on upload; submission only registers the upload
        data = await self._request("GET", f"/uploads/{payload.upload_id}")
        upload = data.get("upload") or {}
        return SubmissionReceipt(id=str(upload.get("id") or payload.upload_id))

    async def _submit_topic_extraction(
        self, payload: TopicExtractionPayload
    ) -> SubmissionReceipt:
        path = f"/study-sets/{payload.study_set_id}/topics"
        existing = await self._request("GET", path)
        baseline = len(existing.get("topics") or [])
        await self._request("POST", f"{path}/extract")
        return SubmissionReceipt(id=payload.study_set_id, baseline_metric=baseline)

    async def observe_operation(self, kind: JobKind, operation_id: str) -> Observation:
        try:
            if kind == JobKind.generation:
                data = await self._request("GET", f"/generate/jobs/{operation_id}")
                job = data.get("job") or {}
                return Observation(
                    status=JobStatus(job.get("status", "pending")),
                    result=job.get("result"),
                    error=job.get("error"),
                )

            if kind == JobKind.text_extraction:
                data = await self._request("GET", f"/uploads/{operation_id}")
                upload = data.get("upload") or {}
                if upload.get("status") == "failed":
                    return Observation(
                        status=JobStatus.failed, error="Text extraction failed"
                    )
                text = (upload.get("extractedText") or "").strip()
                done = upload.get("status") in (None, "completed") and bool(text)
                return Observation(
                    status=JobStatus.completed if done else JobStatus.processing,
                    metric=len(text),
                    result=text,
                )

            data = await self._request("GET", f"/study-sets/{operation_id}/topics")
            topics = data.get("topics") or []
            return Observation(
                status=JobStatus.processing, metric=len(topics), result=topics
            )
        except BackendHTTPError as e:
            raise TransportError(e.message, status=e.status) from e
        except ValueError as e:
            raise TransportError(f"Malformed observation for {operation_id}: {e}") from e

    async def fetch_artifact(self, mode: GenerationMode, artifact_id: str) -> Dict[str, Any]:
        if mode == GenerationMode.flashcards:
            path, member = f"/flashcards/sets/{artifact_id}", "set"
        else:
            path, member = f"/quizzes/{artifact_id}", "quiz"

        try:
            data = await self._request("GET", path)
        except (BackendHTTPError, TransportError) as e:
            raise ArtifactUnavailableError(
                f"Generated {mode.value} {artifact_id} could not be fetched: {e}"
            ) from e

        artifact = data.get(member)
        if not isinstance(artifact, dict):
            raise ArtifactUnavailableError(f"Generated {mode.value} {artifact_id} not found")
        return artifact

    async def query_quota(self) -> QuotaSnapshot:
        try:
            data = await self._request("GET", "/generate/limits")
        except BackendHTTPError as e:
            raise TransportError(e.message, status=e.status) from e
        limits = data.get("limits") or {}
        return QuotaSnapshot(available=int(limits.get("credits", 0)), plan=limits.get("plan"))
