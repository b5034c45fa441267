from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from aiohttp.test_utils import unused_port
from fakes import LONG_CONTENT
from job_server import StudyJobServer

from study_job_client.config import StudyJobSettings
from study_job_client.errors import (
    AdmissionError,
    ArtifactUnavailableError,
    JobFailedError,
    TransportError,
    ValidationError,
)
from study_job_client.models import (
    GenerationPayload,
    JobKind,
    JobStatus,
    PollingPolicy,
)
from study_job_client.orchestrator import OrchestrationFacade
from study_job_client.transport import HttpJobBackend

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[Tuple[StudyJobServer, int], None]:
    """Start and yield a test StudyJobServer instance on a free port."""
    port = unused_port()
    server_instance = StudyJobServer(
        completion_time=0.3, error_rate=0.0, credits=20, topic_interval=0.1
    )
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest_asyncio.fixture
async def backend(server) -> AsyncGenerator[HttpJobBackend, None]:
    _, port = server
    async with HttpJobBackend(BASE_URL_TEMPLATE.format(port), token="test-token") as client:
        yield client


def make_facade(backend: HttpJobBackend, required_stable_reads: int = 1) -> OrchestrationFacade:
    policy = PollingPolicy(
        interval_ms=50,
        initial_delay_ms=50,
        max_attempts=40,
        required_stable_reads=required_stable_reads,
    )
    return OrchestrationFacade(
        backend,
        settings=StudyJobSettings(api_base_url=backend.base_url),
        policies={kind: policy for kind in JobKind},
    )


@pytest.mark.asyncio
async def test_generation_flow(server, backend):
    """Test normal flashcard generation against the mock API."""
    server_instance, _ = server
    facade = make_facade(backend)
    statuses = []
    facade.subscribe(lambda event: statuses.append(event.type.value))

    artifact = await facade.orchestrate(
        JobKind.generation,
        {"mode": "flashcards", "content": LONG_CONTENT, "options": {"count": 5}},
    )

    assert len(artifact.data["flashcards"]) == 5
    assert server_instance.credits == 15
    assert facade.admission.cached_balance == 15
    assert statuses[0] == "started"
    assert "settled" in statuses
    assert statuses[-1] == "resolved"


@pytest.mark.asyncio
async def test_quiz_generation_flow(backend):
    facade = make_facade(backend)

    artifact = await facade.orchestrate(
        JobKind.generation,
        {"mode": "quiz", "content": LONG_CONTENT, "options": {"count": 3}},
    )

    assert len(artifact.data["questions"]) == 3


@pytest.mark.asyncio
async def test_backend_rejects_insufficient_credits(server, backend):
    server_instance, _ = server
    server_instance.credits = 2
    payload = GenerationPayload(content=LONG_CONTENT)

    with pytest.raises(AdmissionError, match="Insufficient credits"):
        await backend.submit_operation(JobKind.generation, payload)


@pytest.mark.asyncio
async def test_backend_rejects_short_content(backend):
    with pytest.raises(ValidationError, match="Invalid content"):
        await backend.submit_operation(JobKind.generation, GenerationPayload(content="short"))


@pytest.mark.asyncio
async def test_failed_generation(server, backend):
    """Test error handling with a failing backend."""
    server_instance, _ = server
    server_instance.error_rate = 1.0

    with pytest.raises(JobFailedError) as excinfo:
        await make_facade(backend).orchestrate(
            JobKind.generation, {"content": LONG_CONTENT, "options": {"count": 2}}
        )
    assert excinfo.value.handle.status == JobStatus.failed


@pytest.mark.asyncio
async def test_text_extraction_flow(server, backend):
    server_instance, _ = server
    server_instance.add_upload("u1", "  Mitochondria are the powerhouse of the cell.  ", ready_after=0.2)

    artifact = await make_facade(backend).orchestrate(JobKind.text_extraction, {"upload_id": "u1"})

    assert artifact.data == "Mitochondria are the powerhouse of the cell."
    assert artifact.metric == len(artifact.data)


@pytest.mark.asyncio
async def test_failed_text_extraction(server, backend):
    server_instance, _ = server
    server_instance.add_upload("u2", "", failed=True)

    with pytest.raises(JobFailedError, match="Text extraction failed"):
        await make_facade(backend).orchestrate(JobKind.text_extraction, {"upload_id": "u2"})


@pytest.mark.asyncio
async def test_topic_re_extraction_needs_new_topics(server, backend):
    server_instance, _ = server
    server_instance.add_study_set("set-1", existing_topics=2)

    artifact = await make_facade(backend, required_stable_reads=2).orchestrate(
        JobKind.topic_extraction, {"study_set_id": "set-1"}
    )

    assert artifact.metric > 2
    assert len(artifact.data) == artifact.metric
    assert "POST /study-sets/set-1/topics/extract" in server_instance.requests


@pytest.mark.asyncio
async def test_artifact_fetch_failure_then_refetch(server, backend):
    server_instance, _ = server
    server_instance.fail_artifact_fetch = True
    facade = make_facade(backend)

    run = facade.start(JobKind.generation, {"content": LONG_CONTENT, "options": {"count": 1}})
    with pytest.raises(ArtifactUnavailableError):
        await run.result()

    server_instance.fail_artifact_fetch = False
    artifact = await facade.refetch(run.handle)
    assert len(artifact.data["flashcards"]) == 1


@pytest.mark.asyncio
async def test_unknown_job_observation_is_transient(backend):
    with pytest.raises(TransportError):
        await backend.observe_operation(JobKind.generation, "missing")


@pytest.mark.asyncio
async def test_server_unavailable():
    """Test behavior when server is not available."""
    async with HttpJobBackend(BASE_URL_TEMPLATE.format(unused_port()), timeout=2.0) as client:
        with pytest.raises(TransportError):
            await client.query_quota()

        with pytest.raises(AdmissionError, match="quota unknown"):
            await make_facade(client).orchestrate(
                JobKind.generation, {"content": LONG_CONTENT, "options": {"count": 1}}
            )
