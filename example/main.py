import asyncio

from job_server import StudyJobServer
from study_job_client.config import StudyJobSettings, configure_logging
from study_job_client.errors import JobTimedOut, StudyJobError
from study_job_client.models import JobKind, PollingPolicy
from study_job_client.orchestrator import OrchestrationFacade
from study_job_client.transport import HttpJobBackend

CONTENT = (
    "The cell is the basic unit of life. Mitochondria produce ATP through "
    "cellular respiration, while chloroplasts capture light energy."
)


async def status_changed(event):
    print(f"[{event.kind.value}] {event.type.value}: {event.detail}")


async def main():
    PORT = 8000
    server = StudyJobServer(completion_time=6.0, error_rate=0.1, credits=25)
    server.add_upload("upload-1", CONTENT, ready_after=2.0)
    server.add_study_set("set-1", existing_topics=1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    configure_logging("INFO")
    settings = StudyJobSettings(api_base_url=f"http://localhost:{PORT}")
    policies = {
        JobKind.generation: PollingPolicy(interval_ms=1000, max_attempts=20),
        JobKind.text_extraction: PollingPolicy(interval_ms=500, max_attempts=20),
        JobKind.topic_extraction: PollingPolicy(
            interval_ms=500, max_attempts=20, required_stable_reads=2
        ),
    }

    async with HttpJobBackend(settings.api_base_url) as backend:
        facade = OrchestrationFacade(backend, settings=settings, policies=policies)
        facade.subscribe(status_changed)

        try:
            text = await facade.orchestrate(JobKind.text_extraction, {"upload_id": "upload-1"})
            print(f"Extracted {int(text.metric)} characters")

            topics = await facade.orchestrate(JobKind.topic_extraction, {"study_set_id": "set-1"})
            print(f"Study set now has {int(topics.metric)} topics")

            flashcards = await facade.orchestrate(
                JobKind.generation,
                {"mode": "flashcards", "content": text.data, "options": {"count": 5}},
            )
            print(f"Generated {int(flashcards.metric)} flashcards")
        except JobTimedOut as e:
            print(f"Still running, check back later: {e}")
        except StudyJobError as e:
            print(f"Error occurred: {e}")

        await facade.emitter.drain()

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
