import random
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from aiohttp import web
from loguru import logger


def _ok(data: Dict[str, Any]) -> web.Response:
    return web.json_response({"success": True, "data": data})


def _error(status: int, message: str) -> web.Response:
    return web.json_response(
        {"success": False, "error": {"code": status, "message": message}},
        status=status,
    )


class StudyJobServer:
    """In-memory stand-in for the study app API.

    Generation jobs complete ``completion_time`` seconds after submission
    (or fail with probability ``error_rate``); topics appear one at a time
    every ``topic_interval`` seconds after an extraction request.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        credits: int = 100,
        topic_interval: float = 0.5,
        topics_per_extraction: int = 3,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.credits = credits
        self.topic_interval = topic_interval
        self.topics_per_extraction = topics_per_extraction
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.study_sets: Dict[str, Dict[str, Any]] = {}
        self.artifacts: Dict[str, Dict[str, Any]] = {}
        self.requests: List[str] = []
        self.fail_artifact_fetch = False
        self.app = web.Application(middlewares=[self._record_request])
        self.app.router.add_post("/generate/{mode}", self.handle_generate)
        self.app.router.add_get("/generate/jobs/{job_id}", self.handle_job)
        self.app.router.add_get("/generate/limits", self.handle_limits)
        self.app.router.add_get("/uploads/{upload_id}", self.handle_upload)
        self.app.router.add_get("/study-sets/{set_id}/topics", self.handle_topics)
        self.app.router.add_post("/study-sets/{set_id}/topics/extract", self.handle_extract)
        self.app.router.add_get("/flashcards/sets/{artifact_id}", self.handle_artifact)
        self.app.router.add_get("/quizzes/{artifact_id}", self.handle_artifact)
        self.logger = logger
        self._runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _record_request(self, request, handler):
        self.requests.append(f"{request.method} {request.path}")
        return await handler(request)

    def add_upload(self, upload_id: str, text: str, ready_after: float = 0.0, failed: bool = False):
        self.uploads[upload_id] = {
            "id": upload_id,
            "text": text,
            "ready_at": datetime.now().timestamp() + ready_after,
            "failed": failed,
        }

    def add_study_set(self, set_id: str, existing_topics: int = 0):
        self.study_sets[set_id] = {
            "topics": [
                {"id": f"{set_id}-t{i}", "title": f"Topic {i}"} for i in range(existing_topics)
            ],
            "extract_started": None,
            "extract_base": existing_topics,
        }

    async def handle_generate(self, request):
        mode = request.match_info["mode"]
        if mode not in ("flashcards", "quiz"):
            return _error(404, "Unknown generation mode")

        body = await request.json()
        options = body.get("options") or {}
        count = int(options.get("count", 10))
        has_material = body.get("uploadId") or options.get("studySetId")
        if not has_material and len(body.get("content") or "") < 50:
            return _error(400, "Invalid content. Please provide valid study material.")
        if count > self.credits:
            return _error(403, f"Insufficient credits. You need {count} credits but only have {self.credits}.")

        self.credits -= count
        job_id = uuid.uuid4().hex
        failed = random.random() < self.error_rate
        self.jobs[job_id] = {
            "id": job_id,
            "type": mode,
            "count": count,
            "failed": failed,
            "created": datetime.now(),
            "result": None,
        }
        self.logger.info(f"Accepted {mode} job {job_id} for {count} items")
        return _ok({"job": {"id": job_id, "type": mode, "status": "pending"}})

    async def handle_job(self, request):
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            return _error(404, "Generation job not found")

        elapsed = (datetime.now() - job["created"]).total_seconds()
        payload = {"id": job["id"], "type": job["type"]}

        if elapsed < self.completion_time:
            status = "pending" if elapsed < self.completion_time / 2 else "processing"
            self.logger.info(f"Returning {status} status (elapsed: {elapsed:.1f}s)")
            payload["status"] = status
        elif job["failed"]:
            self.logger.info("Returning failed status")
            payload.update(status="failed", error="Generation failed. Please try again.")
        else:
            if job["result"] is None:
                job["result"] = self._create_artifact(job)
            self.logger.info("Returning completed status")
            payload.update(status="completed", result=job["result"])
        return _ok({"job": payload})

    def _create_artifact(self, job: Dict[str, Any]) -> Dict[str, str]:
        artifact_id = uuid.uuid4().hex
        if job["type"] == "flashcards":
            items = [{"id": f"c{i}", "front": f"Q{i}", "back": f"A{i}"} for i in range(job["count"])]
            self.artifacts[artifact_id] = {"id": artifact_id, "flashcards": items}
            return {"setId": artifact_id}
        items = [
            {"id": f"q{i}", "question": f"Q{i}", "options": ["a", "b"], "correctAnswer": 0}
            for i in range(job["count"])
        ]
        self.artifacts[artifact_id] = {"id": artifact_id, "questions": items}
        return {"quizId": artifact_id}

    async def handle_artifact(self, request):
        artifact = self.artifacts.get(request.match_info["artifact_id"])
        if artifact is None or self.fail_artifact_fetch:
            return _error(404, "Flashcard set not found")
        member = "set" if "flashcards" in artifact else "quiz"
        return _ok({member: artifact})

    async def handle_limits(self, request):
        return _ok({"limits": {"credits": self.credits, "plan": "free"}})

    async def handle_upload(self, request):
        upload = self.uploads.get(request.match_info["upload_id"])
        if upload is None:
            return _error(404, "Upload not found")

        if upload["failed"]:
            return _ok({"upload": {"id": upload["id"], "status": "failed", "extractedText": ""}})
        ready = datetime.now().timestamp() >= upload["ready_at"]
        return _ok(
            {
                "upload": {
                    "id": upload["id"],
                    "status": "completed" if ready else "processing",
                    "extractedText": upload["text"] if ready else "",
                }
            }
        )

    async def handle_topics(self, request):
        study_set = self.study_sets.get(request.match_info["set_id"])
        if study_set is None:
            return _error(404, "Study set not found")

        started = study_set["extract_started"]
        if started is not None:
            elapsed = (datetime.now() - started).total_seconds()
            target = study_set["extract_base"] + min(
                self.topics_per_extraction, int(elapsed / self.topic_interval)
            )
            set_id = request.match_info["set_id"]
            while len(study_set["topics"]) < target:
                index = len(study_set["topics"])
                study_set["topics"].append({"id": f"{set_id}-t{index}", "title": f"Topic {index}"})
        return _ok({"topics": study_set["topics"]})

    async def handle_extract(self, request):
        study_set = self.study_sets.get(request.match_info["set_id"])
        if study_set is None:
            return _error(404, "Study set not found")
        study_set["extract_started"] = datetime.now()
        study_set["extract_base"] = len(study_set["topics"])
        return _ok({"topics": study_set["topics"]})

    async def start(self, port: int = 8080):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
