import asyncio
import random
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger

ScriptedResponse = Tuple[int, Optional[Dict[str, Any]], Dict[str, str]]


class JobServer:
    """Fake job-status backend serving ``GET /jobs/{job_id}``.

    Jobs registered with ``add_job`` run for ``completion_time`` seconds and
    report progress along the way. Responses queued with ``script`` are served
    first, in order, which lets tests replay exact status sequences.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        latency: float = 0.0,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.latency = latency
        self.app = web.Application()
        self.app.router.add_get("/jobs/{job_id}", self.handle_job)
        self.logger = logger

        self.started: Dict[str, Optional[datetime]] = {}
        self.scripts: Dict[str, Deque[ScriptedResponse]] = defaultdict(deque)
        self.requests: List[str] = []
        self.auth_headers: List[Optional[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._runner: Optional[web.AppRunner] = None

    def add_job(self, job_id: str) -> None:
        self.started[job_id] = None

    def script(
        self,
        job_id: str,
        status: int,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.scripts[job_id].append((status, body, headers or {}))

    def request_count(self, job_id: str) -> int:
        return self.requests.count(job_id)

    def _simulated(self, job_id: str) -> web.Response:
        if self.started[job_id] is None:
            self.started[job_id] = datetime.now()

        if random.random() < self.error_rate:
            self.logger.info("Returning server error")
            return web.json_response({"error": "internal"}, status=500)

        elapsed = (datetime.now() - self.started[job_id]).total_seconds()
        body: Dict[str, Any] = {
            "id": job_id,
            "type": "study_creation",
            "startedAt": self.started[job_id].isoformat(),
            "updatedAt": datetime.now().isoformat(),
            "totalSteps": 4,
        }

        if elapsed >= self.completion_time:
            self.logger.info(f"Returning completed status for {job_id}")
            body.update(
                status="completed",
                progress=100,
                currentStep=4,
                message="Study creation completed",
                completedAt=datetime.now().isoformat(),
                metadata={"phase": "processing_complete", "studiesFound": 12},
                results={"studiesCreated": 12},
            )
        else:
            progress = int(elapsed / self.completion_time * 100)
            self.logger.info(
                f"Returning running status for {job_id} (elapsed: {elapsed:.1f}s)"
            )
            body.update(
                status="running",
                progress=progress,
                currentStep=1 + progress * 3 // 100,
                message="Processing studies",
                metadata={
                    "phase": "ai_inference",
                    "studiesFound": 12,
                    "totalStudies": 12,
                    "currentStudy": progress * 12 // 100,
                },
            )
        return web.json_response(body)

    async def handle_job(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        self.requests.append(job_id)
        self.auth_headers.append(request.headers.get("Authorization"))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)

            if self.scripts[job_id]:
                status, body, headers = self.scripts[job_id].popleft()
                self.logger.info(f"Returning scripted {status} for {job_id}")
                if body is None:
                    return web.Response(status=status, headers=headers)
                return web.json_response(body, status=status, headers=headers)

            if job_id not in self.started:
                self.logger.info(f"Unknown job {job_id}")
                return web.json_response({"error": "job not found"}, status=404)

            return self._simulated(job_id)
        finally:
            self.in_flight -= 1

    async def start(self, port: int = 8080) -> web.TCPSite:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
