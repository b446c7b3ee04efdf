import itertools
from typing import Any, Dict, Optional

from aiohttp import web
from loguru import logger

from job_queue_client.errors import REPORTED_CODES, ClientError, ErrorKind
from job_queue_client.models import DesiredStatus, JobStatus
from job_queue_client.transitions import Rejected, validate

_REPORTED = {
    ErrorKind.no_op_transition: ErrorKind.no_op_transition_reported,
    ErrorKind.terminal_state_violation: ErrorKind.terminal_state_violation_reported,
    ErrorKind.forbidden_transition: ErrorKind.forbidden_transition_reported,
}


class JobQueueServer:
    """In-memory job queue API used by the tests and the example"""

    def __init__(self, project_id: str = "123"):
        self.project_id = project_id
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._runner: Optional[web.AppRunner] = None
        self.requests: list = []
        self.app = web.Application(middlewares=[self._record_request])
        self.app.router.add_get("/jobs", self.handle_list)
        self.app.router.add_post("/jobs", self.handle_create)
        self.app.router.add_post("/jobs/batch", self.handle_create_batch)
        self.app.router.add_get("/jobs/{job_id}", self.handle_get)
        self.app.router.add_patch("/jobs/{job_id}", self.handle_patch)
        self.app.router.add_put("/jobs/{job_id}", self.handle_put_result)
        self.app.router.add_patch("/jobs/{job_id}/result", self.handle_patch_result)
        self.logger = logger

    @web.middleware
    async def _record_request(self, request, handler):
        self.requests.append((request.method, request.path))
        return await handler(request)

    @staticmethod
    def _error(
        message: str, http_status: int, string_code: str, **context: Any
    ) -> web.Response:
        return web.json_response(
            {
                "error": message,
                "code": http_status,
                "status": "error",
                "context": {"stringCode": string_code, **context},
            },
            status=http_status,
        )

    def _not_found(self, job_id: str) -> web.Response:
        self.logger.info(f"Job {job_id} not found")
        return self._error(f'Job "{job_id}" not found', 404, "jobNotFound", jobId=job_id)

    def force_status(self, job_id: str, status: JobStatus) -> None:
        """Change a job's status behind the client's back, like a concurrent writer would"""
        self.jobs[job_id]["status"] = JobStatus(status).value

    def add_job(self, status: JobStatus = JobStatus.created, **data: Any) -> str:
        job_id = str(next(self._ids))
        self.jobs[job_id] = {
            "id": job_id,
            "projectId": self.project_id,
            "status": JobStatus(status).value,
            "desiredStatus": DesiredStatus.processing.value,
            "result": {},
            **data,
        }
        return job_id

    def _deduplication_conflict(
        self, deduplication_id: Optional[str]
    ) -> Optional[web.Response]:
        if deduplication_id is None:
            return None
        for job in self.jobs.values():
            if job.get("deduplicationId") == deduplication_id:
                self.logger.info(f"Deduplication id {deduplication_id} already used")
                return self._error(
                    f'Job with deduplicationId "{deduplication_id}" already exists',
                    409,
                    REPORTED_CODES[ErrorKind.deduplication_id_conflict],
                    deduplicationId=deduplication_id,
                    jobId=job["id"],
                )
        return None

    def _create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        job_id = self.add_job(
            componentId=data.get("componentId"),
            configId=data.get("configId"),
            mode=data.get("mode"),
            deduplicationId=data.get("deduplicationId"),
        )
        self.logger.info(f"Created job {job_id}")
        return self.jobs[job_id]

    async def handle_create(self, request):
        data = await request.json()
        conflict = self._deduplication_conflict(data.get("deduplicationId"))
        if conflict is not None:
            return conflict
        return web.json_response(self._create(data), status=201)

    async def handle_create_batch(self, request):
        items = await request.json()
        # nothing is created when any item collides
        seen = set()
        for data in items:
            deduplication_id = data.get("deduplicationId")
            conflict = self._deduplication_conflict(deduplication_id)
            if conflict is None and deduplication_id is not None and deduplication_id in seen:
                conflict = self._error(
                    f'Duplicate deduplicationId "{deduplication_id}" in batch',
                    409,
                    REPORTED_CODES[ErrorKind.deduplication_id_conflict],
                    deduplicationId=deduplication_id,
                )
            if conflict is not None:
                return conflict
            seen.add(deduplication_id)
        return web.json_response([self._create(data) for data in items], status=201)

    async def handle_list(self, request):
        filters = {
            "id": request.query.getall("id[]", []),
            "componentId": request.query.getall("componentId[]", []),
            "configId": request.query.getall("configId[]", []),
            "mode": request.query.getall("mode[]", []),
            "projectId": request.query.getall("projectId[]", []),
            "status": request.query.getall("status[]", []),
        }
        offset = int(request.query.get("offset", 0))
        limit = int(request.query.get("limit", 100))
        matching = [
            job
            for job in self.jobs.values()
            if all(not values or job.get(key) in values for key, values in filters.items())
        ]
        return web.json_response(matching[offset : offset + limit])

    async def handle_get(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return self._not_found(job_id)
        return web.json_response(self.jobs[job_id])

    def _apply_status(self, job_id: str, target: str) -> Optional[web.Response]:
        job = self.jobs[job_id]
        try:
            verdict = validate(job["status"], target)
        except ClientError:
            return self._error(f'Invalid status "{target}"', 400, "statusInvalid")

        if isinstance(verdict, Rejected):
            reported = _REPORTED[verdict.violation]
            self.logger.info(
                f"Rejecting job {job_id} move {job['status']} -> {target}: {reported.value}"
            )
            return self._error(
                verdict.to_error(job_id).message,
                400,
                REPORTED_CODES[reported],
                jobId=job_id,
                currentStatus=job["status"],
                targetStatus=target,
            )

        job["status"] = target
        self.logger.info(f"Job {job_id} moved to {target}")
        return None

    async def handle_patch(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return self._not_found(job_id)
        data = await request.json()

        if "status" in data:
            failure = self._apply_status(job_id, data["status"])
            if failure is not None:
                return failure
        if data.get("desiredStatus") == DesiredStatus.terminating.value:
            job = self.jobs[job_id]
            job["desiredStatus"] = DesiredStatus.terminating.value
            if job["status"] in (JobStatus.created.value, JobStatus.waiting.value):
                job["status"] = JobStatus.cancelled.value
            elif job["status"] == JobStatus.processing.value:
                job["status"] = JobStatus.terminating.value
            self.logger.info(f"Job {job_id} kill requested, now {job['status']}")
        return web.json_response(self.jobs[job_id])

    async def handle_put_result(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return self._not_found(job_id)
        data = await request.json()

        failure = self._apply_status(job_id, data.get("status"))
        if failure is not None:
            return failure
        self.jobs[job_id]["result"] = data.get("result") or {}
        return web.json_response(self.jobs[job_id])

    async def handle_patch_result(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return self._not_found(job_id)
        data = await request.json()
        self.jobs[job_id]["result"] = {**self.jobs[job_id]["result"], **data}
        return web.json_response(self.jobs[job_id])

    async def start(self, port: int = 0) -> int:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", port)
        await site.start()
        port = self._runner.addresses[0][1]
        self.logger.info(f"Server started on port {port}")
        return port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
