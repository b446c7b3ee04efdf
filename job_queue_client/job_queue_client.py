import asyncio
import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp
from loguru import logger
from pydantic import ValidationError

from job_queue_client.config import ClientConfig
from job_queue_client.errors import ClientError, ErrorKind, classify_response
from job_queue_client.models import (
    TERMINAL_STATUSES,
    DesiredStatus,
    Job,
    JobListOptions,
    JobResult,
    JobStatus,
    NewJob,
)
from job_queue_client.transitions import Rejected, coerce_status, validate

# Keeps a single list request small enough for the query string
IDS_CHUNK_SIZE = 100


class JobQueueClient:
    def __init__(
        self,
        config: ClientConfig,
        on_status_change: Optional[Callable[[Job], Any]] = None,
    ):
        self.config = config
        self.base_url = config.base_url
        self.logger = logger
        self.on_status_change = on_status_change

    def _create_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(
            total=self.config.timeout, connect=self.config.connect_timeout
        )
        return aiohttp.ClientSession(headers=self.config.headers(), timeout=timeout)

    @staticmethod
    def _check_job_id(job_id: str) -> None:
        if not job_id:
            raise ClientError(ErrorKind.generic, f'Invalid job ID: "{job_id}".')

    async def _decode_body(self, response: aiohttp.ClientResponse) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise ClientError(
                ErrorKind.generic,
                f"Unable to parse response body into JSON: {e}",
                code=response.status,
            ) from e

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        payload: Any = None,
        params: Optional[List[Tuple[str, str]]] = None,
    ) -> Any:
        """Sends one request to the job queue API, raising a classified ClientError on failure"""
        url = f"{self.base_url}/{path}"

        try:
            async with session.request(
                method, url, json=payload, params=params
            ) as response:
                body = await self._decode_body(response)
                if response.status >= 400:
                    error = classify_response(response.status, body, message=response.reason)
                    self.logger.error(
                        f"HTTP error {response.status} at {method} {url}: "
                        f"{error.kind.value} {error.message}"
                    )
                    raise error
                return body if body is not None else {}
        except aiohttp.ClientError as e:
            self.logger.error(f"Request {method} {url} failed: {e}")
            raise

    def _parse_job(self, data: Dict[str, Any]) -> Job:
        try:
            return Job.model_validate(data)
        except ValidationError as e:
            raise ClientError(
                ErrorKind.generic, f"Invalid job data: {e}", response_data=data
            ) from e

    def _parse_jobs(self, data: Any) -> List[Job]:
        """Parses a list response, skipping jobs that cannot be read"""
        if not isinstance(data, list):
            raise ClientError(
                ErrorKind.generic,
                "Expected a list of jobs in the response.",
                response_data=data if isinstance(data, dict) else None,
            )
        jobs = []
        for item in data:
            try:
                jobs.append(Job.model_validate(item))
            except ValidationError as e:
                self.logger.error(f"Failed to parse job data: {e}")
        return jobs

    async def _get_job(self, session: aiohttp.ClientSession, job_id: str) -> Job:
        self._check_job_id(job_id)
        return self._parse_job(await self._send(session, "GET", f"jobs/{job_id}"))

    async def _check_transition(
        self,
        session: aiohttp.ClientSession,
        job_id: str,
        target: JobStatus,
        current: Optional[JobStatus],
    ) -> None:
        """Raises the local violation when moving the job to ``target`` is known to be illegal"""
        if current is None:
            current = (await self._get_job(session, job_id)).status

        verdict = validate(current, target)
        if isinstance(verdict, Rejected):
            self.logger.warning(
                f"Refusing to move job {job_id} from {verdict.request.current.value} "
                f"to {target.value}: {verdict.violation.value}"
            )
            raise verdict.to_error(job_id)

    async def get_job(self, job_id: str) -> Job:
        """Fetches a single job from the server"""
        async with self._create_session() as session:
            return await self._get_job(session, job_id)

    async def list_jobs(
        self, options: JobListOptions, fetch_all_pages: bool = False
    ) -> List[Job]:
        """Lists jobs matching ``options``, following pages when ``fetch_all_pages`` is set"""
        options = options.model_copy(deep=True)
        jobs: List[Job] = []
        async with self._create_session() as session:
            while True:
                data = await self._send(
                    session, "GET", "jobs", params=options.query_parameters()
                )
                chunk = self._parse_jobs(data)
                jobs.extend(chunk)
                if not fetch_all_pages or len(data) < options.limit:
                    return jobs
                options.offset += options.limit

    async def get_jobs_with_status(self, statuses: Iterable[JobStatus]) -> List[Job]:
        statuses = [coerce_status(status) for status in statuses]
        if not statuses:
            return []
        return await self.list_jobs(JobListOptions(statuses=statuses), fetch_all_pages=True)

    async def get_jobs_with_ids(self, job_ids: Iterable[str]) -> List[Job]:
        job_ids = list(job_ids)
        jobs: List[Job] = []
        for start in range(0, len(job_ids), IDS_CHUNK_SIZE):
            chunk = job_ids[start : start + IDS_CHUNK_SIZE]
            jobs.extend(
                await self.list_jobs(JobListOptions(ids=chunk, limit=IDS_CHUNK_SIZE))
            )
        return jobs

    async def create_job(self, new_job: NewJob) -> Job:
        """Enqueues a new job, a reused deduplication id raises a deduplication conflict"""
        async with self._create_session() as session:
            data = await self._send(session, "POST", "jobs", new_job.to_payload())
        job = self._parse_job(data)
        self.logger.debug(f"Created job {job.id} in status {job.status.value}")
        return job

    async def create_jobs_batch(self, new_jobs: Iterable[NewJob]) -> List[Job]:
        """Enqueues several jobs in one request, the whole batch fails on a deduplication conflict"""
        payload = [new_job.to_payload() for new_job in new_jobs]
        if not payload:
            return []
        async with self._create_session() as session:
            data = await self._send(session, "POST", "jobs/batch", payload)
        jobs = [self._parse_job(item) for item in data]
        self.logger.debug(f"Created {len(jobs)} jobs in a batch")
        return jobs

    async def update_job_status(
        self,
        job_id: str,
        target: JobStatus,
        *,
        current: Optional[JobStatus] = None,
    ) -> Job:
        """Moves a job to ``target`` after checking the transition locally.

        When ``current`` is not given the job is fetched first. A transition
        rejected locally raises without contacting the server.
        """
        self._check_job_id(job_id)
        target = coerce_status(target)

        async with self._create_session() as session:
            await self._check_transition(session, job_id, target, current)
            data = await self._send(
                session, "PATCH", f"jobs/{job_id}", {"status": target.value}
            )
        job = self._parse_job(data)
        self.logger.debug(f"Job {job_id} moved to {job.status.value}")
        return job

    async def post_job_result(
        self,
        job_id: str,
        status: JobStatus,
        result: JobResult,
        *,
        current: Optional[JobStatus] = None,
    ) -> Job:
        """Stores the result of a finished job together with its final status.

        The move to ``status`` is checked the same way as in update_job_status.
        """
        self._check_job_id(job_id)
        status = coerce_status(status)
        if status not in TERMINAL_STATUSES:
            raise ClientError(
                ErrorKind.invalid_status,
                f'Status "{status.value}" is not a final job status.',
                job_id=job_id,
                target_status=status,
            )

        async with self._create_session() as session:
            await self._check_transition(session, job_id, status, current)
            data = await self._send(
                session,
                "PUT",
                f"jobs/{job_id}",
                {"status": status.value, "result": result.to_payload()},
            )
        return self._parse_job(data)

    async def patch_job_result(self, job_id: str, patch_data: Dict[str, Any]) -> Job:
        """Merges ``patch_data`` into the stored result without touching the status"""
        self._check_job_id(job_id)
        async with self._create_session() as session:
            data = await self._send(session, "PATCH", f"jobs/{job_id}/result", patch_data)
        return self._parse_job(data)

    async def kill_job(self, job_id: str) -> Job:
        """Asks the server to terminate a job"""
        self._check_job_id(job_id)
        async with self._create_session() as session:
            data = await self._send(
                session,
                "PATCH",
                f"jobs/{job_id}",
                {"desiredStatus": DesiredStatus.terminating.value},
            )
        return self._parse_job(data)

    def _calculate_delay(self, attempt: int) -> float:
        """Calculates the delay for the next polling attempt using exponential backoff with an optional jitter"""
        polling = self.config.polling
        delay = min(
            polling.initial_delay * (polling.backoff_factor**attempt),
            polling.max_delay,
        )

        # Add random jitter between 0-20% of the delay
        if polling.jitter:
            delay *= 1 + 0.2 * (asyncio.get_running_loop().time() % 1)
        return delay

    async def _handle_status_change(
        self,
        job: Job,
        last_status: Optional[JobStatus],
        on_status_change: Optional[Callable[[Job], Any]],
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status == job.status or on_status_change is None:
            return
        self.logger.debug(f"Job {job.id} status changed to {job.status.value}")
        outcome = on_status_change(job)
        if inspect.isawaitable(outcome):
            await outcome

    async def _wait_before_retry(self, attempt: int) -> None:
        """Calculate and waits for the appropriate delay before polling again"""
        delay = self._calculate_delay(attempt)
        self.logger.debug(f"Job not finished, waiting {delay:.2f}s before next attempt")
        await asyncio.sleep(delay)

    async def poll_until_finished(
        self,
        job_id: str,
        on_status_change: Optional[Callable[[Job], Any]] = None,
    ) -> Job:
        """Poll the job until it reaches a terminal status, using exponential backoff"""
        self._check_job_id(job_id)
        polling = self.config.polling
        callback = on_status_change or self.on_status_change
        loop = asyncio.get_running_loop()
        deadline = loop.time() + polling.timeout
        attempt = 0
        last_status = None

        async with self._create_session() as session:
            while loop.time() < deadline and attempt < polling.max_attempts:
                job = await self._get_job(session, job_id)

                await self._handle_status_change(job, last_status, callback)
                last_status = job.status

                if job.is_finished:
                    return job

                attempt += 1
                await self._wait_before_retry(attempt)

        raise TimeoutError(
            f"Job {job_id} did not finish within {polling.timeout} seconds"
        )
