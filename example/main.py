import asyncio

from job_queue_client.config import ClientConfig, StatusPollingConfig
from job_queue_client.errors import ClientError, ErrorKind
from job_queue_client.job_queue_client import JobQueueClient
from job_queue_client.models import (
    JobResult,
    JobStatus,
    NewJob,
    Variable,
    VariableCollection,
)
from job_queue_server import JobQueueServer


async def status_changed(job):
    print(f"Job {job.id} status changed to: {job.status.value}")


async def main():
    server = JobQueueServer()
    port = await server.start()
    print(f"Server started on http://127.0.0.1:{port}")

    config = ClientConfig(
        base_url=f"http://127.0.0.1:{port}",
        polling=StatusPollingConfig(initial_delay=0.5, max_delay=2.0, timeout=10.0),
    )
    client = JobQueueClient(config, on_status_change=status_changed)

    try:
        new_job = NewJob(component_id="keboola.ex-db", deduplication_id="nightly")
        job = await client.create_job(new_job)
        try:
            await client.create_job(new_job)
        except ClientError as e:
            if e.kind is not ErrorKind.deduplication_id_conflict:
                raise
            print(f"Already enqueued as job {e.job_id}, reusing it")

        for target in (JobStatus.waiting, JobStatus.processing, JobStatus.processing):
            try:
                job = await client.update_job_status(job.id, target, current=job.status)
            except ClientError as e:
                if not e.is_no_op:
                    raise
                print(f"Job {job.id} already {target.value}")

        result = JobResult(
            message="Extracted 10 rows",
            variables=VariableCollection([Variable(name="rows", value="10")]),
        )
        await client.post_job_result(job.id, JobStatus.success, result)

        final = await client.poll_until_finished(job.id)
        print(f"Final status: {final.status.value}")
    except TimeoutError as e:
        print(f"Polling timed out: {e}")
    except ClientError as e:
        print(f"Job queue error ({e.kind.value}): {e.message}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
