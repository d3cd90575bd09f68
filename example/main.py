import asyncio
from urllib.parse import urlsplit

from job_server import JobServer
from job_status_poller.config import API_BASE_URL, JOB_STORE_PATH
from job_status_poller.job_status_poller import JobStatusPoller
from job_status_poller.models import PollingConfig
from job_status_poller.progress import describe_progress
from job_status_poller.store import JsonFileJobStore, activate, resume_job_id


async def status_changed(job):
    view = describe_progress(job)
    print(f"Status changed to: {job.raw_status}")
    print(f"[{view.stage_label}] {view.text} ({view.percent}%)")


async def completed(payload):
    print(f"Completed: {payload.message}")
    print(f"Results: {payload.results}")


async def main():
    PORT = urlsplit(API_BASE_URL).port or 8080
    server = JobServer(completion_time=20.0, error_rate=0.1)
    server.add_job("job-42")
    await server.start(port=PORT)
    print(f"Server started on {API_BASE_URL}")

    store = JsonFileJobStore(JOB_STORE_PATH)
    job_id = resume_job_id(store)
    if job_id is None:
        job_id = "job-42"
        activate(store, job_id)

    config = PollingConfig(base_delay_ms=1000, request_timeout_ms=5000)

    client = JobStatusPoller(
        API_BASE_URL,
        job_id,
        config,
        on_complete=completed,
        on_status_change=status_changed,
        store=store,
    )

    result = await client.poll_until_complete()
    print(f"Final outcome: {result.reason.value} after {result.requests} requests")
    if result.message:
        print(result.message)

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
