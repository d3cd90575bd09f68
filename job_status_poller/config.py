import os
from typing import Optional

API_BASE_URL = os.getenv("JOB_API_BASE_URL", "http://localhost:8080")
JOB_STATUS_PATH = os.getenv("JOB_STATUS_PATH", "/jobs/{job_id}")
JOB_STORE_PATH = os.getenv("JOB_STORE_PATH", ".job_status_poller/state.json")


def env_token_provider() -> Optional[str]:
    # read on every request so a refreshed token is picked up
    return os.getenv("JOB_API_TOKEN") or None
