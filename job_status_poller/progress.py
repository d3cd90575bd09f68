from typing import Any, Dict, List, Tuple

from pydantic import BaseModel
from job_status_poller.models import Job, JobStatus

STAGES: List[Tuple[str, str]] = [
    ("search", "Literature Search"),
    ("ai", "AI Analysis"),
    ("creation", "Study Creation"),
    ("complete", "Complete"),
]

AI_PHASES = ("pubmed_completed", "ai_inference_guaranteed", "ai_inference")
CREATION_PHASES = ("study_creation", "processing_complete")


class ProgressView(BaseModel):
    percent: int
    text: str
    stage_index: int
    stage_label: str
    show_percent: bool = False


def _count(bag: Dict[str, Any], key: str) -> int:
    value = bag.get(key) or 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def resolve_stage_index(phase: str, status: JobStatus) -> int:
    """Maps a backend phase to a position on the stage ladder; -1 for failed jobs"""
    if status == JobStatus.completed:
        return 3
    if status == JobStatus.failed:
        return -1
    if phase in AI_PHASES:
        return 1
    if phase in CREATION_PHASES:
        return 2
    return 0


def describe_progress(job: Job) -> ProgressView:
    metadata = job.metadata
    results = job.results if isinstance(job.results, dict) else {}

    studies_found = _count(metadata, "studiesFound")
    studies_created = _count(results, "studiesCreated") or _count(
        metadata, "studiesCreated"
    )
    current_study = _count(metadata, "currentStudy")
    total_studies = _count(metadata, "totalStudies") or studies_found
    phase = metadata.get("phase") or "starting"

    # the backend only reports currentStudy while the job is running
    if job.status == JobStatus.completed:
        done = studies_created
    else:
        done = max(studies_created, current_study)

    if job.status == JobStatus.completed:
        percent, text = 100, f"Completed: Found {studies_found}, processed {done}"
    elif phase in ("searching", "pubmed_search") or (
        phase == "starting" and total_studies == 0
    ):
        percent, text = 5, "Searching for studies..."
    elif total_studies > 0:
        percent = round(done / total_studies * 100)
        text = f"Processed: {done} / {total_studies} studies"
    elif phase == "pubmed_completed":
        percent = 10
        text = f"Found {studies_found} studies. Preparing to process..."
    elif phase in ("ai_inference_guaranteed", "ai_inference"):
        percent, text = 15, "Starting AI Analysis..."
    else:
        percent, text = 0, f"Initializing... ({phase})"

    stage_index = resolve_stage_index(phase, job.status)
    stage_label = "Failed" if stage_index < 0 else STAGES[stage_index][1]
    return ProgressView(
        percent=percent,
        text=text,
        stage_index=stage_index,
        stage_label=stage_label,
        show_percent=total_studies > 0,
    )


def format_elapsed(ms: float) -> str:
    total_seconds = int(ms // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"
