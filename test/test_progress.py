import pytest
from job_status_poller.models import Job
from job_status_poller.progress import describe_progress, format_elapsed


def make_job(status="running", metadata=None, results=None) -> Job:
    return Job.model_validate(
        {"id": "job-1", "status": status, "metadata": metadata, "results": results}
    )


def test_completed_job_reports_created_studies():
    job = make_job(
        "completed",
        metadata={"studiesFound": 12, "currentStudy": 9},
        results={"studiesCreated": 10},
    )

    view = describe_progress(job)

    assert view.percent == 100
    assert view.text == "Completed: Found 12, processed 10"
    assert view.stage_label == "Complete"


@pytest.mark.parametrize("phase", ["searching", "pubmed_search", "starting"])
def test_search_phase(phase):
    view = describe_progress(make_job(metadata={"phase": phase}))

    assert view.percent == 5
    assert view.text == "Searching for studies..."
    assert view.stage_index == 0
    assert not view.show_percent


def test_missing_metadata_is_search_phase():
    view = describe_progress(make_job(metadata=None))

    assert view.percent == 5


def test_processing_uses_current_study():
    job = make_job(
        metadata={"phase": "ai_inference", "totalStudies": 8, "currentStudy": 2}
    )

    view = describe_progress(job)

    assert view.percent == 25
    assert view.text == "Processed: 2 / 8 studies"
    assert view.stage_label == "AI Analysis"
    assert view.show_percent


def test_total_falls_back_to_studies_found():
    job = make_job(
        metadata={"phase": "study_creation", "studiesFound": 4, "studiesCreated": 3}
    )

    view = describe_progress(job)

    assert view.percent == 75
    assert view.stage_label == "Study Creation"


def test_pubmed_completed_without_total():
    view = describe_progress(make_job(metadata={"phase": "pubmed_completed"}))

    assert view.percent == 10
    assert view.text == "Found 0 studies. Preparing to process..."


def test_ai_inference_without_total():
    view = describe_progress(make_job(metadata={"phase": "ai_inference_guaranteed"}))

    assert view.percent == 15
    assert view.text == "Starting AI Analysis..."


def test_unknown_phase():
    view = describe_progress(make_job(metadata={"phase": "warming_up"}))

    assert view.percent == 0
    assert view.text == "Initializing... (warming_up)"


def test_failed_job_is_off_the_ladder():
    view = describe_progress(make_job("failed", metadata={"phase": "ai_inference"}))

    assert view.stage_index == -1
    assert view.stage_label == "Failed"


@pytest.mark.parametrize(
    "ms,expected", [(0, "0s"), (59999, "59s"), (60000, "1m 0s"), (185500, "3m 5s")]
)
def test_format_elapsed(ms, expected):
    assert format_elapsed(ms) == expected
