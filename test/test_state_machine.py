from typing import List

import pytest
from job_status_poller.models import (
    HttpOutcome,
    InvokeCallback,
    Job,
    NetworkOutcome,
    PollerState,
    PollingConfig,
    PollOutcome,
    ScheduleAfter,
    Terminate,
    TerminationReason,
    TimeoutOutcome,
)
from job_status_poller.state_machine import (
    EXHAUSTED_MESSAGE,
    NOT_FOUND_MESSAGE,
    parse_retry_after,
    transition,
)


@pytest.fixture
def config() -> PollingConfig:
    return PollingConfig()


@pytest.fixture
def state(config) -> PollerState:
    return PollerState.initial("job-42", config)


def ok(status: str, **fields) -> HttpOutcome:
    return HttpOutcome(
        status_code=200, job=Job.model_validate({"id": "job-42", "status": status, **fields})
    )


def run(state: PollerState, outcomes: List[PollOutcome], config: PollingConfig):
    """Feed outcomes in order, collecting scheduled delays until termination."""
    delays = []
    for outcome in outcomes:
        step = transition(state, outcome, config)
        state = step.state
        delays.extend(a.delay_ms for a in step.actions if isinstance(a, ScheduleAfter))
    return state, delays


def test_running_job_schedules_base_delay(state, config):
    step = transition(state, ok("running", progress=40), config)

    assert step.actions == [ScheduleAfter(delay_ms=2000)]
    assert step.state.failure_count == 0
    assert not step.state.is_terminal


def test_completed_job_invokes_callback_then_terminates(state, config):
    step = transition(
        state, ok("completed", message="done", results={"ok": True}), config
    )

    callback, terminate = step.actions
    assert isinstance(callback, InvokeCallback)
    assert callback.payload.results == {"ok": True}
    assert callback.payload.message == "done"
    assert isinstance(terminate, Terminate)
    assert terminate.reason == TerminationReason.completed
    assert step.state.termination == TerminationReason.completed


def test_failed_job_terminates_without_callback(state, config):
    step = transition(state, ok("failed", error="PubMed unreachable"), config)

    assert step.actions == [
        Terminate(reason=TerminationReason.job_failed, message="PubMed unreachable")
    ]
    assert step.state.message == "PubMed unreachable"


def test_failed_job_without_error_text(state, config):
    step = transition(state, ok("failed"), config)

    assert step.actions[0].message == "Job failed to complete"


def test_unknown_status_keeps_polling(state, config):
    step = transition(state, ok("paused"), config)

    assert step.actions == [ScheduleAfter(delay_ms=2000)]


def test_not_found_short_circuits_without_spending_budget(state, config):
    step = transition(state, HttpOutcome(status_code=404), config)

    assert step.actions == [
        Terminate(reason=TerminationReason.not_found, message=NOT_FOUND_MESSAGE)
    ]
    assert step.state.failure_count == 0
    assert not step.state.is_valid_job
    assert not step.state.retrying


def test_rate_limit_never_exhausts_budget(state, config):
    prev = state.current_delay_ms
    for _ in range(10):
        step = transition(state, HttpOutcome(status_code=429), config)
        state = step.state
        assert state.failure_count == 0
        assert not state.is_terminal
        assert step.actions == [
            ScheduleAfter(delay_ms=min(max(prev * 3, 30000), 120000))
        ]
        assert state.retrying
        prev = state.current_delay_ms

    assert state.current_delay_ms == 120000


def test_rate_limit_honours_retry_after(state, config):
    step = transition(state, HttpOutcome(status_code=429, retry_after="7"), config)

    assert step.actions == [ScheduleAfter(delay_ms=7000)]


def test_rate_limit_retry_after_is_capped(state, config):
    step = transition(state, HttpOutcome(status_code=429, retry_after="600"), config)

    assert step.actions == [ScheduleAfter(delay_ms=120000)]


def test_rate_limit_ignores_http_date_retry_after(state, config):
    step = transition(
        state,
        HttpOutcome(status_code=429, retry_after="Wed, 21 Oct 2026 07:28:00 GMT"),
        config,
    )

    assert step.actions == [ScheduleAfter(delay_ms=30000)]


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("0", 0),
        (" 12 ", 12000),
        ("1.5", 1000),
        ("-1", None),
        ("soon", None),
    ],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected


def test_three_server_errors_give_up(state, config):
    state, delays = run(state, [HttpOutcome(status_code=500)] * 3, config)

    assert delays == [3000, 4500]
    assert state.termination == TerminationReason.exhausted_retries
    assert state.message == EXHAUSTED_MESSAGE
    assert not state.is_valid_job


def test_two_server_errors_keep_polling(state, config):
    state, delays = run(state, [HttpOutcome(status_code=500)] * 2, config)

    assert state.failure_count == 2
    assert not state.is_terminal
    assert len(delays) == 2


def test_generic_error_messages_distinguish_status(state, config):
    server_error = transition(state, HttpOutcome(status_code=500), config)
    bad_gateway = transition(state, HttpOutcome(status_code=502), config)

    assert server_error.state.message.startswith("Server error occurred")
    assert "(502)" in bad_gateway.state.message


def test_generic_error_backoff_is_capped(config):
    state = PollerState(job_id="job-42", current_delay_ms=8000)

    step = transition(state, HttpOutcome(status_code=500), config)

    assert step.actions == [ScheduleAfter(delay_ms=10000)]


def test_timeout_backoff(state, config):
    state, delays = run(state, [TimeoutOutcome()] * 2, config)

    assert delays == [4000, 8000]
    assert state.message.startswith("Request timeout")


def test_timeout_backoff_is_capped(config):
    state = PollerState(job_id="job-42", current_delay_ms=12000)

    step = transition(state, TimeoutOutcome(), config)

    assert step.actions == [ScheduleAfter(delay_ms=15000)]


def test_network_failure_message(state, config):
    step = transition(state, NetworkOutcome(detail="connection refused"), config)

    assert step.state.message.startswith("Network error")
    assert step.state.failure_count == 1


def test_mixed_failures_share_budget(state, config):
    state, _ = run(
        state,
        [TimeoutOutcome(), HttpOutcome(status_code=500), NetworkOutcome()],
        config,
    )

    assert state.termination == TerminationReason.exhausted_retries


def test_overload_backoff(state, config):
    state, delays = run(state, [HttpOutcome(status_code=503)] * 4, config)

    assert delays == [8000, 32000, 128000, 180000]
    assert state.failure_count == 0
    assert state.message.startswith("Server is temporarily overloaded")


def test_success_resets_failures_and_delay(state, config):
    state, _ = run(
        state,
        [HttpOutcome(status_code=500), TimeoutOutcome(), HttpOutcome(status_code=503)],
        config,
    )
    assert state.failure_count == 2

    step = transition(state, ok("running"), config)

    assert step.state.failure_count == 0
    assert step.state.current_delay_ms == 2000
    assert step.state.message == ""
    assert not step.state.retrying


def test_malformed_success_counts_as_network_failure(state, config):
    step = transition(state, HttpOutcome(status_code=200), config)

    assert step.state.failure_count == 1
    assert step.actions == [ScheduleAfter(delay_ms=4000)]


def test_terminated_state_ignores_further_outcomes(state, config):
    dead = transition(state, HttpOutcome(status_code=404), config).state

    step = transition(dead, ok("completed"), config)

    assert step.actions == []
    assert step.state == dead


def test_end_to_end_scenario_delays(state, config):
    outcomes = [
        HttpOutcome(status_code=503),
        HttpOutcome(status_code=503),
        ok("running", progress=40),
        ok("completed", progress=100, results={"ok": True}),
    ]

    state, delays = run(state, outcomes, config)

    assert delays == [8000, 32000, 2000]
    assert state.termination == TerminationReason.completed


def test_custom_config_is_respected():
    config = PollingConfig(base_delay_ms=100, max_failures=1)
    state = PollerState.initial("job-1", config)

    step = transition(state, TimeoutOutcome(), config)

    assert step.state.termination == TerminationReason.exhausted_retries
