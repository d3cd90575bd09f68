import re
from typing import Optional

from job_status_poller.models import (
    CompletionPayload,
    HttpOutcome,
    InvokeCallback,
    JobStatus,
    NetworkOutcome,
    PollerState,
    PollingConfig,
    PollOutcome,
    ScheduleAfter,
    Terminate,
    TerminationReason,
    TimeoutOutcome,
    Transition,
)

NOT_FOUND_MESSAGE = "Job not found. This may be an old job that has expired."
EXHAUSTED_MESSAGE = "Too many failed attempts. This may be an invalid or expired job."
JOB_FAILED_MESSAGE = "Job failed to complete"
RATE_LIMITED_MESSAGE = "Server is busy. Slowing down requests..."
OVERLOADED_MESSAGE = "Server is temporarily overloaded. Retrying with longer delays..."
SERVER_ERROR_MESSAGE = (
    "Server error occurred during processing. "
    "The job may still be running, please check back later."
)
TIMEOUT_MESSAGE = (
    "Request timeout - server may be overloaded. Retrying with longer intervals..."
)
NETWORK_MESSAGE = (
    "Network error - unable to check job status. "
    "Please check your connection and try again."
)

_LEADING_SECONDS = re.compile(r"\s*(\d+)")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Returns the Retry-After header in milliseconds, or None if it does not
    start with a number of seconds (HTTP-date values are ignored).

    Only the leading integer counts, so "1.5" is read as one second.
    """
    if value is None:
        return None
    match = _LEADING_SECONDS.match(value)
    if match is None:
        return None
    return int(match.group(1)) * 1000.0


def transition(
    state: PollerState, outcome: PollOutcome, config: PollingConfig
) -> Transition:
    """Apply one poll outcome to the poller state.

    Pure: no I/O and no clock. The caller executes the returned actions in
    order: ``InvokeCallback`` before ``Terminate``, at most one ``ScheduleAfter``.
    """
    if not state.is_valid_job or state.is_terminal:
        return Transition(state=state)

    if isinstance(outcome, HttpOutcome):
        if 200 <= outcome.status_code < 300:
            if outcome.job is None:
                return _on_network_failure(state, config)
            return _on_success(state, outcome, config)
        if outcome.status_code == 404:
            return _terminate(
                state, TerminationReason.not_found, NOT_FOUND_MESSAGE, invalid=True
            )
        if outcome.status_code == 429:
            delay = parse_retry_after(outcome.retry_after)
            if delay is None:
                delay = max(
                    state.current_delay_ms * config.rate_limit_multiplier,
                    config.rate_limit_floor_ms,
                )
            return _reschedule(
                state, min(delay, config.rate_limit_max_ms), RATE_LIMITED_MESSAGE
            )
        if outcome.status_code == 503:
            delay = min(
                state.current_delay_ms * config.overload_multiplier,
                config.overload_max_ms,
            )
            return _reschedule(state, delay, OVERLOADED_MESSAGE)

        if outcome.status_code == 500:
            message = SERVER_ERROR_MESSAGE
        else:
            message = (
                f"Failed to fetch job status ({outcome.status_code}). "
                "Please try refreshing the page."
            )
        return _count_failure(
            state,
            message,
            config.error_multiplier,
            config.error_max_ms,
            config,
        )

    if isinstance(outcome, TimeoutOutcome):
        return _count_failure(
            state,
            TIMEOUT_MESSAGE,
            config.network_multiplier,
            config.network_max_ms,
            config,
        )

    if isinstance(outcome, NetworkOutcome):
        return _on_network_failure(state, config)

    raise TypeError(f"Unsupported poll outcome: {outcome!r}")


def _on_success(
    state: PollerState, outcome: HttpOutcome, config: PollingConfig
) -> Transition:
    job = outcome.job
    state = state.model_copy(
        update={
            "failure_count": 0,
            "current_delay_ms": config.base_delay_ms,
            "message": "",
            "retrying": False,
        }
    )

    if job.status == JobStatus.completed:
        completed = state.model_copy(
            update={
                "termination": TerminationReason.completed,
                "message": job.message or "",
            }
        )
        return Transition(
            state=completed,
            actions=[
                InvokeCallback(
                    payload=CompletionPayload(message=job.message, results=job.results)
                ),
                Terminate(reason=TerminationReason.completed, message=job.message or ""),
            ],
        )

    if job.status == JobStatus.failed:
        message = job.error or JOB_FAILED_MESSAGE
        failed = state.model_copy(
            update={"termination": TerminationReason.job_failed, "message": message}
        )
        return Transition(
            state=failed,
            actions=[Terminate(reason=TerminationReason.job_failed, message=message)],
        )

    return Transition(
        state=state, actions=[ScheduleAfter(delay_ms=state.current_delay_ms)]
    )


def _on_network_failure(state: PollerState, config: PollingConfig) -> Transition:
    return _count_failure(
        state,
        NETWORK_MESSAGE,
        config.network_multiplier,
        config.network_max_ms,
        config,
    )


def _count_failure(
    state: PollerState,
    message: str,
    multiplier: float,
    ceiling: float,
    config: PollingConfig,
) -> Transition:
    failures = state.failure_count + 1
    state = state.model_copy(update={"failure_count": failures})
    if failures >= config.max_failures:
        return _terminate(
            state, TerminationReason.exhausted_retries, EXHAUSTED_MESSAGE, invalid=True
        )
    return _reschedule(state, min(state.current_delay_ms * multiplier, ceiling), message)


def _reschedule(state: PollerState, delay_ms: float, message: str) -> Transition:
    state = state.model_copy(
        update={"current_delay_ms": delay_ms, "message": message, "retrying": True}
    )
    return Transition(state=state, actions=[ScheduleAfter(delay_ms=delay_ms)])


def _terminate(
    state: PollerState, reason: TerminationReason, message: str, invalid: bool
) -> Transition:
    state = state.model_copy(
        update={
            "termination": reason,
            "message": message,
            "retrying": False,
            "is_valid_job": not invalid and state.is_valid_job,
        }
    )
    return Transition(state=state, actions=[Terminate(reason=reason, message=message)])
