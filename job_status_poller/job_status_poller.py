import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from loguru import logger
from job_status_poller.config import JOB_STATUS_PATH, env_token_provider
from job_status_poller.models import (
    CompletionPayload,
    HttpOutcome,
    InvokeCallback,
    Job,
    NetworkOutcome,
    PollerState,
    PollingConfig,
    PollOutcome,
    PollResult,
    ScheduleAfter,
    Terminate,
    TerminationReason,
    TimeoutOutcome,
)
from job_status_poller.state_machine import transition
from job_status_poller.store import ActiveJobStore, release


class JobStatusPoller:
    def __init__(
        self,
        base_url: str,
        job_id: str,
        config: Optional[PollingConfig] = None,
        on_complete: Optional[Callable[[CompletionPayload], Any]] = None,
        on_status_change: Optional[Callable[[Job], Any]] = None,
        store: Optional[ActiveJobStore] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = env_token_provider,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        status_path: str = JOB_STATUS_PATH,
    ):
        if not job_id:
            raise ValueError("job_id is required")
        self.base_url = base_url.rstrip("/")
        self.job_id = job_id
        self.config = config or PollingConfig()
        self.on_complete = on_complete
        self.on_status_change = on_status_change
        self.store = store
        self.token_provider = token_provider
        self.status_path = status_path
        self.logger = logger

        self.state = PollerState.initial(job_id, self.config)
        self.job: Optional[Job] = None
        self.requests = 0

        self._sleep = sleep or asyncio.sleep
        self._completion_fired = False
        self._detached = False
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._cancel_requested = False

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.status_path.format(job_id=self.job_id)}"

    @property
    def message(self) -> str:
        return self.state.message

    @property
    def is_retrying(self) -> bool:
        """True while the last failure is one the poller will retry"""
        return self.state.retrying and not self.state.is_terminal

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def _headers(self) -> Dict[str, str]:
        headers = {"Cache-Control": "no-store"}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get_status_once(self, session: aiohttp.ClientSession) -> PollOutcome:
        """Fetches the job once and classifies the result; never raises for
        HTTP, timeout or connection failures"""
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_ms / 1000)

        try:
            async with session.get(
                self.url, headers=self._headers(), timeout=timeout
            ) as response:
                if not 200 <= response.status < 300:
                    self.logger.warning(
                        f"HTTP error {response.status} polling job {self.job_id}"
                    )
                    return HttpOutcome(
                        status_code=response.status,
                        retry_after=response.headers.get("Retry-After"),
                    )

                try:
                    data = await response.json(content_type=None)
                    job = Job.model_validate(data)
                except ValueError as e:
                    self.logger.warning(f"Malformed status body for {self.job_id}: {e}")
                    return HttpOutcome(status_code=response.status)

                return HttpOutcome(status_code=response.status, job=job)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"Status request for {self.job_id} timed out after "
                f"{self.config.request_timeout_ms:.0f}ms"
            )
            return TimeoutOutcome(detail="timeout")
        except aiohttp.ClientError as e:
            self.logger.warning(f"Network error polling {self.job_id}: {e}")
            return NetworkOutcome(detail=str(e))

    async def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def _handle_status_change(self, job: Job, last_status: Optional[str]) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != job.raw_status and self.on_status_change is not None:
            self.logger.debug(f"Job {self.job_id} status changed to {job.raw_status}")
            await self._call(self.on_status_change, job)

    async def _invoke_completion(self, payload: CompletionPayload) -> None:
        if self._completion_fired:
            return
        self._completion_fired = True
        if self.on_complete is not None:
            await self._call(self.on_complete, payload)

    def _finish(self, action: Terminate) -> None:
        if action.reason == TerminationReason.completed:
            self.logger.info(f"Job {self.job_id} completed")
        else:
            self.logger.error(
                f"Stopped polling job {self.job_id} ({action.reason.value}): "
                f"{action.message}"
            )
        if self.store is not None:
            release(self.store, self.job_id)

    async def _wait_before_next_poll(self, delay_ms: float) -> None:
        self.logger.debug(
            f"Job {self.job_id} waiting {delay_ms / 1000:.2f}s before next poll"
        )
        await self._sleep(delay_ms / 1000)

    def _result(self, reason: TerminationReason) -> PollResult:
        return PollResult(
            job_id=self.job_id,
            reason=reason,
            message=self.state.message,
            job=self.job,
            requests=self.requests,
        )

    async def poll_until_complete(self) -> PollResult:
        """Poll the job until it completes, fails, is judged unpollable or the
        poller is detached.

        Polls are strictly sequential: the next request is only scheduled once
        the previous response has been fully processed.
        """
        self._task = asyncio.current_task()
        self._running = True
        self.logger.info(f"Polling job {self.job_id} at {self.url}")

        try:
            async with aiohttp.ClientSession() as session:
                while self.state.is_valid_job and not self.state.is_terminal:
                    if self._detached:
                        return self._result(TerminationReason.detached)

                    self.requests += 1
                    outcome = await self._get_status_once(session)

                    if isinstance(outcome, HttpOutcome) and outcome.job is not None:
                        last_status = self.job.raw_status if self.job else None
                        self.job = outcome.job
                        await self._handle_status_change(outcome.job, last_status)

                    step = transition(self.state, outcome, self.config)
                    self.state = step.state

                    delay_ms = None
                    terminate = next(
                        (a for a in step.actions if isinstance(a, Terminate)), None
                    )
                    try:
                        for action in step.actions:
                            if isinstance(action, InvokeCallback):
                                await self._invoke_completion(action.payload)
                            elif isinstance(action, ScheduleAfter):
                                delay_ms = action.delay_ms
                    finally:
                        # a terminal outcome is committed even if the callback
                        # raises or detaches
                        if terminate is not None:
                            self._finish(terminate)

                    if delay_ms is None:
                        break
                    await self._wait_before_next_poll(delay_ms)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            task = asyncio.current_task()
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
            self.logger.info(f"Detached from job {self.job_id}")
            return self._result(self.state.termination or TerminationReason.detached)
        finally:
            self._running = False
            self._task = None

        return self._result(self.state.termination or TerminationReason.detached)

    def start(self) -> "asyncio.Task[PollResult]":
        """Run the polling loop in the background"""
        if self._task is not None and not self._task.done():
            raise RuntimeError(f"Poller for job {self.job_id} is already running")
        task = asyncio.ensure_future(self.poll_until_complete())
        self._task = task
        return task

    def detach(self) -> None:
        """Stop watching the job. Cancels the pending wait and any request
        still in flight; the persisted job reference is left untouched."""
        self._detached = True
        # a loop that has not started yet sees the flag on its first iteration;
        # a terminal outcome already being carried out is left to finish
        if self.state.is_terminal or self._cancel_requested:
            return
        if self._running and self._task is not None and not self._task.done():
            self._cancel_requested = True
            self._task.cancel()
