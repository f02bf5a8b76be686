from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncGenerator, Awaitable, Callable, Protocol

from loguru import logger

from deepresearch.models.errors import (
    ExtractionError,
    InvalidTransition,
    JobTimeoutError,
    RemoteFailure,
    TransportError,
)
from deepresearch.models.events import SectionStatusPart
from deepresearch.models.run import Job, JobResult, JobStatus, SectionState
from deepresearch.services import logger as log_service
from deepresearch.services import streaming
from deepresearch.services.backoff import BackoffPolicy
from deepresearch.tools.response_extraction import extract_output_text, extract_usage
from deepresearch.tools.responses_client import RUNNING_STATUSES


class JobClient(Protocol):
    async def submit(self, query: str) -> dict[str, Any]: ...

    async def retrieve(self, response_id: str) -> dict[str, Any]: ...


class CancellationToken:
    """Run-level cancel signal, observed by job tasks at their suspension points."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait_cancelled(self) -> None:
        await self._event.wait()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancel. Returns ``cancelled``."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class JobRunner:
    """Drives one research job: submit, poll, terminal.

    Every transition returns the section event describing the job's new
    state; ``execute`` decides which of them to yield. Transport failures
    during submit or poll restart the whole attempt after a backoff wait,
    up to ``max_attempts``. Remote failures, timeouts and empty results are
    terminal immediately.
    """

    def __init__(
        self,
        client: JobClient,
        *,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 3,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
        progress_tick_polls: int = 6,
        preview_chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._client = client
        self._backoff = backoff or BackoffPolicy()
        self.max_attempts = max(int(max_attempts), 1)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.progress_tick_polls = max(int(progress_tick_polls), 1)
        self.preview_chars = preview_chars
        self._clock = clock
        self._sleep = sleep

    # --- transitions ---

    async def submit(self, job: Job, query: str) -> SectionStatusPart:
        """One submission call. On TransportError the job stays Unsubmitted."""
        self._require(job, "submit", JobStatus.UNSUBMITTED)
        if job.started_at is None:
            job.started_at = self._clock()
            job.deadline = job.started_at + self.timeout

        payload = await self._client.submit(query)

        job.external_id = str(payload["id"])
        job.remote_status = payload.get("status")
        job.status = JobStatus.SUBMITTED
        job.poll_count = 0
        log_service.log_job_step(
            job.run_id, job.section_id, "submit", "submitted",
            {"response_id": job.external_id, "remote_status": job.remote_status, "attempt": job.attempt},
        )
        return self._event(job, SectionState.RUNNING, progress=self._running_progress(job))

    async def poll(self, job: Job) -> SectionStatusPart:
        """One status check. The deadline is enforced before any network call."""
        self._require(job, "poll", JobStatus.SUBMITTED, JobStatus.POLLING)
        try:
            self._check_deadline(job)
            payload = await self._client.retrieve(job.external_id)
            job.poll_count += 1
            return self._apply_remote(job, payload)
        except JobTimeoutError as e:
            return self._finish(job, JobStatus.TIMED_OUT, str(e))
        except RemoteFailure as e:
            status = JobStatus.CANCELLED if e.status == "cancelled" else JobStatus.FAILED
            return self._finish(job, status, str(e))
        except ExtractionError as e:
            return self._finish(job, JobStatus.FAILED, str(e))

    def cancel(self, job: Job) -> None:
        if job.is_terminal:
            return
        job.status = JobStatus.CANCELLED
        job.error = "cancelled"
        log_service.log_job_step(job.run_id, job.section_id, "cancel", "cancelled")

    def fail(self, job: Job, error: str) -> SectionStatusPart:
        return self._finish(job, JobStatus.FAILED, error)

    # --- driver ---

    async def execute(
        self,
        job: Job,
        query: str,
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[SectionStatusPart, None]:
        """Run the job to a terminal state, yielding the section events worth reporting.

        Yields nothing further once ``token`` is cancelled.
        """
        token = token or CancellationToken()
        try:
            async for event in self._attempts(job, query, token):
                yield event
        except asyncio.CancelledError:
            # Task abandoned mid-call; the remote job is left to the service.
            self.cancel(job)
            raise

    async def _attempts(
        self,
        job: Job,
        query: str,
        token: CancellationToken,
    ) -> AsyncGenerator[SectionStatusPart, None]:
        last_error: TransportError | None = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                wait = self._backoff.delay(attempt)
                logger.info(
                    f"[job {job.section_id}] retrying in {wait:g}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                log_service.log_job_step(
                    job.run_id, job.section_id, "retry", "retrying",
                    {"attempt": attempt, "max_attempts": self.max_attempts, "backoff_seconds": wait},
                )
                if await self._pause(wait, token):
                    self.cancel(job)
                    return
                try:
                    self._check_deadline(job)
                except JobTimeoutError as e:
                    yield self._finish(job, JobStatus.TIMED_OUT, str(e))
                    return
            job.attempt = attempt
            if job.status != JobStatus.UNSUBMITTED:
                self._reset_for_retry(job)

            try:
                event = await self.submit(job, query)
                if token.cancelled:
                    self.cancel(job)
                    return
                yield event

                while not job.is_terminal:
                    if await self._pause(self.poll_interval, token):
                        self.cancel(job)
                        return
                    event = await self.poll(job)
                    if token.cancelled:
                        self.cancel(job)
                        return
                    if job.is_terminal or job.poll_count % self.progress_tick_polls == 0:
                        yield event
                return
            except TransportError as e:
                last_error = e
                logger.warning(f"[job {job.section_id}] attempt {attempt}/{self.max_attempts} failed: {e}")
                log_service.log_job_step(
                    job.run_id, job.section_id, "attempt", "attempt_failed",
                    {"attempt": attempt, "error": str(e), "status_code": e.status_code},
                )
                if token.cancelled:
                    self.cancel(job)
                    return

        yield self.fail(job, str(last_error) if last_error else "All retry attempts failed")

    # --- helpers ---

    def _require(self, job: Job, operation: str, *allowed: JobStatus) -> None:
        if job.status not in allowed:
            raise InvalidTransition(
                f"cannot {operation} job for section {job.section_id} in state {job.status.value}"
            )

    def _check_deadline(self, job: Job) -> None:
        if job.deadline is not None and self._clock() > job.deadline:
            raise JobTimeoutError(f"Deep research timed out after {self.timeout:g} seconds")

    def _apply_remote(self, job: Job, payload: dict[str, Any]) -> SectionStatusPart:
        status = payload.get("status")
        job.remote_status = status

        if status in RUNNING_STATUSES:
            job.status = JobStatus.POLLING
            logger.debug(
                f"[job {job.section_id}] poll #{job.poll_count}: status={status}, "
                f"elapsed={self._elapsed(job)}s"
            )
            return self._event(job, SectionState.RUNNING, progress=self._running_progress(job))

        if status in ("failed", "cancelled"):
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else None
            raise RemoteFailure(message or f"Research {status}", status=status)

        text, strategy = extract_output_text(payload)
        usage = extract_usage(payload)
        job.result = JobResult(
            response_id=str(payload.get("id") or job.external_id),
            content=text,
            usage=usage,
            model=payload.get("model"),
            extracted_by=strategy,
        )
        job.status = JobStatus.COMPLETED
        job.error = None
        log_service.log_job_step(
            job.run_id, job.section_id, "poll", "completed",
            {
                "response_id": job.external_id,
                "content_length": len(text),
                "poll_count": job.poll_count,
                "elapsed_seconds": self._elapsed(job),
                "usage": usage.to_dict() if usage else None,
            },
        )
        progress: dict[str, Any] = {
            "attempt": job.attempt,
            "poll_count": job.poll_count,
            "elapsed_seconds": self._elapsed(job),
            "remote_status": status,
            "preview": streaming.preview(text, self.preview_chars),
        }
        if usage:
            progress["token_usage"] = usage.to_dict()
        return self._event(job, SectionState.SYNTHESIZING, progress=progress)

    def _finish(self, job: Job, status: JobStatus, error: str) -> SectionStatusPart:
        job.status = status
        job.error = error
        log_service.log_job_step(
            job.run_id, job.section_id, "finish", status.value,
            {"error": error, "attempt": job.attempt, "poll_count": job.poll_count},
        )
        return self._event(job, SectionState.ERROR, error=error)

    def _reset_for_retry(self, job: Job) -> None:
        if job.is_terminal:
            raise InvalidTransition(f"cannot retry terminal job for section {job.section_id}")
        job.status = JobStatus.UNSUBMITTED
        job.external_id = None
        job.remote_status = None
        job.poll_count = 0

    async def _pause(self, seconds: float, token: CancellationToken) -> bool:
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await token.wait(seconds)
        return token.cancelled

    def _elapsed(self, job: Job) -> int:
        if job.started_at is None:
            return 0
        return int(self._clock() - job.started_at)

    def _running_progress(self, job: Job) -> dict[str, Any]:
        return {
            "attempt": job.attempt,
            "poll_count": job.poll_count,
            "elapsed_seconds": self._elapsed(job),
            "remote_status": job.remote_status,
        }

    def _event(
        self,
        job: Job,
        status: SectionState,
        progress: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> SectionStatusPart:
        return streaming.section_status(
            job.run_id,
            job.section_id,
            job.section.title,
            status,
            progress=progress,
            error=error,
        )
