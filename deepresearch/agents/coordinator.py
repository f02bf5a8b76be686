from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Union

from loguru import logger

from deepresearch.agents.job_runner import CancellationToken, JobRunner
from deepresearch.models.events import ProgressEvent, SectionStatusPart
from deepresearch.models.run import (
    Job,
    ResearchPhase,
    Run,
    SectionSpec,
    SectionState,
    validate_outline,
)
from deepresearch.services import logger as log_service
from deepresearch.services import streaming

# save(content, section_metadata) -> path
ReportSaver = Callable[[str, dict[str, Any]], Union[str, Awaitable[str]]]


@dataclass(slots=True)
class _SectionUpdate:
    job: Job
    event: SectionStatusPart


@dataclass(slots=True)
class _JobFinished:
    job: Job


def build_section_query(topic: str, section: SectionSpec) -> str:
    parts = [f"Research topic: {topic}", f"Subtopic: {section.title}"]
    if section.description:
        parts.append(section.description)
    return "\n".join(parts)


def create_run(topic: str, sections: list[SectionSpec], run_id: str | None = None) -> Run:
    """Validate an approved outline and build its Run. Raises InvalidOutline."""
    validated = validate_outline(topic, sections)
    return Run(run_id=run_id or str(uuid.uuid4()), topic=topic.strip(), sections=validated)


class RunCoordinator:
    """Fans one run out into concurrent jobs and folds their outcomes back.

    Flow:
      1. Outline + run status (dispatching), every section queued
      2. One task per section, all launched at once
      3. Section events forwarded as jobs move; phase -> researching on the
         first running section
      4. Each terminal job bumps ``completed_sections``; successful content
         goes to the report saver while the section shows synthesizing
      5. complete when any section succeeded, error when all failed

    Job tasks only touch their own Job and report through a queue; this
    coordinator is the single writer of the Run's aggregate fields.
    """

    def __init__(
        self,
        run: Run,
        runner: JobRunner,
        *,
        save_report: ReportSaver | None = None,
        heartbeat_after: float = 30.0,
        token: CancellationToken | None = None,
    ):
        self.run = run
        self.runner = runner
        self.save_report = save_report
        self.heartbeat_after = heartbeat_after
        self.token = token or CancellationToken()
        self._tracker = streaming.SectionStatusTracker()
        self._started = False

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def cancel(self) -> None:
        if not self.token.cancelled:
            log_service.log_event("run_cancelled", "Run cancelled", run_id=self.run_id)
        self.token.cancel()

    async def run_with(self, emitter: streaming.EventEmitter) -> None:
        """Forward every event of the run to ``emitter``."""
        async for event in self.events():
            await emitter.emit(event)

    async def events(self) -> AsyncGenerator[ProgressEvent, None]:
        """Run every job and yield progress events until the run is terminal or cancelled."""
        if self._started:
            raise RuntimeError(f"run {self.run_id} has already been started")
        self._started = True

        run = self.run
        queue: asyncio.Queue[_SectionUpdate | _JobFinished] = asyncio.Queue()
        tasks: list[asyncio.Task] = []

        run.jobs = {
            section.id: Job(run_id=run.run_id, section=section, section_number=index)
            for index, section in enumerate(run.sections, start=1)
        }
        run.advance(ResearchPhase.DISPATCHING)
        log_service.log_event(
            "run_started",
            "Dispatching research jobs",
            run_id=run.run_id,
            topic=run.topic[:100],
            total_sections=run.total_sections,
        )

        yield streaming.outline(run.run_id, run.topic, run.sections)
        yield self._run_status("Dispatching research agents...")
        for job in run.jobs.values():
            queued = self._section_event(job, SectionState.QUEUED)
            if self._tracker.accept(queued):
                yield queued

        if self.token.cancelled:
            return

        async def drive(job: Job) -> None:
            query = build_section_query(run.topic, job.section)
            try:
                async for event in self.runner.execute(job, query, self.token):
                    await queue.put(_SectionUpdate(job, event))
            except Exception as e:
                # Unexpected bug in a job task; report it as that section's failure.
                logger.exception(f"[run {run.run_id}] job {job.section_id} crashed")
                if not job.is_terminal:
                    await queue.put(_SectionUpdate(job, self.runner.fail(job, f"Unexpected error: {e}")))
            finally:
                await queue.put(_JobFinished(job))

        try:
            tasks = [asyncio.create_task(drive(job)) for job in run.jobs.values()]

            finished = 0
            last_update = time.monotonic()
            while finished < len(tasks):
                message = await self._next_message(queue)
                if self.token.cancelled:
                    return
                if message is None:
                    silence = time.monotonic() - last_update
                    yield streaming.heartbeat(
                        run.run_id,
                        f"Still researching ({run.completed_sections}/{run.total_sections} sections complete)",
                        silence,
                    )
                    continue

                if isinstance(message, _JobFinished):
                    finished += 1
                    continue

                last_update = time.monotonic()
                async for event in self._handle_update(message):
                    if self.token.cancelled:
                        return
                    yield event

            if self.token.cancelled:
                return
            yield self._finish()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _next_message(self, queue: asyncio.Queue) -> _SectionUpdate | _JobFinished | None:
        """Next job message, or None on heartbeat timeout or cancellation."""
        getter = asyncio.create_task(queue.get())
        watcher = asyncio.create_task(self.token.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {getter, watcher},
                timeout=self.heartbeat_after,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, watcher):
                if not task.done():
                    task.cancel()
        if getter in done:
            return getter.result()
        return None

    async def _handle_update(self, update: _SectionUpdate) -> AsyncGenerator[ProgressEvent, None]:
        job, event = update.job, update.event
        run = self.run

        if event.status == SectionState.RUNNING and run.advance(ResearchPhase.RESEARCHING):
            if self._tracker.accept(event):
                yield event
            yield self._run_status("Researching sections...")
            return

        if event.status == SectionState.SYNTHESIZING:
            if self._tracker.accept(event):
                yield event
            done = await self._persist(job, event)
            if self._tracker.accept(done):
                yield done
            yield self._complete_section(job)
            return

        if self._tracker.accept(event):
            yield event
        else:
            logger.warning(
                f"[run {run.run_id}] dropped out-of-order {event.status.value} event "
                f"for section {job.section_id}"
            )
        if event.status == SectionState.ERROR:
            yield self._complete_section(job)

    async def _persist(self, job: Job, synthesizing: SectionStatusPart) -> SectionStatusPart:
        result = job.result
        progress = synthesizing.progress.model_dump(exclude_none=True) if synthesizing.progress else {}
        if self.save_report is not None and result is not None:
            metadata = {
                "run_id": self.run.run_id,
                "section_id": job.section_id,
                "subtopic": job.section.title,
                "parent_topic": self.run.topic,
                "section_number": job.section_number,
            }
            try:
                saved = await asyncio.to_thread(self.save_report, result.content, metadata)
                # Async savers hand back their coroutine from the worker thread.
                if inspect.isawaitable(saved):
                    saved = await saved
                progress["markdown_path"] = str(saved)
            except Exception as e:
                log_service.log_event(
                    "report_save_error",
                    f"Failed to save report for section {job.section_id}",
                    run_id=self.run.run_id,
                    error=str(e),
                )
        return self._section_event(job, SectionState.DONE, progress=progress)

    def _complete_section(self, job: Job) -> ProgressEvent:
        completed = self.run.mark_section_terminal()
        log_service.log_event(
            "section_terminal",
            f"Section {job.section_id} finished with {job.status.value}",
            run_id=self.run.run_id,
            completed_sections=completed,
            total_sections=self.run.total_sections,
        )
        return self._run_status(
            f"{completed}/{self.run.total_sections} sections complete"
        )

    def _finish(self) -> ProgressEvent:
        run = self.run
        succeeded = sum(1 for job in run.jobs.values() if job.succeeded)
        if succeeded == 0:
            run.advance(ResearchPhase.ERROR)
            message = "All research sections failed"
        else:
            run.advance(ResearchPhase.COMPLETE)
            failed = run.total_sections - succeeded
            message = "Research complete" if failed == 0 else (
                f"Research complete ({failed} of {run.total_sections} sections failed)"
            )
        log_service.log_event(
            "run_finished",
            message,
            run_id=run.run_id,
            phase=run.phase.value,
            succeeded=succeeded,
            total_sections=run.total_sections,
        )
        return self._run_status(message)

    def _run_status(self, message: str) -> ProgressEvent:
        return streaming.run_status(
            self.run.run_id,
            self.run.phase,
            message,
            self.run.completed_sections,
            self.run.total_sections,
        )

    def _section_event(
        self,
        job: Job,
        status: SectionState,
        progress: dict[str, Any] | None = None,
    ) -> SectionStatusPart:
        return streaming.section_status(
            job.run_id, job.section_id, job.section.title, status, progress=progress
        )
