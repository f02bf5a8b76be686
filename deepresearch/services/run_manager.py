"""
Run Manager

Inbound surface of the orchestration engine:
- start_run(topic, sections) -> run_id
- subscribe(run_id): lazy, single-consumer stream of progress events
- cancel_run(run_id): best-effort cancellation

Each run is driven by its own background task that pushes events into an
outbox queue; the subscriber drains it. Runs share nothing but the
research client.

A run leaves the registry when its stream ends. Runs nobody subscribes to
are dropped on cancel, or ``unsubscribed_run_ttl_seconds`` after they
finish.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from loguru import logger

from deepresearch.agents.coordinator import ReportSaver, RunCoordinator, create_run
from deepresearch.agents.job_runner import JobClient, JobRunner
from deepresearch.config import Settings, settings as default_settings
from deepresearch.models.events import ProgressEvent
from deepresearch.models.run import SectionSpec
from deepresearch.services import logger as log_service
from deepresearch.services.backoff import BackoffPolicy
from deepresearch.services.report_store import save_section_report

_END = object()


class QueueEmitter:
    """EventEmitter that buffers events for one subscriber."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()

    async def emit(self, event: ProgressEvent) -> None:
        await self.queue.put(event)

    async def close(self) -> None:
        await self.queue.put(_END)


@dataclass
class ManagedRun:
    coordinator: RunCoordinator
    emitter: QueueEmitter = field(default_factory=QueueEmitter)
    task: asyncio.Task | None = None
    subscribed: bool = False
    expiry: asyncio.TimerHandle | None = None


class RunManager:
    def __init__(
        self,
        client_factory: Callable[[], JobClient],
        *,
        config: Settings | None = None,
        save_report: ReportSaver | None = save_section_report,
        runner_factory: Callable[[JobClient], JobRunner] | None = None,
    ):
        self.config = config or default_settings
        self._client_factory = client_factory
        self._client: JobClient | None = None
        self.save_report = save_report
        self._runner_factory = runner_factory or self._default_runner
        self._runs: dict[str, ManagedRun] = {}
        self._tasks: set[asyncio.Task] = set()

    def _default_runner(self, client: JobClient) -> JobRunner:
        cfg = self.config
        return JobRunner(
            client,
            backoff=BackoffPolicy(base_seconds=cfg.backoff_base_seconds),
            max_attempts=cfg.job_max_attempts,
            poll_interval=cfg.poll_interval_seconds,
            timeout=cfg.job_timeout_seconds,
            progress_tick_polls=cfg.progress_tick_polls,
            preview_chars=cfg.preview_chars,
        )

    @property
    def client(self) -> JobClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def start_run(self, topic: str, sections: list[SectionSpec]) -> str:
        """Validate the outline and start researching it. Raises InvalidOutline."""
        run = create_run(topic, sections)
        coordinator = RunCoordinator(
            run,
            self._runner_factory(self.client),
            save_report=self.save_report,
            heartbeat_after=self.config.heartbeat_after_seconds,
        )
        managed = ManagedRun(coordinator=coordinator)
        self._runs[run.run_id] = managed
        managed.task = asyncio.create_task(self._drive(managed))
        # The loop holds tasks only weakly.
        self._tasks.add(managed.task)
        managed.task.add_done_callback(self._tasks.discard)
        log_service.log_event(
            "run_accepted",
            "Research run accepted",
            run_id=run.run_id,
            total_sections=run.total_sections,
        )
        return run.run_id

    async def _drive(self, managed: ManagedRun) -> None:
        coordinator = managed.coordinator
        try:
            await coordinator.run_with(managed.emitter)
        except Exception:
            # Nobody awaits this task; the subscriber sees the stream end.
            logger.exception(f"[run {coordinator.run_id}] coordinator failed")
        finally:
            await managed.emitter.close()
            if not managed.subscribed and self._runs.get(coordinator.run_id) is managed:
                managed.expiry = asyncio.get_running_loop().call_later(
                    self.config.unsubscribed_run_ttl_seconds,
                    self._expire,
                    coordinator.run_id,
                    managed,
                )

    def _expire(self, run_id: str, managed: ManagedRun) -> None:
        if managed.subscribed or self._runs.get(run_id) is not managed:
            return
        self._runs.pop(run_id, None)
        log_service.log_event("run_expired", "Dropped finished run with no subscriber", run_id=run_id)

    async def subscribe(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield the run's events until it ends. A run can be subscribed once."""
        managed = self._runs.get(run_id)
        if managed is None:
            raise KeyError(run_id)
        if managed.subscribed:
            raise RuntimeError(f"run {run_id} already has a subscriber")
        managed.subscribed = True
        if managed.expiry is not None:
            managed.expiry.cancel()
            managed.expiry = None
        return self._drain(run_id, managed)

    async def _drain(self, run_id: str, managed: ManagedRun) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                item = await managed.emitter.queue.get()
                if item is _END:
                    return
                yield item
        finally:
            # Consumer gone (completed or disconnected); the run is no longer reachable.
            if managed.task is not None and not managed.task.done():
                managed.coordinator.cancel()
            self._runs.pop(run_id, None)

    def cancel_run(self, run_id: str) -> bool:
        managed = self._runs.get(run_id)
        if managed is None:
            return False
        managed.coordinator.cancel()
        if not managed.subscribed:
            # No stream will ever drain it.
            self._runs.pop(run_id, None)
            if managed.expiry is not None:
                managed.expiry.cancel()
        return True

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        managed = self._runs.get(run_id)
        if managed is None:
            return None
        return managed.coordinator.run.snapshot()

    def active_runs(self) -> list[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        for managed in list(self._runs.values()):
            managed.coordinator.cancel()
            if managed.expiry is not None:
                managed.expiry.cancel()
        self._runs.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        close = getattr(self._client, "aclose", None)
        if close is not None:
            await close()
