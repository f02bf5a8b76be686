from __future__ import annotations

import asyncio
import functools

import pytest

from deepresearch.agents.coordinator import RunCoordinator, build_section_query, create_run
from deepresearch.agents.job_runner import JobRunner
from deepresearch.models.errors import InvalidOutline
from deepresearch.models.events import (
    HeartbeatPart,
    OutlinePart,
    RunStatusPart,
    SectionStatusPart,
)
from deepresearch.models.run import SECTION_RANK, JobStatus, ResearchPhase, SectionSpec, SectionState


class OutcomeClient:
    """Completes or fails each job depending on the subtopic in its query."""

    def __init__(self, outcomes: dict[str, str] | None = None, block: bool = False):
        self.outcomes = outcomes or {}
        self.block = block

    async def submit(self, query: str):
        title = next(line for line in query.splitlines() if line.startswith("Subtopic: "))
        return {"id": title.removeprefix("Subtopic: "), "status": "queued"}

    async def retrieve(self, response_id: str):
        if self.block:
            await asyncio.Event().wait()
        if self.outcomes.get(response_id) == "fail":
            return {"id": response_id, "status": "failed", "error": {"message": f"{response_id} failed"}}
        return {"id": response_id, "status": "completed", "output_text": f"Report on {response_id}"}


async def _no_wait(seconds: float) -> None:
    await asyncio.sleep(0)


def _sections(n: int = 5) -> list[SectionSpec]:
    return [SectionSpec(id=f"s{i}", title=f"Section {i}", description=f"About {i}") for i in range(1, n + 1)]


def _coordinator(client, n: int = 5, **kwargs) -> RunCoordinator:
    run = create_run("Ocean tides", _sections(n), run_id="run-1")
    runner = JobRunner(client, poll_interval=0, sleep=_no_wait)
    return RunCoordinator(run, runner, **kwargs)


async def _collect(coordinator: RunCoordinator):
    return [event async for event in coordinator.events()]


def _run_statuses(events):
    return [e for e in events if isinstance(e, RunStatusPart)]


def _sections_of(events, section_id: str):
    return [e for e in events if isinstance(e, SectionStatusPart) and e.section_id == section_id]


def test_section_query_includes_topic_title_and_description():
    query = build_section_query("Ocean tides", SectionSpec(id="s1", title="Moon", description="Lunar pull"))
    assert query == "Research topic: Ocean tides\nSubtopic: Moon\nLunar pull"


def test_create_run_rejects_invalid_outlines():
    with pytest.raises(InvalidOutline):
        create_run("Ocean tides", [])
    with pytest.raises(InvalidOutline):
        create_run("Ocean tides", [SectionSpec(id="a", title="A"), SectionSpec(id="a", title="B")])
    with pytest.raises(InvalidOutline):
        create_run("   ", _sections(1))


@pytest.mark.asyncio
async def test_all_sections_succeed():
    coordinator = _coordinator(OutcomeClient())

    events = await _collect(coordinator)

    final = events[-1]
    assert isinstance(final, RunStatusPart)
    assert final.phase == ResearchPhase.COMPLETE
    assert final.phase_message == "Research complete"
    assert final.completed_sections == 5
    assert coordinator.run.phase == ResearchPhase.COMPLETE
    assert all(job.status == JobStatus.COMPLETED for job in coordinator.run.jobs.values())


@pytest.mark.asyncio
async def test_partial_failure_still_completes():
    coordinator = _coordinator(OutcomeClient({"Section 3": "fail"}))

    events = await _collect(coordinator)

    final = events[-1]
    assert final.phase == ResearchPhase.COMPLETE
    assert final.completed_sections == 5
    assert final.total_sections == 5
    assert final.phase_message == "Research complete (1 of 5 sections failed)"
    failed = _sections_of(events, "s3")[-1]
    assert failed.status == SectionState.ERROR
    assert failed.error == "Section 3 failed"


@pytest.mark.asyncio
async def test_all_sections_failing_ends_in_error():
    outcomes = {f"Section {i}": "fail" for i in range(1, 6)}
    coordinator = _coordinator(OutcomeClient(outcomes))

    events = await _collect(coordinator)

    final = events[-1]
    assert final.phase == ResearchPhase.ERROR
    assert final.phase_message == "All research sections failed"
    assert final.completed_sections == 5


@pytest.mark.asyncio
async def test_completed_count_rises_by_one_per_terminal_section():
    coordinator = _coordinator(OutcomeClient({"Section 2": "fail"}))

    events = await _collect(coordinator)

    counts = [e.completed_sections for e in _run_statuses(events)]
    assert counts == sorted(counts)
    progress = [e.phase_message for e in _run_statuses(events) if "sections complete" in e.phase_message]
    assert progress == [f"{n}/5 sections complete" for n in range(1, 6)]


@pytest.mark.asyncio
async def test_event_order_starts_with_outline_and_queued_sections():
    coordinator = _coordinator(OutcomeClient(), n=3)

    events = await _collect(coordinator)

    assert isinstance(events[0], OutlinePart)
    assert [s.id for s in events[0].sections] == ["s1", "s2", "s3"]
    assert isinstance(events[1], RunStatusPart)
    assert events[1].phase == ResearchPhase.DISPATCHING
    assert events[1].completed_sections == 0
    assert [(e.section_id, e.status) for e in events[2:5]] == [
        ("s1", SectionState.QUEUED),
        ("s2", SectionState.QUEUED),
        ("s3", SectionState.QUEUED),
    ]


@pytest.mark.asyncio
async def test_section_statuses_never_move_backwards():
    coordinator = _coordinator(OutcomeClient({"Section 4": "fail"}))

    events = await _collect(coordinator)

    for section in _sections():
        statuses = [e.status for e in _sections_of(events, section.id)]
        ranks = [SECTION_RANK[s] for s in statuses]
        assert ranks == sorted(ranks)
        terminal = [s for s in statuses if s in (SectionState.DONE, SectionState.ERROR)]
        assert len(terminal) == 1
        assert statuses[-1] == terminal[0]


@pytest.mark.asyncio
async def test_first_running_section_moves_run_to_researching():
    coordinator = _coordinator(OutcomeClient(), n=2)

    events = await _collect(coordinator)

    phases = [e.phase for e in _run_statuses(events)]
    assert ResearchPhase.RESEARCHING in phases
    researching_at = next(
        i for i, e in enumerate(events) if isinstance(e, RunStatusPart) and e.phase == ResearchPhase.RESEARCHING
    )
    first_synth = next(
        i for i, e in enumerate(events)
        if isinstance(e, SectionStatusPart) and e.status == SectionState.SYNTHESIZING
    )
    assert researching_at < first_synth


@pytest.mark.asyncio
async def test_saved_report_path_is_attached_to_done_event():
    saved: list[tuple[str, dict]] = []

    def save(content: str, metadata: dict) -> str:
        saved.append((content, metadata))
        return f"/reports/{metadata['section_number']:02d}.md"

    coordinator = _coordinator(OutcomeClient(), n=2, save_report=save)

    events = await _collect(coordinator)

    assert sorted(content for content, _ in saved) == ["Report on Section 1", "Report on Section 2"]
    meta = next(m for _, m in saved if m["section_id"] == "s2")
    assert meta["parent_topic"] == "Ocean tides"
    assert meta["subtopic"] == "Section 2"
    done = _sections_of(events, "s2")[-1]
    assert done.status == SectionState.DONE
    assert done.progress.markdown_path == "/reports/02.md"
    assert done.progress.preview == "Report on Section 2..."


@pytest.mark.asyncio
async def test_async_report_saver_is_awaited():
    async def save(content: str, metadata: dict) -> str:
        await asyncio.sleep(0)
        return f"/async/{metadata['section_id']}.md"

    coordinator = _coordinator(OutcomeClient(), n=1, save_report=save)

    events = await _collect(coordinator)

    assert _sections_of(events, "s1")[-1].progress.markdown_path == "/async/s1.md"


class _AsyncStore:
    def __init__(self, root: str):
        self.root = root

    async def __call__(self, content: str, metadata: dict) -> str:
        await asyncio.sleep(0)
        return f"{self.root}/{metadata['section_id']}.md"


@pytest.mark.asyncio
async def test_wrapped_async_savers_are_awaited():
    async def save(root: str, content: str, metadata: dict) -> str:
        return f"{root}/{metadata['section_id']}.md"

    for saver, expected in [
        (functools.partial(save, "/partial"), "/partial/s1.md"),
        (_AsyncStore("/callable"), "/callable/s1.md"),
    ]:
        coordinator = _coordinator(OutcomeClient(), n=1, save_report=saver)

        events = await _collect(coordinator)

        assert _sections_of(events, "s1")[-1].progress.markdown_path == expected


@pytest.mark.asyncio
async def test_failed_save_still_marks_section_done():
    def save(content: str, metadata: dict) -> str:
        raise OSError("disk full")

    coordinator = _coordinator(OutcomeClient(), n=1, save_report=save)

    events = await _collect(coordinator)

    done = _sections_of(events, "s1")[-1]
    assert done.status == SectionState.DONE
    assert done.progress.markdown_path is None
    assert events[-1].phase == ResearchPhase.COMPLETE


@pytest.mark.asyncio
async def test_heartbeat_fills_silence_between_updates():
    run = create_run("Ocean tides", _sections(1), run_id="run-hb")
    runner = JobRunner(OutcomeClient(), poll_interval=0.3)
    coordinator = RunCoordinator(run, runner, heartbeat_after=0.05)

    events = await _collect(coordinator)

    heartbeats = [e for e in events if isinstance(e, HeartbeatPart)]
    assert heartbeats
    assert all(h.part_id == "heartbeat:run-hb" for h in heartbeats)
    assert events[-1].phase == ResearchPhase.COMPLETE


@pytest.mark.asyncio
async def test_no_events_after_cancel():
    coordinator = _coordinator(OutcomeClient(block=True), n=3)
    received = []

    async for event in coordinator.events():
        received.append(event)
        if isinstance(event, SectionStatusPart) and event.status == SectionState.RUNNING:
            coordinator.cancel()
            cancelled_at = len(received)

    assert len(received) == cancelled_at
    assert all(job.status == JobStatus.CANCELLED for job in coordinator.run.jobs.values())
    assert coordinator.run.phase not in (ResearchPhase.COMPLETE, ResearchPhase.ERROR)


@pytest.mark.asyncio
async def test_events_can_only_be_started_once():
    coordinator = _coordinator(OutcomeClient(), n=1)
    await _collect(coordinator)

    with pytest.raises(RuntimeError):
        await _collect(coordinator)
