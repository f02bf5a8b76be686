from __future__ import annotations

from typing import Any, Protocol

from deepresearch.models.events import (
    EventType,
    HeartbeatPart,
    OutlinePart,
    OutlineSection,
    ProgressEvent,
    RunStatusPart,
    SectionProgress,
    SectionStatusPart,
    SSEEvent,
)
from deepresearch.models.run import SECTION_RANK, ResearchPhase, SectionSpec, SectionState


class EventEmitter(Protocol):
    """Anything that forwards progress events to a consumer."""

    async def emit(self, event: ProgressEvent) -> None: ...


def run_status(
    run_id: str,
    phase: ResearchPhase,
    phase_message: str,
    completed_sections: int = 0,
    total_sections: int = 5,
) -> RunStatusPart:
    return RunStatusPart(
        run_id=run_id,
        phase=phase,
        phase_message=phase_message,
        completed_sections=completed_sections,
        total_sections=total_sections,
    )


def outline(run_id: str, topic: str, sections: list[SectionSpec] | tuple[SectionSpec, ...]) -> OutlinePart:
    return OutlinePart(
        run_id=run_id,
        topic=topic,
        sections=[
            OutlineSection(id=s.id, title=s.title, description=s.description)
            for s in sections
        ],
    )


def section_status(
    run_id: str,
    section_id: str,
    section_title: str,
    status: SectionState,
    progress: dict[str, Any] | None = None,
    error: str | None = None,
) -> SectionStatusPart:
    return SectionStatusPart(
        run_id=run_id,
        section_id=section_id,
        section_title=section_title,
        status=status,
        progress=SectionProgress(**progress) if progress else None,
        error=error,
    )


def heartbeat(run_id: str, message: str, seconds_since_last_update: float) -> HeartbeatPart:
    return HeartbeatPart(
        run_id=run_id,
        message=message,
        seconds_since_last_update=max(int(seconds_since_last_update), 0),
    )


def preview(content: str, limit: int = 200) -> str:
    return content[:limit] + "..."


def format_as_data_part(event: ProgressEvent) -> dict[str, Any]:
    """Shape an event as a chat-SDK data part keyed by its identity."""
    return {
        "type": "data",
        "id": event.part_id,
        "data": event.payload(),
    }


def to_sse(event: ProgressEvent) -> SSEEvent:
    return SSEEvent(event=EventType(event.type), data=event.payload(), id=event.part_id)


class SectionStatusTracker:
    """Drops section events that would move a section backwards.

    Ranks follow queued < running < synthesizing < done|error; equal ranks
    pass (periodic ticks), and nothing passes once a section is terminal.
    """

    def __init__(self) -> None:
        self._last: dict[str, SectionState] = {}

    def accept(self, event: SectionStatusPart) -> bool:
        previous = self._last.get(event.part_id)
        if previous is not None:
            if previous in (SectionState.DONE, SectionState.ERROR):
                return False
            if SECTION_RANK[event.status] < SECTION_RANK[previous]:
                return False
        self._last[event.part_id] = event.status
        return True

    def status_of(self, part_id: str) -> SectionState | None:
        return self._last.get(part_id)
