from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from deepresearch.models.errors import InvalidOutline


class ResearchPhase(StrEnum):
    PLANNING = "planning"
    DISPATCHING = "dispatching"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER = [
    ResearchPhase.PLANNING,
    ResearchPhase.DISPATCHING,
    ResearchPhase.RESEARCHING,
    ResearchPhase.SYNTHESIZING,
    ResearchPhase.COMPLETE,
]


class SectionState(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    ERROR = "error"


SECTION_RANK = {
    SectionState.QUEUED: 0,
    SectionState.RUNNING: 1,
    SectionState.SYNTHESIZING: 2,
    SectionState.DONE: 3,
    SectionState.ERROR: 3,
}


class JobStatus(StrEnum):
    UNSUBMITTED = "unsubmitted"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.CANCELLED}
)


class SectionSpec(BaseModel):
    """One subtopic of an approved outline."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class JobResult:
    response_id: str
    content: str
    usage: TokenUsage | None = None
    model: str | None = None
    extracted_by: str = ""


@dataclass(slots=True)
class Job:
    """Runtime record of one section's research. Mutated only by its own task."""

    run_id: str
    section: SectionSpec
    section_number: int
    status: JobStatus = JobStatus.UNSUBMITTED
    external_id: str | None = None
    remote_status: str | None = None
    attempt: int = 0
    poll_count: int = 0
    started_at: float | None = None
    deadline: float | None = None
    result: JobResult | None = None
    error: str | None = None

    @property
    def section_id(self) -> str:
        return self.section.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


@dataclass
class Run:
    """One research session over an approved outline."""

    run_id: str
    topic: str
    sections: tuple[SectionSpec, ...]
    phase: ResearchPhase = ResearchPhase.PLANNING
    completed_sections: int = 0
    jobs: dict[str, Job] = field(default_factory=dict)

    @property
    def total_sections(self) -> int:
        return len(self.sections)

    def advance(self, phase: ResearchPhase) -> bool:
        """Move to ``phase`` if it is not behind the current one. Returns True on change."""
        if self.phase == phase or self.phase in (ResearchPhase.COMPLETE, ResearchPhase.ERROR):
            return False
        if phase != ResearchPhase.ERROR and PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase):
            return False
        self.phase = phase
        return True

    def mark_section_terminal(self) -> int:
        if self.completed_sections >= self.total_sections:
            raise RuntimeError(f"run {self.run_id} has no unfinished sections left")
        self.completed_sections += 1
        return self.completed_sections

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "topic": self.topic,
            "phase": self.phase.value,
            "completed_sections": self.completed_sections,
            "total_sections": self.total_sections,
            "jobs": {
                section_id: {"status": job.status.value, "attempt": job.attempt, "error": job.error}
                for section_id, job in self.jobs.items()
            },
        }


def validate_outline(topic: str, sections: list[SectionSpec]) -> tuple[SectionSpec, ...]:
    """Reject outlines the event-reconciliation contract cannot represent."""
    if not topic or not topic.strip():
        raise InvalidOutline("topic must not be empty")
    if not sections:
        raise InvalidOutline("outline must contain at least one section")
    seen: set[str] = set()
    for section in sections:
        if not section.id:
            raise InvalidOutline("section id must not be empty")
        if section.id in seen:
            raise InvalidOutline(f"duplicate section id: {section.id}")
        seen.add(section.id)
    return tuple(sections)
