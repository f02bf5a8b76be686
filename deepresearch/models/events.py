from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deepresearch.models.run import ResearchPhase, SectionState


class EventType(str, Enum):
    RUN_STATUS = "run-status"
    OUTLINE = "outline"
    SECTION_STATUS = "section-status"
    HEARTBEAT = "heartbeat"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    def format(self) -> str:
        lines = [f"event: {self.event.value}"]
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"data: {json.dumps(self.data)}")
        return "\n".join(lines) + "\n\n"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Part(BaseModel, ABC):
    """Common shape of every progress event.

    ``part_id`` is the identity key a consumer reconciles on: it depends
    only on the logical subject, never on the payload or the time.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    persistent: ClassVar[bool] = True

    run_id: str
    timestamp: str = Field(default_factory=_utc_now)

    @property
    @abstractmethod
    def part_id(self) -> str: ...

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RunStatusPart(_Part):
    type: Literal["run-status"] = "run-status"
    phase: ResearchPhase
    phase_message: str
    completed_sections: int = Field(ge=0)
    total_sections: int = Field(ge=1)

    @property
    def part_id(self) -> str:
        return f"run:{self.run_id}"


class OutlineSection(BaseModel):
    id: str
    title: str
    description: str = ""


class OutlinePart(_Part):
    type: Literal["outline"] = "outline"
    topic: str
    sections: list[OutlineSection]

    @property
    def part_id(self) -> str:
        return f"outline:{self.run_id}"


class SectionProgress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    attempt: int | None = None
    poll_count: int | None = None
    elapsed_seconds: int | None = None
    remote_status: str | None = None
    preview: str | None = None
    markdown_path: str | None = None
    token_usage: dict[str, int | None] | None = None


class SectionStatusPart(_Part):
    type: Literal["section-status"] = "section-status"
    section_id: str
    section_title: str
    status: SectionState
    progress: SectionProgress | None = None
    error: str | None = None

    @property
    def part_id(self) -> str:
        return f"section:{self.run_id}:{self.section_id}"


class HeartbeatPart(_Part):
    persistent: ClassVar[bool] = False

    type: Literal["heartbeat"] = "heartbeat"
    message: str
    seconds_since_last_update: int = Field(ge=0)

    @property
    def part_id(self) -> str:
        return f"heartbeat:{self.run_id}"


ProgressEvent = Annotated[
    Union[RunStatusPart, OutlinePart, SectionStatusPart, HeartbeatPart],
    Field(discriminator="type"),
]
