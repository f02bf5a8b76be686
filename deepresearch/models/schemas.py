from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deepresearch.models.run import SectionSpec


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---


class StartRunRequest(_CamelModel):
    topic: str
    sections: list[SectionSpec] = Field(default_factory=list)


# --- Responses ---


class StartRunResponse(_CamelModel):
    run_id: str


class CancelRunResponse(_CamelModel):
    run_id: str
    status: str = "cancelling"


class ConfigStatusResponse(_CamelModel):
    openai: str
    model: str
    default_section_count: int
    poll_interval_seconds: float
    job_timeout_seconds: float
    job_max_attempts: int
    research_output_dir: str
