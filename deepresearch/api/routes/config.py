from __future__ import annotations

from fastapi import APIRouter

from deepresearch.config import settings
from deepresearch.models.schemas import ConfigStatusResponse

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("", response_model=ConfigStatusResponse, response_model_by_alias=True)
async def config_status():
    """Report which settings are in effect. Never returns the API key itself."""
    return ConfigStatusResponse(
        openai="configured" if settings.openai_configured else "OPENAI_API_KEY not configured",
        model=settings.deep_research_model,
        default_section_count=settings.default_section_count,
        poll_interval_seconds=settings.poll_interval_seconds,
        job_timeout_seconds=settings.job_timeout_seconds,
        job_max_attempts=settings.job_max_attempts,
        research_output_dir=settings.research_output_dir,
    )
