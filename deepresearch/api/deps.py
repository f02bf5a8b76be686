from __future__ import annotations

import httpx

from deepresearch.config import settings
from deepresearch.services.run_manager import RunManager
from deepresearch.tools.responses_client import ResponsesClient


def _build_client() -> ResponsesClient:
    # One pooled HTTP client shared by every job of every run.
    return ResponsesClient.from_settings(
        settings,
        http_client=httpx.AsyncClient(timeout=settings.http_timeout_seconds),
    )


# Singleton
_run_manager: RunManager | None = None


def run_manager() -> RunManager:
    """Get or create the process-wide run manager."""
    global _run_manager
    if _run_manager is None:
        _run_manager = RunManager(_build_client, config=settings)
    return _run_manager


async def shutdown_run_manager() -> None:
    global _run_manager
    if _run_manager is not None:
        await _run_manager.shutdown()
        _run_manager = None
