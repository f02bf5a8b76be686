from __future__ import annotations

import json
import time
from typing import Any

import httpx

from deepresearch.config import Settings
from deepresearch.models.errors import TransportError
from deepresearch.services import logger as log_service

RUNNING_STATUSES = ("queued", "in_progress")


class ResponsesClient:
    """Background-mode client for the Responses API.

    Submits one research query per call and polls it by response id. The
    client holds no mutable state besides the optional shared
    ``httpx.AsyncClient``, so one instance can serve every job of a run.
    """

    service = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "o4-mini-deep-research-2025-06-26",
        system_prompt: str = "",
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.system_prompt = system_prompt
        self.timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient | None = None) -> ResponsesClient:
        return cls(
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.deep_research_model,
            system_prompt=settings.deep_research_system_prompt,
            timeout=settings.http_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()

    def build_input_text(self, query: str) -> str:
        if not self.system_prompt:
            return query
        return f"{self.system_prompt}\n\n{query}"

    def build_submit_body(self, query: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": self.build_input_text(query)},
                    ],
                }
            ],
            "reasoning": {"summary": "auto"},
            "tools": [{"type": "web_search_preview"}],
            "background": True,
        }

    async def submit(self, query: str) -> dict[str, Any]:
        """POST a background research request. Returns ``{"id", "status", ...}``."""
        url = f"{self.base_url}/responses"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        request_meta = {
            "model": self.model,
            "input_length": len(self.build_input_text(query)),
            "background_mode": True,
        }
        return await self._send("POST", url, headers, json_body=self.build_submit_body(query), request_meta=request_meta)

    async def retrieve(self, response_id: str) -> dict[str, Any]:
        """GET the current state of a background response."""
        url = f"{self.base_url}/responses/{response_id}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        return await self._send("GET", url, headers, request_meta={"response_id": response_id})

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        *,
        json_body: dict[str, Any] | None = None,
        request_meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
            if method == "POST":
                return await client.post(url, json=json_body, headers=headers)
            return await client.get(url, headers=headers)

        t0 = time.monotonic()
        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await _do_request(client)
            else:
                response = await _do_request(self._http_client)
        except httpx.HTTPError as e:
            message = f"Responses API request failed: {e.__class__.__name__}: {e}"
            log_service.log_external_api_call(
                self.service, method, url, 0,
                duration_ms=int((time.monotonic() - t0) * 1000),
                request_meta=request_meta,
                error=message,
            )
            raise TransportError(message) from e

        duration_ms = int((time.monotonic() - t0) * 1000)
        payload = _json_or_empty(response)

        if not (200 <= response.status_code < 300):
            message = f"Responses API error ({response.status_code}): {json.dumps(payload)}"
            log_service.log_external_api_call(
                self.service, method, url, response.status_code,
                duration_ms=duration_ms,
                request_meta=request_meta,
                response_meta={"error_data": payload},
                error=message,
            )
            raise TransportError(message, status_code=response.status_code)

        if not isinstance(payload, dict) or not payload.get("id"):
            message = "Responses API returned a body without a response id"
            log_service.log_external_api_call(
                self.service, method, url, response.status_code,
                duration_ms=duration_ms,
                request_meta=request_meta,
                error=message,
            )
            raise TransportError(message, status_code=response.status_code)

        log_service.log_external_api_call(
            self.service, method, url, response.status_code,
            duration_ms=duration_ms,
            request_meta=request_meta,
            response_meta={"response_id": payload.get("id"), "status": payload.get("status")},
        )
        return payload


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}
