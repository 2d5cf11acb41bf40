"""Single-attempt transport to the workflow execution endpoint.

One POST per call, bounded by a hard deadline.  Responses are classified
into request outcomes; nothing here retries, caches or touches workflow
state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from trendmate.config import Settings, get_config
from trendmate.models import FailureReason, FatalFailure, RetryableFailure, Success

log = logging.getLogger(__name__)

Outcome = Success | RetryableFailure | FatalFailure


def build_headers(config: Settings) -> dict[str, str]:
    """Static identification headers carried by every request."""
    return {
        "widgetKey": config.widget_key,
        "appid": config.app_id,
        "agentId": config.agent_id,
        "Content-Type": "application/json",
    }


def build_body(config: Settings, operation_id: str, query: str | list[str]) -> dict[str, Any]:
    return {
        "appId": config.app_id,
        "integrationId": operation_id,
        "taskInputs": {"query": query},
    }


class Transport:
    """Async HTTP transport over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or get_config()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout, connect=10.0),
        )

    async def send(self, operation_id: str, query: str | list[str]) -> Outcome:
        """Issue one request and classify the response."""
        deadline = self.config.request_timeout
        try:
            resp = await asyncio.wait_for(
                self._client.post(
                    self.config.api_url,
                    headers=build_headers(self.config),
                    json=build_body(self.config, operation_id, query),
                ),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning("%s timed out after %.0fs", operation_id, deadline)
            return FatalFailure(
                reason=FailureReason.TIMEOUT,
                detail=f"no response within {deadline:.0f}s",
            )
        except httpx.HTTPError as exc:
            log.warning("%s transport error: %s", operation_id, exc)
            return FatalFailure(reason=FailureReason.HTTP_ERROR, detail=str(exc))

        return self._classify(operation_id, resp)

    def _classify(self, operation_id: str, resp: httpx.Response) -> Outcome:
        status = resp.status_code
        if status in self.config.overloaded_statuses:
            return RetryableFailure(
                reason=FailureReason.OVERLOADED,
                status=status,
                detail="server overloaded",
            )
        if not resp.is_success:
            log.warning("%s failed with HTTP %d", operation_id, status)
            return FatalFailure(
                reason=FailureReason.HTTP_ERROR,
                status=status,
                detail=resp.reason_phrase,
            )
        try:
            payload = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            log.warning("%s returned an undecodable body: %s", operation_id, exc)
            return FatalFailure(
                reason=FailureReason.DECODE_ERROR,
                status=status,
                detail=str(exc),
            )
        return Success(payload=payload)

    async def aclose(self) -> None:
        """Release the underlying HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
