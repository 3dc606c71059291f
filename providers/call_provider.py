"""
Call Provider — outbound batch calling through ElevenLabs Conversational AI.

Batch flow:
1. start_batch_call() → POST /convai/batch-calling/submit, returns the batch id
2. The provider dials every recipient on its own schedule
3. get_batch_status() → GET /convai/batch-calling/{id}, polled by the monitor
4. cancel_batch() / retry_batch() for operator intervention

Provider payloads are validated here and handed to the rest of the service
as ProviderBatchSnapshot / BatchSubmission; the raw status vocabulary never
leaves this module.

API Docs: https://elevenlabs.io/docs/api-reference/batch-calling
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from core.errors import ProviderUnavailableError
from models.schemas import BatchSubmission, ProviderBatchSnapshot

logger = structlog.get_logger()


class CallProvider(Protocol):
    """What the orchestrator and monitor need from a batch-calling provider."""

    async def start_batch_call(
        self,
        group_id: str,
        recipients: list[dict[str, Any]],
        agent_phone_number_id: str,
        scheduled_time: Optional[datetime] = None,
        call_name: str = "",
        agent_id: str = "",
    ) -> BatchSubmission:
        ...

    async def get_batch_status(self, batch_id: str) -> ProviderBatchSnapshot:
        ...

    async def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        ...

    async def retry_batch(self, batch_id: str) -> dict[str, Any]:
        ...

    async def list_batches(self) -> list[dict[str, Any]]:
        ...


class ElevenLabsBatchClient:
    """ElevenLabs REST client for batch calls."""

    PROVIDER = "elevenlabs"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        agent_id: str = "",
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"xi-api-key": self.api_key, "User-Agent": "campaign-relay/0.1"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
                transport=self._transport,
            )
        return self._client

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "elevenlabs_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json() if resp.content else {}

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        if not self.api_key:
            raise ProviderUnavailableError(self.PROVIDER, "API key not configured")
        try:
            return await self._request(method, path, **kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ProviderUnavailableError(self.PROVIDER, str(cause or e)) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.PROVIDER, str(e)) from e

    # ── Batch Management ────────────────────────────────────

    async def start_batch_call(
        self,
        group_id: str,
        recipients: list[dict[str, Any]],
        agent_phone_number_id: str,
        scheduled_time: Optional[datetime] = None,
        call_name: str = "",
        agent_id: str = "",
    ) -> BatchSubmission:
        """
        Submit a batch call.

        Args:
            group_id: Our group identifier, used for the default call name
            recipients: [{"phone_number": "+57...", "name": "...", **variables}]
            agent_phone_number_id: Provider id of the caller number
            scheduled_time: When to start dialing (default: now)
            call_name: Label shown in the provider dashboard
            agent_id: Provider voice agent (default: client's agent_id)
        """
        when = scheduled_time.timestamp() if scheduled_time else time.time()
        payload = {
            "call_name": call_name or f"group-{group_id}",
            "agent_id": agent_id or self.agent_id,
            "agent_phone_number_id": agent_phone_number_id,
            "scheduled_time_unix": int(when),
            "recipients": [self._recipient_payload(r) for r in recipients],
        }

        logger.info("elevenlabs_submit_batch", group_id=group_id,
                    recipients=len(recipients), call_name=payload["call_name"])
        result = await self._call("POST", "/convai/batch-calling/submit", json=payload)

        batch_id = str(result.get("id") or result.get("batch_id") or "")
        if not batch_id:
            raise ProviderUnavailableError(self.PROVIDER, "submit response without batch id")
        return BatchSubmission(
            batch_id=batch_id,
            recipients_count=int(result.get("total_calls_scheduled") or len(recipients)),
            raw=result,
        )

    async def get_batch_status(self, batch_id: str) -> ProviderBatchSnapshot:
        result = await self._call("GET", f"/convai/batch-calling/{batch_id}")
        try:
            return ProviderBatchSnapshot.from_provider(result, batch_id=batch_id)
        except (ValidationError, ValueError) as e:
            logger.error("elevenlabs_bad_status_payload", batch_id=batch_id, error=str(e))
            raise ProviderUnavailableError(self.PROVIDER, f"malformed status payload: {e}") from e

    async def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        logger.info("elevenlabs_cancel_batch", batch_id=batch_id)
        return await self._call("POST", f"/convai/batch-calling/{batch_id}/cancel", json={})

    async def retry_batch(self, batch_id: str) -> dict[str, Any]:
        logger.info("elevenlabs_retry_batch", batch_id=batch_id)
        return await self._call("POST", f"/convai/batch-calling/{batch_id}/retry", json={})

    async def list_batches(self) -> list[dict[str, Any]]:
        """Every batch in the provider workspace."""
        result = await self._call("GET", "/convai/batch-calling/workspace")
        if isinstance(result, dict):
            return list(result.get("batch_calls") or [])
        return list(result or [])

    # ── Helpers ─────────────────────────────────────────────

    @staticmethod
    def _recipient_payload(recipient: dict[str, Any]) -> dict[str, Any]:
        variables = dict(recipient.get("variables") or {})
        for key, value in recipient.items():
            if key not in ("phone_number", "variables"):
                variables.setdefault(key, value)
        return {"phone_number": recipient["phone_number"], **variables}

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
