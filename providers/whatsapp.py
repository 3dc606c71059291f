"""
WhatsApp transport — outbound text through Twilio's WhatsApp Messages API.

Contact ids are E.164 numbers ("+573138539155"). Twilio addresses WhatsApp
endpoints as "whatsapp:+57...", so the prefix is added on the way out and
stripped from inbound webhooks.

API Docs: https://www.twilio.com/docs/whatsapp/api
"""
from __future__ import annotations

import re
from typing import Any, Optional, Protocol

import httpx
import structlog
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from core.errors import ProviderUnavailableError
from models.schemas import SendReceipt

logger = structlog.get_logger()

_STRIP = re.compile(r"[\s\-()]")


def normalize_whatsapp_number(raw: str) -> str:
    """'whatsapp:+57 313-853 (9155)' → '+573138539155'."""
    number = (raw or "").strip()
    if number.lower().startswith("whatsapp:"):
        number = number[len("whatsapp:"):]
    number = _STRIP.sub("", number)
    if number and not number.startswith("+"):
        number = f"+{number}"
    return number


class MessagingTransport(Protocol):

    async def send(self, contact_id: str, text: str) -> SendReceipt:
        ...


class TwilioWhatsAppTransport:
    """Twilio REST client for WhatsApp messages."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"
    PROVIDER = "twilio_whatsapp"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = normalize_whatsapp_number(from_number)
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
                transport=self._transport,
            )
        return self._client

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json()

    async def send(self, contact_id: str, text: str) -> SendReceipt:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise ProviderUnavailableError(self.PROVIDER, "credentials not configured")

        to = normalize_whatsapp_number(contact_id)
        # Twilio uses form-encoded POST, not JSON
        payload = {
            "From": f"whatsapp:{self.from_number}",
            "To": f"whatsapp:{to}",
            "Body": text,
        }
        logger.info("twilio_whatsapp_send", to=to, length=len(text))
        try:
            result = await self._request("POST", "/Messages", data=payload)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ProviderUnavailableError(self.PROVIDER, str(cause or e)) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.PROVIDER, str(e)) from e

        return SendReceipt(
            external_message_id=result.get("sid", ""),
            status=result.get("status", "queued"),
        )

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_inbound_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio inbound WhatsApp webhook.

        Twilio sends form fields: MessageSid, From ("whatsapp:+57..."), To,
        Body, ProfileName, NumMedia, ...
        """
        return {
            "contact_id": normalize_whatsapp_number(payload.get("From", "")),
            "text": payload.get("Body", "") or "",
            "external_message_id": payload.get("MessageSid") or payload.get("SmsMessageSid") or None,
            "metadata": {
                "profile_name": payload.get("ProfileName", ""),
                "to": normalize_whatsapp_number(payload.get("To", "")),
                "num_media": int(payload.get("NumMedia", 0) or 0),
            },
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
