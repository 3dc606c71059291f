"""
Reply generation — Claude or OpenAI behind one narrow interface.

    generate_reply(system_instruction, history, message) -> str

`history` is the already-windowed list of prior turns, oldest first.
Every provider failure surfaces as GenerationFailedError; the router turns
that into a GenerationFailed routing outcome.
"""
from __future__ import annotations

from typing import Optional, Protocol

import structlog

from config.settings import LLMConfig
from core.errors import GenerationFailedError
from models.schemas import HistoryTurn

logger = structlog.get_logger()

_DEFAULT_INSTRUCTION = (
    "Eres un asistente amable que continúa por WhatsApp una conversación "
    "iniciada en una llamada telefónica. Responde de forma breve y clara."
)


class GenerativeCapability(Protocol):

    async def generate_reply(self, system_instruction: str, history: list[HistoryTurn],
                             message: str) -> str:
        ...


class LLMReplyGenerator:
    """
    Generates WhatsApp replies using Claude or OpenAI.
    The SDK client is created lazily on first use.
    """

    def __init__(self, config: Optional[LLMConfig] = None, client=None):
        self.config = config or LLMConfig()
        self._client = client

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.config.api_key, timeout=self.config.timeout_s)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key,
                                                        timeout=self.config.timeout_s)
            logger.info("llm_client_initialized", provider=self.config.provider,
                        model=self.config.model)
        return self._client

    @staticmethod
    def build_messages(history: list[HistoryTurn], message: str) -> list[dict[str, str]]:
        """History + the new message, starting with a user turn."""
        messages = [{"role": t.role, "content": t.content} for t in history]
        messages.append({"role": "user", "content": message})
        if messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Conversación iniciada]"})
        return messages

    async def generate_reply(self, system_instruction: str, history: list[HistoryTurn],
                             message: str) -> str:
        system = system_instruction or _DEFAULT_INSTRUCTION
        messages = self.build_messages(history, message)
        try:
            client = self._get_client()
            if self.is_openai:
                # OpenAI: system prompt is a message in the messages list
                response = await client.chat.completions.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                )
                text = response.choices[0].message.content
            else:
                # Anthropic: system prompt is a separate parameter
                response = await client.messages.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    system=system,
                    messages=messages,
                )
                text = "".join(
                    getattr(block, "text", "") for block in response.content
                )
        except Exception as e:
            logger.error("llm_generation_failed", provider=self.config.provider, error=str(e))
            raise GenerationFailedError(str(e)) from e

        if not text or not text.strip():
            raise GenerationFailedError("empty completion")
        return text.strip()
