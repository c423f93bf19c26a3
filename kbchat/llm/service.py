"""Prompt-to-payload adapter for LLM invocation.

Architectural role:
    Provides the two generation entrypoints used by the rest of the system:
    - `stream_answer(prompt)`: token stream for the chat answer.
    - `summarize(prior_summary, messages)`: one-shot memory checkpoint summary.
    Both wrap the supplied content with the shared system message and forward it to
    `kbchat.llm.client.ChatCompletionsClient`.

Model call flow:
    prompt -> payload construction -> `ChatCompletionsClient` -> deltas / text.

Determinism:
    Payload construction is deterministic for fixed inputs and configuration.
    Generated output remains non-deterministic because inference runs remotely.
"""

import logging
from typing import AsyncIterator, List, Optional

import httpx

from kbchat.config import Settings
from kbchat.errors import LLMError
from kbchat.llm.client import ChatCompletionsClient
from kbchat.llm.provider_config import get_provider, load_key


logger = logging.getLogger(__name__)


SYSTEM_MESSAGE = (
    "You are a knowledge-base assistant specialized in sales, scaling, systems and "
    "hiring, providing helpful, clear and engaging answers.\n"
    "Every prompt ends with an answer separator line. Start your reply with that "
    "separator on its own line, then write the answer.\n"
)

SUMMARY_SYSTEM_MESSAGE = (
    "You are a summarization component. Produce a concise, factual, neutral "
    "compression of the conversation. Do not speculate or add new information."
)

SUMMARY_INSTRUCTION = (
    "Progressively summarize the conversation below.\n"
    "- Preserve the user's core intent and every concrete fact, decision and open item.\n"
    "- Merge the new lines into the current summary; never drop a fact that the "
    "current summary already contains.\n"
    "- Avoid redundancy and do not repeat the same fact twice.\n"
    "- Return only the new summary text.\n\n"
)


def format_transcript(messages: List[dict]) -> str:
    """Render `{role, content}` messages as `Role: content` lines."""
    lines = []
    for msg in messages:
        role = str(msg.get("role", "")).strip() or "unknown"
        content = str(msg.get("content", "")).strip()
        if content:
            lines.append(f"{role.capitalize()}: {content}")
    return "\n".join(lines)


def build_summary_prompt(prior_summary: str, messages: List[dict]) -> str:
    return (
        SUMMARY_INSTRUCTION
        + "Current summary:\n"
        + (prior_summary.strip() or "(empty)")
        + "\n\nNew lines of conversation:\n"
        + format_transcript(messages)
        + "\n\nNew summary:\n"
    )


class LanguageModel:
    """Generation service bound to one answer model and one summary model.

    Args:
        client: Transport client.
        model_name: Model used for chat answers.
        summary_model_name: Model used for memory checkpoints.
        temperature: Sampling temperature for both calls.
        configured: `False` when credentials are missing; every call then raises
            `LLMError` without touching the network.
    """

    def __init__(
        self,
        client: ChatCompletionsClient,
        model_name: str,
        summary_model_name: Optional[str] = None,
        temperature: float = 0.5,
        configured: bool = True,
    ):
        self.client = client
        self.model_name = model_name
        self.summary_model_name = summary_model_name or model_name
        self.temperature = temperature
        self.configured = configured

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "LanguageModel":
        provider = get_provider(settings.provider)
        key_file = provider["key_file"]
        api_key = load_key(key_file)

        configured = key_file is None or bool(api_key)
        if not configured:
            logger.warning("%s key not found; LLM calls will fail", settings.provider.upper())

        client = ChatCompletionsClient(
            url=provider["url"],
            api_key=api_key,
            provider_name=settings.provider,
            timeout=settings.llm_timeout_seconds,
            transport=transport,
        )
        return cls(
            client=client,
            model_name=settings.model_name,
            summary_model_name=settings.summary_model_name,
            temperature=settings.temperature,
            configured=configured,
        )

    def _ensure_configured(self) -> None:
        if not self.configured:
            raise LLMError(f"{self.client.provider_name.upper()} KEY FILE NOT FOUND")

    def _payload(self, model: str, system: str, prompt: str) -> dict:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }

    async def stream_answer(self, prompt: str) -> AsyncIterator[str]:
        """Stream answer deltas for a fully built prompt.

        Raises:
            LLMError: Missing credentials or transport failure, possibly mid-stream.
        """
        self._ensure_configured()
        payload = self._payload(self.model_name, SYSTEM_MESSAGE, prompt)
        async for delta in self.client.stream_deltas(payload):
            yield delta

    async def summarize(self, prior_summary: str, messages: List[dict]) -> str:
        """Merge `messages` into `prior_summary` and return the updated summary."""
        self._ensure_configured()
        payload = self._payload(
            self.summary_model_name,
            SUMMARY_SYSTEM_MESSAGE,
            build_summary_prompt(prior_summary, messages),
        )
        return await self.client.complete(payload)
