"""HTTP transport for OpenAI-compatible chat-completions endpoints.

Architectural role:
    Executes requests built by `kbchat.llm.service` and normalizes both response
    shapes: a complete JSON body (`complete`) and a server-sent delta stream
    (`stream_deltas`).

Retry behavior:
    No retry loop. Each call is attempted once with the configured timeout; a
    retried generation would duplicate already streamed tokens.

Failure handling model:
    Transport and HTTP status failures are converted to `LLMError` carrying a
    sanitized, provider-labeled message. Raw provider bodies never reach callers.
"""

import json
import logging
from typing import AsyncIterator, Optional

import httpx

from kbchat.errors import LLMError


logger = logging.getLogger(__name__)


def _build_sanitized_http_error(provider_name: str, err: httpx.HTTPError) -> str:
    """Build provider-labeled HTTP error text without exposing raw internals."""
    status_code = None
    if isinstance(err, httpx.HTTPStatusError):
        status_code = err.response.status_code

    label = str(provider_name or "provider").upper()
    if status_code:
        return f"{label} HTTP ERROR ({status_code})"
    if isinstance(err, httpx.TimeoutException):
        return f"{label} REQUEST TIMED OUT"
    return f"{label} HTTP ERROR"


def extract_delta(data: dict) -> Optional[str]:
    """Extract incremental text from one decoded stream event.

    Supports the common shapes: `choices[0].delta.content`,
    `choices[0].message.content`, `choices[0].text` and `message.content`.
    """
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and "content" in choice["delta"]:
            return choice["delta"]["content"]

        if "message" in choice and "content" in choice["message"]:
            return choice["message"]["content"]

        if "text" in choice:
            return choice["text"]

    elif "message" in data and "content" in data["message"]:
        return data["message"]["content"]

    return None


class ChatCompletionsClient:
    """Async client bound to one endpoint.

    Args:
        url: Chat-completions URL.
        api_key: Bearer token or `None` for keyless local endpoints.
        provider_name: Label used in sanitized error messages.
        timeout: Per-request timeout in seconds.
        transport: Optional `httpx` transport, used to plug in mock transports.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        provider_name: str = "provider",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.provider_name = provider_name
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers(),
            transport=self.transport,
        )

    async def complete(self, payload: dict) -> str:
        """Send a non-streaming request and return the assistant message text.

        Raises:
            LLMError: Transport failure, HTTP error status, or malformed body.
        """
        body = {**payload, "stream": False}

        try:
            async with self._client() as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as err:
            raise LLMError(_build_sanitized_http_error(self.provider_name, err)) from err
        except json.JSONDecodeError as err:
            raise LLMError(f"{self.provider_name.upper()} INVALID RESPONSE") from err

        try:
            return str(data["choices"][0]["message"]["content"]).strip()
        except (KeyError, IndexError, TypeError) as err:
            raise LLMError(f"{self.provider_name.upper()} INVALID RESPONSE") from err

    async def stream_deltas(self, payload: dict) -> AsyncIterator[str]:
        """Yield text deltas from a streaming request.

        Behavior:
            - Parses line-delimited `data: {...}` events.
            - Stops at the `[DONE]` sentinel or end of body.
            - Skips keep-alive blanks and undecodable lines.

        Raises:
            LLMError: Transport failure or HTTP error status, including failures
                after some deltas were already yielded.
        """
        body = {**payload, "stream": True}

        try:
            async with self._client() as client:
                async with client.stream("POST", self.url, json=body) as response:
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line:
                            continue

                        if line.startswith("data:"):
                            line = line[5:].strip()

                        if line == "[DONE]":
                            break

                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue

                        if not isinstance(data, dict):
                            continue

                        if "error" in data:
                            raise LLMError(f"{self.provider_name.upper()} STREAM ERROR")

                        delta = extract_delta(data)
                        if delta:
                            yield delta
        except httpx.HTTPError as err:
            raise LLMError(_build_sanitized_http_error(self.provider_name, err)) from err
