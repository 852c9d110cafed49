# core/llm_interface.py
"""
Handles all direct interactions with the text generation backend (Ollama).
Provides the ``TextGenerator`` protocol the engine depends on, an httpx-based
implementation supporting buffered and streamed generation with cooperative
cancellation, and response cleaning helpers.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Copyright 2025 Dennis Lewis
"""

# Standard library imports
import json
import re
from collections.abc import Callable
from typing import Any, Protocol

# Third-party imports
import httpx
import structlog

# Local imports
from config import settings
from core.cancellation import CancellationToken
from core.errors import BackendUnavailableError
from models import GenerationResponse, ModelConfig

logger = structlog.get_logger(__name__)

TokenCallback = Callable[[str], None]


class TextGenerator(Protocol):
    """Capability the engine needs from a text generation backend."""

    async def generate(
        self,
        prompt: str,
        config: ModelConfig,
        *,
        stream: bool = False,
        cancel_token: CancellationToken | None = None,
        on_token: TokenCallback | None = None,
    ) -> GenerationResponse: ...


def _ollama_options(config: ModelConfig) -> dict[str, Any]:
    return {
        "temperature": config.temperature,
        "top_p": config.top_p,
        "num_ctx": config.num_ctx,
        "num_predict": config.num_predict,
    }


class OllamaService:
    """Client for an Ollama server's ``/api/generate`` and ``/api/tags``."""

    def __init__(
        self,
        base_url: str = settings.OLLAMA_BASE_URL,
        timeout: float = settings.HTTPX_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        # Use a single async client for all requests to reuse connections
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.request_count = 0
        logger.info(f"OllamaService initialized for {self.base_url}.")

    def set_base_url(self, url: str) -> None:
        self.base_url = url.rstrip("/")

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def check_connection(self) -> bool:
        try:
            response = await self._client.get(f"{self.base_url}/api/tags")
        except httpx.RequestError as e:
            logger.warning(f"Ollama connection check failed: {e}")
            return False
        return response.is_success

    async def list_models(self) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                "Failed to list models. Is Ollama running?"
            ) from e
        data = response.json()
        models = data.get("models") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    def _payload(self, prompt: str, config: ModelConfig, stream: bool) -> dict[str, Any]:
        return {
            "model": config.model,
            "prompt": prompt,
            "stream": stream,
            "options": _ollama_options(config),
        }

    async def _post_non_streaming(self, payload: dict[str, Any]) -> str:
        response = await self._client.post(f"{self.base_url}/api/generate", json=payload)
        if response.is_error:
            raise BackendUnavailableError(
                f"Ollama generation failed: {response.status_code} {response.text[:200]}".strip()
            )
        data = response.json()
        text = data.get("response") if isinstance(data, dict) else None
        return text if isinstance(text, str) else ""

    async def _post_streaming(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None,
        on_token: TokenCallback | None,
    ) -> str:
        accumulated = ""

        def _consume(line: str) -> str:
            if not line.strip():
                return ""
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed stream chunk.", chunk=line[:120])
                return ""
            token = chunk.get("response") if isinstance(chunk, dict) else None
            if not token or not isinstance(token, str):
                return ""
            if on_token is not None:
                on_token(token)
            return token

        async with self._client.stream(
            "POST", f"{self.base_url}/api/generate", json=payload
        ) as response_stream:
            if response_stream.is_error:
                body = (await response_stream.aread()).decode("utf-8", errors="replace")
                raise BackendUnavailableError(
                    f"Ollama generation failed: {response_stream.status_code} {body[:200]}".strip()
                )
            async for line in response_stream.aiter_lines():
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                accumulated += _consume(line)
        return accumulated

    async def generate(
        self,
        prompt: str,
        config: ModelConfig,
        *,
        stream: bool = False,
        cancel_token: CancellationToken | None = None,
        on_token: TokenCallback | None = None,
    ) -> GenerationResponse:
        """Run one generation call.

        In streamed mode every token is forwarded to ``on_token`` and the
        accumulated text is returned. Connection and HTTP failures raise
        :class:`BackendUnavailableError`; there is no internal retry.
        """
        payload = self._payload(prompt, config, stream)
        self.request_count += 1
        logger.debug(
            f"Calling Ollama model '{config.model}'. Stream: {stream}. "
            f"Prompt chars: {len(prompt)}. Max output tokens: {config.num_predict}. "
            f"Temp: {config.temperature}, TopP: {config.top_p}"
        )

        if stream:
            work = self._post_streaming(payload, cancel_token, on_token)
        else:
            work = self._post_non_streaming(payload)

        try:
            if cancel_token is not None:
                text = await cancel_token.run(work)
            else:
                text = await work
        except httpx.TimeoutException as e:
            logger.error(f"Ollama request to '{config.model}' timed out: {e}")
            raise BackendUnavailableError(f"Ollama request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error(f"Ollama request to '{config.model}' failed: {e}")
            raise BackendUnavailableError(f"Could not reach Ollama: {e}") from e

        return GenerationResponse(text=text)


_THINK_TAGS = ["think", "thinking", "thought", "reasoning"]


def clean_model_response(text: str) -> str:
    """Remove reasoning blocks and code fences from free-text responses."""
    if not isinstance(text, str):
        logger.warning(
            f"clean_model_response received non-string input: {type(text)}. Returning empty string."
        )
        return ""

    cleaned = text
    for tag_name in _THINK_TAGS:
        cleaned = re.sub(
            rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
            "",
            cleaned,
            flags=re.DOTALL | re.IGNORECASE,
        )
    cleaned = re.sub(
        r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```", r"\1", cleaned, flags=re.DOTALL
    )
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())

    if len(cleaned) < len(text.strip()):
        logger.debug(
            f"Cleaning reduced text length from {len(text)} to {len(cleaned)}."
        )
    return cleaned
