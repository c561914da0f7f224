from collections.abc import AsyncIterator
import logging
import os

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI

from palaver.config import EngineSettings
from palaver.exceptions import TransportError
from palaver.sse import iter_sse_payloads

logger = logging.getLogger(__name__)


class ModelProvider:
    """Transport to a chat-completions backend.

    Providers move raw JSON payloads; adapters and the conversation turn
    them into messages.  Both methods raise :class:`TransportError` on
    failure.
    """

    async def complete(
            self,
            model: str | None,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> dict:
        raise NotImplementedError

    def stream(
            self,
            model: str | None,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[dict]:
        raise NotImplementedError


def build_request_body(
        model: str | None,
        messages: list[dict],
        tools: list[dict] | None,
        stream: bool,
) -> dict:
    body: dict = {"messages": messages, "stream": stream}
    # model is optional, the backend chooses a default otherwise
    if model:
        body["model"] = model
    if tools:
        body["tools"] = tools
    return body


class HTTPProvider(ModelProvider):
    """Plain HTTP transport; streamed bodies are decoded frame by frame.

    Args:
        base_url: Backend root, e.g. ``http://127.0.0.1:11434/v1``.
        api_key: Bearer token; ``"ollama"`` routes to a local Ollama.
        headers: Extra headers sent with every request.
        timeout: Per-operation httpx timeout in seconds.
        client: Pre-built client (tests inject a mock transport here).
    """

    def __init__(
            self,
            base_url: str,
            api_key: str | None = None,
            headers: dict[str, str] | None = None,
            timeout: float = 120.0,
            client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or "ollama"
        self.headers = dict(headers or {})
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _request_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            **self.headers,
        }

    async def complete(self, model, messages, tools=None):
        body = build_request_body(model, messages, tools, stream=False)
        try:
            response = await self.client.post(
                self.url, json=body, headers=self._request_headers()
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e
        if response.is_error:
            raise TransportError(
                f"Request failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        payload = response.json()
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise TransportError(message or "Model request failed")
        return payload

    async def stream(self, model, messages, tools=None):
        body = build_request_body(model, messages, tools, stream=True)
        try:
            async with self.client.stream(
                "POST", self.url, json=body, headers=self._request_headers()
            ) as response:
                if response.is_error:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Request failed with status {response.status_code}: {text}",
                        status_code=response.status_code,
                    )
                async for payload in iter_sse_payloads(response.aiter_bytes()):
                    yield payload
        except httpx.HTTPError as e:
            raise TransportError(f"Stream aborted: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()


class OpenAIProvider(ModelProvider):
    """Native tool-calling backends through the ``openai`` client.

    Chunk objects are dumped to dicts so they share the adapter pipeline
    with :class:`HTTPProvider`.
    """

    def __init__(
            self,
            api_key: str | None = None,
            base_url: str | None = None,
            default_model: str = "gpt-4o-mini",
            timeout: float = 120.0,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.default_model = default_model
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=timeout,
        )

    def _kwargs(self, model, messages, tools) -> dict:
        kwargs = {"model": model or self.default_model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def complete(self, model, messages, tools=None):
        try:
            response = await self.client.chat.completions.create(
                **self._kwargs(model, messages, tools)
            )
        except APIError as e:
            raise _transport_error(e) from e
        return response.model_dump()

    async def stream(self, model, messages, tools=None):
        try:
            response = await self.client.chat.completions.create(
                **self._kwargs(model, messages, tools), stream=True,
            )
            async for chunk in response:
                yield chunk.model_dump(exclude_none=True)
        except APIError as e:
            raise _transport_error(e) from e


def _transport_error(error: APIError) -> TransportError:
    status = error.status_code if isinstance(error, APIStatusError) else None
    logger.error(f"Backend request failed: {error}")
    return TransportError(f"Request failed: {error.message}", status_code=status)


def provider_from_settings(settings: EngineSettings, headers: dict[str, str] | None = None) -> HTTPProvider:
    return HTTPProvider(
        base_url=settings.base_url,
        api_key=settings.api_key,
        headers=headers,
        timeout=settings.request_timeout,
    )
