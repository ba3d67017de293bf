"""Provider adapters that normalize streaming chat APIs into StreamChunks.

Two families exist: the native Gemini SDK and the OpenAI-compatible
HTTP/SSE endpoints (Groq, OpenAI, DeepSeek, Mistral, OpenRouter). Each
adapter exposes the same two-phase contract: awaiting ``open_stream``
establishes the connection (raising on failure), and the returned async
generator yields chunks until the provider finishes or the cancel event
is set.
"""

import asyncio
import json
import logging
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
)

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from hydra.config import Config
from hydra.errors import ProviderStreamError
from hydra.models import Attachment, StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful assistant."
DEFAULT_TEMPERATURE = 0.7

PROVIDER_ENDPOINTS: Dict[str, str] = {
    "GROQ": "https://api.groq.com/openai/v1",
    "OPENAI": "https://api.openai.com/v1",
    "DEEPSEEK": "https://api.deepseek.com",
    "MISTRAL": "https://api.mistral.ai/v1",
    "OPENROUTER": "https://openrouter.ai/api/v1",
}


class ProviderAdapter(Protocol):
    async def open_stream(
        self,
        api_key: str,
        model: str,
        prompt: str,
        system_instruction: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
        attachment: Optional[Attachment] = None,
    ) -> AsyncIterator[StreamChunk]: ...


def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def parse_sse_line(line: str) -> List[StreamChunk]:
    """Extract chunks from one SSE line; malformed frames yield nothing."""
    line = line.strip()
    if not line.startswith("data:"):
        return []
    payload = line[len("data:") :].strip()
    if not payload or payload == "[DONE]":
        return []
    try:
        data = json.loads(payload)
    except ValueError:
        return []
    if not isinstance(data, dict):
        return []

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return []
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return []

    chunks = []
    content = delta.get("content")
    if isinstance(content, str) and content:
        chunks.append(StreamChunk(text=content))
    tool_calls = delta.get("tool_calls")
    if isinstance(tool_calls, list):
        for tool_call in tool_calls:
            if isinstance(tool_call, dict):
                chunks.append(StreamChunk(function_call=tool_call))
    return chunks


class OpenAICompatibleAdapter:
    """Streams ``/chat/completions`` over SSE from an OpenAI-style API."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        extra_headers: Optional[Dict[str, str]] = None,
        default_temperature: float = DEFAULT_TEMPERATURE,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.extra_headers = extra_headers or {}
        self.default_temperature = default_temperature

    async def open_stream(
        self,
        api_key: str,
        model: str,
        prompt: str,
        system_instruction: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
        attachment: Optional[Attachment] = None,
    ) -> AsyncIterator[StreamChunk]:
        if attachment is not None:
            logger.warning(
                "%s does not accept attachments; sending text only", self.provider
            )

        body = {
            "model": model,
            "messages": [
                {
                    "role": "system",
                    "content": system_instruction or DEFAULT_SYSTEM_INSTRUCTION,
                },
                {"role": "user", "content": prompt},
            ],
            "stream": True,
            "temperature": (
                self.default_temperature if temperature is None else temperature
            ),
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "text/event-stream",
            **self.extra_headers,
        }
        request = self.http_client.build_request(
            "POST", f"{self.base_url}/chat/completions", json=body, headers=headers
        )

        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise ProviderStreamError(self.provider, "timeout opening stream") from exc
        except httpx.RequestError as exc:
            raise ProviderStreamError(self.provider, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 300:
            error_body = await response.aread()
            await response.aclose()
            raise ProviderStreamError(
                self.provider,
                error_body.decode("utf-8", errors="replace")[:500],
                status_code=response.status_code,
            )

        return self._iterate(response, cancel_event)

    async def _iterate(
        self, response: httpx.Response, cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[StreamChunk]:
        try:
            async for line in response.aiter_lines():
                for chunk in parse_sse_line(line):
                    if _cancelled(cancel_event):
                        return
                    yield chunk
        except httpx.HTTPError as exc:
            raise ProviderStreamError(
                self.provider, str(exc) or type(exc).__name__
            ) from exc
        finally:
            await response.aclose()


def gemini_chunks(response: types.GenerateContentResponse) -> Iterator[StreamChunk]:
    """Split one Gemini stream response into text, tool-call and grounding chunks."""
    if not response.candidates:
        return
    candidate = response.candidates[0]
    parts = []
    if candidate.content is not None and candidate.content.parts:
        parts = candidate.content.parts

    text = "".join(part.text for part in parts if part.text and not part.thought)
    if text:
        yield StreamChunk(text=text)

    for part in parts:
        if part.function_call is not None:
            yield StreamChunk(
                function_call=part.function_call.model_dump(exclude_none=True)
            )

    grounding = candidate.grounding_metadata
    if grounding is not None and grounding.grounding_chunks:
        yield StreamChunk(
            grounding_chunks=[
                item.model_dump(exclude_none=True) for item in grounding.grounding_chunks
            ]
        )


def _default_gemini_client(api_key: str) -> Any:
    return genai.Client(api_key=api_key)


class GeminiAdapter:
    """Streams from Gemini through the native ``google-genai`` SDK.

    One SDK client is kept per API key so its connection pool is reused
    across calls instead of being rebuilt for every stream.
    """

    provider = "GEMINI"

    def __init__(self, client_factory: Callable[[str], Any] = _default_gemini_client):
        self.client_factory = client_factory
        self._clients: Dict[str, Any] = {}

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self.client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def open_stream(
        self,
        api_key: str,
        model: str,
        prompt: str,
        system_instruction: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
        attachment: Optional[Attachment] = None,
    ) -> AsyncIterator[StreamChunk]:
        parts = [types.Part.from_text(text=prompt)]
        if attachment is not None:
            parts.append(
                types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type)
            )
        contents = [types.Content(role="user", parts=parts)]
        config = types.GenerateContentConfig(
            system_instruction=system_instruction, temperature=temperature
        )

        client = self._client_for(api_key)
        try:
            stream = await client.aio.models.generate_content_stream(
                model=model, contents=contents, config=config
            )
        except genai_errors.APIError as exc:
            raise ProviderStreamError(
                self.provider, exc.message or str(exc), status_code=exc.code
            ) from exc

        return self._iterate(stream, cancel_event)

    async def _iterate(
        self, stream: AsyncIterator[Any], cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[StreamChunk]:
        try:
            async for response in stream:
                for chunk in gemini_chunks(response):
                    if _cancelled(cancel_event):
                        return
                    yield chunk
        except genai_errors.APIError as exc:
            raise ProviderStreamError(
                self.provider, exc.message or str(exc), status_code=exc.code
            ) from exc


def build_adapters(
    http_client: httpx.AsyncClient, config: Config
) -> Dict[str, ProviderAdapter]:
    """Build the provider lookup table used by the gateway."""
    adapters: Dict[str, ProviderAdapter] = {"GEMINI": GeminiAdapter()}
    for provider, base_url in PROVIDER_ENDPOINTS.items():
        extra_headers = {}
        if provider == "OPENROUTER":
            extra_headers = {
                "HTTP-Referer": config.openrouter_referer,
                "X-Title": config.openrouter_title,
            }
        adapters[provider] = OpenAICompatibleAdapter(
            provider, base_url, http_client, extra_headers=extra_headers
        )
    return adapters
