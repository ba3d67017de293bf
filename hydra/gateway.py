"""Joins the credential vault and the provider adapters."""

import asyncio
import logging
from typing import AsyncIterator, Mapping, Optional, Protocol

from hydra.adapters import ProviderAdapter
from hydra.errors import EmptyResponseError, NoCredentialError, ProviderStreamError
from hydra.models import Attachment, StreamChunk
from hydra.vault import CredentialVault

logger = logging.getLogger(__name__)


class StreamOpener(Protocol):
    async def open_stream(
        self,
        provider: str,
        model: str,
        prompt: str,
        system_instruction: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
        attachment: Optional[Attachment] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]: ...


def _as_stream_error(provider: str, exc: Exception) -> ProviderStreamError:
    if isinstance(exc, ProviderStreamError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return ProviderStreamError(provider, "timed out waiting for provider")
    return ProviderStreamError(provider, str(exc) or type(exc).__name__)


async def _bounded(awaitable, timeout: Optional[float]):
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


class StreamGateway:
    """Opens provider streams with a vault-issued key and reports failures.

    ``open_stream`` raises ``NoCredentialError`` when the vault has nothing
    to offer (no penalty applied), and ``ProviderStreamError`` when the call
    fails to open. Failures while iterating, including a stream that ends
    without producing anything, are reported to the vault and re-raised
    from the returned iterator. ``timeout`` bounds the open and every
    individual read.
    """

    def __init__(self, vault: CredentialVault, adapters: Mapping[str, ProviderAdapter]):
        self.vault = vault
        self.adapters = dict(adapters)

    async def open_stream(
        self,
        provider: str,
        model: str,
        prompt: str,
        system_instruction: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
        attachment: Optional[Attachment] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise NoCredentialError(provider)

        api_key = self.vault.get_key(provider)
        if api_key is None:
            raise NoCredentialError(provider)

        try:
            stream = await _bounded(
                adapter.open_stream(
                    api_key,
                    model,
                    prompt,
                    system_instruction=system_instruction,
                    cancel_event=cancel_event,
                    temperature=temperature,
                    attachment=attachment,
                ),
                timeout,
            )
        except Exception as exc:
            error = _as_stream_error(provider, exc)
            self.vault.report_failure(provider, api_key, error)
            raise error from exc

        return self._relay(provider, api_key, stream, cancel_event, timeout)

    async def _relay(
        self,
        provider: str,
        api_key: str,
        stream: AsyncIterator[StreamChunk],
        cancel_event: Optional[asyncio.Event],
        timeout: Optional[float],
    ) -> AsyncIterator[StreamChunk]:
        produced = 0
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await _bounded(iterator.__anext__(), timeout)
                except StopAsyncIteration:
                    break
                produced += 1
                yield chunk
        except Exception as exc:
            error = _as_stream_error(provider, exc)
            self.vault.report_failure(provider, api_key, error)
            raise error from exc
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if produced == 0 and not (cancel_event is not None and cancel_event.is_set()):
            error = EmptyResponseError(provider)
            self.vault.report_failure(provider, api_key, error)
            raise error

        self.vault.report_success(provider)
