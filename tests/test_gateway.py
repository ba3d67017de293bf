import asyncio
from typing import List, Optional

import pytest

from hydra.errors import EmptyResponseError, NoCredentialError, ProviderStreamError
from hydra.gateway import StreamGateway
from hydra.models import STATUS_ACTIVE, STATUS_COOLDOWN, StreamChunk
from hydra.vault import CredentialVault

KEY = "gsk-test-key-1234"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeAdapter:
    """Scripted adapter standing in for a real provider."""

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        open_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        chunk_delay: float = 0.0,
    ):
        self.chunks = chunks or []
        self.open_error = open_error
        self.stream_error = stream_error
        self.chunk_delay = chunk_delay
        self.keys: List[str] = []
        self.closed = False

    async def open_stream(self, api_key, model, prompt, **kwargs):
        self.keys.append(api_key)
        if self.open_error is not None:
            raise self.open_error
        return self._iterate(kwargs.get("cancel_event"))

    async def _iterate(self, cancel_event):
        try:
            for text in self.chunks:
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                if cancel_event is not None and cancel_event.is_set():
                    return
                yield StreamChunk(text=text)
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.closed = True


def make_gateway(adapter: FakeAdapter, env=None):
    vault = CredentialVault(
        providers=("GROQ",),
        environ={"GROQ_API_KEY": KEY} if env is None else env,
        clock=FakeClock(),
    )
    return StreamGateway(vault, {"GROQ": adapter}), vault


def record_of(vault: CredentialVault):
    return vault.pools["GROQ"].records[0]


@pytest.mark.asyncio
async def test_open_stream_relays_chunks_in_order():
    adapter = FakeAdapter(chunks=["a", "b", "c"])
    gateway, vault = make_gateway(adapter)

    stream = await gateway.open_stream("GROQ", "llama", "Hi")
    texts = [chunk.text async for chunk in stream]

    assert texts == ["a", "b", "c"]
    assert adapter.keys == [KEY]
    assert adapter.closed
    assert record_of(vault).status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_no_key_raises_without_penalty():
    adapter = FakeAdapter(chunks=["a"])
    gateway, vault = make_gateway(adapter, env={})

    with pytest.raises(NoCredentialError):
        await gateway.open_stream("GROQ", "llama", "Hi")

    assert adapter.keys == []


@pytest.mark.asyncio
async def test_unknown_provider_is_treated_as_unavailable():
    gateway, _ = make_gateway(FakeAdapter())

    with pytest.raises(NoCredentialError):
        await gateway.open_stream("NOPE", "model", "Hi")


@pytest.mark.asyncio
async def test_open_failure_is_reported_to_vault():
    adapter = FakeAdapter(open_error=ProviderStreamError("GROQ", "Too many", status_code=429))
    gateway, vault = make_gateway(adapter)

    with pytest.raises(ProviderStreamError) as exc_info:
        await gateway.open_stream("GROQ", "llama", "Hi")

    assert exc_info.value.status_code == 429
    record = record_of(vault)
    assert record.status == STATUS_COOLDOWN
    assert record.cooldown_until == 1000.0 + vault.penalties.rate_limit_seconds


@pytest.mark.asyncio
async def test_unexpected_open_error_is_wrapped():
    adapter = FakeAdapter(open_error=RuntimeError("socket closed"))
    gateway, vault = make_gateway(adapter)

    with pytest.raises(ProviderStreamError, match="socket closed"):
        await gateway.open_stream("GROQ", "llama", "Hi")

    assert record_of(vault).cooldown_until == 1000.0 + vault.penalties.generic_seconds


@pytest.mark.asyncio
async def test_mid_stream_failure_is_reported_and_reraised():
    adapter = FakeAdapter(
        chunks=["partial"], stream_error=ProviderStreamError("GROQ", "503 overloaded")
    )
    gateway, vault = make_gateway(adapter)

    stream = await gateway.open_stream("GROQ", "llama", "Hi")
    received = []
    with pytest.raises(ProviderStreamError):
        async for chunk in stream:
            received.append(chunk.text)

    assert received == ["partial"]
    assert record_of(vault).cooldown_until == 1000.0 + vault.penalties.overload_seconds


@pytest.mark.asyncio
async def test_empty_stream_is_a_failure():
    gateway, vault = make_gateway(FakeAdapter(chunks=[]))

    stream = await gateway.open_stream("GROQ", "llama", "Hi")
    with pytest.raises(EmptyResponseError):
        async for _ in stream:
            pass

    assert record_of(vault).status == STATUS_COOLDOWN


@pytest.mark.asyncio
async def test_cancelled_empty_stream_is_not_a_failure():
    cancel = asyncio.Event()
    cancel.set()
    gateway, vault = make_gateway(FakeAdapter(chunks=["never"]))

    stream = await gateway.open_stream("GROQ", "llama", "Hi", cancel_event=cancel)
    received = [chunk async for chunk in stream]

    assert received == []
    assert record_of(vault).status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_read_timeout_is_reported_to_vault():
    adapter = FakeAdapter(chunks=["slow"], chunk_delay=1.0)
    gateway, vault = make_gateway(adapter)

    stream = await gateway.open_stream("GROQ", "llama", "Hi", timeout=0.05)
    with pytest.raises(ProviderStreamError, match="timed out"):
        async for _ in stream:
            pass

    assert record_of(vault).status == STATUS_COOLDOWN
