import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest

from hydra.errors import EmptyResponseError, NoCredentialError, ProviderStreamError
from hydra.models import Candidate, StreamChunk
from hydra.race import FAILURE_NOTICE, OmniRace


@dataclass
class Script:
    chunks: List[str] = field(default_factory=list)
    open_delay: float = 0.0
    open_error: Optional[Exception] = None
    chunk_delay: float = 0.0
    stream_error: Optional[Exception] = None
    hang_after_open: bool = False


class FakeGateway:
    """Plays back a script per provider and records what happened."""

    def __init__(self, scripts: Dict[str, Script]):
        self.scripts = scripts
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.prompts: List[str] = []

    async def open_stream(self, provider, model, prompt, **kwargs):
        script = self.scripts[provider]
        self.prompts.append(prompt)
        if script.open_delay:
            await asyncio.sleep(script.open_delay)
        if script.open_error is not None:
            raise script.open_error
        self.opened.append(provider)
        return self._iterate(provider, script, kwargs.get("cancel_event"))

    async def _iterate(self, provider, script, cancel_event):
        try:
            if script.hang_after_open:
                await asyncio.sleep(3600)
            for text in script.chunks:
                if script.chunk_delay:
                    await asyncio.sleep(script.chunk_delay)
                if cancel_event is not None and cancel_event.is_set():
                    return
                yield StreamChunk(text=text)
            if script.stream_error is not None:
                raise script.stream_error
            if not script.chunks:
                raise EmptyResponseError(provider)
        finally:
            self.closed.append(provider)


def make_race(scripts: Dict[str, Script], timeout: float = 2.0):
    gateway = FakeGateway(scripts)
    candidates = {name: Candidate(name, f"{name.lower()}-model") for name in scripts}
    return OmniRace(gateway, candidates=candidates, timeout_seconds=timeout), gateway


async def collect(stream) -> List[StreamChunk]:
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_fastest_candidate_takes_the_whole_response():
    race, gateway = make_race(
        {
            "FAST": Script(chunks=["f1", "f2", "f3"]),
            "SLOW": Script(chunks=["s1", "s2"], open_delay=0.2),
        }
    )

    chunks = await collect(race.race_stream("Hi"))

    assert [chunk.text for chunk in chunks] == ["f1", "f2", "f3"]
    assert "SLOW" not in gateway.opened


@pytest.mark.asyncio
async def test_failed_candidates_do_not_block_a_winner():
    race, _ = make_race(
        {
            "BROKEN": Script(open_error=ProviderStreamError("BROKEN", "429")),
            "NOKEY": Script(open_error=NoCredentialError("NOKEY")),
            "GOOD": Script(chunks=["ok"], open_delay=0.05),
        }
    )

    chunks = await collect(race.race_stream("Hi"))

    assert [chunk.text for chunk in chunks] == ["ok"]


@pytest.mark.asyncio
async def test_first_chunk_wins_over_first_connection():
    race, gateway = make_race(
        {
            "STALLS": Script(hang_after_open=True),
            "TALKS": Script(chunks=["t1", "t2"], open_delay=0.05),
        }
    )

    chunks = await collect(race.race_stream("Hi"))

    assert [chunk.text for chunk in chunks] == ["t1", "t2"]
    assert "STALLS" in gateway.opened
    assert "STALLS" in gateway.closed


@pytest.mark.asyncio
async def test_all_failures_yield_exactly_one_notice():
    race, _ = make_race(
        {
            "A": Script(open_error=ProviderStreamError("A", "boom")),
            "B": Script(open_error=NoCredentialError("B")),
        }
    )

    chunks = await collect(race.race_stream("Hi"))

    assert len(chunks) == 1
    assert chunks[0].text == FAILURE_NOTICE
    assert chunks[0].metadata == {"raceFailed": True, "reason": "all_failed"}


@pytest.mark.asyncio
async def test_empty_streams_count_as_failures():
    race, _ = make_race({"A": Script(), "B": Script()})

    chunks = await collect(race.race_stream("Hi"))

    assert len(chunks) == 1
    assert chunks[0].metadata["reason"] == "all_failed"


@pytest.mark.asyncio
async def test_no_winner_before_timeout_yields_notice():
    race, gateway = make_race(
        {"A": Script(hang_after_open=True), "B": Script(open_delay=3600)},
        timeout=0.1,
    )

    chunks = await collect(race.race_stream("Hi"))

    assert len(chunks) == 1
    assert chunks[0].metadata == {"raceFailed": True, "reason": "timeout"}
    assert "A" in gateway.closed


@pytest.mark.asyncio
async def test_empty_candidate_set_fails_immediately():
    race = OmniRace(FakeGateway({}), candidates={})

    chunks = await collect(race.race_stream("Hi"))

    assert len(chunks) == 1
    assert chunks[0].metadata["raceFailed"] is True


@pytest.mark.asyncio
async def test_winner_failing_mid_stream_is_flagged():
    race, _ = make_race(
        {
            "A": Script(chunks=["partial"], stream_error=ProviderStreamError("A", "reset")),
            "B": Script(chunks=["never"], open_delay=0.5),
        }
    )

    chunks = await collect(race.race_stream("Hi"))

    assert chunks[0].text == "partial"
    assert len(chunks) == 2
    assert chunks[1].metadata["isInterrupted"] is True
    assert all(chunk.text != "never" for chunk in chunks)


@pytest.mark.asyncio
async def test_context_is_flattened_into_the_prompt():
    race, gateway = make_race({"A": Script(chunks=["ok"])})

    await collect(race.race_stream("Question", system_instruction="Sys", context="Facts"))

    assert gateway.prompts == ["Sys\n\n[CONTEXT]\nFacts\n\n[USER]\nQuestion"]


@pytest.mark.asyncio
async def test_prompt_without_context_is_sent_as_is():
    race, gateway = make_race({"A": Script(chunks=["ok"])})

    await collect(race.race_stream("Question", system_instruction="Sys"))

    assert gateway.prompts == ["Question"]


@pytest.mark.asyncio
async def test_external_cancel_before_any_output_yields_nothing():
    cancel = asyncio.Event()
    race, gateway = make_race({"A": Script(hang_after_open=True)}, timeout=5)

    async def cancel_soon():
        await asyncio.sleep(0.05)
        cancel.set()

    canceller = asyncio.ensure_future(cancel_soon())
    chunks = await collect(race.race_stream("Hi", cancel_event=cancel))
    await canceller

    assert chunks == []
    assert "A" in gateway.closed


@pytest.mark.asyncio
async def test_external_cancel_stops_the_winner():
    cancel = asyncio.Event()
    race, _ = make_race({"A": Script(chunks=["1", "2", "3"], chunk_delay=0.02)})

    received = []
    async for chunk in race.race_stream("Hi", cancel_event=cancel):
        received.append(chunk.text)
        cancel.set()

    assert received == ["1"]


@pytest.mark.asyncio
async def test_closing_the_race_early_cleans_up_every_candidate():
    race, gateway = make_race(
        {
            "A": Script(chunks=["a1", "a2", "a3"], chunk_delay=0.01),
            "B": Script(hang_after_open=True),
        }
    )

    stream = race.race_stream("Hi")
    first = await stream.__anext__()
    await stream.aclose()

    assert first.text == "a1"
    assert sorted(gateway.closed) == ["A", "B"]
