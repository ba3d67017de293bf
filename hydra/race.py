"""Winner-takes-all streaming across several providers."""

import asyncio
import logging
from typing import AsyncIterator, Dict, Mapping, Optional, Tuple

from hydra.catalog import RACE_CANDIDATES
from hydra.gateway import StreamOpener
from hydra.models import Candidate, StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_RACE_TIMEOUT_SECONDS = 45.0

FAILURE_NOTICE = (
    "\n\n> **Omni-Race Failed**: All cognitive nodes rejected the request."
)
INTERRUPTED_NOTICE = "Winning node dropped mid-stream. Response may be incomplete."

_END = object()
_CANCELLED = object()


def _is_set(event: Optional[asyncio.Event]) -> bool:
    return event is not None and event.is_set()


def flatten_prompt(
    prompt: str, system_instruction: Optional[str] = None, context: Optional[str] = None
) -> str:
    if not context:
        return prompt
    return f"{system_instruction or ''}\n\n[CONTEXT]\n{context}\n\n[USER]\n{prompt}"


class OmniRace:
    """Races every candidate on the same prompt and relays the first to answer.

    A candidate wins by delivering its first chunk; connecting alone is not
    enough, so a provider that accepts the request and then stalls cannot
    take the race. Losers are cancelled as soon as a winner is known and
    nothing they produce is ever yielded. Total failure (every candidate
    failed, or no winner before the timeout) is reported as a single
    notice chunk instead of an exception.
    """

    def __init__(
        self,
        gateway: StreamOpener,
        candidates: Optional[Mapping[str, Candidate]] = None,
        timeout_seconds: float = DEFAULT_RACE_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.candidates: Dict[str, Candidate] = dict(
            RACE_CANDIDATES if candidates is None else candidates
        )
        self.timeout_seconds = timeout_seconds

    async def race_stream(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        context: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        logger.info("Race started with %d candidate(s)", len(self.candidates))
        if not self.candidates:
            yield self._failure("all_failed")
            return

        full_prompt = flatten_prompt(prompt, system_instruction, context)
        shared_cancel = asyncio.Event()
        queue: "asyncio.Queue[Tuple[Optional[str], object]]" = asyncio.Queue()

        tasks = {
            name: asyncio.ensure_future(
                self._run_racer(
                    name, candidate, full_prompt, system_instruction, shared_cancel, queue
                )
            )
            for name, candidate in self.candidates.items()
        }
        watcher = None
        if cancel_event is not None:
            watcher = asyncio.ensure_future(
                self._watch_cancel(cancel_event, shared_cancel, queue)
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        winner: Optional[str] = None
        failures = 0

        try:
            while winner is None:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    name, item = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.error("Race timed out after %.1fs", self.timeout_seconds)
                    yield self._failure("timeout")
                    return

                if item is _CANCELLED:
                    return
                if isinstance(item, StreamChunk):
                    winner = name
                    logger.info("%s won the race", name)
                    self._cancel_losers(tasks, winner)
                    if _is_set(cancel_event):
                        return
                    yield item
                    continue

                failures += 1
                reason = item if isinstance(item, BaseException) else "empty stream"
                logger.warning("%s dropped out: %s", name, reason)
                if failures >= len(tasks):
                    logger.error("All %d race candidates failed", failures)
                    yield self._failure("all_failed")
                    return

            while True:
                name, item = await queue.get()
                if item is _CANCELLED:
                    return
                if name != winner:
                    continue
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    logger.warning("Race winner %s failed mid-stream: %s", winner, item)
                    if not _is_set(cancel_event):
                        yield StreamChunk.status(INTERRUPTED_NOTICE, isInterrupted=True)
                    return
                if _is_set(cancel_event):
                    return
                yield item
        finally:
            shared_cancel.set()
            pending = list(tasks.values())
            if watcher is not None:
                pending.append(watcher)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_racer(
        self,
        name: str,
        candidate: Candidate,
        prompt: str,
        system_instruction: Optional[str],
        shared_cancel: asyncio.Event,
        queue: "asyncio.Queue[Tuple[Optional[str], object]]",
    ) -> None:
        try:
            stream = await self.gateway.open_stream(
                candidate.provider,
                candidate.model,
                prompt,
                system_instruction=system_instruction,
                cancel_event=shared_cancel,
            )
            async for chunk in stream:
                await queue.put((name, chunk))
        except Exception as exc:
            await queue.put((name, exc))
            return
        await queue.put((name, _END))

    @staticmethod
    async def _watch_cancel(
        cancel_event: asyncio.Event,
        shared_cancel: asyncio.Event,
        queue: "asyncio.Queue[Tuple[Optional[str], object]]",
    ) -> None:
        await cancel_event.wait()
        shared_cancel.set()
        await queue.put((None, _CANCELLED))

    @staticmethod
    def _cancel_losers(tasks: Mapping[str, "asyncio.Future[None]"], winner: str) -> None:
        for name, task in tasks.items():
            if name != winner:
                task.cancel()

    @staticmethod
    def _failure(reason: str) -> StreamChunk:
        return StreamChunk(
            text=FAILURE_NOTICE, metadata={"raceFailed": True, "reason": reason}
        )
