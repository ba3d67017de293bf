"""Sequential failover across an ordered plan of (provider, model) candidates."""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

from hydra.catalog import (
    AUTO_MODEL_ID,
    AUTO_MODEL_TARGET,
    DEFAULT_FALLBACK_MODELS,
    ModelSpec,
    find_model,
    resolve_candidate,
)
from hydra.errors import EmptyResponseError, NoCredentialError, ProviderStreamError
from hydra.gateway import StreamOpener
from hydra.history import SessionHistory
from hydra.models import Attachment, Candidate, StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Stoic, a calm and rigorous reasoning assistant. "
    "Answer with clarity, precision and sound logic."
)
EXHAUSTED_MESSAGE = (
    "The external variables (Network/API) are currently outside my control. "
    "I am pausing execution to maintain system integrity. Please retry."
)
INTERRUPTED_NOTICE = "Connection to the active node was lost. Response may be incomplete."


@dataclass
class TurnOptions:
    cancel_event: Optional[asyncio.Event] = None
    temperature: Optional[float] = 0.1


def _is_set(event: Optional[asyncio.Event]) -> bool:
    return event is not None and event.is_set()


class FailoverSequencer:
    """Runs one conversational session over a failover plan.

    Candidates are tried one at a time. A candidate that fails before
    producing any chunk is abandoned with a reroute notice; the first chunk
    commits the turn to that candidate, after which no other candidate is
    tried even if the stream breaks. Completed turns (including the canned
    reply on total failure) are appended to the session history.
    """

    def __init__(
        self,
        gateway: StreamOpener,
        catalog: Optional[List[ModelSpec]] = None,
        fallback_models: Sequence[str] = DEFAULT_FALLBACK_MODELS,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history: Optional[SessionHistory] = None,
        reroute_delay_seconds: float = 1.0,
        candidate_timeout_seconds: Optional[float] = 60.0,
        history_token_limit: int = 32000,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.fallback_models = tuple(fallback_models)
        self.system_prompt = system_prompt
        self.history = history if history is not None else SessionHistory()
        self.reroute_delay_seconds = reroute_delay_seconds
        self.candidate_timeout_seconds = candidate_timeout_seconds
        self.history_token_limit = history_token_limit

    def build_plan(self, model_id: str) -> List[Candidate]:
        effective = AUTO_MODEL_TARGET if model_id == AUTO_MODEL_ID else model_id
        plan: List[Candidate] = []
        for entry in dict.fromkeys([effective, *self.fallback_models]):
            candidate = resolve_candidate(entry, self.catalog)
            if candidate not in plan:
                plan.append(candidate)
        return plan

    def build_system_prompt(self, context: Optional[str] = None) -> str:
        if not context:
            return self.system_prompt
        return f"{self.system_prompt}\n\n[CONTEXT]\n{context}"

    def token_limit_for(self, candidate: Candidate) -> int:
        """History budget for a turn: the model's context size, capped by the session limit."""
        spec = find_model(candidate.model, self.catalog)
        if spec is None:
            return self.history_token_limit
        return min(spec.context_limit, self.history_token_limit)

    def build_prompt(
        self, message: str, system_prompt: str, token_limit: Optional[int] = None
    ) -> str:
        """Flatten the history window and the new message into prompt text."""
        if token_limit is None:
            token_limit = self.history_token_limit
        lines = []
        for turn in self.history.window(message, system_prompt, token_limit):
            lines.append(f"User: {turn.user}")
            lines.append(f"Assistant: {turn.assistant}")
        if not lines:
            return message
        lines.append(f"User: {message}")
        return "\n".join(lines)

    async def stream_execute(
        self,
        message: str,
        model_id: str,
        context: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        config: Optional[TurnOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        options = config or TurnOptions()
        cancel = options.cancel_event
        system_prompt = self.build_system_prompt(context)
        plan = self.build_plan(model_id)
        prompt = self.build_prompt(message, system_prompt, self.token_limit_for(plan[0]))

        for index, candidate in enumerate(plan):
            if _is_set(cancel):
                return
            next_candidate = plan[index + 1] if index + 1 < len(plan) else None
            parts: List[str] = []
            committed = False

            try:
                stream = await self.gateway.open_stream(
                    candidate.provider,
                    candidate.model,
                    prompt,
                    system_instruction=system_prompt,
                    cancel_event=cancel,
                    temperature=options.temperature,
                    attachment=attachment,
                    timeout=self.candidate_timeout_seconds,
                )
                try:
                    async for chunk in stream:
                        if _is_set(cancel):
                            return
                        committed = True
                        if chunk.text:
                            parts.append(chunk.text)
                        yield chunk
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                if _is_set(cancel):
                    return
                if not committed:
                    raise EmptyResponseError(candidate.provider)
            except NoCredentialError:
                logger.info("No credential for %s, skipping %s", candidate.provider, candidate)
                continue
            except ProviderStreamError as exc:
                if _is_set(cancel):
                    return
                if committed:
                    logger.warning("%s failed mid-stream: %s", candidate, exc)
                    yield StreamChunk.status(INTERRUPTED_NOTICE, isInterrupted=True)
                    self.history.append(message, "".join(parts))
                    return
                logger.warning("%s failed before output: %s", candidate, exc)
                if next_candidate is not None:
                    yield StreamChunk.status(
                        f"Logic path obstructed. Rerouting to node {next_candidate.model}...",
                        isRerouting=True,
                    )
                    await asyncio.sleep(self.reroute_delay_seconds)
                continue

            self.history.append(message, "".join(parts))
            return

        if _is_set(cancel):
            return
        logger.error("Failover plan exhausted for model %s", model_id)
        yield StreamChunk(text=EXHAUSTED_MESSAGE)
        self.history.append(message, EXHAUSTED_MESSAGE)

    async def execute(
        self, message: str, model_id: str, context: Optional[str] = None
    ) -> str:
        text = []
        async for chunk in self.stream_execute(message, model_id, context=context):
            if chunk.text:
                text.append(chunk.text)
        return "".join(text)

    def reset(self) -> None:
        self.history.clear()
