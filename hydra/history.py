"""Bounded conversation history with token-budget windowing."""

import math
from dataclasses import dataclass
from typing import List

SAFETY_MARGIN_TOKENS = 2000
MIN_INPUT_TOKENS = 2000


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


@dataclass
class ChatTurn:
    user: str
    assistant: str

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.user) + estimate_tokens(self.assistant)


class SessionHistory:
    """Ordered (user, assistant) turns, capped at ``max_turns``."""

    def __init__(self, max_turns: int = 20):
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = max_turns
        self.turns: List[ChatTurn] = []

    def __len__(self) -> int:
        return len(self.turns)

    def append(self, user: str, assistant: str) -> None:
        self.turns.append(ChatTurn(user=user, assistant=assistant))
        if len(self.turns) > self.max_turns:
            self.turns = self.turns[-self.max_turns :]

    def clear(self) -> None:
        self.turns = []

    def window(
        self,
        current_message: str,
        system_prompt: str,
        token_limit: int,
        safety_margin: int = SAFETY_MARGIN_TOKENS,
        floor: int = MIN_INPUT_TOKENS,
    ) -> List[ChatTurn]:
        """Return the newest turns that fit the budget, oldest first.

        Stops at the first turn (walking back from the newest) that would
        overflow, so older turns are never included past a gap.
        """
        max_input = max(floor, token_limit - safety_margin)
        used = estimate_tokens(system_prompt) + estimate_tokens(current_message)
        selected: List[ChatTurn] = []
        for turn in reversed(self.turns):
            if used + turn.tokens < max_input:
                selected.append(turn)
                used += turn.tokens
            else:
                break
        selected.reverse()
        return selected
