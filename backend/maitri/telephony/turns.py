"""
Maitri - Conversation Turn Counter

Bounds the number of speech/response round-trips per call.

Process-local: a restart resets every in-flight count, and running several
webhook workers would need this state moved to a shared store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnTicket:
    """Position of one speech turn within its call."""
    turn: int
    max_turns: int

    @property
    def allowed(self) -> bool:
        """False once the call has used up its turns."""
        return self.turn <= self.max_turns

    @property
    def is_last(self) -> bool:
        """True for the final allowed turn; the call ends after its response."""
        return self.turn == self.max_turns


class ConversationTurnCounter:
    """
    Per-call turn registry owned by the webhook component.

    Usage:
        counter = ConversationTurnCounter(max_turns=5)
        ticket = await counter.register_turn("CA123")
        if not ticket.allowed: ...  # force end of call
        if ticket.is_last: ...      # speak response, then hang up
    """

    def __init__(self, max_turns: int = 5):
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self._max_turns = max_turns
        self._turns: dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def max_turns(self) -> int:
        return self._max_turns

    async def register_turn(self, call_sid: str) -> TurnTicket:
        """
        Count one more speech turn for the call.

        The entry is dropped once the bound is exceeded, so a refused call
        does not linger in memory.
        """
        async with self._lock:
            turn = self._turns.get(call_sid, 0) + 1
            if turn > self._max_turns:
                self._turns.pop(call_sid, None)
                logger.info("Turn limit exceeded (turn %d of %d)", turn, self._max_turns)
            else:
                self._turns[call_sid] = turn
            return TurnTicket(turn=turn, max_turns=self._max_turns)

    async def current(self, call_sid: str) -> int:
        async with self._lock:
            return self._turns.get(call_sid, 0)

    async def discard(self, call_sid: str) -> bool:
        """Forget a call. Returns True if it was tracked."""
        async with self._lock:
            return self._turns.pop(call_sid, None) is not None

    async def active_calls(self) -> int:
        async with self._lock:
            return len(self._turns)
