"""
store.py — In-memory conversation state keyed by (user|thread, channel).

One entry per key, so at most one phase is active for a key: entering a
phase replaces whatever was tracked there before. Entries expire after
SESSION_TTL_S without being touched (sliding TTL).
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from triage_agent.config import SESSION_TTL_S
from triage_agent.llm.parsing import ProductAnalysis

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    EDIT_PENDING = "edit_pending"
    ANALYSIS_DISPLAYED = "analysis_displayed"
    NO_RESULTS_PENDING = "no_results_pending"
    RESULTS_DISPLAYED = "results_displayed"


class Scope(str, Enum):
    USER = "user"
    THREAD = "thread"


@dataclass(frozen=True)
class SessionKey:
    scope: Scope
    id: str
    channel_id: str

    @classmethod
    def for_user(cls, user_id: str, channel_id: str) -> "SessionKey":
        return cls(Scope.USER, user_id, channel_id)

    @classmethod
    def for_thread(cls, thread_id: str, channel_id: str) -> "SessionKey":
        return cls(Scope.THREAD, thread_id, channel_id)


@dataclass
class SessionState:
    """
    Where one conversation stands.

    Fields:
        phase:         Active phase for this key.
        thread_id:     Thread the conversation lives in.
        channel_id:    Channel of that thread.
        original_text: The message the user first asked about.
        analysis:      Product analysis shown to the user, if any.
        last_query:    Search string used most recently, if any.
        files:         Attachment locators from the original message.
    """
    phase: Phase
    thread_id: str
    channel_id: str
    original_text: str
    analysis: ProductAnalysis | None = None
    last_query: str | None = None
    files: list[str] = field(default_factory=list)

    def moved_to(self, phase: Phase, **changes) -> "SessionState":
        return replace(self, phase=phase, **changes)


class SessionStore:
    """Sliding-TTL map of SessionKey → SessionState."""

    def __init__(self, ttl_seconds: float = SESSION_TTL_S, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # key -> (state, expires_at)
        self._items: dict[SessionKey, tuple[SessionState, float]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def _live(self, key: SessionKey) -> SessionState | None:
        item = self._items.get(key)
        if item is None:
            return None
        state, expires_at = item
        if expires_at <= self._clock():
            logger.debug("Session %s expired", key)
            del self._items[key]
            return None
        return state

    def enter(self, key: SessionKey, state: SessionState) -> None:
        """Make `state` the only tracked phase for `key`."""
        if state.phase is Phase.IDLE:
            self.pop(key)
            return
        previous = self._live(key)
        if previous is not None and previous.phase is not state.phase:
            logger.debug("Session %s: %s → %s", key, previous.phase.value, state.phase.value)
        self._items[key] = (state, self._clock() + self.ttl_seconds)

    def peek(self, key: SessionKey, phase: Phase | None = None) -> SessionState | None:
        """Tracked state for `key` (only if in `phase`, when given); refreshes its TTL."""
        state = self._live(key)
        if state is None or (phase is not None and state.phase is not phase):
            return None
        self._items[key] = (state, self._clock() + self.ttl_seconds)
        return state

    def pop(self, key: SessionKey, phase: Phase | None = None) -> SessionState | None:
        """Remove and return the state for `key` (only if in `phase`, when given)."""
        state = self._live(key)
        if state is None or (phase is not None and state.phase is not phase):
            return None
        del self._items[key]
        return state

    def phase_of(self, key: SessionKey) -> Phase:
        state = self._live(key)
        return state.phase if state is not None else Phase.IDLE

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._items.items() if expires_at <= now]
        for key in expired:
            del self._items[key]
        if expired:
            logger.info("Evicted %d abandoned session(s)", len(expired))
        return len(expired)

    def drop_thread(self, thread_id: str, channel_id: str) -> int:
        """Clear every entry (thread- or user-keyed) tracking this thread."""
        doomed = [
            key for key, (state, _) in self._items.items()
            if key.channel_id == channel_id and state.thread_id == thread_id
        ]
        for key in doomed:
            del self._items[key]
        return len(doomed)
