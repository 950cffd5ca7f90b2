"""
machine.py — Conversation state machine driving the triage pipelines.

Phases per conversation:

    Idle ──find_issues──▶ AnalysisDisplayed ──confirm──▶ ResultsDisplayed
                           │   ▲    │                  └▶ NoResultsPending
                      edit │   │    └─ reply in thread = implicit edit
                           ▼   │
                        EditPending (keyed by user, next message re-analyses)

    NoResultsPending / ResultsDisplayed ── reply in thread ──▶ refined search
    cancel / dismiss / end / helpful / ignore ──▶ Idle

Inbound messages are classified in priority order (first match wins):
  1. the user has an edit pending in this channel   → re-run analysis
  2. the thread shows an analysis                   → re-run analysis
  3. the thread is waiting after an empty search    → refine and search
  4. the thread shows results                       → refine and search
  5. otherwise                                      → offer the action prompt

Every transition pops the state it consumes before doing any work, so a
failure half-way leaves the conversation Idle, never stuck.
"""

import logging
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from triage_agent.errors import TriageError
from triage_agent.llm.parsing import ProductAnalysis, format_rated_tickets
from triage_agent.services.triage_service import TriageService
from triage_agent.session.store import Phase, SessionKey, SessionState, SessionStore

logger = logging.getLogger(__name__)


# ─── Transport-facing value objects ───────────────────────────────────────────

class Action(str, Enum):
    FIND_ISSUES = "find_issues"
    IGNORE = "ignore"
    CONFIRM = "confirm"
    EDIT = "edit"
    CANCEL = "cancel"
    DISMISS = "dismiss"
    END = "end"
    HELPFUL = "helpful"


class Button(BaseModel):
    action_id: Action
    label: str
    value: dict[str, Any] = Field(default_factory=dict)


class Reply(BaseModel):
    text: str
    channel_id: str
    thread_id: str
    buttons: list[Button] = Field(default_factory=list)


class MessageEvent(BaseModel):
    user_id: str
    channel_id: str
    message_id: str
    thread_id: str | None = None
    text: str = ""
    files: list[str] = Field(default_factory=list)

    @property
    def conversation_thread(self) -> str:
        """Thread to reply in: the parent thread, or this message for top-level posts."""
        return self.thread_id or self.message_id


class ActionEvent(BaseModel):
    action_id: Action
    user_id: str
    channel_id: str
    thread_id: str
    value: dict[str, Any] = Field(default_factory=dict)


class Responder(Protocol):
    async def say(self, reply: Reply) -> None:
        ...


class CollectingResponder:
    """Responder that buffers replies (HTTP endpoints, tests)."""

    def __init__(self) -> None:
        self.replies: list[Reply] = []

    async def say(self, reply: Reply) -> None:
        self.replies.append(reply)


_CLOSING_MESSAGES = {
    Action.IGNORE: "Okay, I'll leave this one alone.",
    Action.CANCEL: "Okay, cancelled.",
    Action.DISMISS: "Okay, dismissed.",
    Action.END: "Okay, ending the search here.",
    Action.HELPFUL: "Glad that helped!",
}


def _analysis_card(analysis: ProductAnalysis) -> str:
    lines = [
        "*Here's what I understood:*",
        f"Product: {analysis.product} (confidence {analysis.confidence:.0%})",
        f"Reasoning: {analysis.reasoning}",
    ]
    if analysis.image_description:
        lines.append(f"Screenshots: {analysis.image_description}")
    lines.append("Shall I search the issue tracker for related tickets?")
    return "\n".join(lines)


class ConversationController:
    """Applies inbound chat events to the session store and runs pipelines."""

    def __init__(self, service: TriageService, store: SessionStore | None = None) -> None:
        self.service = service
        self.store = store or SessionStore()

    # ── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _announcer(responder: Responder, channel_id: str, thread_id: str):
        async def announce(message: str) -> None:
            await responder.say(Reply(text=message, channel_id=channel_id, thread_id=thread_id))
        return announce

    async def _report_failure(
        self, exc: Exception, responder: Responder, channel_id: str, thread_id: str
    ) -> None:
        if isinstance(exc, TriageError):
            logger.error("Transition failed (%s): %s", exc.kind.value, exc)
            text = exc.user_message()
        else:
            logger.error("Transition failed unexpectedly: %s", exc, exc_info=True)
            text = f"Sorry, I encountered an unexpected error: {exc}"
        try:
            await responder.say(Reply(text=text, channel_id=channel_id, thread_id=thread_id))
        except Exception as say_exc:
            logger.error("Failed to send error message: %s", say_exc)

    # ── Inbound messages ─────────────────────────────────────────────────────

    async def handle_message(self, event: MessageEvent, responder: Responder) -> None:
        if not event.text.strip() and not event.files:
            logger.debug("Ignoring empty message %s", event.message_id)
            return

        self.store.evict_expired()
        thread_id = event.conversation_thread
        thread_key = SessionKey.for_thread(thread_id, event.channel_id)
        user_key = SessionKey.for_user(event.user_id, event.channel_id)
        logger.info(
            "Message from %s in %s/%s: %r%s",
            event.user_id, event.channel_id, thread_id, event.text[:120],
            f" with {len(event.files)} file(s)" if event.files else "",
        )

        edit = self.store.pop(user_key, Phase.EDIT_PENDING)
        if edit is not None:
            await self._analyze(edit.thread_id, event.channel_id, event.text, event.files or edit.files, responder)
            return

        shown = self.store.pop(thread_key, Phase.ANALYSIS_DISPLAYED)
        if shown is not None:
            await self._analyze(thread_id, event.channel_id, event.text, event.files or shown.files, responder)
            return

        waiting = self.store.pop(thread_key, Phase.NO_RESULTS_PENDING) or self.store.pop(
            thread_key, Phase.RESULTS_DISPLAYED
        )
        if waiting is not None:
            await self._refine_and_search(waiting, event.text, responder)
            return

        await self._offer_actions(event, responder)

    async def _offer_actions(self, event: MessageEvent, responder: Responder) -> None:
        payload = {"text": event.text, "files": list(event.files)}
        await responder.say(
            Reply(
                text="Would you like me to look for related issues?",
                channel_id=event.channel_id,
                thread_id=event.conversation_thread,
                buttons=[
                    Button(action_id=Action.FIND_ISSUES, label="Find issues", value=payload),
                    Button(action_id=Action.IGNORE, label="Ignore"),
                ],
            )
        )

    # ── Button actions ───────────────────────────────────────────────────────

    async def handle_action(self, event: ActionEvent, responder: Responder) -> None:
        self.store.evict_expired()
        logger.info("Action %s from %s in %s/%s", event.action_id.value, event.user_id, event.channel_id, event.thread_id)
        thread_key = SessionKey.for_thread(event.thread_id, event.channel_id)

        if event.action_id is Action.FIND_ISSUES:
            await self._analyze(
                event.thread_id,
                event.channel_id,
                str(event.value.get("text", "")),
                list(event.value.get("files") or []),
                responder,
            )

        elif event.action_id is Action.CONFIRM:
            state = self.store.pop(thread_key, Phase.ANALYSIS_DISPLAYED)
            if state is None:
                await responder.say(
                    Reply(
                        text="That analysis is no longer active. Please post your message again.",
                        channel_id=event.channel_id,
                        thread_id=event.thread_id,
                    )
                )
                return
            await self._search(state, state.original_text, state.original_text, responder)

        elif event.action_id is Action.EDIT:
            shown = self.store.pop(thread_key, Phase.ANALYSIS_DISPLAYED)
            self.store.enter(
                SessionKey.for_user(event.user_id, event.channel_id),
                SessionState(
                    phase=Phase.EDIT_PENDING,
                    thread_id=event.thread_id,
                    channel_id=event.channel_id,
                    original_text=shown.original_text if shown else "",
                    files=shown.files if shown else [],
                ),
            )
            await responder.say(
                Reply(
                    text="Okay, send me the updated description and I'll analyse it again.",
                    channel_id=event.channel_id,
                    thread_id=event.thread_id,
                )
            )

        else:
            dropped = self.store.drop_thread(event.thread_id, event.channel_id)
            logger.info("Conversation %s closed (%d entr%s cleared)", event.thread_id, dropped, "y" if dropped == 1 else "ies")
            await responder.say(
                Reply(
                    text=_CLOSING_MESSAGES[event.action_id],
                    channel_id=event.channel_id,
                    thread_id=event.thread_id,
                )
            )

    # ── Transitions that run pipelines ───────────────────────────────────────

    async def _analyze(
        self, thread_id: str, channel_id: str, text: str, files: list[str], responder: Responder
    ) -> None:
        announce = self._announcer(responder, channel_id, thread_id)
        try:
            await announce("Analyzing your message...")
            analysis = await self.service.analyze(text, files, announce)
        except Exception as exc:
            await self._report_failure(exc, responder, channel_id, thread_id)
            return

        self.store.enter(
            SessionKey.for_thread(thread_id, channel_id),
            SessionState(
                phase=Phase.ANALYSIS_DISPLAYED,
                thread_id=thread_id,
                channel_id=channel_id,
                original_text=text,
                analysis=analysis,
                files=list(files),
            ),
        )
        await responder.say(
            Reply(
                text=_analysis_card(analysis),
                channel_id=channel_id,
                thread_id=thread_id,
                buttons=[
                    Button(action_id=Action.CONFIRM, label="Search"),
                    Button(action_id=Action.EDIT, label="Edit"),
                    Button(action_id=Action.CANCEL, label="Cancel"),
                ],
            )
        )

    async def _search(
        self, state: SessionState, query: str, user_message: str, responder: Responder
    ) -> None:
        announce = self._announcer(responder, state.channel_id, state.thread_id)
        try:
            await announce("Searching the issue tracker for related issues...")
            report = await self.service.search(
                query,
                user_message,
                announce,
                image_description=state.analysis.image_description if state.analysis else None,
            )
        except Exception as exc:
            await self._report_failure(exc, responder, state.channel_id, state.thread_id)
            return

        outcome = report.outcome
        if not outcome.ok:
            logger.warning("Search soft-failed (%s): %s", outcome.error_kind, outcome.error)
            await announce(f"Sorry, I couldn't search the issue tracker: {outcome.error}")
            return

        key = SessionKey.for_thread(state.thread_id, state.channel_id)
        if report.has_matches:
            self.store.enter(key, state.moved_to(Phase.RESULTS_DISPLAYED, last_query=query))
            await responder.say(
                Reply(
                    text="These tickets look related:\n" + format_rated_tickets(report.matches)
                    + "\nNot quite it? Reply in this thread to refine the search.",
                    channel_id=state.channel_id,
                    thread_id=state.thread_id,
                    buttons=[
                        Button(action_id=Action.HELPFUL, label="Helpful"),
                        Button(action_id=Action.END, label="Done"),
                    ],
                )
            )
        else:
            self.store.enter(key, state.moved_to(Phase.NO_RESULTS_PENDING, last_query=query))
            await responder.say(
                Reply(
                    text="I couldn't find any closely matching tickets. "
                    "Reply in this thread with more details and I'll search again.",
                    channel_id=state.channel_id,
                    thread_id=state.thread_id,
                    buttons=[Button(action_id=Action.DISMISS, label="Dismiss")],
                )
            )

    async def _refine_and_search(self, state: SessionState, new_text: str, responder: Responder) -> None:
        try:
            query = await self.service.refine_query(
                state.last_query or state.original_text, new_text, state.analysis
            )
        except Exception as exc:
            await self._report_failure(exc, responder, state.channel_id, state.thread_id)
            return
        await self._search(state, query, f"{state.original_text}\n{new_text}", responder)
