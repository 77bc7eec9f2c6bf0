from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from village.config import Settings
from village.engine.world_state import WorldState
from village.llm.intent_parser import is_question_for_elder, mentions_elder
from village.models.core import QUEST_THRESHOLDS, TriggerType

log = logging.getLogger(__name__)

MAX_HISTORY = 50
VOTE_CLOSING_WINDOW_S = 60


@dataclass
class ChatMessage:
    player_id: str
    name: str
    text: str
    created_at: float
    intent: str | None = None


@dataclass
class Trigger:
    type: TriggerType
    reason: str
    priority: int
    data: dict[str, Any] = field(default_factory=dict)
    commit: Callable[[], None] | None = field(default=None, repr=False, compare=False)


class CadenceEngine:
    """Decides when the elder speaks.

    Keeps the last few chat messages and relies on one-shot flags stored on the
    quest and vote themselves, so the only state here is the history ring.
    """

    def __init__(self, state: WorldState, settings: Settings) -> None:
        self.state = state
        self.settings = settings
        self.history: deque[ChatMessage] = deque(maxlen=MAX_HISTORY)

    def add_message(
        self,
        player_id: str,
        name: str,
        text: str,
        now: float | None = None,
        intent: str | None = None,
    ) -> ChatMessage:
        now = time.time() if now is None else now
        message = ChatMessage(player_id=player_id, name=name, text=text, created_at=now, intent=intent)
        self.history.append(message)
        self.state.note_message()
        self.state.add_message_summary(f"{name}: {text[:120]}")
        return message

    def recent_messages(self, count: int = 5) -> list[ChatMessage]:
        if count <= 0:
            return []
        return list(self.history)[-count:]

    def is_call_response(self, message: ChatMessage | str | None) -> bool:
        text = message.text if isinstance(message, ChatMessage) else message
        if not text:
            return False
        return mentions_elder(text) or is_question_for_elder(text)

    def evaluate(self, message: ChatMessage | str | None = None, now: float | None = None) -> Trigger | None:
        now = time.time() if now is None else now
        candidates: list[Trigger] = []

        if self.is_call_response(message):
            candidates.append(Trigger(type="CALL_RESPONSE", reason="Elder was mentioned or asked a question", priority=1))

        event = self._event_trigger(now)
        if event is not None:
            candidates.append(event)

        if self._pulse_due(now):
            candidates.append(Trigger(type="PULSE", reason="Pulse threshold reached", priority=2))

        if not candidates:
            return None
        # sorted() is stable, so equal priorities keep evaluation order
        chosen = sorted(candidates, key=lambda trigger: trigger.priority)[0]
        if chosen.commit is not None:
            chosen.commit()
        log.debug("cadence_trigger type=%s reason=%s", chosen.type, chosen.reason)
        return chosen

    def _event_trigger(self, now: float) -> Trigger | None:
        vote = self.state.active_vote
        if vote is not None and vote.status == "OPEN" and not vote.closing_announced:
            remaining = vote.closes_at - now
            if 0 < remaining < VOTE_CLOSING_WINDOW_S:

                def announce_closing() -> None:
                    vote.closing_announced = True

                return Trigger(
                    type="EVENT",
                    reason="Vote closing soon",
                    priority=1,
                    data={"vote_id": vote.vote_id, "seconds_left": int(remaining)},
                    commit=announce_closing,
                )

        quest = self.state.active_quest
        if quest is None:
            return None
        crossed = [
            threshold
            for threshold in QUEST_THRESHOLDS
            if quest.percent >= threshold and threshold not in quest.thresholds_announced
        ]
        if not crossed:
            return None
        threshold = max(crossed)

        def announce_threshold() -> None:
            for value in crossed:
                quest.thresholds_announced.append(value)
            quest.last_threshold = threshold

        return Trigger(
            type="EVENT",
            reason=f"Quest reached {threshold}%",
            priority=1,
            data={"quest_id": quest.quest_id, "threshold": threshold},
            commit=announce_threshold,
        )

    def _pulse_due(self, now: float) -> bool:
        quiet_until = self.state.narrator_quiet_until
        if quiet_until is not None and now < quiet_until:
            return False
        return (
            self.state.messages_since_pulse >= self.settings.cadence_message_threshold
            or now - self.state.last_pulse_at >= self.settings.cadence_time_threshold_s
        )

    def on_elder_spoke(self, now: float | None = None) -> None:
        self.state.reset_pulse(now)

    def summary(self, trigger: Trigger, now: float | None = None) -> dict[str, Any]:
        now = time.time() if now is None else now
        recent = self.recent_messages(10)
        intents: dict[str, int] = {}
        for message in recent:
            if message.intent:
                intents[message.intent] = intents.get(message.intent, 0) + 1
        return {
            "trigger": trigger.type,
            "reason": trigger.reason,
            "messages_since_pulse": self.state.messages_since_pulse,
            "seconds_since_pulse": int(now - self.state.last_pulse_at),
            "seconds_since_elder_spoke": int(now - self.state.elder_last_spoke),
            "recent_activity": {
                "total_messages": len(recent),
                "unique_players": len({message.player_id for message in recent}),
                "intent_types": intents,
                "has_questions": any("?" in message.text for message in recent),
            },
        }
