from __future__ import annotations

import re
from typing import Any

from village.engine.world_state import WorldState, dedupe_trimmed, leading_option
from village.models.core import MESSAGES_SUMMARY_CAP, RECENT_ACTIONS_EXPOSED, STOCKPILE_SNAPSHOT_RESOURCES
from village.models.narrator import (
    ConversationContext,
    NarratorInput,
    NarratorSummaries,
    NowDigest,
    QuestDigest,
    StoneDigest,
    VoteDigest,
)
from village.models.patch import CadencePatch

SENTENCE_END = re.compile(r"(?<=[.!?])\s")
QUESTION_MODE = "CALL_RESPONSE"


def first_sentence(text: str) -> str:
    text = text.strip()
    if not text:
        return ""
    sentence = SENTENCE_END.split(text, maxsplit=1)[0].strip()
    if sentence[-1] not in ".!?":
        sentence += "."
    return sentence


def _cadence_fields(cadence: CadencePatch | dict[str, Any] | None) -> tuple[str, str | None]:
    if cadence is None:
        return "PULSE", None
    if isinstance(cadence, dict):
        mode, question = cadence.get("mode"), cadence.get("question")
    else:
        mode, question = cadence.mode, cadence.question
    return (str(mode) if mode else "PULSE"), question


def build_narrator_input(
    state: WorldState,
    cadence: CadencePatch | dict[str, Any] | None = None,
    summaries: NarratorSummaries | None = None,
) -> NarratorInput:
    """Compact view of the world for one narrator call.

    Stones are reduced to title plus first sentence, quest needs to resource
    names, and the vote gets a ``leading`` option only when nobody is tied for
    the lead. ``question`` survives only in CALL_RESPONSE mode.
    """
    summaries = summaries or NarratorSummaries()
    mode, question = _cadence_fields(cadence)

    stones = [StoneDigest(title=stone.title, one_sentence=first_sentence(stone.text)) for stone in state.stones]

    quest = state.active_quest
    if quest is None:
        quest_digest = QuestDigest()
    else:
        quest_digest = QuestDigest(
            name=quest.name,
            percent=quest.percent,
            needs=[item for item, _ in state.quest_shortfalls()],
        )

    vote = state.active_vote
    vote_digest = None
    if vote is not None:
        vote_digest = VoteDigest(
            topic=vote.topic,
            options=list(vote.options),
            leading=leading_option(state.vote_counts(vote)),
        )

    stockpile = {resource: state.stockpile.get(resource, 0) for resource in STOCKPILE_SNAPSHOT_RESOURCES}

    actions_source = summaries.top_recent_actions
    if actions_source is None:
        actions_source = state.recent_actions
    messages_source = summaries.last_messages_summary
    if messages_source is None:
        messages_source = state.messages_summary

    return NarratorInput(
        mode=mode,
        canon_stones=stones,
        now=NowDigest(quest=quest_digest, vote=vote_digest, stockpile=stockpile),
        top_recent_actions=dedupe_trimmed(actions_source, RECENT_ACTIONS_EXPOSED),
        last_messages_summary=dedupe_trimmed(messages_source, MESSAGES_SUMMARY_CAP),
        safety_notes=summaries.safety_notes or state.notes_for_elder or None,
        question=(question or None) if mode == QUESTION_MODE else None,
        conversation_context=summaries.conversation or ConversationContext(),
    )
