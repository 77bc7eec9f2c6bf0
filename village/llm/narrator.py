from __future__ import annotations

import logging
import re
from typing import Iterable

from village.models.narrator import (
    DEFAULT_NUDGE,
    FALLBACK_MESSAGE,
    ConversationContext,
    NarratorInput,
    NarratorOutput,
)
from village.models.patch import ElderMessage

log = logging.getLogger(__name__)

NUDGE_PREFIX = "Next:"
NEXT_LINE = re.compile(r"Next:\s*(.+)", re.IGNORECASE)
MENTION = re.compile(r"@(\w+)")

SYSTEM_PROMPT = (
    "You are Elder Mycel, the ancient mushroom who watches over a cooperative village.\n"
    "Speak in 2-4 gentle, grounded sentences. Refer to memory stones by title when they fit.\n"
    "Never invent resources, quests or votes that are not in the current state.\n"
    "If a QUESTION is present, answer it directly before anything else.\n"
    'End with a single line that starts with "Next:" and suggests one concrete action.'
)


def render_prompt(narrator_input: NarratorInput) -> str:
    parts = [f"MODE: {narrator_input.mode}"]
    if narrator_input.question:
        parts.append(f"QUESTION: {narrator_input.question}")

    if narrator_input.canon_stones:
        parts.append("\nMEMORY STONES:")
        parts.extend(f"- {stone.title}: {stone.one_sentence}" for stone in narrator_input.canon_stones)

    now = narrator_input.now
    parts.append("\nCURRENT STATE:")
    parts.append(f"Quest: {now.quest.name} ({now.quest.percent}%)")
    if now.quest.needs:
        parts.append(f"Needs: {', '.join(now.quest.needs)}")
    if now.vote is not None:
        parts.append(f"Vote: {now.vote.topic}")
        parts.append(f"Options: {', '.join(now.vote.options)}")
        if now.vote.leading:
            parts.append(f"Leading: {now.vote.leading}")
    items = ", ".join(f"{item}:{count}" for item, count in now.stockpile.items() if count > 0)
    if items:
        parts.append(f"Stockpile: {items}")

    if narrator_input.top_recent_actions:
        parts.append("\nRECENT ACTIONS:")
        parts.extend(f"- {action}" for action in narrator_input.top_recent_actions)
    if narrator_input.last_messages_summary:
        parts.append("\nRECENT MESSAGES:")
        parts.extend(f"- {message}" for message in narrator_input.last_messages_summary)
    if narrator_input.safety_notes:
        parts.append(f"\nSAFETY NOTES: {narrator_input.safety_notes}")

    conversation = narrator_input.conversation_context
    if conversation.summary:
        parts.append(f"\nCONVERSATION ({conversation.tone}): {conversation.summary}")
    if conversation.acknowledge_users:
        parts.append(f"Acknowledge: {', '.join(conversation.acknowledge_users)}")
    return "\n".join(parts)


def conversation_context(speakers: Iterable[tuple[str, str]], mode: str) -> ConversationContext:
    """Build a light conversation summary from ``(name, text)`` pairs."""
    speakers = list(speakers)
    if not speakers:
        return ConversationContext(summary="Routine pulse check-in" if mode == "PULSE" else "", thread=mode.lower())
    names: list[str] = []
    for name, _ in speakers:
        if name not in names:
            names.append(name)
    asked = [(name, text) for name, text in speakers if "?" in text or "elder" in text.lower()]
    if asked:
        return ConversationContext(
            tone="encouraging",
            summary="Players asking questions: " + "; ".join(text[:50] for _, text in asked),
            thread="questions",
            acknowledge_users=list(dict.fromkeys(name for name, _ in asked)),
        )
    count = len(speakers)
    return ConversationContext(
        summary=f"{count} recent message{'s' if count != 1 else ''} from {len(names)} player{'s' if len(names) != 1 else ''}",
        thread="general",
        acknowledge_users=names[:2],
    )


def synthesize_output(text: str, narrator_input: NarratorInput) -> NarratorOutput:
    """Recover structured output from a plain-text narrator reply."""
    lowered = text.lower()
    referenced = [stone.title for stone in narrator_input.canon_stones if stone.title.lower() in lowered]
    acknowledged: list[str] = []
    for summary in narrator_input.last_messages_summary:
        for username in MENTION.findall(summary):
            if username in text and username not in acknowledged:
                acknowledged.append(username)

    match = NEXT_LINE.search(text)
    nudge = f"Next: {match.group(1).strip()}" if match else DEFAULT_NUDGE
    message = text.strip()
    if match is None and message:
        message = f"{message}\n\n{nudge}"
    return NarratorOutput(
        message_text=message,
        nudge=nudge,
        referenced_stones=referenced,
        acknowledged_users=acknowledged,
    )


def sanitize_output(output: NarratorOutput | ElderMessage | None) -> NarratorOutput:
    if output is None:
        return NarratorOutput(message_text=f"{FALLBACK_MESSAGE}\n\n{DEFAULT_NUDGE}", nudge=DEFAULT_NUDGE)
    if isinstance(output, ElderMessage):
        output = NarratorOutput(
            message_text=output.text,
            nudge=output.nudge,
            referenced_stones=list(output.referenced_stones),
            acknowledged_users=list(output.acknowledged_users),
        )
    text = (output.message_text or "").strip()
    if not text:
        log.warning("narrator_output_empty fallback=default")
        return NarratorOutput(message_text=f"{FALLBACK_MESSAGE}\n\n{DEFAULT_NUDGE}", nudge=DEFAULT_NUDGE)

    nudge = (output.nudge or "").strip()
    if not nudge.startswith(NUDGE_PREFIX):
        log.warning("narrator_nudge_invalid nudge=%r", nudge[:40])
        nudge = DEFAULT_NUDGE
        if not text.endswith(DEFAULT_NUDGE):
            text = f"{text}\n\n{DEFAULT_NUDGE}"
    return NarratorOutput(
        message_text=text,
        nudge=nudge,
        referenced_stones=list(output.referenced_stones),
        acknowledged_users=list(output.acknowledged_users),
    )


def deterministic_narration(narrator_input: NarratorInput) -> NarratorOutput:
    quest = narrator_input.now.quest
    vote = narrator_input.now.vote

    if narrator_input.mode == "CALL_RESPONSE" and narrator_input.question:
        message = f'I hear your question: "{narrator_input.question}". The answer lies in the patterns we weave together.'
    elif narrator_input.mode == "EVENT" and vote is not None and vote.leading:
        message = f'The circle leans toward "{vote.leading}" on {vote.topic}. Speak now if your heart differs.'
    elif quest.percent > 0:
        message = f'The quest "{quest.name}" progresses at {quest.percent}%. Each contribution strengthens our foundation.'
    else:
        message = "The village moves by gentle steps."

    if quest.needs:
        nudge = f"Next: Contribute {quest.needs[0]} to the stockpile."
    else:
        nudge = DEFAULT_NUDGE
    return NarratorOutput(
        message_text=f"{message}\n\n{nudge}",
        nudge=nudge,
        acknowledged_users=list(narrator_input.conversation_context.acknowledge_users),
    )


def speak(client, narrator_input: NarratorInput) -> NarratorOutput:
    if client is None or client.strategy_for("narrator") == "deterministic":
        return sanitize_output(deterministic_narration(narrator_input))
    try:
        text = client.complete_text(render_prompt(narrator_input), kind="narrator", system_prompt=SYSTEM_PROMPT)
    except Exception:
        log.warning("narrator_call_failed fallback=default", exc_info=True)
        return sanitize_output(None)
    if not text or text.startswith("[stub]"):
        return sanitize_output(None)
    return sanitize_output(synthesize_output(text, narrator_input))
