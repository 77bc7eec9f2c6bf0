from __future__ import annotations

import logging
import re

from village.models.core import RESOURCES
from village.models.intents import Intent

log = logging.getLogger(__name__)

COMMAND_PATTERNS = {
    "GATHER": re.compile(r"^/gather\s+(\w+)$", re.IGNORECASE),
    "GIFT": re.compile(r"^/gift\s+@?(\w+)\s+(\w+)\s+x?(\d+)$", re.IGNORECASE),
    "DONATE": re.compile(r"^/donate\s+(\w+)\s+x?(\d+)$", re.IGNORECASE),
    "OFFER": re.compile(r"^/offer\s+give\s+(\w+)\s*x?(\d+)\s+for\s+(\w+)\s*x?(\d+)$", re.IGNORECASE),
    "ACCEPT": re.compile(r"^/accept\s+(\S+)$", re.IGNORECASE),
    "CANCEL": re.compile(r"^/cancel\s+(\S+)$", re.IGNORECASE),
    "VOTE": re.compile(r"^/vote\s+(.+)$", re.IGNORECASE),
    "JOURNAL": re.compile(r"^/journal\s+(.+)$", re.IGNORECASE | re.DOTALL),
}

GATHER_PATTERNS = (
    re.compile(r"(?:i|i'd)\s+like\s+to\s+(?:gather|collect|get)\s+(?:some\s+)?(\w+)", re.IGNORECASE),
    re.compile(r"\b(?:gather|collect|find)\s+(?:some\s+)?(\w+)", re.IGNORECASE),
)
GIFT_TO_PATTERN = re.compile(r"\b(?:give|gift|send)\s+(\d+)\s+(\w+)\s+to\s+@?(\w+)", re.IGNORECASE)
GIFT_PATTERN = re.compile(r"\b(?:give|gift|send)\s+@?(\w+)\s+(\d+)\s+(\w+)", re.IGNORECASE)
DONATE_PATTERNS = (
    re.compile(r"\b(?:donate|contribute)\s+(\d+)\s+(\w+)", re.IGNORECASE),
    re.compile(r"\b(?:add|put)\s+(\d+)\s+(\w+)\s+(?:to|in)\s+(?:the\s+)?stockpile", re.IGNORECASE),
)
VOTE_PATTERNS = (
    re.compile(r"^(?:i\s+)?vote\s+(?:for\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\b(?:my\s+)?choice\s+is\s+(.+)", re.IGNORECASE),
)

ELDER_PATTERNS = (
    re.compile(r"@elder", re.IGNORECASE),
    re.compile(r"\belder\s+mycel\b", re.IGNORECASE),
    re.compile(r"\bhey\s+elder\b", re.IGNORECASE),
    re.compile(r"\belder[,!?]", re.IGNORECASE),
)
QUESTION_PATTERNS = (
    re.compile(r"\b(?:elder|mycel)\b.*\?", re.IGNORECASE),
    re.compile(r"\bwhat\b.*\bthink\b", re.IGNORECASE),
    re.compile(r"\bshould\b.*\bwe\b", re.IGNORECASE),
    re.compile(r"\bcan\b.*\byou\b", re.IGNORECASE),
)


def is_resource(name: str) -> bool:
    return name.lower() in RESOURCES


def mentions_elder(text: str) -> bool:
    return any(pattern.search(text) for pattern in ELDER_PATTERNS)


def is_question_for_elder(text: str) -> bool:
    return any(pattern.search(text) for pattern in QUESTION_PATTERNS)


def parse_intent(text: str) -> Intent | None:
    if not isinstance(text, str) or not text.strip():
        return None
    intent = _parse_command(text.strip()) or _parse_natural_language(text.strip())
    if intent is None:
        intent = Intent(action="CHAT", params={"text": text.strip()}, raw_text=text)
    log.debug("parsed_intent %s", intent.model_dump_json())
    return intent


def _parse_command(text: str) -> Intent | None:
    if not text.startswith("/"):
        return None
    for action, pattern in COMMAND_PATTERNS.items():
        match = pattern.match(text)
        if not match:
            continue
        groups = match.groups()
        if action == "GATHER" and is_resource(groups[0]):
            return Intent(action=action, params={"item": groups[0].lower()}, raw_text=text)
        if action == "GIFT" and is_resource(groups[1]):
            return Intent(
                action=action,
                params={"target": groups[0], "item": groups[1].lower(), "qty": int(groups[2])},
                raw_text=text,
            )
        if action == "DONATE" and is_resource(groups[0]):
            return Intent(action=action, params={"item": groups[0].lower(), "qty": int(groups[1])}, raw_text=text)
        if action == "OFFER" and is_resource(groups[0]) and is_resource(groups[2]):
            return Intent(
                action=action,
                params={
                    "give": (groups[0].lower(), int(groups[1])),
                    "want": (groups[2].lower(), int(groups[3])),
                },
                raw_text=text,
            )
        if action in ("ACCEPT", "CANCEL"):
            return Intent(action=action, params={"offer_id": groups[0]}, raw_text=text)
        if action == "VOTE":
            return Intent(action=action, params={"option": groups[0].strip()}, raw_text=text)
        if action == "JOURNAL":
            return Intent(action=action, params={"text": groups[0].strip()}, raw_text=text)
        return Intent(action="UNKNOWN", params={"command": text.split()[0]}, confidence=0.0, raw_text=text)
    return Intent(action="UNKNOWN", params={"command": text.split()[0]}, confidence=0.0, raw_text=text)


def _parse_natural_language(text: str) -> Intent | None:
    match = GIFT_TO_PATTERN.search(text)
    if match and is_resource(match.group(2)):
        return Intent(
            action="GIFT",
            params={"target": match.group(3), "item": match.group(2).lower(), "qty": int(match.group(1))},
            confidence=0.7,
            raw_text=text,
        )
    match = GIFT_PATTERN.search(text)
    if match and is_resource(match.group(3)):
        return Intent(
            action="GIFT",
            params={"target": match.group(1), "item": match.group(3).lower(), "qty": int(match.group(2))},
            confidence=0.7,
            raw_text=text,
        )
    for pattern in DONATE_PATTERNS:
        match = pattern.search(text)
        if match and is_resource(match.group(2)):
            return Intent(
                action="DONATE",
                params={"item": match.group(2).lower(), "qty": int(match.group(1))},
                confidence=0.7,
                raw_text=text,
            )
    for pattern in GATHER_PATTERNS:
        match = pattern.search(text)
        if match and is_resource(match.group(1)):
            return Intent(action="GATHER", params={"item": match.group(1).lower()}, confidence=0.8, raw_text=text)
    for pattern in VOTE_PATTERNS:
        match = pattern.search(text)
        if match:
            return Intent(action="VOTE", params={"option": match.group(1).strip()}, confidence=0.6, raw_text=text)
    return None
