"""Decision-service adapter.

``trim_state`` builds the JSON snapshot sent each tick. ``request_decision``
picks a strategy once per call: the live provider, or ``deterministic_patch``,
a pure function of the snapshot that proposes the same kinds of changes a live
steward would. Either way the result is raw and goes through the normalizer.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any

from village.config import Settings
from village.engine.world_state import WorldState, leading_option
from village.models.core import QUEST_THRESHOLDS, STONE_CAP

log = logging.getLogger(__name__)

CALM_DOWN_S = 30
MAX_OPEN_OFFERS = 10

STEWARD_PROMPT = (
    "You are the Mycelial Steward, coordinating backstage operations for a cooperative village.\n"
    "Read the snapshot and return ONLY one JSON object with these keys:\n"
    '- cadence: {"mode": "PULSE"|"EVENT"|"CALL_RESPONSE"|null, "reason": str, "cooldown_s": number}\n'
    '- vote: {"status": "OPEN"|"CLOSED"|null, "tally": {player_id: option}, "close_reason": "TIMER"|"QUORUM"|null}\n'
    '- resources: {"quest_percent": number, "needs": {resource: qty}, "threshold_crossed": number|null}\n'
    '- trades: {"resolutions": [{"id", "from", "to", "status"}], "cancel": [offer_id]}\n'
    '- archive: {"promote": [journal_id], "new_stones": [{"title", "text", "tags", "journal_id"}], '
    '"prune": [stone_id], "merge_pairs": [{"ids": [a, b], "title", "text"}]}\n'
    '- safety: {"alerts": [str], "rate_limits": [{"player", "cooldown_s"}], "notes": str}\n'
    "Keep at most 12 memory stones. No prose outside the JSON."
)


def trim_state(
    state: WorldState,
    now: float | None = None,
    *,
    batched_messages: list[dict[str, Any]] | None = None,
    safety_summary: str | None = None,
) -> dict[str, Any]:
    now = time.time() if now is None else now
    quest = state.active_quest
    vote = state.active_vote
    return {
        "timestamp": now,
        "state": {
            "players": [
                {
                    "id": player.player_id,
                    "name": player.name,
                    "inventory": dict(player.inventory),
                    "message_count": player.message_count,
                    "window_started_at": player.window_started_at,
                    "warnings": player.warnings,
                }
                for player in state.players.values()
            ],
            "stockpile": dict(state.stockpile),
            "active_quest": None
            if quest is None
            else {"id": quest.quest_id, "name": quest.name, "recipe": dict(quest.recipe), "percent": quest.percent},
            "prior_quest_percent": state.prior_quest_percent,
            "active_vote": None
            if vote is None
            else {
                "id": vote.vote_id,
                "topic": vote.topic,
                "options": list(vote.options),
                "tally": dict(vote.tally),
                "closes_at": vote.closes_at,
                "status": vote.status,
            },
            "open_offers": [
                {
                    "id": offer.offer_id,
                    "from_player": offer.from_player,
                    "give": list(offer.give),
                    "want": list(offer.want),
                    "created_at": offer.created_at,
                }
                for offer in state.open_offers()[-MAX_OPEN_OFFERS:]
            ],
            "memory_stones": [
                {"id": stone.stone_id, "title": stone.title, "text": stone.text, "tags": list(stone.tags)}
                for stone in state.stones
            ],
            "recent_actions": state.recent_action_digest(),
            "journal_queue": [
                {"id": entry.journal_id, "player_id": entry.player_id, "text": entry.text, "created_at": entry.created_at}
                for entry in state.pending_journals()
            ],
            "batched_messages": list(batched_messages or []),
        },
        "context": {
            "messages_since_pulse": state.messages_since_pulse,
            "seconds_since_pulse": now - state.last_pulse_at,
            "quiet_until": state.narrator_quiet_until,
            "safety_summary": safety_summary,
        },
    }


def deterministic_patch(snapshot: dict[str, Any], settings: Settings) -> dict[str, Any]:
    now = snapshot.get("timestamp", 0.0)
    world = snapshot.get("state", {})
    context = snapshot.get("context", {})
    patch: dict[str, Any] = {}

    stale = [
        offer["id"]
        for offer in world.get("open_offers", [])
        if now - offer.get("created_at", now) > settings.stale_offer_age_s
    ]
    if stale:
        patch["trades"] = {"cancel": stale}

    vote = world.get("active_vote")
    if vote and vote.get("status") == "OPEN":
        tally = vote.get("tally", {})
        voters = len(tally)
        players = len(world.get("players", []))
        quorum = voters > 0 and voters >= math.ceil(players * settings.vote_quorum_ratio)
        expired = now >= vote.get("closes_at", math.inf)
        if quorum or expired:
            counts = {option: 0 for option in vote.get("options", [])}
            for option in tally.values():
                if option in counts:
                    counts[option] += 1
            patch["vote"] = {
                "status": "CLOSED",
                "tally": dict(tally),
                "winner": leading_option(counts),
                "close_reason": "QUORUM" if quorum else "TIMER",
            }

    quest = world.get("active_quest")
    if quest:
        stockpile = world.get("stockpile", {})
        ratios = []
        needs = {}
        for item, required in quest.get("recipe", {}).items():
            if required <= 0:
                continue
            have = stockpile.get(item, 0)
            ratios.append(min(have, required) / required)
            if have < required:
                needs[item] = required - have
        percent = math.floor(100 * min(ratios)) if ratios else 0
        resources: dict[str, Any] = {"quest_percent": percent, "needs": needs}
        prior = world.get("prior_quest_percent", 0)
        crossed = [threshold for threshold in QUEST_THRESHOLDS if prior < threshold <= percent]
        if crossed:
            resources["threshold_crossed"] = max(crossed)
        patch["resources"] = resources

    ripe = [
        entry["id"]
        for entry in world.get("journal_queue", [])
        if now - entry.get("created_at", now) > settings.journal_promote_age_s
    ]
    stones = world.get("memory_stones", [])
    archive: dict[str, Any] = {}
    if ripe:
        archive["promote"] = ripe
        archive["new_stones"] = [{"journal_id": journal_id, "tags": ["journal"]} for journal_id in ripe]
    if len(stones) > STONE_CAP:
        archive["prune"] = [stone["id"] for stone in stones[: len(stones) - STONE_CAP]]
    if archive:
        patch["archive"] = archive

    restless = [
        player
        for player in world.get("players", [])
        if player.get("message_count", 0) > settings.rate_limit_soft
        and now - player.get("window_started_at", 0.0) < settings.rate_limit_window_s
    ]
    safety: dict[str, Any] = {}
    if restless:
        safety["alerts"] = [f"rapid_messages:{player['id']}" for player in restless]
        safety["rate_limits"] = [{"player": player["id"], "cooldown_s": CALM_DOWN_S} for player in restless]
    if context.get("safety_summary"):
        safety["notes"] = context["safety_summary"]
    if safety:
        patch["safety"] = safety

    quiet_until = context.get("quiet_until")
    if quiet_until is None or now >= quiet_until:
        if context.get("messages_since_pulse", 0) >= settings.cadence_message_threshold:
            patch["cadence"] = {"mode": "PULSE", "reason": "message_threshold"}
        elif context.get("seconds_since_pulse", 0) >= settings.cadence_time_threshold_s:
            patch["cadence"] = {"mode": "PULSE", "reason": "time_threshold"}

    return patch


def request_decision(client, snapshot: dict[str, Any], settings: Settings) -> Any | None:
    """Return the raw decision for one tick, or None when the live call fails."""
    if client is None or client.strategy_for("decision") == "deterministic":
        return deterministic_patch(snapshot, settings)
    try:
        return client.complete_json(
            json.dumps(snapshot, sort_keys=True, default=str),
            kind="decision",
            system_prompt=STEWARD_PROMPT,
        )
    except Exception:
        log.warning("decision_call_failed fallback=none", exc_info=True)
        return None
