from __future__ import annotations

import logging
import random
import time
from typing import Any

from village.engine.world_state import WorldState, new_id
from village.models.core import Quest

log = logging.getLogger(__name__)

QUEST_NAMES = [
    "Bridge Across the Brook",
    "Healing Circle for the Elders",
    "Festival Lantern Grove",
    "Moss Tapestry for the Gathering Hall",
    "Cedar Watchtower",
    "Resin Seal for Ancient Texts",
    "Spore Garden Restoration",
    "Charm of Protection",
    "Village Well Repair",
    "Sacred Grove Renewal",
]

QUEST_RECIPES = [
    {"moss": 20, "cedar": 10, "resin": 5},
    {"cedar": 15, "resin": 10, "spores": 5},
    {"moss": 25, "spores": 15, "resin": 8},
    {"moss": 30, "cedar": 15},
    {"cedar": 20, "resin": 15, "spores": 10},
    {"moss": 15, "cedar": 8, "spores": 12},
    {"resin": 20, "spores": 20},
    {"moss": 10, "cedar": 10, "resin": 10, "spores": 10},
    {"moss": 35, "resin": 12},
    {"cedar": 25, "spores": 18},
]


def generate_new_quest(rng: random.Random, now: float | None = None) -> Quest:
    quest = Quest(
        quest_id=new_id("quest"),
        name=rng.choice(QUEST_NAMES),
        recipe=dict(rng.choice(QUEST_RECIPES)),
    )
    if now is not None:
        quest.created_at = now
    return quest


def check_and_complete_quest(
    state: WorldState,
    rng: random.Random,
    now: float | None = None,
) -> dict[str, Any] | None:
    """Roll over to a fresh quest once the active one is fully stocked.

    The stockpile debit and the charm reward happen inside
    ``WorldState.set_active_quest``.
    """
    quest = state.active_quest
    if quest is None or quest.percent < 100 or quest.stockpile_debited:
        return None
    now = time.time() if now is None else now
    replacement = generate_new_quest(rng, now=now)
    state.set_active_quest(replacement, now=now)
    state.add_recent_action(f"The village completed {quest.name}! A new charm was crafted.", kind="quest")
    log.info("quest_rollover completed=%s next=%s", quest.quest_id, replacement.quest_id)
    return {
        "type": "QUEST_COMPLETED",
        "completed_quest": {"quest_id": quest.quest_id, "name": quest.name, "recipe": dict(quest.recipe)},
        "new_quest": {"quest_id": replacement.quest_id, "name": replacement.name, "recipe": dict(replacement.recipe)},
        "rewards": {"charms": 1},
        "timestamp": now,
    }
