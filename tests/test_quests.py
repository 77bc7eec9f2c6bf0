from __future__ import annotations

import random

from village.engine.quests import QUEST_NAMES, QUEST_RECIPES, check_and_complete_quest, generate_new_quest
from village.engine.world_state import WorldState
from village.models.core import Quest


def test_generate_new_quest_is_seeded():
    first = generate_new_quest(random.Random(5), now=10.0)
    second = generate_new_quest(random.Random(5), now=10.0)
    assert first.name == second.name
    assert first.recipe == second.recipe
    assert first.name in QUEST_NAMES
    assert first.recipe in QUEST_RECIPES
    assert first.created_at == 10.0
    assert first.status == "ACTIVE"


def test_generated_recipe_is_a_copy():
    quest = generate_new_quest(random.Random(1))
    quest.recipe["moss"] = 999
    assert all(recipe.get("moss") != 999 for recipe in QUEST_RECIPES)


def test_incomplete_quest_does_not_roll_over():
    state = WorldState(now=0.0)
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3, "resin": 2}))
    state.stockpile.update({"cedar": 2, "resin": 2})
    state.recompute_quest_progress()
    assert state.active_quest.percent == 66
    assert check_and_complete_quest(state, random.Random(1), now=5.0) is None
    assert state.active_quest.quest_id == "q1"


def test_completed_quest_rolls_over_with_charm():
    state = WorldState(now=0.0)
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3, "resin": 2}))
    state.stockpile.update({"cedar": 3, "resin": 2, "moss": 4})
    state.recompute_quest_progress()
    assert state.active_quest.status == "COMPLETED"

    event = check_and_complete_quest(state, random.Random(1), now=5.0)

    assert event["type"] == "QUEST_COMPLETED"
    assert event["completed_quest"]["quest_id"] == "q1"
    assert event["rewards"] == {"charms": 1}
    assert state.active_quest.quest_id == event["new_quest"]["quest_id"]
    assert state.stockpile["cedar"] == 0
    assert state.stockpile["resin"] == 0
    assert state.stockpile["moss"] == 4
    assert state.stockpile["charms"] == 1
    assert [quest.quest_id for quest in state.quests][0] == "q1"
    assert state.recent_actions[0].kind == "quest"
    assert check_and_complete_quest(state, random.Random(1), now=6.0) is None
