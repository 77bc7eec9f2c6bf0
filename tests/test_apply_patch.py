from __future__ import annotations

import logging

from village.engine.apply_patch import apply_patch, extract_title
from village.engine.context import build_narrator_input
from village.engine.world_state import WorldState
from village.llm.normalizer import normalize_patch
from village.models.core import STONE_CAP, MemoryStone, Quest, Vote
from village.models.patch import Patch, TickContext


def _village() -> WorldState:
    state = WorldState(now=1000.0)
    for player_id, name in (("p1", "Ayla"), ("p2", "Bram"), ("p3", "Cora")):
        state.add_player(player_id, name, now=1000.0)
    state.update_inventory("p1", "moss", 5)
    state.update_inventory("p2", "resin", 3)
    for index in range(3):
        state.add_memory_stone(MemoryStone(stone_id=f"s{index}", title=f"Stone {index}", text="Old lore."))
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3, "resin": 2}))
    return state


def _inventories(state: WorldState) -> dict:
    return {player_id: dict(player.inventory) for player_id, player in state.players.items()}


def test_default_patch_is_a_no_op():
    state = _village()
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=5000.0))
    state.cast_vote("p1", "A")
    offer = state.create_offer("p1", ("moss", 2), ("resin", 1))
    before = (
        _inventories(state),
        dict(state.stockpile),
        [stone.stone_id for stone in state.stones],
        state.active_vote.status,
        dict(state.active_vote.tally),
        offer.status,
        state.active_quest.status,
    )

    summary = apply_patch(state, Patch(), now=1100.0)

    after = (
        _inventories(state),
        dict(state.stockpile),
        [stone.stone_id for stone in state.stones],
        state.active_vote.status,
        dict(state.active_vote.tally),
        offer.status,
        state.active_quest.status,
    )
    assert after == before
    assert summary.actions == 0
    assert summary.audit == []


def test_trade_resolution_conserves_resources():
    state = _village()
    offer = state.create_offer("p1", ("moss", 2), ("resin", 1))
    raw = {"trades": {"resolutions": [{"id": offer.offer_id, "from": "p1", "to": "p2", "status": "COMPLETED"}]}}

    summary = apply_patch(state, normalize_patch(raw), now=1100.0)

    p1, p2 = state.get_player("p1"), state.get_player("p2")
    assert summary.trades_resolved == 1
    assert offer.status == "COMPLETED"
    assert p1.inventory["moss"] + p2.inventory["moss"] == 5
    assert p1.inventory["resin"] + p2.inventory["resin"] == 3
    assert p1.inventory["resin"] == 1
    assert state.recent_actions[0].text == f"Trade {offer.offer_id} resolved: Ayla→Bram"


def test_trade_on_completed_offer_is_non_mutating(caplog):
    state = _village()
    offer = state.create_offer("p1", ("moss", 2), ("resin", 1))
    offer.status = "COMPLETED"
    before = _inventories(state)
    raw = {"trades": {"resolutions": [{"id": offer.offer_id, "from": "p1", "to": "p2", "status": "COMPLETED"}]}}

    with caplog.at_level(logging.WARNING):
        summary = apply_patch(state, normalize_patch(raw), now=1100.0)

    assert _inventories(state) == before
    assert summary.trades_failed == 1
    assert summary.trades_resolved == 0
    assert "offer not OPEN (status: COMPLETED)" in caplog.text


def test_bad_trade_does_not_block_later_items():
    state = _village()
    good = state.create_offer("p1", ("moss", 1), ("resin", 1))
    raw = {
        "trades": {
            "resolutions": [
                {"id": "missing", "from": "p1", "to": "p2", "status": "COMPLETED"},
                {"id": good.offer_id, "from": "p2", "to": "p1", "status": "COMPLETED"},
                {"id": good.offer_id, "from": "p1", "to": "p1", "status": "COMPLETED"},
                {"id": good.offer_id, "from": "p1", "to": "p2", "status": "COMPLETED"},
            ]
        },
        "archive": {"prune": ["nope"]},
    }
    summary = apply_patch(state, normalize_patch(raw), now=1100.0)
    assert summary.trades_failed == 3
    assert summary.trades_resolved == 1
    assert summary.archive_skipped == 1
    assert any("from player mismatch" in line for line in summary.audit)
    assert any("cannot trade with self" in line for line in summary.audit)


def test_trade_skipped_when_taker_lacks_resources():
    state = _village()
    offer = state.create_offer("p1", ("moss", 1), ("resin", 9))
    raw = {"trades": {"resolutions": [{"id": offer.offer_id, "from": "p1", "to": "p2", "status": "COMPLETED"}]}}
    summary = apply_patch(state, normalize_patch(raw), now=1100.0)
    assert summary.trades_failed == 1
    assert offer.status == "OPEN"
    assert "to player lacks resin (has: 3, needs: 9)" in summary.audit[0]


def test_cancel_ids_cancel_open_offers():
    state = _village()
    offer = state.create_offer("p1", ("moss", 1), ("resin", 1))
    summary = apply_patch(state, normalize_patch({"trades": {"cancel": [offer.offer_id, "ghost"]}}), now=1100.0)
    assert offer.status == "CANCELLED"
    assert summary.trades_cancelled == 1
    assert len(summary.audit) == 1


def test_vote_close_builds_decision_card():
    state = _village()
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=5000.0))
    raw = {"vote": {"status": "CLOSED", "tally": {"p1": "A", "p2": "A", "p3": "Z"}, "close_reason": "quorum"}}

    summary = apply_patch(state, normalize_patch(raw), now=1100.0)

    vote = state.active_vote
    assert summary.vote_status == "CLOSED"
    assert vote.status == "CLOSED"
    assert vote.tally == {"p1": "A", "p2": "A"}
    assert vote.decision.winner == "A"
    assert vote.decision.counts == {"A": 2, "B": 0}
    assert vote.close_reason == "QUORUM"


def test_tally_after_close_is_ignored():
    state = _village()
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=5000.0))
    state.cast_vote("p1", "A")
    state.close_vote(reason="TIMER", now=1050.0)

    summary = apply_patch(state, normalize_patch({"vote": {"tally": {"p2": "B", "p3": "B"}}}), now=1100.0)

    assert state.active_vote.tally == {"p1": "A"}
    assert state.active_vote.winner == "A"
    assert "already CLOSED" in summary.audit[0]


def test_empty_vote_section_keeps_tally():
    state = _village()
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=5000.0))
    state.cast_vote("p1", "A")
    apply_patch(state, normalize_patch({"vote": {}}), now=1100.0)
    assert state.active_vote.tally == {"p1": "A"}


def test_quest_percent_is_recomputed_not_trusted():
    state = _village()
    state.stockpile.update({"cedar": 2, "resin": 2})
    raw = {"resources": {"quest_percent": 95, "needs": {"cedar": 1}, "threshold_crossed": 50}}

    summary = apply_patch(state, normalize_patch(raw), now=1100.0)

    assert state.active_quest.percent == 66
    assert summary.quest_percent == 66
    assert state.prior_quest_percent == 66
    assert state.active_quest.needs == [("cedar", 1)]
    assert state.active_quest.last_threshold == 50


def test_resources_without_quest_land_in_quest_info():
    state = WorldState(now=0.0)
    apply_patch(state, normalize_patch({"resources": {"needs": {"moss": 4}, "threshold_crossed": 25}}), now=10.0)
    assert state.quest_info.needs == [("moss", 4)]
    assert state.quest_info.last_threshold == 25


def test_journal_promotion_back_references_stone():
    state = _village()
    entry = state.add_journal("p1", "The brook sang all night. We listened.", now=1000.0)
    context = TickContext(journals_by_id=state.journal_texts())
    raw = {"archive": {"promote": [entry.journal_id], "new_stones": [{"tags": ["journal"]}]}}

    summary = apply_patch(state, normalize_patch(raw, context), now=1100.0)

    assert summary.stones_promoted == 1
    stone = state.stones[-1]
    assert stone.text == "The brook sang all night. We listened."
    assert stone.title == "The brook sang all night"
    assert entry.promoted
    assert entry.stone_id == stone.stone_id

    again = apply_patch(state, normalize_patch(raw, context), now=1200.0)
    assert again.stones_promoted == 0
    assert len(state.stones) == 4


def test_promote_without_new_stone_uses_journal_text():
    state = _village()
    entry = state.add_journal("p2", "Resin glowed under the full moon", now=1000.0)
    summary = apply_patch(state, normalize_patch({"archive": {"promote": [entry.journal_id, "ghost"]}}), now=1100.0)
    assert summary.stones_promoted == 1
    assert state.stones[-1].title == "Resin glowed under the full moon"
    assert any("journal not found" in line for line in summary.audit)


def test_prune_and_merge():
    state = _village()
    raw = {
        "archive": {
            "prune": ["s0"],
            "merge_pairs": [
                {"ids": ["s1", "s2"], "title": "Twin Stones", "text": "Two became one."},
                {"ids": ["s1", "s9"], "title": "Missing", "text": "Never."},
            ],
        }
    }
    summary = apply_patch(state, normalize_patch(raw), now=1100.0)
    assert summary.stones_pruned == 1
    assert summary.stones_merged == 1
    assert summary.archive_skipped == 1
    assert [stone.title for stone in state.stones] == ["Twin Stones"]
    assert state.stones[0].tags == ["merged"]
    assert state.stones[0].stone_id.startswith("stone_merged_")


def test_stone_cap_holds_after_any_archive_sequence():
    state = _village()
    for batch in range(4):
        raw = {"archive": {"new_stones": [{"title": f"New {batch}-{index}", "text": "Lore."} for index in range(5)]}}
        summary = apply_patch(state, normalize_patch(raw), now=1100.0 + batch)
        assert len(state.stones) <= STONE_CAP
        assert summary.stones_count == len(state.stones)
    assert len(state.stones) == STONE_CAP
    assert state.stones[-1].title == "New 3-4"


def test_safety_rate_limits_and_notes():
    state = _village()
    raw = {
        "safety": {
            "alerts": ["caps:p1"],
            "rate_limits": [{"player": "@p1", "cooldown_s": 10}, {"player": "@p1", "cooldown_s": 30}, {"player": "ghost", "cooldown_s": 5}],
            "notes": "Ayla is shouting.",
        }
    }
    summary = apply_patch(state, normalize_patch(raw), now=1100.0)
    assert summary.rate_limits_applied == 2
    assert state.get_player("p1").cooldown_until == 1130.0
    assert state.is_on_cooldown("p1", now=1120.0)
    assert state.safety_flags == ["caps:p1"]
    assert state.notes_for_elder == "Ayla is shouting."


def test_summary_line_is_logged(caplog):
    state = _village()
    logger = logging.getLogger("village.test.apply")
    with caplog.at_level(logging.INFO, logger="village.test.apply"):
        apply_patch(state, Patch(), logger=logger, now=1234.0)
    assert "tick=1234 actions=0 vote=none quest=0 stones=3" in caplog.text


def test_rings_are_truncated_after_apply():
    state = _village()
    for index in range(12):
        state.messages_summary.append(f"message {index}")
    apply_patch(state, Patch(), now=1100.0)
    assert len(state.messages_summary) == 8


def test_extract_title():
    assert extract_title("Short. Rest of it.") == "Short"
    assert extract_title("one two three four five six seven eight nine") == "one two three four five six seven"


def test_needs_follow_the_stockpile_not_an_old_patch():
    state = _village()
    apply_patch(state, normalize_patch({"resources": {"needs": {"cedar": 3, "resin": 2}}}), now=1100.0)
    assert state.active_quest.needs == [("cedar", 3), ("resin", 2)]

    state.stockpile["resin"] = 2
    apply_patch(state, normalize_patch({"resources": {"needs": {}}}), now=1200.0)

    assert state.active_quest.needs == [("cedar", 3)]
    assert build_narrator_input(state).now.quest.needs == ["cedar"]
