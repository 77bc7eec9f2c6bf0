from __future__ import annotations

from village.engine.world_state import WorldState, dedupe_trimmed, leading_option
from village.models.core import STONE_CAP, Location, MemoryStone, Quest, Vote


def _state_with_players(*ids: str) -> WorldState:
    state = WorldState(now=1000.0)
    for player_id in ids:
        state.add_player(player_id, player_id.title(), now=1000.0)
    return state


def test_add_player_is_idempotent():
    state = WorldState(now=0.0)
    first = state.add_player("p1", "Ayla")
    first.inventory["moss"] = 4
    again = state.add_player("p1", "Someone Else")
    assert again is first
    assert again.name == "Ayla"
    assert again.inventory["moss"] == 4


def test_update_inventory_clamps_at_zero():
    state = _state_with_players("p1")
    state.update_inventory("p1", "cedar", 2)
    state.update_inventory("p1", "cedar", -5)
    assert state.get_player("p1").inventory["cedar"] == 0
    assert not state.update_inventory("missing", "cedar", 1)
    assert not state.update_inventory("p1", "gold", 1)


def test_gift_moves_resources_and_rejects_self():
    state = _state_with_players("p1", "p2")
    state.update_inventory("p1", "resin", 3)
    assert state.gift("p1", "p2", "resin", 2)
    assert state.get_player("p1").inventory["resin"] == 1
    assert state.get_player("p2").inventory["resin"] == 2
    assert not state.gift("p1", "p1", "resin", 1)
    assert not state.gift("p1", "p2", "resin", 5)


def test_quest_bottleneck_percent():
    state = WorldState(now=0.0)
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3, "resin": 2}))
    state.stockpile.update({"cedar": 2, "resin": 2})
    quest = state.recompute_quest_progress()
    assert quest.percent == 66
    assert quest.status == "ACTIVE"

    state.stockpile["cedar"] = 3
    quest = state.recompute_quest_progress()
    assert quest.percent == 100
    assert quest.status == "COMPLETED"


def test_donate_moves_inventory_to_stockpile_and_recomputes():
    state = _state_with_players("p1")
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 4}))
    state.update_inventory("p1", "cedar", 3)
    assert state.donate("p1", "cedar", 2)
    assert state.stockpile["cedar"] == 2
    assert state.get_player("p1").inventory["cedar"] == 1
    assert state.active_quest.percent == 50
    assert not state.donate("p1", "cedar", 5)


def test_set_active_quest_debits_only_completed_quest():
    state = WorldState(now=0.0)
    old = Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3, "resin": 2})
    state.set_active_quest(old)
    state.stockpile.update({"cedar": 5, "resin": 2})
    state.recompute_quest_progress()

    state.set_active_quest(Quest(quest_id="q2", name="Well", recipe={"moss": 5}), now=10.0)

    assert old.stockpile_debited
    assert state.stockpile["cedar"] == 2
    assert state.stockpile["resin"] == 0
    assert state.stockpile["charms"] == 1
    assert state.active_quest.quest_id == "q2"


def test_set_active_quest_discards_incomplete_quest_without_debit():
    state = WorldState(now=0.0)
    state.set_active_quest(Quest(quest_id="q1", name="Bridge", recipe={"cedar": 3}))
    state.stockpile["cedar"] = 1
    state.set_active_quest(Quest(quest_id="q2", name="Well", recipe={"moss": 5}))
    assert state.stockpile["cedar"] == 1
    assert state.stockpile["charms"] == 0


def test_cast_vote_one_per_player_and_fuzzy_option():
    state = _state_with_players("p1", "p2")
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["North Grove", "Brook"], closes_at=2000.0))
    assert state.resolve_vote_option("north") == "North Grove"
    assert state.resolve_vote_option("grove") == "North Grove"
    assert state.resolve_vote_option("meadow") is None
    assert state.cast_vote("p1", "Brook")
    assert not state.cast_vote("p1", "North Grove")
    assert state.vote_counts() == {"North Grove": 0, "Brook": 1}


def test_quorum_boundary():
    state = _state_with_players("p1", "p2", "p3", "p4", "p5")
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=2000.0))
    state.cast_vote("p1", "A")
    state.cast_vote("p2", "B")
    assert not state.quorum_reached(0.5)
    state.cast_vote("p3", "A")
    assert state.quorum_reached(0.5)


def test_close_vote_builds_decision_card():
    state = _state_with_players("p1", "p2", "p3")
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=2000.0))
    state.cast_vote("p1", "A")
    state.cast_vote("p2", "A")
    state.cast_vote("p3", "B")

    counts = state.close_vote(reason="QUORUM", now=1500.0)

    vote = state.active_vote
    assert counts == {"A": 2, "B": 1}
    assert vote.status == "CLOSED"
    assert not vote.can_vote
    assert vote.decision.winner == "A"
    assert vote.decision.total_votes == 3
    assert vote.decision.close_reason == "QUORUM"
    assert state.close_vote() is None


def test_close_vote_tie_has_no_winner():
    state = _state_with_players("p1", "p2")
    state.set_active_vote(Vote(vote_id="v1", topic="Lanterns", options=["A", "B"], closes_at=2000.0))
    state.cast_vote("p1", "A")
    state.cast_vote("p2", "B")
    state.close_vote(reason="TIMER")
    assert state.active_vote.winner is None
    assert "evenly split" in state.active_vote.decision.summary


def test_accept_offer_conserves_resources():
    state = _state_with_players("p1", "p2")
    state.update_inventory("p1", "moss", 5)
    state.update_inventory("p2", "resin", 2)
    offer = state.create_offer("p1", ("moss", 3), ("resin", 1), now=1000.0)

    before_moss = state.get_player("p1").inventory["moss"] + state.get_player("p2").inventory["moss"]
    before_resin = state.get_player("p1").inventory["resin"] + state.get_player("p2").inventory["resin"]
    assert state.accept_offer(offer.offer_id, "p2")

    p1, p2 = state.get_player("p1"), state.get_player("p2")
    assert p1.inventory["moss"] + p2.inventory["moss"] == before_moss
    assert p1.inventory["resin"] + p2.inventory["resin"] == before_resin
    assert offer.status == "COMPLETED"
    assert offer.accepted_by == "p2"
    assert not state.accept_offer(offer.offer_id, "p2")


def test_offer_rejection_reasons():
    state = _state_with_players("p1", "p2")
    state.update_inventory("p1", "moss", 1)
    offer = state.create_offer("p1", ("moss", 3), ("resin", 1))
    assert state.offer_rejection_reason(offer.offer_id, "p1") == "Cannot accept your own offer"
    assert state.offer_rejection_reason(offer.offer_id, "p2") == "Offerer lacks resources"
    assert state.offer_rejection_reason("nope", "p2") == "Offer not available"
    assert state.create_offer("p1", ("gold", 1), ("moss", 1)) is None


def test_cancel_offer_requires_owner():
    state = _state_with_players("p1", "p2")
    offer = state.create_offer("p1", ("moss", 1), ("resin", 1))
    assert not state.cancel_offer(offer.offer_id, "p2")
    assert state.cancel_offer(offer.offer_id, "p1")
    assert offer.status == "CANCELLED"
    assert not state.cancel_offer(offer.offer_id)


def test_stone_cap_evicts_oldest():
    state = WorldState(now=0.0)
    for index in range(STONE_CAP + 3):
        state.add_memory_stone(MemoryStone(stone_id=f"s{index}", title=f"Stone {index}", text="A stone."))
    assert len(state.stones) == STONE_CAP
    assert state.stones[0].stone_id == "s3"


def test_recent_action_ring_is_capped_and_newest_first():
    state = WorldState(now=0.0)
    for index in range(15):
        state.add_recent_action(f"action {index}")
    assert len(state.recent_actions) == 10
    assert state.recent_actions[0].text == "action 14"
    assert state.recent_action_digest() == [f"action {index}" for index in range(14, 9, -1)]


def test_dedupe_trimmed_and_leading_option():
    assert dedupe_trimmed(["  a ", "a", "", "b", {"text": "c"}, "d"], 3) == ["a", "b", "c"]
    assert leading_option({"A": 2, "B": 2}) is None
    assert leading_option({"A": 0, "B": 0}) is None
    assert leading_option({"A": 3, "B": 1}) == "A"


def test_merge_locations_by_name():
    state = WorldState(now=0.0)
    added = state.merge_locations([Location(name="Brook"), Location(name="brook"), Location(name="Grove")])
    assert added == 2
    assert [location.name for location in state.locations] == ["Brook", "Grove"]


def test_export_chronicle_is_plain_data():
    state = _state_with_players("p1")
    state.add_memory_stone(MemoryStone(stone_id="s1", title="Origin", text="It began."))
    chronicle = state.export_chronicle(now=5.0)
    assert chronicle["timestamp"] == 5.0
    assert chronicle["stones"][0]["title"] == "Origin"
    assert chronicle["players"][0]["player_id"] == "p1"
    assert chronicle["active_quest"] is None
