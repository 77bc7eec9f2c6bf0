from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Any, Iterable

from village.models.core import (
    LOCATIONS_CAP,
    MESSAGES_SUMMARY_CAP,
    RECENT_ACTIONS_CAP,
    RECENT_ACTIONS_EXPOSED,
    RESOURCES,
    STONE_CAP,
    DecisionCard,
    JournalEntry,
    Location,
    MemoryStone,
    Offer,
    Player,
    Quest,
    QuestInfo,
    RecentAction,
    Vote,
)

log = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def dedupe_trimmed(items: Iterable[Any], limit: int) -> list[str]:
    """Strip, drop blanks and repeats, keep the first ``limit`` survivors in order."""
    result: list[str] = []
    for item in items:
        if isinstance(item, RecentAction):
            text = item.text
        elif isinstance(item, dict):
            text = str(item.get("text", ""))
        else:
            text = str(item)
        text = text.strip()
        if not text or text in result:
            continue
        result.append(text)
        if len(result) >= limit:
            break
    return result


def leading_option(counts: dict[str, int]) -> str | None:
    if not counts:
        return None
    top = max(counts.values())
    if top <= 0:
        return None
    leaders = [option for option, count in counts.items() if count == top]
    if len(leaders) != 1:
        return None
    return leaders[0]


class WorldState:
    """Authoritative in-memory village state.

    Mutators never raise. They either apply fully or do nothing and report it
    through a falsy return value. Callers serialize access; there is no locking.
    """

    def __init__(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.players: dict[str, Player] = {}
        self.stockpile: dict[str, int] = {resource: 0 for resource in RESOURCES}

        self.active_quest: Quest | None = None
        self.quest_info = QuestInfo()
        self.quests: list[Quest] = []
        self.prior_quest_percent = 0

        self.active_vote: Vote | None = None
        self.votes: list[Vote] = []

        self.offers: dict[str, Offer] = {}

        self.stones: list[MemoryStone] = []
        self.journals: dict[str, JournalEntry] = {}

        self.recent_actions: list[RecentAction] = []
        self.messages_summary: list[str] = []
        self.locations: list[Location] = []

        self.safety_flags: list[str] = []
        self.notes_for_elder: str | None = None

        self.messages_since_pulse = 0
        self.last_pulse_at = now
        self.elder_last_spoke = now
        self.narrator_quiet_until: float | None = None
        self.last_elder_message: str | None = None

    # Players

    def add_player(self, player_id: str, name: str | None = None, now: float | None = None) -> Player:
        existing = self.players.get(player_id)
        if existing is not None:
            return existing
        player = Player(player_id=player_id, name=name or player_id)
        if now is not None:
            player.last_action_at = now
        self.players[player_id] = player
        log.info("player_added player=%s name=%s", player_id, player.name)
        return player

    def get_player(self, player_id: str) -> Player | None:
        return self.players.get(player_id)

    def find_player(self, name_or_id: str) -> Player | None:
        key = name_or_id.strip().lstrip("@").lower()
        for player in self.players.values():
            if player.player_id.lower() == key or player.name.lower() == key:
                return player
        return None

    def update_inventory(self, player_id: str, resource: str, delta: int) -> bool:
        player = self.players.get(player_id)
        if player is None or resource not in player.inventory:
            return False
        player.inventory[resource] = max(0, player.inventory[resource] + int(delta))
        return True

    def gift(self, from_id: str, to_id: str, resource: str, qty: int) -> bool:
        giver = self.players.get(from_id)
        receiver = self.players.get(to_id)
        if giver is None or receiver is None or from_id == to_id:
            return False
        if resource not in RESOURCES or qty <= 0 or giver.inventory.get(resource, 0) < qty:
            return False
        giver.inventory[resource] -= qty
        receiver.inventory[resource] = receiver.inventory.get(resource, 0) + qty
        return True

    def set_cooldown(self, player_id: str, seconds: float, now: float | None = None) -> bool:
        player = self.players.get(player_id)
        if player is None:
            return False
        now = time.time() if now is None else now
        player.cooldown_until = now + seconds
        return True

    def is_on_cooldown(self, player_id: str, now: float | None = None) -> bool:
        player = self.players.get(player_id)
        if player is None or player.cooldown_until is None:
            return False
        now = time.time() if now is None else now
        return now < player.cooldown_until

    # Stockpile and quest

    def add_to_stockpile(self, resource: str, amount: int) -> bool:
        if resource not in self.stockpile:
            return False
        self.stockpile[resource] = max(0, self.stockpile[resource] + int(amount))
        return True

    def donate(self, player_id: str, resource: str, qty: int) -> bool:
        player = self.players.get(player_id)
        if player is None or resource not in self.stockpile or qty <= 0:
            return False
        if player.inventory.get(resource, 0) < qty:
            return False
        player.inventory[resource] -= qty
        self.stockpile[resource] += qty
        self.recompute_quest_progress()
        return True

    def set_active_quest(self, quest: Quest, now: float | None = None) -> Quest | None:
        """Install ``quest``; the previous one is completed (and paid for) only if it reached 100%."""
        previous = self.active_quest
        if previous is not None and previous is not quest:
            if previous.percent >= 100 and not previous.stockpile_debited:
                for resource, qty in previous.recipe.items():
                    if resource in self.stockpile:
                        self.stockpile[resource] = max(0, self.stockpile[resource] - qty)
                self.stockpile["charms"] += 1
                previous.stockpile_debited = True
                previous.status = "COMPLETED"
                previous.completed_at = time.time() if now is None else now
                log.info("quest_completed quest=%s name=%s", previous.quest_id, previous.name)
            else:
                log.info("quest_discarded quest=%s percent=%s", previous.quest_id, previous.percent)
        self.active_quest = quest
        self.quests.append(quest)
        self.recompute_quest_progress()
        return previous

    def quest_shortfalls(self) -> list[tuple[str, int]]:
        quest = self.active_quest
        if quest is None:
            return []
        shortfalls = []
        for resource, required in quest.recipe.items():
            missing = required - self.stockpile.get(resource, 0)
            if missing > 0:
                shortfalls.append((resource, missing))
        return shortfalls

    def compute_quest_percent(self) -> int:
        """Bottleneck ratio: the scarcest recipe resource decides the percent."""
        quest = self.active_quest
        if quest is None:
            return 0
        ratios = []
        for resource, required in quest.recipe.items():
            if required <= 0:
                continue
            have = self.stockpile.get(resource, 0)
            ratios.append(min(have, required) / required)
        if not ratios:
            return 0
        return math.floor(100 * min(ratios))

    def recompute_quest_progress(self) -> Quest | None:
        quest = self.active_quest
        if quest is None:
            return None
        quest.percent = self.compute_quest_percent()
        if quest.percent >= 100 and quest.status == "ACTIVE":
            quest.status = "COMPLETED"
            quest.completed_at = time.time()
        return quest

    # Votes

    def set_active_vote(self, vote: Vote) -> Vote:
        vote.tally = {}
        vote.status = "OPEN"
        vote.can_vote = True
        self.active_vote = vote
        self.votes.append(vote)
        log.info("vote_opened vote=%s topic=%s", vote.vote_id, vote.topic)
        return vote

    def resolve_vote_option(self, text: str) -> str | None:
        vote = self.active_vote
        if vote is None:
            return None
        wanted = text.strip().lower()
        if not wanted:
            return None
        for matcher in (
            lambda option: option.lower() == wanted,
            lambda option: option.lower().startswith(wanted),
            lambda option: wanted in option.lower(),
        ):
            for option in vote.options:
                if matcher(option):
                    return option
        return None

    def cast_vote(self, player_id: str, option: str) -> bool:
        vote = self.active_vote
        if vote is None or vote.status != "OPEN":
            return False
        if option not in vote.options or player_id in vote.tally:
            return False
        vote.tally[player_id] = option
        return True

    def vote_counts(self, vote: Vote | None = None) -> dict[str, int]:
        vote = vote or self.active_vote
        if vote is None:
            return {}
        counts = {option: 0 for option in vote.options}
        for option in vote.tally.values():
            if option in counts:
                counts[option] += 1
        return counts

    def quorum_reached(self, ratio: float) -> bool:
        vote = self.active_vote
        if vote is None or not self.players:
            return False
        voters = len(set(vote.tally))
        return voters > 0 and voters >= math.ceil(len(self.players) * ratio)

    def close_vote(
        self,
        winner: str | None = None,
        reason: str | None = None,
        now: float | None = None,
    ) -> dict[str, int] | None:
        vote = self.active_vote
        if vote is None or vote.status == "CLOSED":
            return None
        counts = self.vote_counts(vote)
        if winner not in vote.options:
            winner = leading_option(counts)
        total = sum(counts.values())
        vote.status = "CLOSED"
        vote.can_vote = False
        vote.winner = winner
        vote.close_reason = reason if reason in ("TIMER", "QUORUM") else None
        vote.closed_at = time.time() if now is None else now
        if winner is None:
            summary = f'The village could not settle "{vote.topic}"; the voices were evenly split.'
        else:
            summary = f'The village has spoken: "{winner}" with {counts.get(winner, 0)} of {total} votes.'
        vote.decision = DecisionCard(
            topic=vote.topic,
            winner=winner,
            close_reason=vote.close_reason,
            counts=counts,
            total_votes=total,
            summary=summary,
        )
        log.info("vote_closed vote=%s winner=%s reason=%s total=%s", vote.vote_id, winner, vote.close_reason, total)
        return counts

    # Offers

    def create_offer(
        self,
        player_id: str,
        give: tuple[str, int],
        want: tuple[str, int],
        now: float | None = None,
    ) -> Offer | None:
        if player_id not in self.players:
            return None
        for resource, qty in (give, want):
            if resource not in RESOURCES or qty <= 0:
                return None
        offer = Offer(offer_id=new_id("offer"), from_player=player_id, give=give, want=want)
        if now is not None:
            offer.created_at = now
        self.offers[offer.offer_id] = offer
        return offer

    def get_offer(self, offer_id: str) -> Offer | None:
        return self.offers.get(offer_id)

    def open_offers(self) -> list[Offer]:
        return [offer for offer in self.offers.values() if offer.status == "OPEN"]

    def offer_rejection_reason(self, offer_id: str, accepter_id: str) -> str | None:
        offer = self.offers.get(offer_id)
        if offer is None or offer.status != "OPEN":
            return "Offer not available"
        if offer.from_player == accepter_id:
            return "Cannot accept your own offer"
        offerer = self.players.get(offer.from_player)
        accepter = self.players.get(accepter_id)
        if offerer is None or accepter is None:
            return "Player not found"
        give_item, give_qty = offer.give
        want_item, want_qty = offer.want
        if offerer.inventory.get(give_item, 0) < give_qty:
            return "Offerer lacks resources"
        if accepter.inventory.get(want_item, 0) < want_qty:
            return "Accepter lacks resources"
        return None

    def exchange(self, offer: Offer, accepter_id: str, now: float | None = None) -> None:
        """Four-way swap for a pre-validated offer."""
        offerer = self.players[offer.from_player]
        accepter = self.players[accepter_id]
        give_item, give_qty = offer.give
        want_item, want_qty = offer.want
        offerer.inventory[give_item] -= give_qty
        offerer.inventory[want_item] = offerer.inventory.get(want_item, 0) + want_qty
        accepter.inventory[want_item] -= want_qty
        accepter.inventory[give_item] = accepter.inventory.get(give_item, 0) + give_qty
        offer.status = "COMPLETED"
        offer.accepted_by = accepter_id
        offer.completed_at = time.time() if now is None else now

    def accept_offer(self, offer_id: str, accepter_id: str, now: float | None = None) -> bool:
        reason = self.offer_rejection_reason(offer_id, accepter_id)
        if reason is not None:
            log.info("offer_accept_rejected offer=%s accepter=%s reason=%s", offer_id, accepter_id, reason)
            return False
        self.exchange(self.offers[offer_id], accepter_id, now=now)
        return True

    def cancel_offer(self, offer_id: str, player_id: str | None = None) -> bool:
        offer = self.offers.get(offer_id)
        if offer is None or offer.status != "OPEN":
            return False
        if player_id is not None and offer.from_player != player_id:
            return False
        offer.status = "CANCELLED"
        return True

    # Memory stones and journals

    def add_memory_stone(self, stone: MemoryStone) -> list[MemoryStone]:
        self.stones.append(stone)
        return self.enforce_stone_cap()

    def enforce_stone_cap(self) -> list[MemoryStone]:
        evicted = []
        while len(self.stones) > STONE_CAP:
            evicted.append(self.stones.pop(0))
        if evicted:
            log.info("stones_evicted count=%s", len(evicted))
        return evicted

    def find_stone(self, stone_id: str) -> MemoryStone | None:
        for stone in self.stones:
            if stone.stone_id == stone_id:
                return stone
        return None

    def remove_stone(self, stone_id: str) -> MemoryStone | None:
        stone = self.find_stone(stone_id)
        if stone is not None:
            self.stones.remove(stone)
        return stone

    def add_journal(self, player_id: str, text: str, now: float | None = None) -> JournalEntry:
        entry = JournalEntry(journal_id=new_id("journal"), player_id=player_id, text=text)
        if now is not None:
            entry.created_at = now
        self.journals[entry.journal_id] = entry
        return entry

    def pending_journals(self) -> list[JournalEntry]:
        return [entry for entry in self.journals.values() if not entry.promoted]

    def journal_texts(self) -> dict[str, str]:
        return {entry.journal_id: entry.text for entry in self.journals.values()}

    def mark_journal_promoted(self, journal_id: str, stone_id: str, now: float | None = None) -> bool:
        entry = self.journals.get(journal_id)
        if entry is None or entry.promoted:
            return False
        entry.promoted = True
        entry.promoted_at = time.time() if now is None else now
        entry.stone_id = stone_id
        return True

    # Rings

    def add_recent_action(self, text: str, kind: str = "action", player: str | None = None) -> None:
        self.recent_actions.insert(0, RecentAction(text=text, kind=kind, player=player))
        del self.recent_actions[RECENT_ACTIONS_CAP:]

    def add_message_summary(self, text: str) -> None:
        self.messages_summary.insert(0, text)
        del self.messages_summary[MESSAGES_SUMMARY_CAP:]

    def recent_action_digest(self, limit: int = RECENT_ACTIONS_EXPOSED) -> list[str]:
        return dedupe_trimmed(self.recent_actions, limit)

    def messages_digest(self, limit: int = MESSAGES_SUMMARY_CAP) -> list[str]:
        return dedupe_trimmed(self.messages_summary, limit)

    def trim_rings(self) -> None:
        del self.recent_actions[RECENT_ACTIONS_CAP:]
        del self.messages_summary[MESSAGES_SUMMARY_CAP:]

    # Cadence bookkeeping

    def note_message(self) -> None:
        self.messages_since_pulse += 1

    def reset_pulse(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.messages_since_pulse = 0
        self.last_pulse_at = now
        self.elder_last_spoke = now

    # Map

    def merge_locations(self, locations: Iterable[Location]) -> int:
        known = {location.name.lower() for location in self.locations}
        added = 0
        for location in locations:
            key = location.name.strip().lower()
            if not key or key in known or len(self.locations) >= LOCATIONS_CAP:
                continue
            self.locations.append(location)
            known.add(key)
            added += 1
        return added

    def export_chronicle(self, now: float | None = None) -> dict[str, Any]:
        return {
            "stones": [stone.model_dump() for stone in self.stones],
            "active_quest": self.active_quest.model_dump() if self.active_quest else None,
            "active_vote": self.active_vote.model_dump() if self.active_vote else None,
            "recent_actions": self.recent_action_digest(),
            "players": [player.model_dump() for player in self.players.values()],
            "stockpile": dict(self.stockpile),
            "quests": [quest.model_dump() for quest in self.quests],
            "votes": [vote.model_dump() for vote in self.votes],
            "offers": [offer.model_dump() for offer in self.offers.values()],
            "journals": [entry.model_dump() for entry in self.journals.values()],
            "locations": [location.model_dump() for location in self.locations],
            "timestamp": time.time() if now is None else now,
        }
