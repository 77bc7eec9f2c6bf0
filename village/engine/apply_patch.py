"""Apply a normalized Patch to the world state.

Phases run in a fixed order because later ones read what earlier ones wrote:
TRADES -> VOTE -> RESOURCES -> ARCHIVE -> SAFETY. A rejected item is skipped
with a warning; it never aborts the rest of the tick.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from village.engine.world_state import WorldState, new_id
from village.models.core import MemoryStone
from village.models.patch import Patch

log = logging.getLogger(__name__)


@dataclass
class PatchSummary:
    tick: float
    trades_resolved: int = 0
    trades_failed: int = 0
    trades_cancelled: int = 0
    vote_status: str | None = None
    quest_percent: int | None = None
    stones_promoted: int = 0
    stones_pruned: int = 0
    stones_merged: int = 0
    stones_evicted: int = 0
    stones_count: int = 0
    archive_skipped: int = 0
    rate_limits_applied: int = 0
    audit: list[str] = field(default_factory=list)

    @property
    def actions(self) -> int:
        return (
            self.trades_resolved
            + self.trades_cancelled
            + self.stones_promoted
            + self.stones_pruned
            + self.stones_merged
            + self.rate_limits_applied
        )


def _skip(summary: PatchSummary, logger: logging.Logger, message: str) -> None:
    logger.warning(message)
    summary.audit.append(message)


def extract_title(text: str) -> str:
    words = text.split()
    title = " ".join(words[:7])
    period = title.find(".")
    if period > 0:
        title = title[:period]
    return title if len(title) <= 50 else title[:47] + "..."


def apply_patch(
    state: WorldState,
    patch: Patch,
    logger: logging.Logger | None = None,
    now: float | None = None,
) -> PatchSummary:
    logger = logger or log
    now = time.time() if now is None else now
    summary = PatchSummary(tick=now)

    _apply_trades(state, patch, logger, summary, now)
    _apply_vote(state, patch, logger, summary, now)
    _apply_resources(state, patch, logger, summary)
    _apply_archive(state, patch, logger, summary, now)
    _apply_safety(state, patch, logger, summary, now)

    quest = state.active_quest
    state.prior_quest_percent = quest.percent if quest is not None else 0
    state.trim_rings()

    vote_status = summary.vote_status or (state.active_vote.status if state.active_vote else "none")
    quest_percent = summary.quest_percent if summary.quest_percent is not None else state.prior_quest_percent
    logger.info(
        "tick=%d actions=%d vote=%s quest=%s stones=%d",
        int(now),
        summary.actions,
        vote_status,
        quest_percent,
        summary.stones_count,
    )
    return summary


def _apply_trades(state: WorldState, patch: Patch, logger: logging.Logger, summary: PatchSummary, now: float) -> None:
    for action in patch.trades.actions:
        if action.type != "RESOLVE":
            continue
        trade_id = action.offer_id
        offer = state.get_offer(trade_id)
        if offer is None:
            _skip(summary, logger, f"trade {trade_id} skipped: offer not found")
            summary.trades_failed += 1
            continue
        if offer.status != "OPEN":
            _skip(summary, logger, f"trade {trade_id} skipped: offer not OPEN (status: {offer.status})")
            summary.trades_failed += 1
            continue
        if offer.from_player != action.from_player:
            _skip(
                summary,
                logger,
                f"trade {trade_id} skipped: from player mismatch (expected: {offer.from_player}, got: {action.from_player})",
            )
            summary.trades_failed += 1
            continue
        if action.from_player == action.to_player:
            _skip(summary, logger, f"trade {trade_id} skipped: cannot trade with self")
            summary.trades_failed += 1
            continue
        giver = state.get_player(action.from_player)
        taker = state.get_player(action.to_player)
        if giver is None:
            _skip(summary, logger, f"trade {trade_id} skipped: from player {action.from_player} not found")
            summary.trades_failed += 1
            continue
        if taker is None:
            _skip(summary, logger, f"trade {trade_id} skipped: to player {action.to_player} not found")
            summary.trades_failed += 1
            continue
        give_item, give_qty = offer.give
        want_item, want_qty = offer.want
        if giver.inventory.get(give_item, 0) < give_qty:
            _skip(
                summary,
                logger,
                f"trade {trade_id} skipped: from player lacks {give_item} "
                f"(has: {giver.inventory.get(give_item, 0)}, needs: {give_qty})",
            )
            summary.trades_failed += 1
            continue
        if taker.inventory.get(want_item, 0) < want_qty:
            _skip(
                summary,
                logger,
                f"trade {trade_id} skipped: to player lacks {want_item} "
                f"(has: {taker.inventory.get(want_item, 0)}, needs: {want_qty})",
            )
            summary.trades_failed += 1
            continue

        state.exchange(offer, taker.player_id, now=now)
        state.add_recent_action(f"Trade {trade_id} resolved: {giver.name}→{taker.name}", kind="system_note")
        summary.trades_resolved += 1

    for offer_id in patch.trades.cancel_ids:
        if state.cancel_offer(offer_id):
            summary.trades_cancelled += 1
            logger.info("offer_cancelled offer=%s", offer_id)
        else:
            _skip(summary, logger, f"cancel {offer_id} skipped: offer missing or not OPEN")


def _apply_vote(state: WorldState, patch: Patch, logger: logging.Logger, summary: PatchSummary, now: float) -> None:
    vote_patch = patch.vote
    if vote_patch.status is None and not vote_patch.tally and not vote_patch.counts:
        return
    vote = state.active_vote
    if vote is None:
        _skip(summary, logger, "vote patch skipped: no active vote")
        return

    if vote_patch.tally and vote.status == "CLOSED":
        _skip(summary, logger, f"vote {vote.vote_id} tally skipped: vote already CLOSED")
    elif vote_patch.tally:
        tally = {}
        for voter, option in vote_patch.tally.items():
            if option not in vote.options:
                _skip(summary, logger, f"vote entry {voter} skipped: unknown option {option}")
                continue
            tally[voter] = option
        vote.tally = tally
    if vote_patch.counts:
        vote.reported_counts = dict(vote_patch.counts)

    if vote_patch.status == "CLOSED":
        if vote.status != "CLOSED":
            state.close_vote(winner=vote_patch.winner, reason=vote_patch.close_reason, now=now)
        summary.vote_status = "CLOSED"
    elif vote_patch.status == "OPEN":
        if vote.status == "OPEN":
            vote.can_vote = True
        else:
            _skip(summary, logger, f"vote {vote.vote_id} reopen skipped: already CLOSED")
        summary.vote_status = vote.status


def _apply_resources(state: WorldState, patch: Patch, logger: logging.Logger, summary: PatchSummary) -> None:
    resources = patch.resources
    quest = state.active_quest
    if quest is not None:
        state.recompute_quest_progress()
        proposed = int(resources.quest_percent)
        if proposed and proposed != quest.percent:
            logger.info("quest_percent_proposal_rejected proposed=%s computed=%s", proposed, quest.percent)
        summary.quest_percent = quest.percent

    if quest is not None:
        quest.needs = state.quest_shortfalls()
        target = quest
    else:
        target = state.quest_info
        needs = [(need.item, need.qty) for need in resources.needs if need.item]
        if needs:
            target.needs = needs
    if resources.threshold_crossed and resources.crossed_at is not None:
        target.last_threshold = resources.crossed_at


def _apply_archive(state: WorldState, patch: Patch, logger: logging.Logger, summary: PatchSummary, now: float) -> None:
    archive = patch.archive

    handled_journals: set[str] = set()
    for new_stone in archive.new_stones:
        journal_id = new_stone.journal_id
        if journal_id is not None:
            entry = state.journals.get(journal_id)
            if entry is not None and entry.promoted:
                _skip(summary, logger, f"promote {journal_id} skipped: journal already promoted")
                handled_journals.add(journal_id)
                continue
        title = new_stone.title or extract_title(new_stone.text)
        stone = MemoryStone(stone_id=new_id("stone"), title=title, text=new_stone.text, tags=list(new_stone.tags))
        stone.created_at = now
        state.stones.append(stone)
        if journal_id is not None:
            state.mark_journal_promoted(journal_id, stone.stone_id, now=now)
            handled_journals.add(journal_id)
        summary.stones_promoted += 1

    for journal_id in archive.promote_ids:
        if journal_id in handled_journals:
            continue
        entry = state.journals.get(journal_id)
        if entry is None:
            _skip(summary, logger, f"promote {journal_id} skipped: journal not found")
            continue
        if entry.promoted:
            _skip(summary, logger, f"promote {journal_id} skipped: journal already promoted")
            continue
        stone = MemoryStone(stone_id=new_id("stone"), title=extract_title(entry.text), text=entry.text)
        stone.created_at = now
        state.stones.append(stone)
        state.mark_journal_promoted(journal_id, stone.stone_id, now=now)
        summary.stones_promoted += 1

    for stone_id in archive.prune_ids:
        if state.remove_stone(stone_id) is None:
            _skip(summary, logger, f"prune {stone_id} skipped: stone not found")
            summary.archive_skipped += 1
            continue
        summary.stones_pruned += 1

    for pair in archive.merge_pairs:
        if pair.first_id == pair.second_id:
            _skip(summary, logger, f"merge {pair.first_id} skipped: cannot merge a stone with itself")
            summary.archive_skipped += 1
            continue
        missing = [stone_id for stone_id in (pair.first_id, pair.second_id) if state.find_stone(stone_id) is None]
        if missing:
            _skip(summary, logger, f"merge {pair.first_id}+{pair.second_id} skipped: stone {missing[0]} not found")
            summary.archive_skipped += 1
            continue
        state.remove_stone(pair.first_id)
        state.remove_stone(pair.second_id)
        merged = MemoryStone(stone_id=new_id("stone_merged"), title=pair.title, text=pair.text, tags=["merged"])
        merged.created_at = now
        state.stones.append(merged)
        summary.stones_merged += 1

    summary.stones_evicted = len(state.enforce_stone_cap())
    summary.stones_count = len(state.stones)


def _apply_safety(state: WorldState, patch: Patch, logger: logging.Logger, summary: PatchSummary, now: float) -> None:
    safety = patch.safety
    state.safety_flags = list(safety.flags)
    for limit in safety.rate_limits:
        player_id = limit.player.lstrip("@")
        if not state.set_cooldown(player_id, limit.cooldown_s, now=now):
            _skip(summary, logger, f"rate limit {limit.player} skipped: player not found")
            continue
        summary.rate_limits_applied += 1
    state.notes_for_elder = safety.notes_for_elder or None
