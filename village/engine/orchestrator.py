from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

from village.config import Settings
from village.engine.apply_patch import PatchSummary, apply_patch
from village.engine.cadence import CadenceEngine, ChatMessage, Trigger
from village.engine.context import build_narrator_input
from village.engine.quests import check_and_complete_quest, generate_new_quest
from village.engine.warden import Warden
from village.engine.world_state import WorldState, new_id
from village.llm import narrator, steward
from village.llm.intent_parser import parse_intent
from village.llm.normalizer import normalize_patch
from village.models.core import ActionResult, Location, MemoryStone, Vote
from village.models.intents import Intent
from village.models.narrator import NarratorOutput, NarratorSummaries
from village.models.patch import CadencePatch, ElderMessage, TickContext

log = logging.getLogger(__name__)

SEED_STONES = [
    ("The First Spore", "When the first spore landed, Elder Mycel awoke beneath the moss.", ["origin", "elder"]),
    ("The Cedar Grove", "Three ancient cedars mark the village heart.", ["location", "cedar"]),
    ("The Gift of Resin", "Resin flows when cedars sense harmony.", ["resource", "magic"]),
]

HELP_TEXT = "Try /gather moss, /donate cedar x2, /offer give moss x2 for resin x1, /vote <option> or /journal <text>."


@dataclass
class TickResult:
    summary: PatchSummary | None
    speech: NarratorOutput | None = None
    quest_event: dict[str, Any] | None = None
    trigger: str | None = None
    audit: list[str] = field(default_factory=list)


class VillageOrchestrator:
    """Owns one village: routes player messages and runs the periodic tick."""

    def __init__(self, state: WorldState, client, settings: Settings, rng_seed: int = 1337) -> None:
        self.state = state
        self.client = client
        self.settings = settings
        self.rng = random.Random(rng_seed)
        self.cadence = CadenceEngine(state, settings)
        self.warden = Warden(state, settings)
        self.outbox: list[str] = []

    def initialize_world(self, now: float | None = None) -> None:
        if self.state.stones or self.state.active_quest is not None:
            return
        now = time.time() if now is None else now
        for title, text, tags in SEED_STONES:
            self.state.add_memory_stone(
                MemoryStone(stone_id=new_id("stone"), title=title, text=text, tags=list(tags), created_at=now)
            )
        self.state.set_active_quest(generate_new_quest(self.rng, now=now), now=now)
        self.state.reset_pulse(now)
        log.info("world_initialized stones=%s quest=%s", len(self.state.stones), self.state.active_quest.name)

    def open_vote(self, topic: str, options: list[str], now: float | None = None, duration_s: float | None = None) -> Vote | None:
        now = time.time() if now is None else now
        cleaned = [option.strip() for option in options if option and option.strip()]
        if not topic.strip() or len(cleaned) < 2:
            return None
        if self.state.active_vote is not None and self.state.active_vote.status == "OPEN":
            return None
        duration = self.settings.vote_duration_s if duration_s is None else duration_s
        vote = Vote(
            vote_id=new_id("vote"),
            topic=topic.strip(),
            options=cleaned,
            closes_at=now + duration,
            created_at=now,
        )
        self.state.set_active_vote(vote)
        self.state.add_recent_action(f"A vote opened: {vote.topic}", kind="vote")
        return vote

    # Player messages

    def handle_message(self, player_id: str, name: str, text: str, now: float | None = None) -> ActionResult:
        now = time.time() if now is None else now
        log.info("player_message player=%s chars=%s", player_id, len(text or ""))
        player = self.state.add_player(player_id, name, now=now)
        player.last_action_at = now

        verdict = self.warden.check(player_id, text or "", now=now)
        if not verdict.allowed:
            return ActionResult(ok=False, message=verdict.reason or "Please wait a moment.")

        intent = parse_intent(text)
        if intent is None:
            return ActionResult(ok=False, message=HELP_TEXT)
        if intent.action == "UNKNOWN":
            return ActionResult(ok=False, message=f"Invalid command. {HELP_TEXT}")

        result = self._execute(player_id, intent, now)
        if verdict.warning:
            result.message = f"{result.message}\n{verdict.warning}"

        message = self.cadence.add_message(player_id, player.name, text, now=now, intent=intent.action)
        trigger = self.cadence.evaluate(message, now=now)
        if trigger is not None and trigger.type != "PULSE":
            question = text if trigger.type == "CALL_RESPONSE" else None
            speech = self._speak(trigger.type, question, now)
            result.elder = speech.message_text
        return result

    def _execute(self, player_id: str, intent: Intent, now: float) -> ActionResult:
        player = self.state.get_player(player_id)
        params = intent.params

        if intent.action == "GATHER":
            item = params["item"]
            amount = self.rng.randint(1, 3)
            self.state.update_inventory(player_id, item, amount)
            self.state.add_recent_action(f"{player.name} gathered {amount} {item}", kind="gather", player=player.name)
            return ActionResult(ok=True, message=f"You gathered {amount} {item}. Total: {player.inventory[item]}")

        if intent.action == "GIFT":
            item, qty = params["item"], params["qty"]
            target = self.state.find_player(params["target"])
            if target is None:
                return ActionResult(ok=False, message=f'Player "{params["target"]}" not found.')
            if player.inventory.get(item, 0) < qty:
                return ActionResult(ok=False, message=f"You don't have enough {item}. You have: {player.inventory.get(item, 0)}")
            if not self.state.gift(player_id, target.player_id, item, qty):
                return ActionResult(ok=False, message="That gift could not be given.")
            self.state.add_recent_action(f"{player.name} gifted {qty} {item} to {target.name}", kind="gift", player=player.name)
            return ActionResult(ok=True, message=f"You gifted {qty} {item} to {target.name}.")

        if intent.action == "DONATE":
            item, qty = params["item"], params["qty"]
            if not self.state.donate(player_id, item, qty):
                return ActionResult(ok=False, message=f"You don't have {qty} {item} to donate.")
            self.state.add_recent_action(f"{player.name} donated {qty} {item}", kind="donate", player=player.name)
            quest = self.state.active_quest
            progress = f" Quest progress: {quest.percent}%." if quest is not None else ""
            return ActionResult(ok=True, message=f"You donated {qty} {item} to the stockpile.{progress}")

        if intent.action == "OFFER":
            give, want = params["give"], params["want"]
            if player.inventory.get(give[0], 0) < give[1]:
                return ActionResult(ok=False, message=f"You don't have {give[1]} {give[0]} to offer.")
            offer = self.state.create_offer(player_id, give, want, now=now)
            if offer is None:
                return ActionResult(ok=False, message="That offer is not valid.")
            self.state.add_recent_action(
                f"{player.name} offers {give[1]} {give[0]} for {want[1]} {want[0]}", kind="offer", player=player.name
            )
            return ActionResult(
                ok=True,
                message=f"Trade offer {offer.offer_id} posted: give {give[1]} {give[0]} for {want[1]} {want[0]}",
            )

        if intent.action == "ACCEPT":
            offer_id = params["offer_id"]
            reason = self.state.offer_rejection_reason(offer_id, player_id)
            if reason is not None:
                return ActionResult(ok=False, message=reason)
            offer = self.state.get_offer(offer_id)
            self.state.accept_offer(offer_id, player_id, now=now)
            offerer = self.state.get_player(offer.from_player)
            summary = f"Trade {offer_id} completed: {offerer.name}→{player.name}"
            self.state.add_recent_action(summary, kind="trade", player=player.name)
            return ActionResult(ok=True, message=summary)

        if intent.action == "CANCEL":
            if not self.state.cancel_offer(params["offer_id"], player_id):
                return ActionResult(ok=False, message="You have no open offer with that id.")
            return ActionResult(ok=True, message=f"Offer {params['offer_id']} cancelled.")

        if intent.action == "VOTE":
            vote = self.state.active_vote
            if vote is None or vote.status != "OPEN":
                return ActionResult(ok=False, message="There is no open vote right now.")
            option = self.state.resolve_vote_option(params["option"])
            if option is None:
                return ActionResult(ok=False, message=f"Unknown option. Choose one of: {', '.join(vote.options)}")
            if not self.state.cast_vote(player_id, option):
                return ActionResult(ok=False, message="You have already voted.")
            self.state.add_recent_action(f"{player.name} voted", kind="vote", player=player.name)
            return ActionResult(ok=True, message=f"You voted for: {option}")

        if intent.action == "JOURNAL":
            entry = self.state.add_journal(player_id, params["text"], now=now)
            log.info("journal_added journal=%s player=%s", entry.journal_id, player_id)
            return ActionResult(ok=True, message="Your journal entry has been recorded.")

        return ActionResult(ok=True, message="")

    # Tick

    def run_tick(self, now: float | None = None) -> TickResult:
        now = time.time() if now is None else now
        pending = self._messages_since_pulse()
        snapshot = steward.trim_state(
            self.state,
            now,
            batched_messages=[
                {"user": message.name, "text": message.text, "timestamp": message.created_at, "intent": message.intent}
                for message in pending
            ],
            safety_summary=self._safety_summary(now),
        )
        raw = steward.request_decision(self.client, snapshot, self.settings)
        if raw is None:
            log.info("tick_skipped reason=no_decision")
            return TickResult(summary=None)

        question = next((message.text for message in reversed(pending) if self.cadence.is_call_response(message)), None)
        patch = normalize_patch(
            raw,
            TickContext(distilled_question=question, journals_by_id=self.state.journal_texts()),
        )
        summary = apply_patch(self.state, patch, now=now)
        result = TickResult(summary=summary, audit=list(summary.audit))

        result.quest_event = check_and_complete_quest(self.state, self.rng, now=now)
        if patch.locations:
            self.state.merge_locations(
                Location(name=loc.name, x=loc.x, y=loc.y, kind=loc.kind, icon=loc.icon) for loc in patch.locations
            )
        if patch.cadence.cooldown_s > 0:
            self.state.narrator_quiet_until = now + patch.cadence.cooldown_s

        trigger = self.cadence.evaluate(None, now=now)
        if trigger is None and not patch.cadence.should_elder_speak:
            return result
        mode = self._tick_mode(trigger, patch.cadence)
        result.trigger = mode
        result.speech = self._speak(mode, patch.cadence.question, now, elder_message=patch.elder_message)
        return result

    def _tick_mode(self, trigger: Trigger | None, cadence: CadencePatch) -> str:
        if trigger is not None and trigger.type != "PULSE":
            return trigger.type
        return cadence.mode or (trigger.type if trigger is not None else "PULSE")

    def _messages_since_pulse(self) -> list[ChatMessage]:
        return [message for message in self.cadence.history if message.created_at >= self.state.last_pulse_at]

    def _safety_summary(self, now: float) -> str | None:
        summary = self.warden.summary_for_elder(now)
        return None if summary == "Village atmosphere is calm." else summary

    # Speech

    def _speak(
        self,
        mode: str,
        question: str | None,
        now: float,
        elder_message: ElderMessage | None = None,
    ) -> NarratorOutput:
        if elder_message is not None and elder_message.text.strip():
            output = narrator.sanitize_output(elder_message)
        else:
            speakers = [(message.name, message.text) for message in self._messages_since_pulse()]
            summaries = NarratorSummaries(conversation=narrator.conversation_context(speakers, mode))
            narrator_input = build_narrator_input(
                self.state,
                CadencePatch(should_elder_speak=True, mode=mode, question=question),
                summaries,
            )
            output = narrator.speak(self.client, narrator_input)
        self.state.last_elder_message = output.message_text
        self.outbox.append(output.message_text)
        self.cadence.on_elder_spoke(now)
        log.info("elder_spoke mode=%s chars=%s", mode, len(output.message_text))
        return output
