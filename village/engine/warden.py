from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field

from village.config import Settings
from village.engine.world_state import WorldState

log = logging.getLogger(__name__)

REPEATED_CHAR = re.compile(r"(.)\1{10,}")
MAX_MESSAGE_LENGTH = 500
CAPS_RATIO_LIMIT = 0.7


@dataclass
class WardenVerdict:
    allowed: bool
    reason: str | None = None
    warning: str | None = None
    flags: list[str] = field(default_factory=list)


def message_flags(text: str) -> list[str]:
    flags = []
    if not text:
        return flags
    upper = sum(1 for char in text if char.isupper())
    if len(text) > 10 and upper / len(text) > CAPS_RATIO_LIMIT:
        flags.append("excessive_caps")
    if REPEATED_CHAR.search(text):
        flags.append("character_spam")
    if len(text) > MAX_MESSAGE_LENGTH:
        flags.append("message_too_long")
    return flags


class Warden:
    def __init__(self, state: WorldState, settings: Settings, admins: set[str] | None = None) -> None:
        self.state = state
        self.settings = settings
        self.admins = set(admins or ())

    def check_rate_limit(self, player_id: str, now: float) -> WardenVerdict:
        if player_id in self.admins:
            return WardenVerdict(allowed=True)
        player = self.state.get_player(player_id)
        if player is None:
            return WardenVerdict(allowed=True)

        if player.message_count == 0 or now - player.window_started_at >= self.settings.rate_limit_window_s:
            player.window_started_at = now
            player.message_count = 1
            return WardenVerdict(allowed=True)

        player.message_count += 1
        if player.message_count > self.settings.rate_limit_hard:
            log.info("rate_limit_hard player=%s count=%s", player_id, player.message_count)
            return WardenVerdict(allowed=False, reason="Rate limit exceeded. Please wait a moment.")
        if player.message_count > self.settings.rate_limit_soft:
            player.warnings += 1
            return WardenVerdict(allowed=True, warning="You are sending messages quickly. Please slow down.")
        return WardenVerdict(allowed=True)

    def check(self, player_id: str, text: str, now: float | None = None) -> WardenVerdict:
        now = time.time() if now is None else now
        if player_id not in self.admins and self.state.is_on_cooldown(player_id, now=now):
            return WardenVerdict(allowed=False, reason="The elder asks you to rest a moment before acting again.")

        verdict = self.check_rate_limit(player_id, now)
        if not verdict.allowed:
            return verdict

        flags = message_flags(text)
        if flags:
            player = self.state.get_player(player_id)
            if player is not None:
                player.warnings += 1
            log.info("message_flagged player=%s flags=%s", player_id, ",".join(flags))
            return WardenVerdict(allowed=True, warning="Please keep messages calm and brief.", flags=flags)
        return verdict

    def players_over_soft_limit(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        return [
            player.player_id
            for player in self.state.players.values()
            if player.message_count > self.settings.rate_limit_soft
            and now - player.window_started_at < self.settings.rate_limit_window_s
        ]

    def summary_for_elder(self, now: float | None = None) -> str:
        now = time.time() if now is None else now
        parts = []
        restless = [player.name for player in self.state.players.values() if player.warnings >= 3]
        if restless:
            parts.append(f"{', '.join(restless)} showing overactive behavior")
        limited = self.players_over_soft_limit(now)
        if limited:
            parts.append(f"{len(limited)} rate limit event(s)")
        if not parts:
            return "Village atmosphere is calm."
        return ". ".join(parts) + "."
