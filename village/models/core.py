from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

RESOURCES = ("moss", "cedar", "resin", "spores", "charms")
STOCKPILE_SNAPSHOT_RESOURCES = ("moss", "cedar", "resin", "spores")

STONE_CAP = 12
RECENT_ACTIONS_CAP = 10
RECENT_ACTIONS_EXPOSED = 5
MESSAGES_SUMMARY_CAP = 8
LOCATIONS_CAP = 20
QUEST_THRESHOLDS = (25, 50, 75, 100)

QuestStatus = Literal["ACTIVE", "COMPLETED"]
VoteStatus = Literal["OPEN", "CLOSED"]
OfferStatus = Literal["OPEN", "COMPLETED", "CANCELLED"]
CloseReason = Literal["TIMER", "QUORUM"]
TriggerType = Literal["CALL_RESPONSE", "EVENT", "PULSE"]


def _now() -> float:
    return time.time()


def empty_inventory() -> dict[str, int]:
    return {resource: 0 for resource in RESOURCES}


@dataclass
class ActionResult:
    ok: bool
    message: str
    elder: str | None = None


class Player(BaseModel):
    player_id: str
    name: str
    inventory: dict[str, int] = Field(default_factory=empty_inventory)
    titles: list[str] = Field(default_factory=list)
    message_count: int = 0
    window_started_at: float = 0.0
    warnings: int = 0
    last_action_at: float = Field(default_factory=_now)
    cooldown_until: float | None = None


class Quest(BaseModel):
    quest_id: str
    name: str
    recipe: dict[str, int]
    percent: int = 0
    needs: list[tuple[str, int]] = Field(default_factory=list)
    status: QuestStatus = "ACTIVE"
    thresholds_announced: list[int] = Field(default_factory=list)
    last_threshold: int | None = None
    stockpile_debited: bool = False
    created_at: float = Field(default_factory=_now)
    completed_at: float | None = None


class QuestInfo(BaseModel):
    """Quest-shaped slot for needs/threshold data that arrives while no quest is active."""

    needs: list[tuple[str, int]] = Field(default_factory=list)
    last_threshold: int | None = None


class DecisionCard(BaseModel):
    topic: str
    winner: str | None
    close_reason: CloseReason | None
    counts: dict[str, int]
    total_votes: int
    summary: str


class Vote(BaseModel):
    vote_id: str
    topic: str
    options: list[str]
    tally: dict[str, str] = Field(default_factory=dict)
    reported_counts: dict[str, int] = Field(default_factory=dict)
    status: VoteStatus = "OPEN"
    closes_at: float
    can_vote: bool = True
    closing_announced: bool = False
    winner: str | None = None
    close_reason: CloseReason | None = None
    closed_at: float | None = None
    decision: DecisionCard | None = None
    created_at: float = Field(default_factory=_now)


class Offer(BaseModel):
    offer_id: str
    from_player: str
    give: tuple[str, int]
    want: tuple[str, int]
    status: OfferStatus = "OPEN"
    accepted_by: str | None = None
    created_at: float = Field(default_factory=_now)
    completed_at: float | None = None


class MemoryStone(BaseModel):
    stone_id: str
    title: str
    text: str
    tags: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=_now)


class JournalEntry(BaseModel):
    journal_id: str
    player_id: str
    text: str
    created_at: float = Field(default_factory=_now)
    promoted: bool = False
    promoted_at: float | None = None
    stone_id: str | None = None


class RecentAction(BaseModel):
    text: str
    kind: str = "action"
    player: str | None = None
    created_at: float = Field(default_factory=_now)


class Location(BaseModel):
    name: str
    x: float = 0.0
    y: float = 0.0
    kind: str = "custom"
    icon: str = "📍"
