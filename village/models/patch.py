from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from village.models.core import CloseReason


class CadencePatch(BaseModel):
    should_elder_speak: bool = False
    mode: str | None = None
    reason: str | None = None
    cooldown_s: float = 0.0
    question: str | None = None


class VotePatch(BaseModel):
    status: Literal["OPEN", "CLOSED"] | None = None
    tally: dict[str, str] = Field(default_factory=dict)
    counts: dict[str, int] = Field(default_factory=dict)
    winner: str | None = None
    close_reason: CloseReason | None = None


class Need(BaseModel):
    item: str
    qty: int


class ResourcesPatch(BaseModel):
    quest_percent: float = 0.0
    needs: list[Need] = Field(default_factory=list)
    threshold_crossed: bool = False
    crossed_at: int | None = None


class TradeAction(BaseModel):
    type: Literal["RESOLVE"] = "RESOLVE"
    offer_id: str
    from_player: str
    to_player: str


class TradesPatch(BaseModel):
    actions: list[TradeAction] = Field(default_factory=list)
    cancel_ids: list[str] = Field(default_factory=list)


class NewStone(BaseModel):
    title: str = ""
    text: str = ""
    tags: list[str] = Field(default_factory=list)
    journal_id: str | None = None


class MergePair(BaseModel):
    first_id: str
    second_id: str
    title: str
    text: str


class ArchivePatch(BaseModel):
    promote_ids: list[str] = Field(default_factory=list)
    new_stones: list[NewStone] = Field(default_factory=list)
    prune_ids: list[str] = Field(default_factory=list)
    merge_pairs: list[MergePair] = Field(default_factory=list)


class RateLimit(BaseModel):
    player: str
    cooldown_s: float


class SafetyPatch(BaseModel):
    flags: list[str] = Field(default_factory=list)
    rate_limits: list[RateLimit] = Field(default_factory=list)
    notes_for_elder: str | None = None


class ElderMessage(BaseModel):
    text: str = ""
    nudge: str = ""
    referenced_stones: list[str] = Field(default_factory=list)
    acknowledged_users: list[str] = Field(default_factory=list)


class PatchLocation(BaseModel):
    name: str
    x: float = 0.0
    y: float = 0.0
    kind: str = "custom"
    icon: str = "📍"


class Patch(BaseModel):
    cadence: CadencePatch = Field(default_factory=CadencePatch)
    vote: VotePatch = Field(default_factory=VotePatch)
    resources: ResourcesPatch = Field(default_factory=ResourcesPatch)
    trades: TradesPatch = Field(default_factory=TradesPatch)
    archive: ArchivePatch = Field(default_factory=ArchivePatch)
    safety: SafetyPatch = Field(default_factory=SafetyPatch)
    elder_message: ElderMessage | None = None
    locations: list[PatchLocation] = Field(default_factory=list)


class TickContext(BaseModel):
    """Server-side facts the normalizer may consult instead of trusting the payload."""

    distilled_question: str | None = None
    journals_by_id: dict[str, str] = Field(default_factory=dict)
