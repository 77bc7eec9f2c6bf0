from __future__ import annotations

from pydantic import BaseModel, Field

DEFAULT_NUDGE = "Next: Contribute one needed item."
FALLBACK_MESSAGE = "The mycelium stirs with quiet purpose."


class StoneDigest(BaseModel):
    title: str
    one_sentence: str


class QuestDigest(BaseModel):
    name: str = "None"
    percent: int = 0
    needs: list[str] = Field(default_factory=list)


class VoteDigest(BaseModel):
    topic: str
    options: list[str]
    leading: str | None = None


class NowDigest(BaseModel):
    quest: QuestDigest = Field(default_factory=QuestDigest)
    vote: VoteDigest | None = None
    stockpile: dict[str, int] = Field(default_factory=dict)


class ConversationContext(BaseModel):
    tone: str = "neutral"
    summary: str = ""
    thread: str = ""
    acknowledge_users: list[str] = Field(default_factory=list)


class NarratorSummaries(BaseModel):
    top_recent_actions: list[str] | None = None
    last_messages_summary: list[str] | None = None
    safety_notes: str | None = None
    conversation: ConversationContext | None = None


class NarratorInput(BaseModel):
    mode: str
    canon_stones: list[StoneDigest] = Field(default_factory=list)
    now: NowDigest = Field(default_factory=NowDigest)
    top_recent_actions: list[str] = Field(default_factory=list)
    last_messages_summary: list[str] = Field(default_factory=list)
    safety_notes: str | None = None
    question: str | None = None
    conversation_context: ConversationContext = Field(default_factory=ConversationContext)


class NarratorOutput(BaseModel):
    message_text: str
    nudge: str = DEFAULT_NUDGE
    referenced_stones: list[str] = Field(default_factory=list)
    acknowledged_users: list[str] = Field(default_factory=list)
