from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class Intent(BaseModel):
    action: Literal["GATHER", "GIFT", "DONATE", "OFFER", "ACCEPT", "CANCEL", "VOTE", "JOURNAL", "CHAT", "UNKNOWN"]
    params: dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0
    raw_text: str = Field(min_length=1)
