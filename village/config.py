from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    dev_mode: bool = os.getenv("DEV_MODE", "0") == "1"
    rng_seed: int = int(os.getenv("RNG_SEED", "1337"))
    decision_backend: str = os.getenv("DECISION_BACKEND", "stub").strip().lower()
    narrator_backend: str = os.getenv("NARRATOR_BACKEND", "stub").strip().lower()
    openrouter_api_key: str | None = os.getenv("OPENROUTER_API_KEY")
    openrouter_model: str = os.getenv("OPENROUTER_MODEL", "openrouter/free")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
    llm_max_calls_per_day: int = _env_int("LLM_MAX_CALLS_PER_DAY", 500)
    llm_max_input_chars: int = _env_int("LLM_MAX_INPUT_CHARS", 6000)
    llm_timeout_s: float = _env_float("LLM_TIMEOUT_S", 20.0)
    cadence_message_threshold: int = _env_int("CADENCE_MESSAGE_THRESHOLD", 5)
    cadence_time_threshold_s: int = _env_int("CADENCE_TIME_THRESHOLD", 30)
    rate_limit_soft: int = _env_int("RATE_LIMIT_SOFT", 10)
    rate_limit_hard: int = _env_int("RATE_LIMIT_HARD", 20)
    rate_limit_window_s: int = _env_int("RATE_LIMIT_WINDOW_S", 60)
    stale_offer_age_s: int = _env_int("STALE_OFFER_AGE_S", 3600)
    journal_promote_age_s: int = _env_int("JOURNAL_PROMOTE_AGE_S", 300)
    vote_quorum_ratio: float = _env_float("VOTE_QUORUM_RATIO", 0.5)
    vote_duration_s: int = _env_int("VOTE_DURATION_S", 300)
    tick_interval_s: float = _env_float("TICK_INTERVAL_S", 10.0)

    @property
    def effective_llm_max_calls_per_day(self) -> int:
        return self.llm_max_calls_per_day * 5 if self.dev_mode else self.llm_max_calls_per_day

    def redacted(self) -> dict[str, object]:
        return {
            "dev_mode": self.dev_mode,
            "rng_seed": self.rng_seed,
            "decision_backend": self.decision_backend,
            "narrator_backend": self.narrator_backend,
            "openrouter_api_key_set": bool(self.openrouter_api_key),
            "openrouter_model": self.openrouter_model,
            "openrouter_base_url": self.openrouter_base_url,
            "llm_max_calls_per_day": self.effective_llm_max_calls_per_day,
            "llm_max_input_chars": self.llm_max_input_chars,
            "cadence_message_threshold": self.cadence_message_threshold,
            "cadence_time_threshold_s": self.cadence_time_threshold_s,
            "rate_limit_soft": self.rate_limit_soft,
            "rate_limit_hard": self.rate_limit_hard,
            "stale_offer_age_s": self.stale_offer_age_s,
            "vote_quorum_ratio": self.vote_quorum_ratio,
            "tick_interval_s": self.tick_interval_s,
        }


def configure_logging(dev_mode: bool) -> None:
    level = logging.DEBUG if dev_mode else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
