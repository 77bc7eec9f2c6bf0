from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Literal

import requests

from village.config import Settings

log = logging.getLogger(__name__)

Strategy = Literal["live", "deterministic"]
CallKind = Literal["decision", "narrator"]


class ProviderUnavailableError(RuntimeError):
    pass


class OpenRouter404Error(RuntimeError):
    pass


class BudgetExhaustedError(ProviderUnavailableError):
    pass


class BaseProvider(ABC):
    """One chat turn: an optional system prompt and a single user prompt."""

    network = True

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def chat(self, system_prompt: str | None, user_prompt: str, *, temperature: float, json_mode: bool = False) -> str:
        raise NotImplementedError


class StubProvider(BaseProvider):
    network = False

    def chat(self, system_prompt: str | None, user_prompt: str, *, temperature: float, json_mode: bool = False) -> str:
        if json_mode:
            return "{}"
        return f"[stub] {user_prompt[:80]}"


class OpenRouterProvider(BaseProvider):
    def chat(self, system_prompt: str | None, user_prompt: str, *, temperature: float, json_mode: bool = False) -> str:
        settings = self.settings
        if not settings.openrouter_api_key:
            raise ProviderUnavailableError("openrouter_missing_api_key")

        limit = settings.llm_max_input_chars
        turns = [{"role": "user", "content": user_prompt[:limit]}]
        if system_prompt:
            turns.insert(0, {"role": "system", "content": system_prompt[:limit]})
        payload: dict[str, object] = {"model": settings.openrouter_model, "messages": turns, "temperature": temperature}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        response = requests.post(
            f"{settings.openrouter_base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {settings.openrouter_api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": "http://localhost",
                "X-Title": "mycel-village",
            },
            data=json.dumps(payload),
            timeout=settings.llm_timeout_s,
        )
        status = response.status_code
        if status == 404:
            raise OpenRouter404Error("OpenRouter request returned 404. Check OPENROUTER_MODEL and OPENROUTER_BASE_URL.")
        if status in {401, 429} or status >= 500:
            raise ProviderUnavailableError(f"openrouter_http_{status}")
        response.raise_for_status()

        content = response.json()["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise ProviderUnavailableError("unexpected_chat_content_type")
        return content.strip()


class LLMClient:
    """Routes decision and narrator calls to a provider.

    ``strategy_for`` is decided once per call by the adapters: ``live`` only
    when the configured backend is a network provider with credentials,
    otherwise the adapters use their deterministic generators and never touch
    the network. Live calls raise on any failure; callers own the fallback.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._memory_usage: dict[str, int] = {}
        self._providers: dict[str, BaseProvider] = {
            "stub": StubProvider(settings),
            "openrouter": OpenRouterProvider(settings),
        }

    def backend_for(self, kind: CallKind) -> str:
        configured = self.settings.decision_backend if kind == "decision" else self.settings.narrator_backend
        normalized = (configured or "").strip().lower()
        if normalized in self._providers:
            return normalized
        return "stub"

    def strategy_for(self, kind: CallKind) -> Strategy:
        backend = self.backend_for(kind)
        if self._providers[backend].network and self.settings.openrouter_api_key:
            return "live"
        return "deterministic"

    def complete_json(
        self,
        prompt: str,
        *,
        kind: CallKind = "decision",
        system_prompt: str | None = None,
        temperature: float = 0.2,
    ) -> str:
        return self._call(kind, prompt, system_prompt, temperature, json_mode=True)

    def complete_text(
        self,
        prompt: str,
        *,
        kind: CallKind = "narrator",
        system_prompt: str | None = None,
        temperature: float = 0.7,
    ) -> str:
        return self._call(kind, prompt, system_prompt, temperature, json_mode=False).strip()

    def calls_today(self) -> int:
        return self._memory_usage.get(datetime.now(UTC).date().isoformat(), 0)

    def _call(self, kind: CallKind, prompt: str, system_prompt: str | None, temperature: float, *, json_mode: bool) -> str:
        backend = self.backend_for(kind)
        provider = self._providers[backend]
        if provider.network:
            self._consume_budget()
        reply = provider.chat(
            system_prompt,
            prompt[: self.settings.llm_max_input_chars],
            temperature=temperature,
            json_mode=json_mode,
        )
        log.debug("llm_reply kind=%s backend=%s json=%s chars=%s", kind, backend, json_mode, len(reply))
        return reply

    def _consume_budget(self) -> None:
        day = datetime.now(UTC).date().isoformat()
        calls = self._memory_usage.get(day, 0)
        if calls >= self.settings.effective_llm_max_calls_per_day:
            log.warning("llm_budget_exhausted day=%s calls=%s", day, calls)
            raise BudgetExhaustedError("llm_budget_exhausted")
        self._memory_usage = {day: calls + 1}
