from __future__ import annotations

import logging
import time

from village.config import Settings, configure_logging
from village.engine.orchestrator import VillageOrchestrator
from village.engine.world_state import WorldState
from village.llm.client import LLMClient

log = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> VillageOrchestrator:
    orchestrator = VillageOrchestrator(
        WorldState(),
        LLMClient(settings),
        settings,
        rng_seed=settings.rng_seed,
    )
    orchestrator.initialize_world()
    return orchestrator


def run_loop(orchestrator: VillageOrchestrator, interval_s: float, max_ticks: int | None = None) -> int:
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        started = time.monotonic()
        try:
            result = orchestrator.run_tick()
        except Exception:
            log.exception("tick_failed")
        else:
            if result.speech is not None:
                print(result.speech.message_text, flush=True)
        ticks += 1
        time.sleep(max(0.0, interval_s - (time.monotonic() - started)))
    return ticks


def main() -> None:
    settings = Settings()
    configure_logging(settings.dev_mode)
    log.info("app_start %s", settings.redacted())
    orchestrator = build_orchestrator(settings)
    try:
        run_loop(orchestrator, settings.tick_interval_s)
    except KeyboardInterrupt:
        log.info("app_stop chronicle_stones=%s", len(orchestrator.state.stones))


if __name__ == "__main__":
    main()
