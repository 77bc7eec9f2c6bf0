"""Turn whatever the decision service returned into a fully-populated Patch.

Every section is normalized on its own: a section that cannot be understood
falls back to its defaults without affecting the others. Nothing here raises.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from village.models.patch import (
    ArchivePatch,
    CadencePatch,
    ElderMessage,
    MergePair,
    Need,
    NewStone,
    Patch,
    PatchLocation,
    RateLimit,
    ResourcesPatch,
    SafetyPatch,
    TickContext,
    TradeAction,
    TradesPatch,
    VotePatch,
)

log = logging.getLogger(__name__)

JOURNAL_PLACEHOLDER = "…"
QUESTION_MODE = "CALL_RESPONSE"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", flags=re.DOTALL)


def normalize_patch(raw: Any, tick_context: TickContext | dict | None = None) -> Patch:
    context = _coerce_context(tick_context)
    parsed = _parse_raw(raw)
    patch = Patch()
    if parsed is None:
        return patch

    sections: list[tuple[str, Callable[[Any, TickContext], Any]]] = [
        ("cadence", _normalize_cadence),
        ("vote", _normalize_vote),
        ("resources", _normalize_resources),
        ("trades", _normalize_trades),
        ("archive", _normalize_archive),
        ("safety", _normalize_safety),
        ("elder_message", _normalize_elder_message),
        ("locations", _normalize_locations),
    ]
    for name, normalizer in sections:
        value = parsed.get(name)
        if value is None:
            continue
        try:
            setattr(patch, name, normalizer(value, context))
        except Exception:
            log.warning("patch_section_invalid section=%s fallback=defaults", name, exc_info=True)
    return patch


def _coerce_context(tick_context: TickContext | dict | None) -> TickContext:
    if isinstance(tick_context, TickContext):
        return tick_context
    if isinstance(tick_context, dict):
        try:
            return TickContext(**tick_context)
        except ValidationError:
            log.warning("tick_context_invalid fallback=empty")
    return TickContext()


def _parse_raw(raw: Any) -> dict | None:
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return None
    body = raw.strip()
    candidates = [body]
    fenced = _FENCED_JSON.search(body)
    if fenced:
        candidates.append(fenced.group(1))
    span = _first_object_span(body)
    if span is not None:
        candidates.append(span)
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError, RecursionError):
            continue
        if isinstance(parsed, dict):
            return parsed
    log.debug("patch_unparseable length=%s", len(body))
    return None


def _first_object_span(text: str) -> str | None:
    """Return the first balanced top-level ``{...}`` span, honoring JSON strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


# Coercion helpers


def _first(source: dict, *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _as_int(value: Any, default: int = 0) -> int:
    return int(_as_number(value, float(default)))


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_str_list(value: Any) -> list[str]:
    return [str(item) for item in _as_list(value) if item is not None and str(item).strip()]


# Sections


def _normalize_cadence(value: Any, context: TickContext) -> CadencePatch:
    c = _as_dict(value)
    mode = _as_text(c.get("mode"))
    if mode is not None:
        mode = mode.upper()
        should_speak = True
    else:
        should_speak = bool(_first(c, "should_elder_speak", "shouldElderSpeak") is True)
    question = context.distilled_question if mode == QUESTION_MODE else None
    return CadencePatch(
        should_elder_speak=should_speak,
        mode=mode,
        reason=_as_text(_first(c, "reason", "trigger_reason", "triggerReason")),
        cooldown_s=max(0.0, _as_number(_first(c, "cooldown_s", "cooldownS"))),
        question=question,
    )


def _normalize_close_reason(value: Any) -> str | None:
    text = _as_text(value)
    if text is None:
        return None
    key = re.sub(r"[^a-z]", "", text.lower())
    if key in ("timer", "time", "timeout", "timeexpired", "deadline", "expired"):
        return "TIMER"
    if key in ("quorum", "quorom", "quorumreached"):
        return "QUORUM"
    return None


def _normalize_vote(value: Any, context: TickContext) -> VotePatch:
    v = _as_dict(value)
    status = _as_text(v.get("status"))
    status = status.upper() if status else None
    if status == "ACTIVE":
        status = "OPEN"
    if status not in ("OPEN", "CLOSED"):
        status = None

    tally: dict[str, str] = {}
    counts: dict[str, int] = {}
    for key, entry in _as_dict(_first(v, "tally", "tallies")).items():
        if isinstance(entry, bool):
            continue
        if isinstance(entry, (int, float)):
            counts[str(key)] = max(0, _as_int(entry))
        elif isinstance(entry, str) and entry.strip():
            tally[str(key)] = entry.strip()

    return VotePatch(
        status=status,
        tally=tally,
        counts=counts,
        winner=_as_text(v.get("winner")),
        close_reason=_normalize_close_reason(_first(v, "close_reason", "closeReason")),
    )


def _normalize_needs(value: Any) -> list[Need]:
    needs: list[Need] = []
    if isinstance(value, dict):
        for item, qty in value.items():
            needs.append(Need(item=str(item), qty=_as_int(qty)))
    elif isinstance(value, list):
        for entry in value:
            if isinstance(entry, dict):
                item = _as_text(_first(entry, "item", "resource"))
                if item:
                    needs.append(Need(item=item, qty=_as_int(_first(entry, "qty", "quantity"))))
            elif isinstance(entry, (list, tuple)) and len(entry) == 2:
                needs.append(Need(item=str(entry[0]), qty=_as_int(entry[1])))
            elif isinstance(entry, str) and entry.strip():
                needs.append(Need(item=entry.strip(), qty=0))
    return needs


def _normalize_resources(value: Any, context: TickContext) -> ResourcesPatch:
    r = _as_dict(value)
    crossed = r.get("threshold_crossed")
    threshold_crossed = False
    crossed_at: int | None = None
    if isinstance(crossed, bool):
        threshold_crossed = crossed
        if crossed:
            at = r.get("crossed_at")
            crossed_at = _as_int(at) if _as_number(at, -1.0) >= 0 else None
    elif isinstance(crossed, (int, float)) and _as_number(crossed, -1.0) >= 0:
        threshold_crossed = True
        crossed_at = _as_int(crossed)

    return ResourcesPatch(
        quest_percent=_as_number(_first(r, "quest_percent", "questPercent")),
        needs=_normalize_needs(r.get("needs")),
        threshold_crossed=threshold_crossed,
        crossed_at=crossed_at,
    )


def _normalize_trades(value: Any, context: TickContext) -> TradesPatch:
    t = _as_dict(value)
    actions: list[TradeAction] = []
    for resolution in _as_list(t.get("resolutions")):
        res = _as_dict(resolution)
        status = _as_text(res.get("status"))
        if status is None or status.upper() != "COMPLETED":
            continue
        offer_id = _as_text(_first(res, "id", "offer_id", "offerId"))
        from_player = _as_text(_first(res, "from", "fromPlayer", "from_player"))
        to_player = _as_text(_first(res, "to", "toPlayer", "to_player"))
        if offer_id is None or from_player is None or to_player is None:
            continue
        actions.append(TradeAction(offer_id=offer_id, from_player=from_player, to_player=to_player))
    return TradesPatch(
        actions=actions,
        cancel_ids=_as_str_list(_first(t, "cancel", "cancel_ids", "cancelIds")),
    )


def _normalize_merge_pairs(value: Any) -> list[MergePair]:
    pairs: list[MergePair] = []
    for entry in _as_list(value):
        if isinstance(entry, (list, tuple)) and len(entry) >= 4:
            first_id, second_id, title, text = entry[:4]
        elif isinstance(entry, dict):
            ids = _as_list(entry.get("ids"))
            first_id = ids[0] if len(ids) > 0 else _first(entry, "first_id", "first")
            second_id = ids[1] if len(ids) > 1 else _first(entry, "second_id", "second")
            title, text = entry.get("title"), entry.get("text")
        else:
            continue
        if not all(_as_text(part) for part in (first_id, second_id, title)):
            continue
        pairs.append(MergePair(first_id=str(first_id), second_id=str(second_id), title=str(title), text=str(text or "")))
    return pairs


def _normalize_archive(value: Any, context: TickContext) -> ArchivePatch:
    a = _as_dict(value)
    promote_ids = _as_str_list(_first(a, "promote", "promote_ids", "promoteJournals", "promote_journals"))

    new_stones: list[NewStone] = []
    for index, entry in enumerate(_as_list(_first(a, "new_stones", "newStones"))):
        stone = _as_dict(entry)
        journal_id = _as_text(_first(stone, "journal_id", "journalId"))
        if journal_id is None and index < len(promote_ids):
            journal_id = promote_ids[index]
        text = _as_text(stone.get("text"))
        if text is None:
            text = context.journals_by_id.get(journal_id or "") or JOURNAL_PLACEHOLDER
        new_stones.append(
            NewStone(
                title=str(stone.get("title") or ""),
                text=text,
                tags=_as_str_list(stone.get("tags")),
                journal_id=journal_id,
            )
        )

    return ArchivePatch(
        promote_ids=promote_ids,
        new_stones=new_stones,
        prune_ids=_as_str_list(_first(a, "prune", "prune_ids", "pruneStones", "prune_stones")),
        merge_pairs=_normalize_merge_pairs(_first(a, "merge_pairs", "mergePairs")),
    )


def _normalize_safety(value: Any, context: TickContext) -> SafetyPatch:
    s = _as_dict(value)
    rate_limits: list[RateLimit] = []
    for entry in _as_list(_first(s, "rate_limits", "rateLimits")):
        limit = _as_dict(entry)
        player = _as_text(_first(limit, "player", "playerId", "player_id"))
        if player is None:
            continue
        rate_limits.append(RateLimit(player=player, cooldown_s=max(0.0, _as_number(_first(limit, "cooldown_s", "cooldownS")))))
    return SafetyPatch(
        flags=_as_str_list(_first(s, "alerts", "flags", "warnings")),
        rate_limits=rate_limits,
        notes_for_elder=_as_text(_first(s, "notes", "notes_for_elder", "notesForElder")),
    )


def _normalize_elder_message(value: Any, context: TickContext) -> ElderMessage | None:
    em = _as_dict(value)
    if not em:
        return None
    return ElderMessage(
        text=str(em.get("text") or ""),
        nudge=str(em.get("nudge") or ""),
        referenced_stones=_as_str_list(em.get("referenced_stones")),
        acknowledged_users=_as_str_list(em.get("acknowledged_users")),
    )


def _normalize_locations(value: Any, context: TickContext) -> list[PatchLocation]:
    locations = []
    for entry in _as_list(value):
        loc = _as_dict(entry)
        name = _as_text(loc.get("name"))
        if name is None:
            continue
        locations.append(
            PatchLocation(
                name=name,
                x=_as_number(loc.get("x")),
                y=_as_number(loc.get("y")),
                kind=str(_first(loc, "type", "kind") or "custom"),
                icon=str(loc.get("icon") or "📍"),
            )
        )
    return locations
