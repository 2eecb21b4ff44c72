"""Persistence helpers to save, load, migrate and back up the dashboard state."""
from __future__ import annotations

import copy
import json
import logging
import math
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from . import config
from .caps import apply_configured_caps
from .errors import NotFoundError, ValidationError
from .ledger import clamp_character
from .models import (
    AccountState,
    AodePlan,
    AppSettings,
    AppState,
    CharacterState,
    EnergyState,
    OperationLogEntry,
    StateSnapshot,
    create_default_account,
    create_default_character,
    isoformat,
    new_id,
    parse_timestamp,
)
from .task_catalog import ACTIVITY_MAX, MISSION_MAX, TicketCounter, empty_completions

logger = logging.getLogger(__name__)

RawState = Dict[str, Any]


# ---------------------------------------------------------------------------
# Storage port


class StateStorage(Protocol):
    def load(self) -> Optional[RawState]:
        ...

    def save(self, data: RawState) -> None:
        ...


def read_json_file(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json_file(path: Path, data: Any) -> None:
    """Write ``data`` as UTF-8 JSON, replacing ``path`` atomically."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, ensure_ascii=False, indent=2)
    os.replace(temp_path, path)


class JsonFileStorage:
    """Store the aggregate in a single JSON document on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[RawState]:
        if not self.path.exists():
            return None
        try:
            data = read_json_file(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._set_aside()
            return None
        if not isinstance(data, dict):
            self._set_aside()
            return None
        return data

    def _set_aside(self) -> None:
        # Keep the unreadable file so the next save does not overwrite it.
        target = self.path.with_name(self.path.name + ".corrupt")
        os.replace(self.path, target)
        logger.warning("Ignoring unreadable state file %s; moved to %s", self.path, target)

    def save(self, data: RawState) -> None:
        write_json_file(self.path, data)


class MemoryStorage:
    """In-process storage used by tests and throwaway sessions."""

    def __init__(self, data: Optional[RawState] = None) -> None:
        self.data = copy.deepcopy(data)
        self.save_count = 0

    def load(self) -> Optional[RawState]:
        return copy.deepcopy(self.data)

    def save(self, data: RawState) -> None:
        self.data = copy.deepcopy(data)
        self.save_count += 1


# ---------------------------------------------------------------------------
# Raw value coercion


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _get(entity: Any, name: str) -> Any:
    """Read ``name`` from ``entity``, accepting the camelCase spelling too."""

    if not isinstance(entity, dict):
        return None
    if name in entity:
        return entity[name]
    return entity.get(_camel(name))


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _bounded_int(value: Any, low: int, high: int, fallback: int) -> int:
    number = _number(value)
    if number is None:
        return fallback
    return int(max(low, min(high, math.floor(number))))


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _timestamp(value: Any, fallback: str) -> str:
    return value if parse_timestamp(value) is not None else fallback


# ---------------------------------------------------------------------------
# Normalisation


def normalise_settings(raw: Any) -> AppSettings:
    defaults = AppSettings()
    values: Dict[str, Any] = {}
    for name in ("expedition_gold_per_run", "transcendence_gold_per_run"):
        number = _number(_get(raw, name))
        values[name] = max(0, number) if number is not None else getattr(defaults, name)
    for name in (
        "expedition_run_cap",
        "transcendence_run_cap",
        "nightmare_run_cap",
        "awakening_run_cap",
        "suppression_run_cap",
    ):
        values[name] = _bounded_int(_get(raw, name), 1, config.SETTINGS_MAX_CAP, None)
    for name in ("expedition_warn_threshold", "transcendence_warn_threshold"):
        values[name] = _bounded_int(
            _get(raw, name), 1, config.SETTINGS_MAX_THRESHOLD, getattr(defaults, name)
        )
    return AppSettings(**values)


def _normalise_energy(raw: Any, fallback: EnergyState) -> EnergyState:
    energy = EnergyState(base_current=fallback.base_current, bonus_current=fallback.bonus_current)
    if not isinstance(raw, dict):
        return energy
    base = _number(_get(raw, "base_current"))
    bonus = _number(_get(raw, "bonus_current"))
    if base is not None or bonus is not None:
        if base is not None:
            energy.base_current = _bounded_int(base, 0, energy.base_cap, energy.base_current)
        if bonus is not None:
            energy.bonus_current = _bounded_int(bonus, 0, energy.bonus_cap, energy.bonus_current)
        return energy
    total = _number(raw.get("current"))
    if total is not None:
        # Single-pool saves: fill the base pool first, overflow into bonus.
        total = _bounded_int(total, 0, energy.base_cap + energy.bonus_cap, 0)
        energy.base_current = min(total, energy.base_cap)
        energy.bonus_current = total - energy.base_current
    return energy


def _normalise_activities(raw: Any, character: CharacterState) -> None:
    activities = character.activities
    entity = raw if isinstance(raw, dict) else {}
    for counter in ACTIVITY_MAX:
        current = getattr(activities, counter.value)
        # Upper bound is loose here; the legacy daily dungeon value may exceed its max.
        setattr(activities, counter.value, _bounded_int(_get(entity, counter.value), 0, 999, current))
    for ticket in TicketCounter:
        value = _get(entity, ticket.value)
        setattr(
            activities,
            ticket.value,
            _bounded_int(value, 0, config.TICKET_BONUS_CEILING, 0),
        )
    if _number(_get(entity, "suppression_ticket_bonus")) is None:
        stored = _number(_get(entity, "suppression_ticket_stored"))
        if stored is not None:
            activities.suppression_ticket_bonus = _bounded_int(
                stored, 0, config.TICKET_BONUS_CEILING, 0
            )
        else:
            raw_remaining = _number(_get(entity, "suppression_remaining"))
            if raw_remaining is not None:
                activities.suppression_ticket_bonus = max(
                    0, int(math.floor(raw_remaining)) - config.SUPPRESSION_MAX
                )
    activities.daily_dungeon_ticket_stored = _bounded_int(
        _get(entity, "daily_dungeon_ticket_stored"), 0, config.DAILY_DUNGEON_TICKET_STORED_MAX, 0
    )

    if _number(_get(entity, "corridor_lower_available")) is None:
        activities.corridor_lower_available = _bounded_int(
            _get(entity, "artifact_available"), 0, config.CORRIDOR_MAX, 0
        )
    lower_next = _get(entity, "corridor_lower_next_at")
    if not isinstance(lower_next, str):
        lower_next = _get(entity, "artifact_next_at")
    activities.corridor_lower_next_at = lower_next if isinstance(lower_next, str) else None
    middle_next = _get(entity, "corridor_middle_next_at")
    activities.corridor_middle_next_at = middle_next if isinstance(middle_next, str) else None


def _normalise_completions(raw: Any) -> Dict[str, int]:
    completions = empty_completions()
    if isinstance(raw, dict):
        for task_id in completions:
            number = _number(raw.get(task_id))
            if number is not None:
                completions[task_id] = max(0, int(math.floor(number)))
    return completions


def migrate_daily_dungeon(character: CharacterState) -> bool:
    """Split the old "base + stored tickets" daily dungeon count.

    Returns ``True`` when the character was rewritten.
    """

    activities = character.activities
    stored = activities.daily_dungeon_ticket_stored
    if stored <= 0:
        return False
    inferred = activities.daily_dungeon_remaining - stored
    if inferred < 0 or inferred > config.DAILY_DUNGEON_MAX:
        return False
    activities.daily_dungeon_remaining = inferred
    return True


def normalise_character(
    raw: Any,
    fallback_name: str,
    fallback_account_id: str,
    now_iso: str,
) -> CharacterState:
    raw_id = _text(_get(raw, "id"))
    character = create_default_character(fallback_name, now_iso, fallback_account_id, raw_id)
    if not isinstance(raw, dict):
        return character

    account_id = _get(raw, "account_id")
    if isinstance(account_id, str):
        character.account_id = account_id
    name = _get(raw, "name")
    if isinstance(name, str):
        character.name = name
    character.class_tag = _text(_get(raw, "class_tag"))
    avatar_seed = _get(raw, "avatar_seed")
    if isinstance(avatar_seed, str):
        character.avatar_seed = avatar_seed

    character.energy = _normalise_energy(_get(raw, "energy"), character.energy)

    missions = _get(raw, "missions")
    for counter, maximum in MISSION_MAX.items():
        current = character.get_counter(counter)
        character.set_counter(counter, _bounded_int(_get(missions, counter.value), 0, maximum, current))

    _normalise_activities(_get(raw, "activities"), character)

    stats = _get(raw, "stats")
    character.stats.cycle_started_at = _timestamp(_get(stats, "cycle_started_at"), now_iso)
    gold = _number(_get(stats, "gold_earned"))
    character.stats.gold_earned = max(0, gold) if gold is not None else 0
    character.stats.completions = _normalise_completions(_get(stats, "completions"))

    plan = _get(raw, "aode_plan")
    character.aode_plan = AodePlan(
        shop_aode_purchase_used=_bounded_int(_get(plan, "shop_aode_purchase_used"), 0, 999, 0),
        shop_daily_dungeon_ticket_purchase_used=_bounded_int(
            _get(plan, "shop_daily_dungeon_ticket_purchase_used"), 0, 999, 0
        ),
        transform_aode_used=_bounded_int(_get(plan, "transform_aode_used"), 0, 999, 0),
    )

    last_synced = _get(_get(raw, "meta"), "last_synced_at")
    if isinstance(last_synced, str):
        character.meta.last_synced_at = last_synced
    return character


def normalise_account(raw: Any, index: int) -> AccountState:
    account = create_default_account(
        _text(_get(raw, "name")) or config.DEFAULT_ACCOUNT_NAME.format(index=index + 1),
        _text(_get(raw, "id")),
    )
    account.region_tag = _text(_get(raw, "region_tag"))
    account.extra_aode_character_id = _text(_get(raw, "extra_aode_character_id"))
    return account


def _normalise_snapshot(raw: Any, now_iso: str, legacy: bool) -> StateSnapshot:
    entity = raw if isinstance(raw, dict) else {}
    settings = normalise_settings(_get(entity, "settings"))

    raw_accounts = _get(entity, "accounts")
    accounts = [
        normalise_account(item, index)
        for index, item in enumerate(raw_accounts if isinstance(raw_accounts, list) else [])
    ]
    if not accounts:
        accounts = [create_default_account(config.DEFAULT_ACCOUNT_NAME.format(index=1))]
    fallback_account_id = accounts[0].id
    account_ids = {account.id for account in accounts}

    raw_characters = _get(entity, "characters")
    characters: List[CharacterState] = []
    for index, item in enumerate(raw_characters if isinstance(raw_characters, list) else []):
        character = normalise_character(
            item,
            config.DEFAULT_CHARACTER_NAME.format(index=index + 1),
            fallback_account_id,
            now_iso,
        )
        if character.account_id not in account_ids:
            character.account_id = fallback_account_id
        if legacy and migrate_daily_dungeon(character):
            logger.info("Migrated legacy daily dungeon count for %s", character.id)
        characters.append(clamp_character(apply_configured_caps(character, settings), settings))
    if not characters:
        characters = [
            create_default_character(
                config.DEFAULT_CHARACTER_NAME.format(index=1), now_iso, fallback_account_id
            )
        ]

    # Accounts without characters are kept; the store refuses to empty one.
    for account in accounts:
        extra = account.extra_aode_character_id
        if extra is not None and not any(
            item.id == extra and item.account_id == account.id for item in characters
        ):
            account.extra_aode_character_id = None

    selected_character_id = _get(entity, "selected_character_id")
    if not any(item.id == selected_character_id for item in characters):
        selected_character_id = characters[0].id
    selected_account_id = _get(entity, "selected_account_id")
    if not isinstance(selected_account_id, str) or selected_account_id not in account_ids:
        selected = next(item for item in characters if item.id == selected_character_id)
        selected_account_id = selected.account_id

    return StateSnapshot(
        selected_account_id=selected_account_id,
        selected_character_id=selected_character_id,
        settings=settings,
        accounts=accounts,
        characters=characters,
    )


def normalise_history(raw: Any, now_iso: str, legacy: bool = False) -> List[OperationLogEntry]:
    if not isinstance(raw, list):
        return []
    entries: List[OperationLogEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        character_id = _get(item, "character_id")
        entries.append(
            OperationLogEntry(
                id=_text(_get(item, "id")) or new_id(),
                at=_timestamp(_get(item, "at"), now_iso),
                action=_text(_get(item, "action")) or "未命名操作",
                before=_normalise_snapshot(_get(item, "before"), now_iso, legacy),
                character_id=character_id if isinstance(character_id, str) else None,
                description=_text(_get(item, "description")),
            )
        )
    return entries[-config.OPERATION_HISTORY_LIMIT :]


def source_version(raw: Any) -> int:
    version = _number(_get(raw, "version"))
    return int(math.floor(version)) if version is not None else 0


def normalise_state(raw: Any, now: datetime) -> AppState:
    """Rebuild a valid :class:`AppState` from untrusted persisted data.

    Every missing or malformed field falls back to its default. Documents
    written before ``STATE_VERSION`` are migrated on the raw values first.
    """

    now_iso = isoformat(now)
    legacy = source_version(raw) < config.STATE_VERSION
    snapshot = _normalise_snapshot(raw, now_iso, legacy)
    return AppState(
        selected_account_id=snapshot.selected_account_id,
        selected_character_id=snapshot.selected_character_id,
        settings=snapshot.settings,
        accounts=snapshot.accounts,
        characters=snapshot.characters,
        history=normalise_history(_get(raw, "history"), now_iso, legacy),
        version=config.STATE_VERSION,
    )


# ---------------------------------------------------------------------------
# Backups


def build_export_payload(state: AppState, now: datetime) -> Dict[str, Any]:
    return {
        "schema_version": config.EXPORT_SCHEMA_VERSION,
        "exported_at": isoformat(now),
        "app": config.EXPORT_APP_NAME,
        "state": state.to_dict(),
    }


def resolve_imported_state(raw: Any, now: datetime) -> AppState:
    """Accept either an export envelope or a bare state document."""

    if isinstance(raw, dict) and raw.get("state") is not None:
        return normalise_state(raw["state"], now)
    return normalise_state(raw, now)


def load_backup(path: str | Path) -> Any:
    try:
        return read_json_file(Path(path))
    except FileNotFoundError as exc:
        raise NotFoundError("导入文件不存在", code="file_not_found") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("导入文件不是有效的 JSON", code="invalid_json") from exc
