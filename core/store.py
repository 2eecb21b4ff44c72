"""Single-writer store exposing every dashboard operation."""
from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from . import config, ledger
from .caps import apply_configured_caps, cap_for
from .errors import InvariantError, NotFoundError, ValidationError
from .history import TransactionLog
from .ledger import clamp, clamp_character, refresh_character
from .models import (
    AppState,
    CharacterState,
    create_default_account,
    create_default_character,
    create_weekly_stats,
    isoformat,
    parse_timestamp,
)
from .persistence import (
    JsonFileStorage,
    StateStorage,
    build_export_payload,
    load_backup,
    normalise_settings,
    normalise_state,
    resolve_imported_state,
    write_json_file,
)
from .schedule import resolve_timezone
from .task_catalog import ActivityCounter, TicketCounter

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Fields accepted by the manual calibration operation.
RAID_COUNT_FIELDS = (
    "expedition_remaining",
    "expedition_ticket_bonus",
    "expedition_boss_remaining",
    "transcendence_remaining",
    "transcendence_ticket_bonus",
    "transcendence_boss_remaining",
    "nightmare_remaining",
    "nightmare_ticket_bonus",
    "awakening_remaining",
    "awakening_ticket_bonus",
    "suppression_remaining",
    "suppression_ticket_bonus",
    "daily_dungeon_remaining",
    "daily_dungeon_ticket_stored",
    "mini_game_remaining",
    "mini_game_ticket_bonus",
    "spirit_invasion_remaining",
    "sanctum_raid_remaining",
    "sanctum_box_remaining",
)

SETTINGS_FIELDS = tuple(normalise_settings(None).to_dict())
CAP_SETTINGS = (
    "expedition_run_cap",
    "transcendence_run_cap",
    "nightmare_run_cap",
    "awakening_run_cap",
    "suppression_run_cap",
)
AODE_PLAN_FIELDS = (
    "shop_aode_purchase_used",
    "shop_daily_dungeon_ticket_purchase_used",
    "transform_aode_used",
    "assign_extra",
)
CORRIDOR_LANES = {"lower": "下层", "middle": "中层"}
TICKET_FIELDS = frozenset(ticket.value for ticket in TicketCounter)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _known_fields(changes: object, allowed: Iterable[str], message: str) -> Dict[str, object]:
    if not isinstance(changes, Mapping):
        raise ValidationError(f"{message}: 请求内容必须是对象")
    unknown = sorted(str(name) for name in changes if name not in allowed)
    if unknown:
        raise ValidationError(f"{message}: {', '.join(unknown)}")
    return dict(changes)


def _number(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{label} 必须是数字")
    return value


def _optional_number(value: object, label: str) -> Optional[float]:
    if value is None:
        return None
    return _number(value, label)


def _next_at(value: object, label: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if parse_timestamp(value) is None:
        raise ValidationError(f"{label} 不是有效的时间")
    return str(value)


def _raid_bound(field_name: str, settings) -> int:
    if field_name == "daily_dungeon_ticket_stored":
        return config.DAILY_DUNGEON_TICKET_STORED_MAX
    if field_name in TICKET_FIELDS:
        return config.TICKET_BONUS_CEILING
    return cap_for(ActivityCounter(field_name), settings)


def aode_limits(state: AppState, character: CharacterState) -> Dict[str, int]:
    """Weekly shop and transform allowances of ``character``."""

    account = state.find_account(character.account_id)
    extra = account is not None and account.extra_aode_character_id == character.id
    purchase = config.AODE_WEEKLY_BASE_PURCHASE_MAX
    convert = config.AODE_WEEKLY_BASE_CONVERT_MAX
    if extra:
        purchase += config.AODE_WEEKLY_EXTRA_PURCHASE_MAX
        convert += config.AODE_WEEKLY_EXTRA_CONVERT_MAX
    return {
        "shop_aode_purchase_used": purchase,
        "shop_daily_dungeon_ticket_purchase_used": purchase,
        "transform_aode_used": convert,
    }


class DashboardStore:
    """Owns the aggregate and serialises every operation on it.

    Reads refresh every character to ``clock()`` before returning. Writes run
    through a :class:`TransactionLog` and are persisted on commit; storage
    errors propagate to the caller.
    """

    _instance: Optional["DashboardStore"] = None

    def __init__(
        self,
        storage: StateStorage,
        clock: Clock | None = None,
        tz: Optional[tzinfo] = None,
        history_limit: int = config.OPERATION_HISTORY_LIMIT,
        backup_dir: str | Path | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._storage = storage
        self._clock = clock or _utc_now
        self.tz = tz
        self.backup_dir = Path(backup_dir) if backup_dir is not None else config.data_path().parent
        self._log = TransactionLog(limit=history_limit, clock=self._clock)
        self._revision = 0
        self._state = self._load()

    # ------------------------------------------------------------------
    @classmethod
    def get_instance(cls) -> "DashboardStore":
        if cls._instance is None:
            storage = JsonFileStorage(config.data_path())
            cls._instance = cls(storage, tz=resolve_timezone(config.reset_timezone_name()))
        return cls._instance

    @classmethod
    def reset_instance(cls, store: Optional["DashboardStore"] = None) -> None:
        cls._instance = store

    def now(self) -> datetime:
        return self._clock()

    @property
    def revision(self) -> int:
        return self._revision

    def response_metadata(self) -> Dict[str, object]:
        return {"version": self._revision}

    # ------------------------------------------------------------------
    # Internal plumbing

    def _load(self) -> AppState:
        raw = self._storage.load()
        if raw is None:
            logger.info("No saved dashboard state; starting from defaults")
        return normalise_state(raw, self.now())

    def _persist(self, state: AppState) -> AppState:
        self._storage.save(state.to_dict())
        self._state = state
        self._revision += 1
        return state

    def _refresh_characters(
        self, characters: List[CharacterState], state: AppState
    ) -> List[CharacterState]:
        now = self.now()
        return [refresh_character(item, now, state.settings, self.tz) for item in characters]

    def _refreshed(self) -> AppState:
        state = self._state
        state.characters = self._refresh_characters(state.characters, state)
        return state

    def _normalise_draft(self, draft: AppState) -> AppState:
        for character in draft.characters:
            clamp_character(apply_configured_caps(character, draft.settings), draft.settings)
        if draft.find_character(draft.selected_character_id) is None:
            draft.selected_character_id = draft.characters[0].id
        if draft.find_account(draft.selected_account_id) is None:
            selected = draft.find_character(draft.selected_character_id)
            draft.selected_account_id = selected.account_id
        for account in draft.accounts:
            extra = draft.find_character(account.extra_aode_character_id)
            if extra is None or extra.account_id != account.id:
                account.extra_aode_character_id = None
        return draft

    def _commit(
        self,
        mutator: Callable[[AppState], None],
        *,
        action: str,
        character_id: str | None = None,
        description: str | None = None,
    ) -> AppState:
        with self._lock:
            current = self._refreshed()
            updated = self._log.commit(
                current,
                mutator,
                action=action,
                character_id=character_id,
                description=description,
                normalise=self._normalise_draft,
            )
            return self._persist(updated)

    @staticmethod
    def _character_index(state: AppState, character_id: object) -> int:
        for index, character in enumerate(state.characters):
            if character.id == character_id:
                return index
        raise NotFoundError("角色不存在")

    @staticmethod
    def _require_account(state: AppState, account_id: object):
        account = state.find_account(account_id)
        if account is None:
            raise NotFoundError("账号不存在")
        return account

    # ------------------------------------------------------------------
    # Reads

    def get_state(self) -> AppState:
        """Return the aggregate with every character caught up to now."""

        with self._lock:
            return self._persist(self._refreshed())

    # ------------------------------------------------------------------
    # Character progress

    def apply_task_action(
        self,
        character_id: str,
        task_id: str,
        action: str = "complete_once",
        amount: object = None,
    ) -> AppState:
        def mutate(draft: AppState) -> None:
            index = self._character_index(draft, character_id)
            result = ledger.apply_task_action(
                draft.characters[index], draft.settings, task_id, action, amount
            )
            if not result.ok:
                raise result.error
            draft.characters[index] = result.character

        shown = amount if isinstance(amount, int) and not isinstance(amount, bool) else 1
        return self._commit(
            mutate,
            action="任务打卡",
            character_id=character_id,
            description=f"{task_id} {action} x{max(1, shown)}",
        )

    def update_raid_counts(self, character_id: str, counts: Mapping[str, object]) -> AppState:
        counts = _known_fields(counts, RAID_COUNT_FIELDS, "未知的次数字段")
        values = {
            name: _number(value, name) for name, value in counts.items() if value is not None
        }

        def mutate(draft: AppState) -> None:
            character = draft.characters[self._character_index(draft, character_id)]
            for name, value in values.items():
                setattr(character.activities, name, clamp(value, 0, _raid_bound(name, draft.settings)))

        return self._commit(mutate, action="手动设定次数", character_id=character_id)

    def update_energy_segments(
        self, character_id: str, base_current: object, bonus_current: object
    ) -> AppState:
        base = _number(base_current, "base_current")
        bonus = _number(bonus_current, "bonus_current")

        def mutate(draft: AppState) -> None:
            energy = draft.characters[self._character_index(draft, character_id)].energy
            energy.base_current = clamp(base, 0, energy.base_cap)
            energy.bonus_current = clamp(bonus, 0, energy.bonus_cap)

        return self._commit(
            mutate,
            action="手动改能量",
            character_id=character_id,
            description=f"{int(base)}(+{int(bonus)})",
        )

    def update_artifact_status(
        self,
        account_id: str,
        lower_available: object,
        lower_next_at: object = None,
        middle_available: object = 0,
        middle_next_at: object = None,
    ) -> AppState:
        """Sync both abyss corridors for every character of an account."""

        lower = _number(lower_available, "lower_available")
        middle = _number(middle_available, "middle_available")
        lower_at = _next_at(lower_next_at, "lower_next_at")
        middle_at = _next_at(middle_next_at, "middle_next_at")

        def mutate(draft: AppState) -> None:
            self._require_account(draft, account_id)
            for character in draft.characters_of(account_id):
                activities = character.activities
                activities.corridor_lower_available = clamp(lower, 0, config.CORRIDOR_MAX)
                activities.corridor_lower_next_at = lower_at
                activities.corridor_middle_available = clamp(middle, 0, config.CORRIDOR_MAX)
                activities.corridor_middle_next_at = middle_at

        return self._commit(
            mutate,
            action="同步深渊回廊",
            description=f"账号 {account_id}: 下层 {int(lower)} / 中层 {int(middle)}",
        )

    def apply_corridor_completion(self, character_id: str, lane: str, completed: object) -> AppState:
        if lane not in CORRIDOR_LANES:
            raise ValidationError("回廊只能是 lower 或 middle")
        amount = clamp(_number(completed, "completed"), 0, config.CORRIDOR_COMPLETION_MAX)

        def mutate(draft: AppState) -> None:
            activities = draft.characters[self._character_index(draft, character_id)].activities
            name = f"corridor_{lane}_available"
            setattr(activities, name, clamp(getattr(activities, name) - amount, 0, config.CORRIDOR_MAX))

        return self._commit(
            mutate,
            action="录入深渊回廊完成",
            character_id=character_id,
            description=f"{CORRIDOR_LANES[lane]} 完成 {amount}",
        )

    def reset_weekly_stats(self) -> AppState:
        now_iso = isoformat(self.now())

        def mutate(draft: AppState) -> None:
            for character in draft.characters:
                character.stats = create_weekly_stats(now_iso)

        return self._commit(mutate, action="重置周收益统计")

    def update_weekly_completions(
        self,
        character_id: str,
        expedition_completed: object = None,
        transcendence_completed: object = None,
    ) -> AppState:
        """Overwrite the weekly completion counts, adjusting the earned gold."""

        requested = {
            "expedition": _optional_number(expedition_completed, "expedition_completed"),
            "transcendence": _optional_number(transcendence_completed, "transcendence_completed"),
        }

        def mutate(draft: AppState) -> None:
            character = draft.characters[self._character_index(draft, character_id)]
            stats = character.stats
            for task_id, value in requested.items():
                if value is None:
                    continue
                target = clamp(value, 0, config.WEEKLY_COMPLETION_MAX)
                delta = target - stats.completions.get(task_id, 0)
                gold = getattr(draft.settings, f"{task_id}_gold_per_run")
                stats.completions[task_id] = target
                stats.gold_earned = max(0, stats.gold_earned + delta * gold)

        return self._commit(mutate, action="修正周完成次数", character_id=character_id)

    def update_aode_plan(self, character_id: str, changes: Mapping[str, object]) -> AppState:
        changes = _known_fields(changes, AODE_PLAN_FIELDS, "未知的奥德计划字段")
        values = {
            name: _optional_number(changes.get(name), name)
            for name in AODE_PLAN_FIELDS
            if name != "assign_extra"
        }
        assign_extra = changes.get("assign_extra")
        if assign_extra is not None and not isinstance(assign_extra, bool):
            raise ValidationError("assign_extra 必须是布尔值")

        def mutate(draft: AppState) -> None:
            character = draft.characters[self._character_index(draft, character_id)]
            account = self._require_account(draft, character.account_id)
            if assign_extra is True:
                account.extra_aode_character_id = character.id
            elif assign_extra is False and account.extra_aode_character_id == character.id:
                account.extra_aode_character_id = None

            limits = aode_limits(draft, character)
            plan = character.aode_plan
            for name, value in values.items():
                current = getattr(plan, name) if value is None else value
                setattr(plan, name, clamp(current, 0, limits[name]))

        return self._commit(mutate, action="更新奥德计划", character_id=character_id)

    # ------------------------------------------------------------------
    # Settings

    def update_settings(self, changes: Mapping[str, object]) -> AppState:
        changes = _known_fields(changes, SETTINGS_FIELDS, "未知的设置项")
        for name, value in changes.items():
            if name in CAP_SETTINGS:
                if value is not None and _number(value, name) < 1:
                    raise ValidationError(f"{name} 必须大于等于 1")
            elif name.endswith("_gold_per_run"):
                if _number(value, name) < 0:
                    raise ValidationError(f"{name} 不能为负数")
            elif _number(value, name) < 1:
                raise ValidationError(f"{name} 必须大于等于 1")

        def mutate(draft: AppState) -> None:
            merged = draft.settings.to_dict()
            merged.update(changes)
            draft.settings = normalise_settings(merged)
            for character in draft.characters:
                apply_configured_caps(character, draft.settings)

        return self._commit(mutate, action="更新设置")

    # ------------------------------------------------------------------
    # Accounts

    def add_account(self, name: str = "", region_tag: str | None = None) -> AppState:
        label = (name or "").strip()

        def mutate(draft: AppState) -> None:
            account = create_default_account(
                label or config.DEFAULT_ACCOUNT_NAME.format(index=len(draft.accounts) + 1)
            )
            account.region_tag = (region_tag or "").strip() or None
            character = create_default_character(
                config.DEFAULT_CHARACTER_NAME.format(index=len(draft.characters) + 1),
                isoformat(self.now()),
                account.id,
            )
            draft.accounts.append(account)
            draft.characters.append(character)
            draft.selected_account_id = account.id
            draft.selected_character_id = character.id

        return self._commit(mutate, action="新增账号", description=label or "未命名账号")

    def rename_account(self, account_id: str, name: str, region_tag: str | None = None) -> AppState:
        label = (name or "").strip()
        if not label:
            raise ValidationError("账号名称不能为空")
        tag = (region_tag or "").strip() or None

        def mutate(draft: AppState) -> None:
            account = self._require_account(draft, account_id)
            account.name = label
            account.region_tag = tag

        description = f"{label} ({tag})" if tag else label
        return self._commit(mutate, action="编辑账号", description=description)

    def delete_account(self, account_id: str) -> AppState:
        def mutate(draft: AppState) -> None:
            if len(draft.accounts) <= 1:
                raise InvariantError("至少保留 1 个账号")
            self._require_account(draft, account_id)
            draft.accounts = [item for item in draft.accounts if item.id != account_id]
            draft.characters = [item for item in draft.characters if item.account_id != account_id]
            if not draft.characters:
                draft.characters = [
                    create_default_character(
                        config.DEFAULT_CHARACTER_NAME.format(index=1),
                        isoformat(self.now()),
                        draft.accounts[0].id,
                    )
                ]
            if draft.find_character(draft.selected_character_id) is None:
                draft.selected_character_id = draft.characters[0].id
            if draft.find_account(draft.selected_account_id) is None:
                draft.selected_account_id = draft.find_character(
                    draft.selected_character_id
                ).account_id

        return self._commit(mutate, action="删除账号", description=account_id)

    def select_account(self, account_id: str) -> AppState:
        def mutate(draft: AppState) -> None:
            self._require_account(draft, account_id)
            draft.selected_account_id = account_id
            members = draft.characters_of(account_id)
            if members:
                draft.selected_character_id = members[0].id

        return self._commit(mutate, action="切换账号", description=account_id)

    # ------------------------------------------------------------------
    # Characters

    def add_character(self, name: str = "", account_id: str | None = None) -> AppState:
        label = (name or "").strip()

        def mutate(draft: AppState) -> None:
            if account_id:
                target = self._require_account(draft, account_id).id
            elif draft.find_account(draft.selected_account_id) is not None:
                target = draft.selected_account_id
            else:
                target = draft.accounts[0].id
            if len(draft.characters_of(target)) >= config.MAX_CHARACTERS_PER_ACCOUNT:
                raise InvariantError(f"每个账号最多 {config.MAX_CHARACTERS_PER_ACCOUNT} 个角色")
            character = create_default_character(
                label or config.DEFAULT_CHARACTER_NAME.format(index=len(draft.characters) + 1),
                isoformat(self.now()),
                target,
            )
            draft.characters.append(character)
            draft.selected_account_id = target
            draft.selected_character_id = character.id

        return self._commit(mutate, action="新增角色", description=label or "未命名角色")

    def rename_character(self, character_id: str, name: str) -> AppState:
        label = (name or "").strip()
        if not label:
            raise ValidationError("角色名称不能为空")

        def mutate(draft: AppState) -> None:
            draft.characters[self._character_index(draft, character_id)].name = label

        return self._commit(
            mutate, action="重命名角色", character_id=character_id, description=label
        )

    def delete_character(self, character_id: str) -> AppState:
        def mutate(draft: AppState) -> None:
            if len(draft.characters) <= 1:
                raise InvariantError("至少保留 1 个角色")
            target = draft.characters[self._character_index(draft, character_id)]
            if len(draft.characters_of(target.account_id)) <= 1:
                raise InvariantError("每个账号至少保留 1 个角色")
            draft.characters = [item for item in draft.characters if item.id != character_id]
            if draft.selected_character_id == character_id:
                draft.selected_character_id = draft.characters[0].id
            draft.selected_account_id = draft.find_character(
                draft.selected_character_id
            ).account_id

        return self._commit(mutate, action="删除角色", character_id=character_id)

    def select_character(self, character_id: str) -> AppState:
        def mutate(draft: AppState) -> None:
            target = draft.characters[self._character_index(draft, character_id)]
            draft.selected_character_id = target.id
            draft.selected_account_id = target.account_id

        return self._commit(mutate, action="切换角色", character_id=character_id)

    # ------------------------------------------------------------------
    # History

    def undo_operations(self, steps: object = 1) -> AppState:
        with self._lock:
            current = self._refreshed()
            return self._persist(self._log.undo(current, steps, self._refresh_characters))

    def clear_history(self) -> AppState:
        with self._lock:
            return self._persist(self._log.clear(self._refreshed()))

    # ------------------------------------------------------------------
    # Backups

    def default_export_path(self) -> Path:
        stamp = isoformat(self.now()).replace(":", "-").replace(".", "-")
        return self.backup_dir / f"{config.EXPORT_APP_NAME}-backup-{stamp}.json"

    def _backup_path(self, path: object) -> Path:
        """Resolve a backup file name, refusing anything outside ``backup_dir``."""

        if not isinstance(path, (str, Path)):
            raise ValidationError("备份文件路径必须是字符串")
        root = self.backup_dir.resolve()
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
        if root not in resolved.parents:
            raise ValidationError("备份文件必须位于数据目录内")
        return resolved

    def export_data(self, path: str | Path | None = None) -> Path:
        if path is None or (isinstance(path, str) and not path.strip()):
            target = self._backup_path(self.default_export_path())
        else:
            target = self._backup_path(path)
        with self._lock:
            state = self.get_state()
            write_json_file(target, build_export_payload(state, self.now()))
        logger.info("Exported dashboard state to %s", target)
        return target

    def import_data(self, path: str | Path) -> AppState:
        """Replace the state with a backup, keeping the import undoable."""

        source = self._backup_path(path)
        raw = load_backup(source)
        with self._lock:
            before = self._refreshed().snapshot()
            imported = resolve_imported_state(raw, self.now())
            imported.characters = self._refresh_characters(imported.characters, imported)
            self._log.append(imported, before, action="导入数据", description=source.name)
            logger.info("Imported dashboard state from %s", source)
            return self._persist(imported)


def get_store() -> DashboardStore:
    return DashboardStore.get_instance()
