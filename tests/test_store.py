import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from core import config
from core.errors import (
    InsufficientAttemptsError,
    InvariantError,
    NotFoundError,
    ValidationError,
)
from core.persistence import JsonFileStorage, MemoryStorage
from core.store import DashboardStore, get_store

TZ = timezone(timedelta(hours=8))
MONDAY = datetime(2024, 1, 1, 4, 0, tzinfo=TZ)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class FailingStorage(MemoryStorage):
    def save(self, data) -> None:
        raise OSError("disk full")


@pytest.fixture()
def clock():
    return FakeClock(MONDAY)


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def store(storage, clock, tmp_path):
    return DashboardStore(storage, clock=clock, tz=TZ, backup_dir=tmp_path)


def _selected(state):
    return state.find_character(state.selected_character_id)


# ---------------------------------------------------------------------------
# Reads and task actions


def test_get_state_persists_defaults(store, storage):
    state = store.get_state()
    assert storage.save_count == 1
    assert storage.data["version"] == config.STATE_VERSION
    assert storage.data["characters"][0]["id"] == state.characters[0].id


def test_task_action_is_recorded_and_undoable(store):
    character_id = store.get_state().selected_character_id

    state = store.apply_task_action(character_id, "expedition", "complete_once", 1)
    assert _selected(state).energy.base_current == config.ENERGY_BASE_CAP - 80
    assert _selected(state).activities.expedition_remaining == config.EXPEDITION_REWARD_MAX - 1
    assert len(state.history) == 1
    assert state.history[0].action == "任务打卡"

    state = store.undo_operations(1)
    assert _selected(state).energy.base_current == config.ENERGY_BASE_CAP
    assert _selected(state).activities.expedition_remaining == config.EXPEDITION_REWARD_MAX
    assert state.history == []


def test_failed_action_is_not_persisted(store, storage):
    character_id = store.get_state().selected_character_id
    saves = storage.save_count

    with pytest.raises(InsufficientAttemptsError):
        store.apply_task_action(character_id, "spirit_invasion", "complete_once", 8)

    assert storage.save_count == saves
    assert store.get_state().history == []


def test_unknown_character_is_reported(store):
    with pytest.raises(NotFoundError) as excinfo:
        store.apply_task_action("ghost", "nightmare")
    assert excinfo.value.message == "角色不存在"


def test_reads_catch_up_with_elapsed_time(store, clock):
    character_id = store.get_state().selected_character_id
    store.apply_task_action(character_id, "expedition", "complete_once", 1)

    clock.advance(hours=3)
    state = store.get_state()

    assert _selected(state).energy.base_current == config.ENERGY_BASE_CAP - 80 + config.ENERGY_PER_TICK


def test_undo_reapplies_elapsed_time(store, clock):
    character_id = store.get_state().selected_character_id
    store.update_energy_segments(character_id, 0, 0)
    store.apply_task_action(character_id, "nightmare", "use_ticket", 2)

    clock.advance(hours=3)
    state = store.undo_operations(1)

    character = _selected(state)
    assert character.activities.nightmare_ticket_bonus == 0
    assert character.energy.base_current == config.ENERGY_PER_TICK


def test_noop_operation_does_not_grow_history(store):
    state = store.get_state()
    state = store.select_character(state.selected_character_id)
    assert state.history == []


def test_storage_failure_propagates(clock):
    store = DashboardStore(FailingStorage(), clock=clock, tz=TZ)
    with pytest.raises(OSError):
        store.add_account("Alt")


# ---------------------------------------------------------------------------
# Accounts and characters


def test_last_character_cannot_be_deleted(store):
    character_id = store.get_state().selected_character_id
    with pytest.raises(InvariantError) as excinfo:
        store.delete_character(character_id)
    assert excinfo.value.message == "至少保留 1 个角色"


def test_only_character_of_account_cannot_be_deleted(store):
    first = store.get_state().characters[0]
    state = store.add_account("Alt")
    assert len(state.accounts) == 2
    assert state.selected_account_id == state.accounts[1].id

    with pytest.raises(InvariantError) as excinfo:
        store.delete_character(first.id)
    assert excinfo.value.message == "每个账号至少保留 1 个角色"
    assert len(store.get_state().characters) == 2


def test_deleting_selected_character_moves_selection(store):
    state = store.get_state()
    account_id = state.accounts[0].id
    first_id = state.characters[0].id
    store.add_account("Alt")
    store.add_character("Second", account_id)
    store.select_character(first_id)

    state = store.delete_character(first_id)

    assert state.find_character(first_id) is None
    selected = _selected(state)
    assert selected is not None
    assert state.selected_account_id == selected.account_id
    assert len(state.characters_of(account_id)) == 1


def test_characters_per_account_are_limited(store):
    account_id = store.get_state().accounts[0].id
    for index in range(config.MAX_CHARACTERS_PER_ACCOUNT - 1):
        store.add_character(f"Alt {index}", account_id)
    with pytest.raises(InvariantError) as excinfo:
        store.add_character("One too many", account_id)
    assert excinfo.value.message == "每个账号最多 8 个角色"


def test_add_character_defaults_to_selected_account(store):
    state = store.add_account("Alt")
    alt_id = state.selected_account_id
    state = store.add_character("")
    created = _selected(state)
    assert created.account_id == alt_id
    assert created.name == config.DEFAULT_CHARACTER_NAME.format(index=3)


def test_account_lifecycle(store):
    with pytest.raises(InvariantError) as excinfo:
        store.delete_account(store.get_state().accounts[0].id)
    assert excinfo.value.message == "至少保留 1 个账号"

    state = store.add_account("", " EU ")
    alt = state.accounts[1]
    assert alt.name == config.DEFAULT_ACCOUNT_NAME.format(index=2)
    assert alt.region_tag == "EU"

    state = store.rename_account(alt.id, "Alt", "NA")
    assert state.find_account(alt.id).name == "Alt"
    assert state.find_account(alt.id).region_tag == "NA"

    state = store.select_account(state.accounts[0].id)
    assert _selected(state).account_id == state.accounts[0].id

    state = store.delete_account(alt.id)
    assert len(state.accounts) == 1
    assert all(item.account_id == state.accounts[0].id for item in state.characters)

    with pytest.raises(NotFoundError):
        store.select_account(alt.id)
    with pytest.raises(ValidationError):
        store.rename_account(state.accounts[0].id, "   ")


def test_rename_and_select_character(store):
    state = store.add_account("Alt")
    first = state.characters[0]
    state = store.rename_character(first.id, "  Renamed ")
    assert state.find_character(first.id).name == "Renamed"

    state = store.select_character(first.id)
    assert state.selected_account_id == first.account_id

    with pytest.raises(ValidationError):
        store.rename_character(first.id, "")
    with pytest.raises(NotFoundError):
        store.select_character("ghost")


# ---------------------------------------------------------------------------
# Targeted overrides


def test_update_settings_lowers_capped_counters(store):
    state = store.update_settings({"expedition_run_cap": 5, "expedition_warn_threshold": 3})
    assert state.settings.expedition_run_cap == 5
    assert _selected(state).activities.expedition_remaining == 5

    state = store.update_settings({"expedition_run_cap": None})
    assert state.settings.expedition_run_cap is None
    assert _selected(state).activities.expedition_remaining == 5


@pytest.mark.parametrize(
    "changes",
    [
        {"expedition_run_cap": 0},
        {"expedition_gold_per_run": -5},
        {"transcendence_warn_threshold": 0},
        {"nightmare_run_cap": "3"},
        {"unknown_setting": 1},
    ],
)
def test_update_settings_validation(store, changes):
    with pytest.raises(ValidationError):
        store.update_settings(changes)


def test_update_raid_counts_clamps_each_field(store):
    character_id = store.get_state().selected_character_id
    store.update_settings({"nightmare_run_cap": 4})

    state = store.update_raid_counts(
        character_id,
        {
            "expedition_remaining": 50,
            "nightmare_remaining": 10,
            "nightmare_ticket_bonus": 5000,
            "daily_dungeon_ticket_stored": 99,
            "sanctum_box_remaining": -1,
        },
    )

    activities = _selected(state).activities
    assert activities.expedition_remaining == config.EXPEDITION_REWARD_MAX
    assert activities.nightmare_remaining == 4
    assert activities.nightmare_ticket_bonus == config.TICKET_BONUS_CEILING
    assert activities.daily_dungeon_ticket_stored == config.DAILY_DUNGEON_TICKET_STORED_MAX
    assert activities.sanctum_box_remaining == 0

    with pytest.raises(ValidationError):
        store.update_raid_counts(character_id, {"corridor_lower_available": 1})
    with pytest.raises(ValidationError):
        store.update_raid_counts(character_id, {"expedition_remaining": "x"})
    with pytest.raises(ValidationError):
        store.update_raid_counts(
            character_id, {"character_id": character_id, "nightmare_remaining": 3}
        )
    with pytest.raises(ValidationError):
        store.update_raid_counts(character_id, [("nightmare_remaining", 3)])


def test_update_energy_segments_clamps(store):
    character_id = store.get_state().selected_character_id
    state = store.update_energy_segments(character_id, 9999, -5)
    energy = _selected(state).energy
    assert energy.base_current == config.ENERGY_BASE_CAP
    assert energy.bonus_current == 0
    assert state.history[-1].description == "9999(+-5)"


def test_corridor_sync_and_completion(store):
    state = store.get_state()
    account_id = state.accounts[0].id
    character_id = state.selected_character_id

    state = store.update_artifact_status(account_id, 3, "2024-01-02T13:00:00.000Z", 7, None)
    activities = _selected(state).activities
    assert activities.corridor_lower_available == 3
    assert activities.corridor_lower_next_at == "2024-01-02T13:00:00.000Z"
    assert activities.corridor_middle_available == config.CORRIDOR_MAX

    state = store.apply_corridor_completion(character_id, "lower", 2)
    assert _selected(state).activities.corridor_lower_available == 1

    with pytest.raises(ValidationError):
        store.apply_corridor_completion(character_id, "upper", 1)
    with pytest.raises(ValidationError):
        store.update_artifact_status(account_id, 1, "tomorrow")
    with pytest.raises(NotFoundError):
        store.update_artifact_status("ghost", 1)


def test_weekly_completions_adjust_gold(store):
    character_id = store.get_state().selected_character_id
    gold = config.DEFAULT_SETTINGS["expedition_gold_per_run"]

    state = store.update_weekly_completions(character_id, expedition_completed=3)
    stats = _selected(state).stats
    assert stats.completions["expedition"] == 3
    assert stats.gold_earned == 3 * gold

    state = store.update_weekly_completions(character_id, expedition_completed=1)
    assert _selected(state).stats.gold_earned == gold

    state = store.reset_weekly_stats()
    stats = _selected(state).stats
    assert stats.gold_earned == 0
    assert stats.completions["expedition"] == 0


def test_weekly_completions_are_bounded(store):
    character_id = store.get_state().selected_character_id
    state = store.update_weekly_completions(character_id, transcendence_completed=10**6)
    assert _selected(state).stats.completions["transcendence"] == config.WEEKLY_COMPLETION_MAX


def test_aode_plan_limits_follow_extra_assignment(store):
    state = store.get_state()
    character_id = state.selected_character_id
    account_id = state.selected_account_id

    state = store.update_aode_plan(
        character_id, {"shop_aode_purchase_used": 10, "transform_aode_used": 12}
    )
    plan = _selected(state).aode_plan
    assert plan.shop_aode_purchase_used == config.AODE_WEEKLY_BASE_PURCHASE_MAX
    assert plan.transform_aode_used == config.AODE_WEEKLY_BASE_CONVERT_MAX

    state = store.update_aode_plan(
        character_id,
        {"shop_aode_purchase_used": 10, "transform_aode_used": 12, "assign_extra": True},
    )
    assert state.find_account(account_id).extra_aode_character_id == character_id
    plan = _selected(state).aode_plan
    assert plan.shop_aode_purchase_used == 8
    assert plan.transform_aode_used == 10

    state = store.update_aode_plan(character_id, {"assign_extra": False})
    assert state.find_account(account_id).extra_aode_character_id is None
    assert _selected(state).aode_plan.shop_aode_purchase_used == config.AODE_WEEKLY_BASE_PURCHASE_MAX

    with pytest.raises(ValidationError):
        store.update_aode_plan(character_id, {"assign_extra": "yes"})
    with pytest.raises(ValidationError):
        store.update_aode_plan(character_id, {"bogus": 1})
    assert store.get_state().history[-1].action == "更新奥德计划"


# ---------------------------------------------------------------------------
# History and backups


def test_undo_validation_and_clear(store):
    character_id = store.get_state().selected_character_id
    store.rename_character(character_id, "A")
    store.rename_character(character_id, "B")

    with pytest.raises(ValidationError):
        store.undo_operations(0)

    state = store.clear_history()
    assert state.history == []
    assert _selected(state).name == "B"
    assert store.undo_operations(3).history == []


def test_history_stays_bounded(clock):
    store = DashboardStore(MemoryStorage(), clock=clock, tz=TZ, history_limit=5)
    character_id = store.get_state().selected_character_id
    for index in range(8):
        store.rename_character(character_id, f"name {index}")
    assert len(store.get_state().history) == 5


def test_export_and_import_round_trip(tmp_path, clock):
    store = DashboardStore(
        JsonFileStorage(tmp_path / "state.json"), clock=clock, tz=TZ, backup_dir=tmp_path
    )
    character_id = store.get_state().selected_character_id

    target = store.export_data(tmp_path / "backup.json")
    payload = json.loads(target.read_text(encoding="utf-8"))
    assert payload["schema_version"] == config.EXPORT_SCHEMA_VERSION
    assert payload["state"]["selected_character_id"] == character_id

    store.rename_character(character_id, "Changed")
    state = store.import_data(target)

    assert _selected(state).name == config.DEFAULT_CHARACTER_NAME.format(index=1)
    assert state.history[-1].action == "导入数据"
    assert state.history[-1].description == "backup.json"

    state = store.undo_operations(1)
    assert _selected(state).name == "Changed"

    reloaded = DashboardStore(JsonFileStorage(tmp_path / "state.json"), clock=clock, tz=TZ)
    assert _selected(reloaded.get_state()).name == "Changed"


def test_import_rejects_missing_and_invalid_files(store, tmp_path):
    with pytest.raises(NotFoundError):
        store.import_data(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("nope", encoding="utf-8")
    with pytest.raises(ValidationError):
        store.import_data(broken)


def test_backup_paths_stay_inside_backup_dir(store, tmp_path):
    outside = tmp_path.parent / f"{tmp_path.name}-elsewhere" / "victim.txt"
    with pytest.raises(ValidationError):
        store.export_data(outside)
    assert not outside.exists()

    with pytest.raises(ValidationError):
        store.export_data(tmp_path / ".." / "escape.json")
    with pytest.raises(ValidationError):
        store.import_data(outside)
    with pytest.raises(ValidationError):
        store.import_data(42)

    relative = store.export_data("nested/backup.json")
    assert relative == (tmp_path / "nested" / "backup.json").resolve()
    assert store.import_data("nested/backup.json").history[-1].description == "backup.json"


def test_default_export_lands_in_backup_dir(store, tmp_path):
    target = store.export_data()
    assert target.parent == tmp_path.resolve()
    assert target.name.startswith(f"{config.EXPORT_APP_NAME}-backup-")
    assert target.exists()


def test_get_store_uses_configured_path(tmp_path, monkeypatch):
    monkeypatch.setenv("DASHBOARD_DATA_PATH", str(tmp_path / "dashboard.json"))
    monkeypatch.delenv("DASHBOARD_TIMEZONE", raising=False)
    DashboardStore.reset_instance()
    try:
        store = get_store()
        assert get_store() is store
        store.get_state()
        assert (tmp_path / "dashboard.json").exists()
    finally:
        DashboardStore.reset_instance()
