import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from core import config
from core.errors import (
    InsufficientAttemptsError,
    InsufficientEnergyError,
    NotFoundError,
    TaskNotSupportedError,
    ValidationError,
)
from core.ledger import (
    apply_task_action,
    build_character_summary,
    estimate_character_gold,
    get_stacked_available,
    get_task_progress_text,
    get_task_remaining,
    refresh_character,
)
from core.models import AppSettings, create_default_character, isoformat
from core.task_catalog import TASKS_BY_ID

TZ = timezone(timedelta(hours=8))
MONDAY = datetime(2024, 1, 1, 4, 0, tzinfo=TZ)


@pytest.fixture()
def character():
    return create_default_character("Hero", isoformat(MONDAY), "account-1", "char-1")


@pytest.fixture()
def settings():
    return AppSettings()


def _counters(character):
    return (
        character.energy,
        character.missions,
        character.activities,
        character.aode_plan,
        character.meta,
    )


# ---------------------------------------------------------------------------
# Task actions


def test_expedition_with_exactly_enough_energy(character, settings):
    character.energy.base_current = 0
    character.energy.bonus_current = 0
    character.activities.expedition_remaining = 1
    character.activities.expedition_ticket_bonus = 0
    character.activities.expedition_boss_remaining = 5
    character.energy.base_current += 80

    result = apply_task_action(character, settings, "expedition", "complete_once", 1)

    assert result.ok, result.message
    updated = result.character
    assert updated.activities.expedition_remaining == 0
    assert updated.activities.expedition_boss_remaining == 4
    assert updated.energy.base_current == 0
    assert result.gold_delta == settings.expedition_gold_per_run
    assert updated.stats.completions["expedition"] == 1
    assert updated.stats.gold_earned == settings.expedition_gold_per_run


def test_awakening_draws_tickets_first(character, settings):
    character.activities.awakening_remaining = 0
    character.activities.awakening_ticket_bonus = 2

    result = apply_task_action(character, settings, "awakening", "complete_once", 1)

    assert result.ok
    assert result.character.activities.awakening_ticket_bonus == 1
    assert result.character.activities.awakening_remaining == 0


def test_ticket_first_spills_into_base(character, settings):
    character.activities.nightmare_remaining = 5
    character.activities.nightmare_ticket_bonus = 2

    result = apply_task_action(character, settings, "nightmare", "complete_once", 4)

    assert result.ok
    assert result.character.activities.nightmare_ticket_bonus == 0
    assert result.character.activities.nightmare_remaining == 3


def test_base_first_spills_into_tickets(character, settings):
    character.activities.expedition_remaining = 2
    character.activities.expedition_ticket_bonus = 3

    result = apply_task_action(character, settings, "expedition", "complete_once", 4)

    assert result.ok
    assert result.character.activities.expedition_remaining == 0
    assert result.character.activities.expedition_ticket_bonus == 1
    assert result.character.activities.expedition_boss_remaining == config.EXPEDITION_BOSS_MAX - 4
    assert result.character.energy.base_current == config.ENERGY_BASE_CAP - 4 * 80


@pytest.mark.parametrize("task_id", ["expedition", "transcendence", "nightmare", "awakening", "mini_game"])
@pytest.mark.parametrize("amount", [1, 2, 3])
def test_stacked_availability_is_conserved(character, settings, task_id, amount):
    task = TASKS_BY_ID[task_id]
    character.energy.bonus_current = config.ENERGY_BONUS_CAP
    character.set_counter(task.primary.counter, 1)
    character.set_ticket(task.ticket_target.counter, 2)
    before = get_stacked_available(character, task)

    result = apply_task_action(character, settings, task_id, "complete_once", amount)

    assert result.ok, result.message
    assert get_stacked_available(result.character, task) == before - amount


def test_energy_draws_base_before_bonus(character, settings):
    character.energy.base_current = 50
    character.energy.bonus_current = 100

    result = apply_task_action(character, settings, "transcendence", "complete_once", 1)

    assert result.ok
    assert result.character.energy.base_current == 0
    assert result.character.energy.bonus_current == 70


def test_insufficient_energy_leaves_character_untouched(character, settings):
    character.energy.base_current = 79

    result = apply_task_action(character, settings, "expedition", "complete_once", 1)

    assert not result.ok
    assert isinstance(result.error, InsufficientEnergyError)
    assert result.message == "奥德能量不足"
    assert result.character == character


def test_boss_counter_limits_completions(character, settings):
    character.activities.expedition_remaining = 5
    character.activities.expedition_boss_remaining = 1

    result = apply_task_action(character, settings, "expedition", "complete_once", 2)

    assert not result.ok
    assert isinstance(result.error, InsufficientAttemptsError)
    assert result.error.available == 1
    assert result.message == "可用次数不足"


def test_plain_task_without_attempts_fails(character, settings):
    character.activities.spirit_invasion_remaining = 0
    result = apply_task_action(character, settings, "spirit_invasion", "complete_once", 1)
    assert isinstance(result.error, InsufficientAttemptsError)


def test_input_character_is_never_mutated(character, settings):
    snapshot = character.to_dict()
    result = apply_task_action(character, settings, "nightmare", "complete_once", 2)
    assert result.ok
    assert character.to_dict() == snapshot


def test_use_ticket_adds_bonus(character, settings):
    result = apply_task_action(character, settings, "nightmare", "use_ticket", 3)
    assert result.ok
    assert result.character.activities.nightmare_ticket_bonus == 3

    result = apply_task_action(character, settings, "nightmare", "use_ticket", 0)
    assert result.character.activities.nightmare_ticket_bonus == 1


def test_use_ticket_is_bounded(character, settings):
    character.activities.mini_game_ticket_bonus = config.TICKET_BONUS_CEILING - 1
    result = apply_task_action(character, settings, "mini_game", "use_ticket", 5)
    assert result.character.activities.mini_game_ticket_bonus == config.TICKET_BONUS_CEILING


def test_use_ticket_requires_ticket_target(character, settings):
    result = apply_task_action(character, settings, "daily_mission", "use_ticket", 1)
    assert isinstance(result.error, TaskNotSupportedError)
    assert result.message == "该任务不支持吃券"


def test_set_completed_overwrites_counter(character, settings):
    result = apply_task_action(character, settings, "weekly_order", "set_completed", 4)
    assert result.ok
    assert result.character.missions.weekly_remaining == config.WEEKLY_ORDER_MAX - 4

    result = apply_task_action(character, settings, "abyss_lower", "set_completed", 99)
    assert result.character.missions.abyss_lower_remaining == 0


def test_set_completed_rejected_for_ticket_tasks(character, settings):
    result = apply_task_action(character, settings, "nightmare", "set_completed", 1)
    assert isinstance(result.error, TaskNotSupportedError)
    assert result.message == "该任务不支持录入已完成次数"


def test_unknown_task_and_bad_amounts(character, settings):
    result = apply_task_action(character, settings, "dragon_hunt", "complete_once", 1)
    assert isinstance(result.error, NotFoundError)
    assert result.message == "未知任务"

    result = apply_task_action(character, settings, "nightmare", "complete_once", 0)
    assert isinstance(result.error, ValidationError)
    assert result.message == "完成次数必须大于 0"

    result = apply_task_action(character, settings, "nightmare", "complete_once", "two")
    assert isinstance(result.error, ValidationError)

    result = apply_task_action(character, settings, "nightmare", "explode", 1)
    assert isinstance(result.error, ValidationError)


def test_task_ids_are_case_insensitive(character, settings):
    result = apply_task_action(character, settings, " Nightmare ", "complete_once", 1)
    assert result.ok


# ---------------------------------------------------------------------------
# Catch-up


def test_refresh_without_sync_stamp_only_records_now(character):
    character.meta.last_synced_at = "garbage"
    character.energy.base_current = 0
    later = MONDAY + timedelta(days=3)

    refreshed = refresh_character(character, later, tz=TZ)

    assert refreshed.energy.base_current == 0
    assert refreshed.meta.last_synced_at == isoformat(later)


def test_refresh_applies_monday_to_wednesday_gap(character):
    character.energy.base_current = 0
    character.missions.daily_remaining = 0
    character.missions.weekly_remaining = 0
    character.activities.nightmare_remaining = 0
    character.activities.spirit_invasion_remaining = 0
    character.activities.awakening_remaining = 0
    character.activities.awakening_ticket_bonus = 2
    character.activities.daily_dungeon_ticket_stored = 4
    character.activities.expedition_remaining = 0
    character.activities.transcendence_remaining = 0
    character.stats.gold_earned = 5
    character.aode_plan.transform_aode_used = 3
    now = datetime(2024, 1, 3, 6, 0, tzinfo=TZ)

    refreshed = refresh_character(character, now, tz=TZ)

    assert refreshed.energy.base_current == 17 * config.ENERGY_PER_TICK
    assert refreshed.missions.daily_remaining == config.DAILY_MISSION_MAX
    assert refreshed.missions.weekly_remaining == config.WEEKLY_ORDER_MAX
    assert refreshed.activities.nightmare_remaining == 3 * config.NIGHTMARE_DAILY_GRANT
    assert refreshed.activities.spirit_invasion_remaining == 3
    assert refreshed.activities.awakening_remaining == config.AWAKENING_MAX
    assert refreshed.activities.awakening_ticket_bonus == 0
    assert refreshed.activities.daily_dungeon_ticket_stored == 4
    assert refreshed.activities.expedition_remaining == 6
    assert refreshed.activities.transcendence_remaining == 4
    assert refreshed.stats.gold_earned == 0
    assert refreshed.stats.cycle_started_at == isoformat(now)
    assert refreshed.aode_plan.transform_aode_used == 0
    assert refreshed.meta.last_synced_at == isoformat(now)


def test_daily_restock_never_exceeds_maximum(character):
    character.activities.nightmare_remaining = 13
    refreshed = refresh_character(character, MONDAY + timedelta(days=30), tz=TZ)
    assert refreshed.activities.nightmare_remaining == config.NIGHTMARE_MAX
    assert refreshed.energy.base_current == config.ENERGY_BASE_CAP


def test_refresh_is_idempotent(character):
    character.energy.base_current = 10
    now = MONDAY + timedelta(hours=50)
    once = refresh_character(character, now, tz=TZ)
    twice = refresh_character(once, now, tz=TZ)
    assert twice == once


@pytest.mark.parametrize("split_hours", [1, 7, 25, 49, 100])
def test_refresh_is_associative(character, settings, split_hours):
    character.energy.base_current = 0
    character.missions.daily_remaining = 0
    character.activities.nightmare_remaining = 0
    character.activities.mini_game_remaining = 1
    character.activities.expedition_remaining = 0
    character.activities.transcendence_boss_remaining = 0
    character.activities.suppression_ticket_bonus = 4
    end = MONDAY + timedelta(hours=170)
    middle = MONDAY + timedelta(hours=split_hours)

    direct = refresh_character(character, end, settings, TZ)
    chained = refresh_character(refresh_character(character, middle, settings, TZ), end, settings, TZ)

    assert _counters(chained) == _counters(direct)


def test_refresh_does_not_touch_input(character):
    snapshot = character.to_dict()
    refresh_character(character, MONDAY + timedelta(days=9), tz=TZ)
    assert character.to_dict() == snapshot


def test_refresh_with_clock_moving_backwards_keeps_stamp(character):
    earlier = MONDAY - timedelta(hours=6)
    refreshed = refresh_character(character, earlier, tz=TZ)
    assert refreshed.meta.last_synced_at == character.meta.last_synced_at


def test_refresh_applies_configured_caps(character):
    settings = AppSettings(expedition_run_cap=5, awakening_run_cap=1)
    character.activities.expedition_remaining = 0
    refreshed = refresh_character(character, MONDAY + timedelta(days=7), settings, TZ)
    assert refreshed.activities.expedition_remaining == 5
    assert refreshed.activities.awakening_remaining == 1


# ---------------------------------------------------------------------------
# Summaries


def test_progress_text_and_remaining(character, settings):
    character.activities.nightmare_remaining = 4
    character.activities.nightmare_ticket_bonus = 2
    nightmare = TASKS_BY_ID["nightmare"]
    assert get_task_progress_text(character, nightmare, settings) == "4(+2)/14"
    assert get_task_remaining(character, nightmare) == 6

    daily = TASKS_BY_ID["daily_mission"]
    assert get_task_progress_text(character, daily, settings) == "5/5"

    capped = AppSettings(nightmare_run_cap=6)
    assert get_task_progress_text(character, nightmare, capped) == "4(+2)/6"


def test_gold_estimate_spends_energy_on_transcendence_first(character, settings):
    character.energy.base_current = 240
    character.activities.transcendence_remaining = 2
    character.activities.transcendence_ticket_bonus = 0
    estimate = estimate_character_gold(character, settings)
    assert estimate == 2 * settings.transcendence_gold_per_run + settings.expedition_gold_per_run


def test_summary_flags(character, settings):
    character.activities.expedition_remaining = config.EXPEDITION_REWARD_MAX
    character.activities.transcendence_remaining = 2
    summary = build_character_summary(character, settings)
    assert summary["expedition_overflow_warning"] is True
    assert summary["transcendence_overflow_warning"] is False
    assert summary["can_run_expedition"] is True
    assert "每日使命未清" in summary["pending_labels"]
