"""Per-character resource ledger: elapsed-time catch-up and task actions."""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Dict, List, Optional

from . import config
from .caps import CAPPED_ACTIVITIES, cap_for
from .errors import (
    DashboardError,
    InsufficientAttemptsError,
    InsufficientEnergyError,
    NotFoundError,
    TaskNotSupportedError,
    ValidationError,
)
from .models import (
    AodePlan,
    AppSettings,
    CharacterState,
    create_weekly_stats,
    isoformat,
    parse_timestamp,
)
from .schedule import (
    DAILY_RESET,
    ENERGY_TICKS,
    EXPEDITION_TICKS,
    TRANSCENDENCE_TICKS,
    WEEKLY_RESET,
    count_boundaries,
)
from .task_catalog import (
    ACTIVITY_MAX,
    DAILY_RESTOCK,
    MISSION_MAX,
    WEEKLY_ACTIVITIES,
    WEEKLY_MISSIONS,
    ActivityCounter,
    TaskAction,
    TaskDefinition,
    TicketCounter,
    find_task,
)


logger = logging.getLogger(__name__)


def clamp(value: float, low: float, high: float) -> int:
    return int(max(low, min(high, value)))


def to_amount(value: object, fallback: int = 1) -> int:
    """Coerce a requested amount to a non-negative integer."""

    if value is None:
        return fallback
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("次数必须是整数")
    if isinstance(value, float) and math.isnan(value):
        return fallback
    if math.isinf(value):
        raise ValidationError("次数必须是整数")
    return max(0, int(math.floor(value)))


# ---------------------------------------------------------------------------
# Catch-up


def _restock(character: CharacterState, counter: ActivityCounter, amount: int, settings) -> None:
    current = character.get_counter(counter)
    character.set_counter(counter, clamp(current + amount, 0, cap_for(counter, settings)))


def clamp_character(character: CharacterState, settings: AppSettings | None = None) -> CharacterState:
    """Force every counter of ``character`` back inside its bounds, in place."""

    energy = character.energy
    energy.base_cap = config.ENERGY_BASE_CAP
    energy.bonus_cap = config.ENERGY_BONUS_CAP
    energy.base_current = clamp(energy.base_current, 0, energy.base_cap)
    energy.bonus_current = clamp(energy.bonus_current, 0, energy.bonus_cap)

    for counter, maximum in MISSION_MAX.items():
        character.set_counter(counter, clamp(character.get_counter(counter), 0, maximum))
    for counter in ACTIVITY_MAX:
        character.set_counter(
            counter, clamp(character.get_counter(counter), 0, cap_for(counter, settings))
        )
    for ticket in TicketCounter:
        character.set_ticket(
            ticket, clamp(character.get_ticket(ticket), 0, config.TICKET_BONUS_CEILING)
        )
    activities = character.activities
    activities.daily_dungeon_ticket_stored = clamp(
        activities.daily_dungeon_ticket_stored, 0, config.DAILY_DUNGEON_TICKET_STORED_MAX
    )
    plan = character.aode_plan
    plan.shop_aode_purchase_used = max(0, int(plan.shop_aode_purchase_used))
    plan.shop_daily_dungeon_ticket_purchase_used = max(
        0, int(plan.shop_daily_dungeon_ticket_purchase_used)
    )
    plan.transform_aode_used = max(0, int(plan.transform_aode_used))
    return character


def refresh_character(
    character: CharacterState,
    now: datetime,
    settings: AppSettings | None = None,
    tz: Optional[tzinfo] = None,
) -> CharacterState:
    """Return a copy of ``character`` with every boundary up to ``now`` applied.

    Each reset or refill crossed since ``meta.last_synced_at`` is applied once,
    so splitting a gap into several calls gives the same counters as a single
    call over the whole gap.
    """

    updated = copy.deepcopy(character)
    now_iso = isoformat(now)
    previous = parse_timestamp(updated.meta.last_synced_at)
    if previous is None:
        updated.meta.last_synced_at = now_iso
        return clamp_character(updated, settings)
    if now <= previous:
        # A clock moving backwards must not re-grant boundaries later.
        return clamp_character(updated, settings)

    energy_ticks = count_boundaries(previous, now, ENERGY_TICKS, tz)
    if energy_ticks > 0:
        energy = updated.energy
        energy.base_current = clamp(
            energy.base_current + energy_ticks * config.ENERGY_PER_TICK, 0, energy.base_cap
        )

    daily_resets = count_boundaries(previous, now, DAILY_RESET, tz)
    if daily_resets > 0:
        updated.missions.daily_remaining = config.DAILY_MISSION_MAX
        for counter, grant in DAILY_RESTOCK.items():
            _restock(updated, counter, daily_resets * grant, settings)

    weekly_resets = count_boundaries(previous, now, WEEKLY_RESET, tz)
    if weekly_resets > 0:
        for counter in WEEKLY_MISSIONS:
            updated.set_counter(counter, MISSION_MAX[counter])
        for counter in WEEKLY_ACTIVITIES:
            updated.set_counter(counter, cap_for(counter, settings))
        for ticket in TicketCounter:
            updated.set_ticket(ticket, 0)
        updated.aode_plan = AodePlan()
        updated.stats = create_weekly_stats(now_iso)

    expedition_ticks = count_boundaries(previous, now, EXPEDITION_TICKS, tz)
    if expedition_ticks > 0:
        _restock(updated, ActivityCounter.EXPEDITION, expedition_ticks, settings)

    transcendence_ticks = count_boundaries(previous, now, TRANSCENDENCE_TICKS, tz)
    if transcendence_ticks > 0:
        _restock(updated, ActivityCounter.TRANSCENDENCE, transcendence_ticks, settings)

    if daily_resets or weekly_resets:
        logger.debug(
            "Catch-up for %s: energy_ticks=%s daily=%s weekly=%s expedition=%s transcendence=%s",
            updated.id,
            energy_ticks,
            daily_resets,
            weekly_resets,
            expedition_ticks,
            transcendence_ticks,
        )

    updated.meta.last_synced_at = now_iso
    return clamp_character(updated, settings)


# ---------------------------------------------------------------------------
# Availability helpers


def get_stacked_available(character: CharacterState, task: TaskDefinition) -> int:
    base = character.get_counter(task.primary.counter)
    if task.ticket_target is None:
        return base
    return base + character.get_ticket(task.ticket_target.counter)


def get_task_remaining(character: CharacterState, task: TaskDefinition) -> int:
    """Completions ``task`` can still absorb, honouring every linked counter."""

    if task.ticket_target is None:
        return min(character.get_counter(target.counter) for target in task.counter_targets)
    values = [get_stacked_available(character, task)]
    values.extend(character.get_counter(target.counter) for target in task.secondary)
    return min(values)


def get_task_gold_reward(settings: AppSettings, task: TaskDefinition) -> float:
    if task.gold_reward_setting:
        return getattr(settings, task.gold_reward_setting)
    return task.gold_reward


def get_task_cap_display(task: TaskDefinition, settings: AppSettings | None = None) -> str:
    primary = task.primary.counter
    if isinstance(primary, ActivityCounter) and any(primary is item for item, _ in CAPPED_ACTIVITIES):
        return str(cap_for(primary, settings))
    if task.base_cap_display is None:
        return "-"
    return str(task.base_cap_display)


def get_task_progress_text(
    character: CharacterState, task: TaskDefinition, settings: AppSettings | None = None
) -> str:
    cap = get_task_cap_display(task, settings)
    if task.use_bonus_display and task.ticket_target is not None:
        base = character.get_counter(task.primary.counter)
        bonus = character.get_ticket(task.ticket_target.counter)
        return f"{base}(+{bonus})/{cap}"
    return f"{get_task_remaining(character, task)}/{cap}"


# ---------------------------------------------------------------------------
# Task actions


@dataclass
class TaskActionResult:
    ok: bool
    character: CharacterState
    message: str
    gold_delta: float = 0
    error: Optional[DashboardError] = None


def _failure(character: CharacterState, error: DashboardError) -> TaskActionResult:
    return TaskActionResult(ok=False, character=character, message=error.message, error=error)


def _draw_stacked(character: CharacterState, task: TaskDefinition, amount: int) -> None:
    primary = task.primary.counter
    ticket = task.ticket_target.counter
    base = character.get_counter(primary)
    bonus = character.get_ticket(ticket)

    if task.consume_ticket_first:
        from_bonus = min(bonus, amount)
        character.set_ticket(ticket, bonus - from_bonus)
        remain = amount - from_bonus
        if remain > 0:
            character.set_counter(primary, max(0, base - remain))
        return

    from_base = min(base, amount)
    character.set_counter(primary, base - from_base)
    remain = amount - from_base
    if remain > 0:
        character.set_ticket(ticket, max(0, bonus - remain))


def _consume_energy(character: CharacterState, amount: int) -> None:
    energy = character.energy
    from_base = min(energy.base_current, amount)
    energy.base_current -= from_base
    remain = amount - from_base
    if remain > 0:
        energy.bonus_current = clamp(energy.bonus_current - remain, 0, energy.bonus_cap)


def _complete(
    character: CharacterState, settings: AppSettings, task: TaskDefinition, amount: int
) -> TaskActionResult:
    if not task.allow_complete:
        return _failure(character, TaskNotSupportedError("该任务不可打卡"))
    if amount <= 0:
        return _failure(character, ValidationError("完成次数必须大于 0"))

    energy_required = task.energy_cost * amount
    if energy_required > 0 and character.energy.total < energy_required:
        return _failure(character, InsufficientEnergyError(energy_required, character.energy.total))

    available = get_task_remaining(character, task)
    if available < amount:
        return _failure(character, InsufficientAttemptsError(amount, available))

    if task.ticket_target is not None:
        _draw_stacked(character, task, amount)
        targets = task.secondary
    else:
        targets = task.counter_targets
    for target in targets:
        current = character.get_counter(target.counter)
        character.set_counter(target.counter, max(0, current - target.decrement * amount))

    if energy_required > 0:
        _consume_energy(character, energy_required)

    gold_delta = get_task_gold_reward(settings, task) * amount
    completions = character.stats.completions
    completions[task.id] = completions.get(task.id, 0) + amount
    character.stats.gold_earned += gold_delta
    return TaskActionResult(ok=True, character=character, message="已更新", gold_delta=gold_delta)


def apply_task_action(
    character: CharacterState,
    settings: AppSettings,
    task_id: str,
    action: str | TaskAction,
    amount: object = None,
) -> TaskActionResult:
    """Apply ``action`` on ``task_id`` to a copy of ``character``.

    ``character`` itself is never modified; on failure the result carries the
    untouched copy and the error describing why nothing was applied.
    """

    updated = copy.deepcopy(character)
    task = find_task(task_id)
    if task is None:
        return _failure(updated, NotFoundError("未知任务", code="unknown_task"))
    try:
        kind = TaskAction(action)
        count = to_amount(amount)
    except ValueError:
        return _failure(updated, ValidationError("未知的任务操作"))
    except ValidationError as exc:
        return _failure(updated, exc)

    if kind is TaskAction.USE_TICKET:
        if not task.allow_use_ticket or task.ticket_target is None:
            return _failure(updated, TaskNotSupportedError("该任务不支持吃券"))
        ticket = task.ticket_target.counter
        added = max(1, count) * task.ticket_target.increment
        updated.set_ticket(
            ticket, min(updated.get_ticket(ticket) + added, config.TICKET_BONUS_CEILING)
        )
        return TaskActionResult(ok=True, character=updated, message="已增加券次数")

    if kind is TaskAction.SET_COMPLETED:
        total = task.set_completed_total
        if not task.allow_set_completed or not total or len(task.counter_targets) != 1:
            return _failure(updated, TaskNotSupportedError("该任务不支持录入已完成次数"))
        updated.set_counter(task.primary.counter, total - clamp(count, 0, total))
        return TaskActionResult(ok=True, character=updated, message="已更新已完成次数")

    return _complete(updated, settings, task, count)


# ---------------------------------------------------------------------------
# Summaries


def estimate_character_gold(character: CharacterState, settings: AppSettings) -> float:
    """Gold the remaining energy could still earn, transcendence first."""

    activities = character.activities
    budget = character.energy.total // 80
    transcendence_runs = min(
        budget,
        activities.transcendence_remaining + activities.transcendence_ticket_bonus,
        activities.transcendence_boss_remaining,
    )
    budget -= transcendence_runs
    expedition_runs = min(
        budget,
        activities.expedition_remaining + activities.expedition_ticket_bonus,
        activities.expedition_boss_remaining,
    )
    return (
        transcendence_runs * settings.transcendence_gold_per_run
        + expedition_runs * settings.expedition_gold_per_run
    )


def build_character_summary(character: CharacterState, settings: AppSettings) -> Dict[str, object]:
    activities = character.activities
    missions = character.missions
    nightmare = activities.nightmare_remaining + activities.nightmare_ticket_bonus
    awakening = activities.awakening_remaining + activities.awakening_ticket_bonus
    suppression = activities.suppression_remaining + activities.suppression_ticket_bonus
    mini_game = activities.mini_game_remaining + activities.mini_game_ticket_bonus

    pending: List[str] = []
    if missions.daily_remaining > 0:
        pending.append("每日使命未清")
    if missions.weekly_remaining > 0:
        pending.append("每周指令未清")
    if awakening > 0:
        pending.append("觉醒战可打")
    if suppression > 0:
        pending.append("讨伐战可打")
    if nightmare > 0:
        pending.append("恶梦可打")
    if activities.corridor_lower_available > 0:
        pending.append("下层回廊可打")
    if activities.corridor_middle_available > 0:
        pending.append("中层回廊可打")
    if mini_game > 0:
        pending.append("小游戏可打")
    if activities.spirit_invasion_remaining > 0:
        pending.append("精灵入侵可打")

    return {
        "character_id": character.id,
        "name": character.name,
        "can_run_expedition": (
            character.energy.total >= 80
            and activities.expedition_boss_remaining > 0
            and activities.expedition_remaining + activities.expedition_ticket_bonus > 0
        ),
        "estimated_gold_if_clear_energy": estimate_character_gold(character, settings),
        "weekly_gold_earned": character.stats.gold_earned,
        "has_daily_mission_left": missions.daily_remaining > 0,
        "has_weekly_mission_left": missions.weekly_remaining > 0,
        "can_run_nightmare": nightmare > 0,
        "can_run_awakening": awakening > 0,
        "can_run_suppression": suppression > 0,
        "expedition_overflow_warning": (
            activities.expedition_remaining >= settings.expedition_warn_threshold
        ),
        "transcendence_overflow_warning": (
            activities.transcendence_remaining >= settings.transcendence_warn_threshold
        ),
        "pending_labels": pending,
    }
