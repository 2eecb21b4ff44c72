"""Static catalogue of trackable tasks and the counters they touch."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from . import config


class MissionCounter(str, Enum):
    """Counters stored in ``CharacterState.missions``."""

    DAILY = "daily_remaining"
    WEEKLY = "weekly_remaining"
    ABYSS_LOWER = "abyss_lower_remaining"
    ABYSS_MIDDLE = "abyss_middle_remaining"


class ActivityCounter(str, Enum):
    """Attempt counters stored in ``CharacterState.activities``."""

    NIGHTMARE = "nightmare_remaining"
    AWAKENING = "awakening_remaining"
    SUPPRESSION = "suppression_remaining"
    DAILY_DUNGEON = "daily_dungeon_remaining"
    EXPEDITION = "expedition_remaining"
    EXPEDITION_BOSS = "expedition_boss_remaining"
    TRANSCENDENCE = "transcendence_remaining"
    TRANSCENDENCE_BOSS = "transcendence_boss_remaining"
    SANCTUM_RAID = "sanctum_raid_remaining"
    SANCTUM_BOX = "sanctum_box_remaining"
    MINI_GAME = "mini_game_remaining"
    SPIRIT_INVASION = "spirit_invasion_remaining"
    CORRIDOR_LOWER = "corridor_lower_available"
    CORRIDOR_MIDDLE = "corridor_middle_available"


class TicketCounter(str, Enum):
    """Ticket bonus counters stacked on top of an activity counter."""

    NIGHTMARE = "nightmare_ticket_bonus"
    AWAKENING = "awakening_ticket_bonus"
    SUPPRESSION = "suppression_ticket_bonus"
    EXPEDITION = "expedition_ticket_bonus"
    TRANSCENDENCE = "transcendence_ticket_bonus"
    MINI_GAME = "mini_game_ticket_bonus"


Counter = Union[MissionCounter, ActivityCounter]


MISSION_MAX: Dict[MissionCounter, int] = {
    MissionCounter.DAILY: config.DAILY_MISSION_MAX,
    MissionCounter.WEEKLY: config.WEEKLY_ORDER_MAX,
    MissionCounter.ABYSS_LOWER: config.ABYSS_LOWER_MAX,
    MissionCounter.ABYSS_MIDDLE: config.ABYSS_MIDDLE_MAX,
}

ACTIVITY_MAX: Dict[ActivityCounter, int] = {
    ActivityCounter.NIGHTMARE: config.NIGHTMARE_MAX,
    ActivityCounter.AWAKENING: config.AWAKENING_MAX,
    ActivityCounter.SUPPRESSION: config.SUPPRESSION_MAX,
    ActivityCounter.DAILY_DUNGEON: config.DAILY_DUNGEON_MAX,
    ActivityCounter.EXPEDITION: config.EXPEDITION_REWARD_MAX,
    ActivityCounter.EXPEDITION_BOSS: config.EXPEDITION_BOSS_MAX,
    ActivityCounter.TRANSCENDENCE: config.TRANSCENDENCE_REWARD_MAX,
    ActivityCounter.TRANSCENDENCE_BOSS: config.TRANSCENDENCE_BOSS_MAX,
    ActivityCounter.SANCTUM_RAID: config.SANCTUM_RAID_MAX,
    ActivityCounter.SANCTUM_BOX: config.SANCTUM_BOX_MAX,
    ActivityCounter.MINI_GAME: config.MINI_GAME_MAX,
    ActivityCounter.SPIRIT_INVASION: config.SPIRIT_INVASION_MAX,
    ActivityCounter.CORRIDOR_LOWER: config.CORRIDOR_MAX,
    ActivityCounter.CORRIDOR_MIDDLE: config.CORRIDOR_MAX,
}

# Counters restored to their maximum by the weekly reset.
WEEKLY_MISSIONS: Tuple[MissionCounter, ...] = (
    MissionCounter.WEEKLY,
    MissionCounter.ABYSS_LOWER,
    MissionCounter.ABYSS_MIDDLE,
)
WEEKLY_ACTIVITIES: Tuple[ActivityCounter, ...] = (
    ActivityCounter.AWAKENING,
    ActivityCounter.SUPPRESSION,
    ActivityCounter.DAILY_DUNGEON,
    ActivityCounter.SANCTUM_RAID,
    ActivityCounter.SANCTUM_BOX,
    ActivityCounter.EXPEDITION_BOSS,
    ActivityCounter.TRANSCENDENCE_BOSS,
)

# Counters restocked (not reset) by each daily reset.
DAILY_RESTOCK: Dict[ActivityCounter, int] = {
    ActivityCounter.NIGHTMARE: config.NIGHTMARE_DAILY_GRANT,
    ActivityCounter.MINI_GAME: config.MINI_GAME_DAILY_GRANT,
    ActivityCounter.SPIRIT_INVASION: config.SPIRIT_INVASION_DAILY_GRANT,
}


class TaskAction(str, Enum):
    COMPLETE_ONCE = "complete_once"
    USE_TICKET = "use_ticket"
    SET_COMPLETED = "set_completed"


@dataclass(frozen=True)
class CounterTarget:
    """Counter decremented by each completion of a task."""

    counter: Counter
    decrement: int = 1


@dataclass(frozen=True)
class TicketTarget:
    """Ticket bonus counter a task can stack extra attempts on."""

    counter: TicketCounter
    increment: int = 1


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    title: str
    category: str
    energy_cost: int
    counter_targets: Tuple[CounterTarget, ...]
    gold_reward: int = 0
    gold_reward_setting: Optional[str] = None
    allow_complete: bool = True
    allow_use_ticket: bool = False
    allow_set_completed: bool = False
    set_completed_total: Optional[int] = None
    ticket_target: Optional[TicketTarget] = None
    consume_ticket_first: bool = False
    base_cap_display: Optional[int] = None
    use_bonus_display: bool = False

    @property
    def primary(self) -> CounterTarget:
        return self.counter_targets[0]

    @property
    def secondary(self) -> Tuple[CounterTarget, ...]:
        return self.counter_targets[1:]


def _task(task_id: str, title: str, category: str, *targets: Counter, **options) -> TaskDefinition:
    return TaskDefinition(
        id=task_id,
        title=title,
        category=category,
        energy_cost=int(options.pop("energy_cost", 0)),
        counter_targets=tuple(CounterTarget(target) for target in targets),
        **options,
    )


TASK_DEFINITIONS: Tuple[TaskDefinition, ...] = (
    _task(
        "expedition",
        "远征副本",
        "副本",
        ActivityCounter.EXPEDITION,
        ActivityCounter.EXPEDITION_BOSS,
        energy_cost=80,
        gold_reward=1_000_000,
        gold_reward_setting="expedition_gold_per_run",
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.EXPEDITION),
        base_cap_display=config.EXPEDITION_REWARD_MAX,
        use_bonus_display=True,
    ),
    _task(
        "transcendence",
        "超越副本",
        "副本",
        ActivityCounter.TRANSCENDENCE,
        ActivityCounter.TRANSCENDENCE_BOSS,
        energy_cost=80,
        gold_reward=1_200_000,
        gold_reward_setting="transcendence_gold_per_run",
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.TRANSCENDENCE),
        base_cap_display=config.TRANSCENDENCE_REWARD_MAX,
        use_bonus_display=True,
    ),
    _task(
        "sanctum_box",
        "圣域开箱",
        "副本",
        ActivityCounter.SANCTUM_BOX,
        energy_cost=40,
        base_cap_display=config.SANCTUM_BOX_MAX,
    ),
    _task(
        "sanctum_raid",
        "圣域",
        "副本",
        ActivityCounter.SANCTUM_RAID,
        base_cap_display=config.SANCTUM_RAID_MAX,
    ),
    _task(
        "daily_dungeon",
        "每日副本",
        "副本",
        ActivityCounter.DAILY_DUNGEON,
        base_cap_display=config.DAILY_DUNGEON_MAX,
    ),
    _task(
        "daily_mission",
        "每日使命",
        "使命",
        MissionCounter.DAILY,
        allow_set_completed=True,
        set_completed_total=config.DAILY_MISSION_MAX,
        base_cap_display=config.DAILY_MISSION_MAX,
    ),
    _task(
        "weekly_order",
        "每周指令书",
        "使命",
        MissionCounter.WEEKLY,
        allow_set_completed=True,
        set_completed_total=config.WEEKLY_ORDER_MAX,
        base_cap_display=config.WEEKLY_ORDER_MAX,
    ),
    _task(
        "abyss_lower",
        "深渊指令书(下层)",
        "使命",
        MissionCounter.ABYSS_LOWER,
        allow_set_completed=True,
        set_completed_total=config.ABYSS_LOWER_MAX,
        base_cap_display=config.ABYSS_LOWER_MAX,
    ),
    _task(
        "abyss_middle",
        "深渊指令书(中层)",
        "使命",
        MissionCounter.ABYSS_MIDDLE,
        allow_set_completed=True,
        set_completed_total=config.ABYSS_MIDDLE_MAX,
        base_cap_display=config.ABYSS_MIDDLE_MAX,
    ),
    _task(
        "nightmare",
        "恶梦",
        "周常",
        ActivityCounter.NIGHTMARE,
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.NIGHTMARE),
        consume_ticket_first=True,
        base_cap_display=config.NIGHTMARE_MAX,
        use_bonus_display=True,
    ),
    _task(
        "awakening",
        "觉醒战",
        "周常",
        ActivityCounter.AWAKENING,
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.AWAKENING),
        consume_ticket_first=True,
        base_cap_display=config.AWAKENING_MAX,
        use_bonus_display=True,
    ),
    _task(
        "suppression",
        "讨伐战",
        "周常",
        ActivityCounter.SUPPRESSION,
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.SUPPRESSION),
        consume_ticket_first=True,
        base_cap_display=config.SUPPRESSION_MAX,
        use_bonus_display=True,
    ),
    _task(
        "mini_game",
        "小游戏",
        "周常",
        ActivityCounter.MINI_GAME,
        allow_use_ticket=True,
        ticket_target=TicketTarget(TicketCounter.MINI_GAME),
        consume_ticket_first=True,
        base_cap_display=config.MINI_GAME_MAX,
        use_bonus_display=True,
    ),
    _task(
        "spirit_invasion",
        "精灵入侵",
        "周常",
        ActivityCounter.SPIRIT_INVASION,
        base_cap_display=config.SPIRIT_INVASION_MAX,
    ),
)

TASKS_BY_ID: Dict[str, TaskDefinition] = {task.id: task for task in TASK_DEFINITIONS}
TASK_IDS: Tuple[str, ...] = tuple(TASKS_BY_ID)


def find_task(task_id: str) -> Optional[TaskDefinition]:
    if not isinstance(task_id, str):
        return None
    return TASKS_BY_ID.get(task_id.strip().lower())


def empty_completions() -> Dict[str, int]:
    return {task_id: 0 for task_id in TASK_IDS}


__all__ = [
    "ACTIVITY_MAX",
    "ActivityCounter",
    "Counter",
    "CounterTarget",
    "DAILY_RESTOCK",
    "MISSION_MAX",
    "MissionCounter",
    "TASK_DEFINITIONS",
    "TASK_IDS",
    "TASKS_BY_ID",
    "TaskAction",
    "TaskDefinition",
    "TicketCounter",
    "TicketTarget",
    "WEEKLY_ACTIVITIES",
    "WEEKLY_MISSIONS",
    "empty_completions",
    "find_task",
]
