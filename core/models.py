"""Data models for characters, accounts and the persisted aggregate."""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from . import config
from .task_catalog import ActivityCounter, Counter, MissionCounter, TicketCounter, empty_completions


def new_id() -> str:
    return str(uuid.uuid4())


def isoformat(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO timestamp, returning ``None`` for anything unusable."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


@dataclass
class EnergyState:
    base_current: int = config.ENERGY_DEFAULT_BASE_START
    bonus_current: int = config.ENERGY_DEFAULT_BONUS_START
    base_cap: int = config.ENERGY_BASE_CAP
    bonus_cap: int = config.ENERGY_BONUS_CAP

    @property
    def total(self) -> int:
        return self.base_current + self.bonus_current


@dataclass
class MissionState:
    daily_remaining: int = config.DAILY_MISSION_MAX
    weekly_remaining: int = config.WEEKLY_ORDER_MAX
    abyss_lower_remaining: int = config.ABYSS_LOWER_MAX
    abyss_middle_remaining: int = config.ABYSS_MIDDLE_MAX


@dataclass
class ActivityState:
    nightmare_remaining: int = config.NIGHTMARE_MAX
    nightmare_ticket_bonus: int = 0
    awakening_remaining: int = config.AWAKENING_MAX
    awakening_ticket_bonus: int = 0
    suppression_remaining: int = config.SUPPRESSION_MAX
    suppression_ticket_bonus: int = 0
    daily_dungeon_remaining: int = config.DAILY_DUNGEON_MAX
    daily_dungeon_ticket_stored: int = 0
    expedition_remaining: int = config.EXPEDITION_REWARD_MAX
    expedition_ticket_bonus: int = 0
    expedition_boss_remaining: int = config.EXPEDITION_BOSS_MAX
    transcendence_remaining: int = config.TRANSCENDENCE_REWARD_MAX
    transcendence_ticket_bonus: int = 0
    transcendence_boss_remaining: int = config.TRANSCENDENCE_BOSS_MAX
    sanctum_raid_remaining: int = config.SANCTUM_RAID_MAX
    sanctum_box_remaining: int = config.SANCTUM_BOX_MAX
    mini_game_remaining: int = config.MINI_GAME_MAX
    mini_game_ticket_bonus: int = 0
    spirit_invasion_remaining: int = config.SPIRIT_INVASION_MAX
    corridor_lower_available: int = 0
    corridor_lower_next_at: Optional[str] = None
    corridor_middle_available: int = 0
    corridor_middle_next_at: Optional[str] = None


@dataclass
class WeeklyStats:
    cycle_started_at: str
    gold_earned: float = 0
    completions: Dict[str, int] = field(default_factory=empty_completions)


@dataclass
class AodePlan:
    shop_aode_purchase_used: int = 0
    shop_daily_dungeon_ticket_purchase_used: int = 0
    transform_aode_used: int = 0


@dataclass
class ProgressMeta:
    last_synced_at: str


@dataclass
class CharacterState:
    id: str
    account_id: str
    name: str
    avatar_seed: str
    energy: EnergyState
    missions: MissionState
    activities: ActivityState
    stats: WeeklyStats
    meta: ProgressMeta
    aode_plan: AodePlan = field(default_factory=AodePlan)
    class_tag: Optional[str] = None

    # ------------------------------------------------------------------
    def get_counter(self, counter: Counter) -> int:
        if isinstance(counter, MissionCounter):
            return int(getattr(self.missions, counter.value))
        return int(getattr(self.activities, ActivityCounter(counter).value))

    def set_counter(self, counter: Counter, value: int) -> None:
        if isinstance(counter, MissionCounter):
            setattr(self.missions, counter.value, int(value))
        else:
            setattr(self.activities, ActivityCounter(counter).value, int(value))

    def get_ticket(self, ticket: TicketCounter) -> int:
        return int(getattr(self.activities, ticket.value))

    def set_ticket(self, ticket: TicketCounter, value: int) -> None:
        setattr(self.activities, ticket.value, int(value))

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class AccountState:
    id: str
    name: str
    region_tag: Optional[str] = None
    extra_aode_character_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class AppSettings:
    expedition_gold_per_run: float = config.DEFAULT_SETTINGS["expedition_gold_per_run"]
    transcendence_gold_per_run: float = config.DEFAULT_SETTINGS["transcendence_gold_per_run"]
    expedition_run_cap: Optional[int] = None
    transcendence_run_cap: Optional[int] = None
    nightmare_run_cap: Optional[int] = None
    awakening_run_cap: Optional[int] = None
    suppression_run_cap: Optional[int] = None
    expedition_warn_threshold: int = config.DEFAULT_SETTINGS["expedition_warn_threshold"]
    transcendence_warn_threshold: int = config.DEFAULT_SETTINGS["transcendence_warn_threshold"]

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class StateSnapshot:
    """The mutable top-level fields of the aggregate, as captured for undo."""

    selected_account_id: Optional[str]
    selected_character_id: Optional[str]
    settings: AppSettings
    accounts: List[AccountState]
    characters: List[CharacterState]

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class OperationLogEntry:
    id: str
    at: str
    action: str
    before: StateSnapshot
    character_id: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class AppState:
    selected_account_id: Optional[str]
    selected_character_id: Optional[str]
    settings: AppSettings
    accounts: List[AccountState]
    characters: List[CharacterState]
    history: List[OperationLogEntry] = field(default_factory=list)
    version: int = config.STATE_VERSION

    # ------------------------------------------------------------------
    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            selected_account_id=self.selected_account_id,
            selected_character_id=self.selected_character_id,
            settings=copy.deepcopy(self.settings),
            accounts=copy.deepcopy(self.accounts),
            characters=copy.deepcopy(self.characters),
        )

    def restore(self, snapshot: StateSnapshot) -> None:
        self.selected_account_id = snapshot.selected_account_id
        self.selected_character_id = snapshot.selected_character_id
        self.settings = copy.deepcopy(snapshot.settings)
        self.accounts = copy.deepcopy(snapshot.accounts)
        self.characters = copy.deepcopy(snapshot.characters)

    def find_character(self, character_id: object) -> Optional[CharacterState]:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    def find_account(self, account_id: object) -> Optional[AccountState]:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None

    def characters_of(self, account_id: str) -> List[CharacterState]:
        return [item for item in self.characters if item.account_id == account_id]

    def to_dict(self) -> Dict[str, object]:
        return {
            "version": self.version,
            "selected_account_id": self.selected_account_id,
            "selected_character_id": self.selected_character_id,
            "settings": self.settings.to_dict(),
            "accounts": [item.to_dict() for item in self.accounts],
            "characters": [item.to_dict() for item in self.characters],
            "history": [item.to_dict() for item in self.history],
        }


# ---------------------------------------------------------------------------
# Factories


def create_default_account(name: str, account_id: str | None = None) -> AccountState:
    return AccountState(id=account_id or new_id(), name=name)


def create_weekly_stats(now_iso: str) -> WeeklyStats:
    return WeeklyStats(cycle_started_at=now_iso)


def create_default_character(
    name: str,
    now_iso: str,
    account_id: str,
    character_id: str | None = None,
) -> CharacterState:
    identifier = character_id or new_id()
    return CharacterState(
        id=identifier,
        account_id=account_id,
        name=name,
        avatar_seed=identifier[:6],
        energy=EnergyState(),
        missions=MissionState(),
        activities=ActivityState(),
        stats=create_weekly_stats(now_iso),
        meta=ProgressMeta(last_synced_at=now_iso),
    )
