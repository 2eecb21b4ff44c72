"""Centralised configuration for the dashboard backend."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Tuple

# ---------------------------------------------------------------------------
# Persisted document

STATE_VERSION = 4
EXPORT_SCHEMA_VERSION = 1
EXPORT_APP_NAME = "aion2-dashboard"

DEFAULT_DATA_PATH = Path(__file__).resolve().parent.parent / "data" / "dashboard_state.json"


def data_path() -> Path:
    """Return the JSON file backing the store, honouring ``DASHBOARD_DATA_PATH``."""

    raw = os.environ.get("DASHBOARD_DATA_PATH", "").strip()
    return Path(raw) if raw else DEFAULT_DATA_PATH


def reset_timezone_name() -> Optional[str]:
    """IANA zone used for reset boundaries; ``None`` means system local time."""

    raw = os.environ.get("DASHBOARD_TIMEZONE", "").strip()
    return raw or None


# ---------------------------------------------------------------------------
# Energy

ENERGY_TICK_HOURS: Tuple[int, ...] = (0, 3, 6, 9, 12, 15, 18, 21)
ENERGY_PER_TICK = 15
ENERGY_BASE_CAP = 840
ENERGY_BONUS_CAP = 2000
ENERGY_DEFAULT_BASE_START = 840
ENERGY_DEFAULT_BONUS_START = 0

# ---------------------------------------------------------------------------
# Reset schedules (local wall-clock, Python weekday numbering: Monday=0)

DAILY_RESET_HOUR = 5
WEEKLY_RESET_WEEKDAY = 2
WEEKLY_RESET_HOUR = 5

EXPEDITION_SCHEDULE_HOURS: Tuple[int, ...] = (4, 12, 20)
TRANSCENDENCE_SCHEDULE_HOURS: Tuple[int, ...] = (3, 15)

CORRIDOR_REFRESH_WEEKDAYS: Tuple[int, ...] = (1, 3, 5)
CORRIDOR_REFRESH_HOUR = 21

# ---------------------------------------------------------------------------
# Structural maxima

DAILY_MISSION_MAX = 5
WEEKLY_ORDER_MAX = 12
ABYSS_LOWER_MAX = 20
ABYSS_MIDDLE_MAX = 5

NIGHTMARE_MAX = 14
AWAKENING_MAX = 3
SUPPRESSION_MAX = 3
DAILY_DUNGEON_MAX = 7
DAILY_DUNGEON_TICKET_STORED_MAX = 30
EXPEDITION_REWARD_MAX = 21
EXPEDITION_BOSS_MAX = 35
TRANSCENDENCE_REWARD_MAX = 14
TRANSCENDENCE_BOSS_MAX = 28
SANCTUM_RAID_MAX = 4
SANCTUM_BOX_MAX = 2
MINI_GAME_MAX = 14
SPIRIT_INVASION_MAX = 7
CORRIDOR_MAX = 3

TICKET_BONUS_CEILING = 999

# Restock granted per daily reset (missed days compound up to the maximum).
NIGHTMARE_DAILY_GRANT = 2
MINI_GAME_DAILY_GRANT = 2
SPIRIT_INVASION_DAILY_GRANT = 1

# ---------------------------------------------------------------------------
# Weekly shop / transform allowances

AODE_WEEKLY_BASE_PURCHASE_MAX = 4
AODE_WEEKLY_EXTRA_PURCHASE_MAX = 4
AODE_WEEKLY_BASE_CONVERT_MAX = 5
AODE_WEEKLY_EXTRA_CONVERT_MAX = 5

# ---------------------------------------------------------------------------
# Settings

SETTINGS_MAX_CAP = 9999
SETTINGS_MAX_THRESHOLD = 999_999

DEFAULT_SETTINGS: Dict[str, object] = {
    "expedition_gold_per_run": 1_000_000,
    "transcendence_gold_per_run": 1_200_000,
    "expedition_run_cap": None,
    "transcendence_run_cap": None,
    "nightmare_run_cap": None,
    "awakening_run_cap": None,
    "suppression_run_cap": None,
    "expedition_warn_threshold": 18,
    "transcendence_warn_threshold": 12,
}

# ---------------------------------------------------------------------------
# Store limits

OPERATION_HISTORY_LIMIT = 200
MAX_CHARACTERS_PER_ACCOUNT = 8
CORRIDOR_COMPLETION_MAX = 999
WEEKLY_COMPLETION_MAX = 9999

DEFAULT_ACCOUNT_NAME = "账号 {index}"
DEFAULT_CHARACTER_NAME = "Character {index}"
