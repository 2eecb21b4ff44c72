"""Effective caps derived from the optional per-activity overrides."""
from __future__ import annotations

import math
from typing import Dict, Tuple

from .models import AppSettings, CharacterState
from .task_catalog import ACTIVITY_MAX, ActivityCounter

# Activity counter -> settings field holding its optional override.
CAPPED_ACTIVITIES: Tuple[Tuple[ActivityCounter, str], ...] = (
    (ActivityCounter.EXPEDITION, "expedition_run_cap"),
    (ActivityCounter.TRANSCENDENCE, "transcendence_run_cap"),
    (ActivityCounter.NIGHTMARE, "nightmare_run_cap"),
    (ActivityCounter.AWAKENING, "awakening_run_cap"),
    (ActivityCounter.SUPPRESSION, "suppression_run_cap"),
)


def effective_cap(override: object, structural_max: int) -> int:
    """Return the cap to enforce given an optional user ``override``."""

    if isinstance(override, bool) or not isinstance(override, (int, float)):
        return structural_max
    if not math.isfinite(override) or override < 1:
        return structural_max
    return max(1, min(int(math.floor(override)), structural_max))


def capped_counters(settings: AppSettings) -> Dict[ActivityCounter, int]:
    return {
        counter: effective_cap(getattr(settings, field_name), ACTIVITY_MAX[counter])
        for counter, field_name in CAPPED_ACTIVITIES
    }


def cap_for(counter: ActivityCounter, settings: AppSettings | None) -> int:
    if settings is not None:
        for capped, field_name in CAPPED_ACTIVITIES:
            if capped is counter:
                return effective_cap(getattr(settings, field_name), ACTIVITY_MAX[counter])
    return ACTIVITY_MAX[counter]


def apply_configured_caps(character: CharacterState, settings: AppSettings) -> CharacterState:
    """Lower the capped counters of ``character`` in place; never raises them."""

    for counter, cap in capped_counters(settings).items():
        current = character.get_counter(counter)
        if current > cap:
            character.set_counter(counter, cap)
    return character
