"""Snapshot / mutate / diff transaction log with a bounded undo history."""
from __future__ import annotations

import copy
import logging
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from . import config
from .errors import DashboardError, ValidationError
from .models import (
    AppState,
    CharacterState,
    OperationLogEntry,
    StateSnapshot,
    isoformat,
    new_id,
)

logger = logging.getLogger(__name__)

Mutator = Callable[[AppState], Optional[AppState]]
Normaliser = Callable[[AppState], AppState]
Refresher = Callable[[List[CharacterState], AppState], List[CharacterState]]


class TransactionPhase(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    MUTATING = "mutating"
    DIFFING = "diffing"
    COMMITTED = "committed"
    REJECTED = "rejected"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionLog:
    """Runs state mutations as all-or-nothing transactions.

    A mutation works on a deep copy of the aggregate. When it raises a
    :class:`DashboardError` the copy is thrown away and the error re-raised;
    otherwise the copy becomes the new state and, if anything observable
    changed, a history entry holding the previous snapshot is appended.
    """

    def __init__(
        self,
        limit: int = config.OPERATION_HISTORY_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.limit = max(1, int(limit))
        self._clock = clock
        self.phase = TransactionPhase.IDLE
        self.last_changed = False

    # ------------------------------------------------------------------
    def commit(
        self,
        state: AppState,
        mutator: Mutator,
        *,
        action: str,
        character_id: str | None = None,
        description: str | None = None,
        track_history: bool = True,
        normalise: Normaliser | None = None,
    ) -> AppState:
        self.phase = TransactionPhase.SNAPSHOTTING
        before = state.snapshot()
        # History entries are immutable, so they are shared rather than copied.
        draft = copy.deepcopy(replace(state, history=[]))

        self.phase = TransactionPhase.MUTATING
        try:
            result = mutator(draft)
        except DashboardError as exc:
            self.phase = TransactionPhase.REJECTED
            self.last_changed = False
            logger.info("Rejected %s: %s (%s)", action, exc.message, exc.code)
            raise
        if result is not None:
            draft = result
        if normalise is not None:
            draft = normalise(draft)

        self.phase = TransactionPhase.DIFFING
        changed = draft.snapshot() != before
        self.last_changed = changed
        if changed and track_history:
            draft.history = list(state.history)
            self.append(
                draft,
                before,
                action=action,
                character_id=character_id,
                description=description,
            )
            logger.info("Committed %s (history=%s)", action, len(draft.history))
        else:
            draft.history = list(state.history)
            if not changed:
                logger.debug("No-op %s; history untouched", action)

        self.phase = TransactionPhase.COMMITTED
        return draft

    def append(
        self,
        state: AppState,
        before: StateSnapshot,
        *,
        action: str,
        character_id: str | None = None,
        description: str | None = None,
    ) -> OperationLogEntry:
        """Record ``before`` as the undo point of ``action`` on ``state``."""

        entry = OperationLogEntry(
            id=new_id(),
            at=isoformat(self._clock()),
            action=action,
            before=before,
            character_id=character_id,
            description=description,
        )
        state.history = (list(state.history) + [entry])[-self.limit :]
        return entry

    def undo(self, state: AppState, steps: object, refresh: Refresher) -> AppState:
        """Rewind up to ``steps`` history entries, newest first."""

        if isinstance(steps, bool) or not isinstance(steps, int) or steps < 1:
            raise ValidationError("撤销步数必须是正整数")
        count = min(steps, self.limit, len(state.history))
        if count == 0:
            return state

        restored = copy.deepcopy(replace(state, history=[]))
        history = list(state.history)
        for _ in range(count):
            entry = history.pop()
            restored.restore(entry.before)
        restored.history = history
        restored.characters = refresh(restored.characters, restored)
        logger.info("Undid %s operation(s); %s left", count, len(history))
        return restored

    def clear(self, state: AppState) -> AppState:
        if not state.history:
            return state
        cleared = replace(state, history=[])
        logger.info("Cleared %s history entries", len(state.history))
        return cleared
