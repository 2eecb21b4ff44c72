"""Public API between the UI layer and the dashboard store."""
from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional

from core.caps import capped_counters
from core.errors import DashboardError
from core.ledger import build_character_summary, get_task_progress_text, get_task_remaining
from core.models import AppState, CharacterState, OperationLogEntry, isoformat
from core.schedule import DAILY_RESET, ENERGY_TICKS, WEEKLY_RESET, next_boundary, next_corridor_refresh
from core.store import DashboardStore, aode_limits, get_store
from core.task_catalog import TASK_DEFINITIONS


def _success_response(**payload: object) -> Dict[str, object]:
    response: Dict[str, object] = {"ok": True}
    response.update(payload)
    return response


def _error_response(
    code: str, message: str, *, http_status: int | None = None
) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "ok": False,
        "error_code": code,
        "error_message": message,
        "error": message,
    }
    if http_status is not None:
        payload["http_status"] = int(http_status)
    return payload


# ---------------------------------------------------------------------------
# Payload builders


def _history_payload(entry: OperationLogEntry) -> Dict[str, object]:
    return {
        "id": entry.id,
        "at": entry.at,
        "action": entry.action,
        "character_id": entry.character_id,
        "description": entry.description,
    }


def _task_rows(state: AppState, character: CharacterState) -> list:
    rows = []
    for task in TASK_DEFINITIONS:
        rows.append(
            {
                "id": task.id,
                "title": task.title,
                "category": task.category,
                "energy_cost": task.energy_cost,
                "remaining": get_task_remaining(character, task),
                "progress": get_task_progress_text(character, task, state.settings),
                "allow_complete": task.allow_complete,
                "allow_use_ticket": task.allow_use_ticket,
                "allow_set_completed": task.allow_set_completed,
                "set_completed_total": task.set_completed_total,
            }
        )
    return rows


def _character_payload(state: AppState, character: CharacterState) -> Dict[str, object]:
    payload = character.to_dict()
    payload["energy"]["total"] = character.energy.total
    payload["summary"] = build_character_summary(character, state.settings)
    payload["tasks"] = _task_rows(state, character)
    payload["aode_limits"] = aode_limits(state, character)
    return payload


def _state_payload(store: DashboardStore, state: AppState) -> Dict[str, object]:
    now = store.now()
    snapshot = {
        "version": state.version,
        "selected_account_id": state.selected_account_id,
        "selected_character_id": state.selected_character_id,
        "settings": state.settings.to_dict(),
        "accounts": [account.to_dict() for account in state.accounts],
        "characters": [_character_payload(state, item) for item in state.characters],
        "history": [_history_payload(entry) for entry in reversed(state.history)],
    }
    return {
        "state": snapshot,
        "effective_caps": {
            counter.value: cap for counter, cap in capped_counters(state.settings).items()
        },
        "next_resets": {
            "energy": isoformat(next_boundary(now, ENERGY_TICKS, store.tz)),
            "daily": isoformat(next_boundary(now, DAILY_RESET, store.tz)),
            "weekly": isoformat(next_boundary(now, WEEKLY_RESET, store.tz)),
            "corridor": isoformat(next_corridor_refresh(now, store.tz)),
        },
        "history_size": len(state.history),
    }


def _run(operation: Callable[[DashboardStore], AppState], **extra: object) -> Dict[str, object]:
    store = get_store()
    try:
        state = operation(store)
    except DashboardError as exc:
        error = _error_response(exc.code, exc.message, http_status=exc.http_status)
        error.update(store.response_metadata())
        return error
    payload = _state_payload(store, state)
    payload.update(extra)
    payload.update(store.response_metadata())
    payload["http_status"] = 200
    return _success_response(**payload)


# ---------------------------------------------------------------------------
# Reads


def get_state() -> Dict[str, object]:
    """Return the full dashboard state with every character caught up."""

    return _run(lambda store: store.get_state())


# ---------------------------------------------------------------------------
# Character progress


def apply_task_action(
    character_id: str, task_id: str, action: str = "complete_once", amount: object = None
) -> Dict[str, object]:
    return _run(lambda store: store.apply_task_action(character_id, task_id, action, amount))


def update_raid_counts(character_id: str, counts: Mapping[str, object]) -> Dict[str, object]:
    return _run(lambda store: store.update_raid_counts(character_id, counts))


def update_energy_segments(
    character_id: str, base_current: object, bonus_current: object
) -> Dict[str, object]:
    return _run(lambda store: store.update_energy_segments(character_id, base_current, bonus_current))


def update_artifact_status(
    account_id: str,
    lower_available: object,
    lower_next_at: object = None,
    middle_available: object = 0,
    middle_next_at: object = None,
) -> Dict[str, object]:
    return _run(
        lambda store: store.update_artifact_status(
            account_id, lower_available, lower_next_at, middle_available, middle_next_at
        )
    )


def apply_corridor_completion(character_id: str, lane: str, completed: object) -> Dict[str, object]:
    return _run(lambda store: store.apply_corridor_completion(character_id, lane, completed))


def update_weekly_completions(
    character_id: str,
    expedition_completed: object = None,
    transcendence_completed: object = None,
) -> Dict[str, object]:
    return _run(
        lambda store: store.update_weekly_completions(
            character_id, expedition_completed, transcendence_completed
        )
    )


def update_aode_plan(character_id: str, changes: Mapping[str, object]) -> Dict[str, object]:
    return _run(lambda store: store.update_aode_plan(character_id, changes))


def reset_weekly_stats() -> Dict[str, object]:
    return _run(lambda store: store.reset_weekly_stats())


def update_settings(changes: Mapping[str, object]) -> Dict[str, object]:
    return _run(lambda store: store.update_settings(changes))


# ---------------------------------------------------------------------------
# Accounts and characters


def add_account(name: str = "", region_tag: Optional[str] = None) -> Dict[str, object]:
    return _run(lambda store: store.add_account(name, region_tag))


def rename_account(account_id: str, name: str, region_tag: Optional[str] = None) -> Dict[str, object]:
    return _run(lambda store: store.rename_account(account_id, name, region_tag))


def delete_account(account_id: str) -> Dict[str, object]:
    return _run(lambda store: store.delete_account(account_id))


def select_account(account_id: str) -> Dict[str, object]:
    return _run(lambda store: store.select_account(account_id))


def add_character(name: str = "", account_id: Optional[str] = None) -> Dict[str, object]:
    return _run(lambda store: store.add_character(name, account_id))


def rename_character(character_id: str, name: str) -> Dict[str, object]:
    return _run(lambda store: store.rename_character(character_id, name))


def delete_character(character_id: str) -> Dict[str, object]:
    return _run(lambda store: store.delete_character(character_id))


def select_character(character_id: str) -> Dict[str, object]:
    return _run(lambda store: store.select_character(character_id))


# ---------------------------------------------------------------------------
# History and backups


def undo_operations(steps: object = 1) -> Dict[str, object]:
    return _run(lambda store: store.undo_operations(steps))


def clear_history() -> Dict[str, object]:
    return _run(lambda store: store.clear_history())


def export_data(path: Optional[str] = None) -> Dict[str, object]:
    store = get_store()
    try:
        target = store.export_data(path)
    except DashboardError as exc:
        error = _error_response(exc.code, exc.message, http_status=exc.http_status)
        error.update(store.response_metadata())
        return error
    payload: Dict[str, object] = {"path": str(target), "http_status": 200}
    payload.update(store.response_metadata())
    return _success_response(**payload)


def import_data(path: str) -> Dict[str, object]:
    return _run(lambda store: store.import_data(path), path=str(path))
