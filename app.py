import logging
import time
import uuid
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from api import ui_bridge

app = Flask(__name__)

logger = logging.getLogger(__name__)


def _generate_request_metadata() -> tuple[str, str]:
    request_id = str(uuid.uuid4())
    server_time = datetime.now(timezone.utc).isoformat()
    return request_id, server_time


def _enrich_payload(payload: dict, request_id: str, server_time: str) -> dict:
    body = dict(payload or {})
    body["request_id"] = request_id
    body["server_time"] = server_time
    return body


def _json_response(payload: dict, status: int = 200, *, request_id: str, server_time: str):
    body = _enrich_payload(payload, request_id, server_time)
    response = jsonify(body)
    response.status_code = status
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def _status_for(payload: dict) -> int:
    if payload.get("ok", False):
        return 200
    return int(payload.get("http_status") or 400)


def _body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _dispatch(route: str, call):
    """Run a bridge call and log the mutation with its duration."""

    request_id, server_time = _generate_request_metadata()
    start = time.perf_counter()
    response = call()
    status = _status_for(response)
    duration_ms = (time.perf_counter() - start) * 1000.0
    logger.info(
        "Handled route=%s request_id=%s ok=%s error_code=%s status=%s duration_ms=%.2f",
        route,
        request_id,
        response.get("ok"),
        response.get("error_code"),
        status,
        duration_ms,
    )
    return _json_response(response, status, request_id=request_id, server_time=server_time)


@app.errorhandler(OSError)
def handle_storage_error(exc: OSError):
    logger.exception("Storage failure: %s", exc)
    request_id, server_time = _generate_request_metadata()
    payload = {
        "ok": False,
        "error_code": "storage_error",
        "error_message": "数据保存失败",
        "error": "数据保存失败",
        "http_status": 500,
    }
    return _json_response(payload, 500, request_id=request_id, server_time=server_time)


@app.get("/api/state")
def api_state():
    """Return the dashboard state, catching every character up to now."""

    response = ui_bridge.get_state()
    request_id, server_time = _generate_request_metadata()
    return _json_response(
        response, _status_for(response), request_id=request_id, server_time=server_time
    )


@app.post("/api/tasks/action")
def api_task_action():
    payload = _body()
    return _dispatch(
        "/api/tasks/action",
        lambda: ui_bridge.apply_task_action(
            payload.get("character_id"),
            payload.get("task_id"),
            payload.get("action", "complete_once"),
            payload.get("amount"),
        ),
    )


# ---------------------------------------------------------------------------
# Characters


@app.post("/api/characters")
def api_add_character():
    payload = _body()
    return _dispatch(
        "/api/characters",
        lambda: ui_bridge.add_character(payload.get("name", ""), payload.get("account_id")),
    )


@app.delete("/api/characters/<character_id>")
def api_delete_character(character_id: str):
    return _dispatch(
        f"/api/characters/{character_id}",
        lambda: ui_bridge.delete_character(character_id),
    )


@app.post("/api/characters/<character_id>/rename")
def api_rename_character(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/rename",
        lambda: ui_bridge.rename_character(character_id, payload.get("name", "")),
    )


@app.post("/api/characters/<character_id>/select")
def api_select_character(character_id: str):
    return _dispatch(
        f"/api/characters/{character_id}/select",
        lambda: ui_bridge.select_character(character_id),
    )


@app.post("/api/characters/<character_id>/raid-counts")
def api_raid_counts(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/raid-counts",
        lambda: ui_bridge.update_raid_counts(character_id, payload),
    )


@app.post("/api/characters/<character_id>/energy")
def api_energy(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/energy",
        lambda: ui_bridge.update_energy_segments(
            character_id, payload.get("base_current"), payload.get("bonus_current")
        ),
    )


@app.post("/api/characters/<character_id>/corridor")
def api_corridor_completion(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/corridor",
        lambda: ui_bridge.apply_corridor_completion(
            character_id, payload.get("lane"), payload.get("completed")
        ),
    )


@app.post("/api/characters/<character_id>/weekly-completions")
def api_weekly_completions(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/weekly-completions",
        lambda: ui_bridge.update_weekly_completions(
            character_id,
            payload.get("expedition_completed"),
            payload.get("transcendence_completed"),
        ),
    )


@app.post("/api/characters/<character_id>/aode-plan")
def api_aode_plan(character_id: str):
    payload = _body()
    return _dispatch(
        f"/api/characters/{character_id}/aode-plan",
        lambda: ui_bridge.update_aode_plan(character_id, payload),
    )


# ---------------------------------------------------------------------------
# Accounts


@app.post("/api/accounts")
def api_add_account():
    payload = _body()
    return _dispatch(
        "/api/accounts",
        lambda: ui_bridge.add_account(payload.get("name", ""), payload.get("region_tag")),
    )


@app.delete("/api/accounts/<account_id>")
def api_delete_account(account_id: str):
    return _dispatch(
        f"/api/accounts/{account_id}",
        lambda: ui_bridge.delete_account(account_id),
    )


@app.post("/api/accounts/<account_id>/rename")
def api_rename_account(account_id: str):
    payload = _body()
    return _dispatch(
        f"/api/accounts/{account_id}/rename",
        lambda: ui_bridge.rename_account(
            account_id, payload.get("name", ""), payload.get("region_tag")
        ),
    )


@app.post("/api/accounts/<account_id>/select")
def api_select_account(account_id: str):
    return _dispatch(
        f"/api/accounts/{account_id}/select",
        lambda: ui_bridge.select_account(account_id),
    )


@app.post("/api/accounts/<account_id>/artifact")
def api_artifact_status(account_id: str):
    payload = _body()
    return _dispatch(
        f"/api/accounts/{account_id}/artifact",
        lambda: ui_bridge.update_artifact_status(
            account_id,
            payload.get("lower_available"),
            payload.get("lower_next_at"),
            payload.get("middle_available", 0),
            payload.get("middle_next_at"),
        ),
    )


# ---------------------------------------------------------------------------
# Settings, statistics, history and backups


@app.post("/api/settings")
def api_settings():
    payload = _body()
    return _dispatch("/api/settings", lambda: ui_bridge.update_settings(payload))


@app.post("/api/stats/reset-weekly")
def api_reset_weekly():
    return _dispatch("/api/stats/reset-weekly", ui_bridge.reset_weekly_stats)


@app.post("/api/history/undo")
def api_undo():
    payload = _body()
    return _dispatch("/api/history/undo", lambda: ui_bridge.undo_operations(payload.get("steps", 1)))


@app.post("/api/history/clear")
def api_clear_history():
    return _dispatch("/api/history/clear", ui_bridge.clear_history)


@app.post("/api/data/export")
def api_export():
    payload = _body()
    return _dispatch("/api/data/export", lambda: ui_bridge.export_data(payload.get("path")))


@app.post("/api/data/import")
def api_import():
    payload = _body()
    path = payload.get("path")
    if not isinstance(path, str) or not path.strip():
        request_id, server_time = _generate_request_metadata()
        error = {
            "ok": False,
            "error_code": "invalid_input",
            "error_message": "缺少导入文件路径",
            "error": "缺少导入文件路径",
            "http_status": 400,
        }
        return _json_response(error, 400, request_id=request_id, server_time=server_time)
    return _dispatch("/api/data/import", lambda: ui_bridge.import_data(path.strip()))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app.run(debug=True)
