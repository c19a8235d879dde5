from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable

from flask import Flask, Response, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .catalog import BuiltinDefaultReportProvider, default_data_sources, palette
from .codec import dumps, encode_value, loads
from .controller import CommandResult, ConfigurationController
from .db import SqliteChangeNotifier, SqliteKeyValueStore
from .models import ChartWidget, ReportConfiguration, Scope, WidgetPresentation
from .persistence import PersistenceGateway, StorageFailure
from .placement import PlacementError, can_place, list_valid_targets
from .sync import NotificationKind, SyncBroadcaster, deletion_notification, notification_for
from .validation import chart_requirements, compatible_chart_types, validate


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("report_configurator").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": error.description or "invalid request payload"}), 400
        return error

    @app.errorhandler(PlacementError)
    def handle_placement_error(error: PlacementError) -> Any:
        app.logger.info("placement_rejected", extra={"path": request.path, "reason": error.reason})
        return jsonify({"error": error.reason}), 409

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _tagged_body() -> Any:
    """Request body decoded with tagged dates revived."""
    try:
        return loads(request.get_data(as_text=True) or "{}")
    except ValueError as exc:
        raise BadRequest(f"invalid JSON payload: {exc}") from exc


def _require(body: dict[str, Any], key: str) -> Any:
    if key not in body or body[key] is None:
        raise BadRequest(f"{key} is required")
    return body[key]


def _int_field(body: dict[str, Any], key: str) -> int:
    value = _require(body, key)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"{key} must be an integer") from exc


def _scope_from_label(label: str) -> Scope:
    try:
        return Scope.from_label(label)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc


def _configuration_from(payload: Any) -> ReportConfiguration:
    try:
        return ReportConfiguration.from_dict(payload)
    except (ValueError, KeyError, TypeError) as exc:
        raise BadRequest(f"invalid configuration: {exc}") from exc


def _widget_from(body: dict[str, Any], configuration: ReportConfiguration) -> ChartWidget:
    widget_id = body.get("widget_id")
    if widget_id:
        for widget in configuration.all_widgets():
            if widget.id == widget_id:
                return widget
        abort(404, description=f"widget not found: {widget_id}")
    try:
        return ChartWidget.from_dict(_require(body, "widget"))
    except (ValueError, KeyError, TypeError) as exc:
        raise BadRequest(f"invalid widget: {exc}") from exc


def _tagged_json(payload: Any, status: int = 200) -> tuple[Response, int]:
    return jsonify(encode_value(payload)), status


def _command_status(result: CommandResult) -> int:
    if result.success:
        return 200
    if result.error is not None:
        return 409
    return 422


SessionOperation = Callable[[ConfigurationController, dict[str, Any]], CommandResult]


def _presentation_from(body: dict[str, Any]) -> WidgetPresentation | None:
    payload = body.get("presentation")
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise BadRequest("presentation must be an object")
    try:
        return WidgetPresentation.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"invalid presentation: {exc}") from exc


SESSION_OPERATIONS: dict[str, SessionOperation] = {
    "drop_from_palette": lambda controller, body: controller.drop_from_palette(
        str(_require(body, "chart_type")),
        str(_require(body, "data_source_id")),
        str(_require(body, "region_id")),
        _int_field(body, "column_index"),
        body.get("widget_id"),
    ),
    "move_widget": lambda controller, body: controller.move_widget(
        str(_require(body, "widget_id")),
        str(_require(body, "target_region_id")),
        _int_field(body, "column_index"),
    ),
    "swap_widgets": lambda controller, body: controller.swap_widgets(
        str(_require(body, "widget_id_a")),
        str(_require(body, "widget_id_b")),
    ),
    "remove_widget": lambda controller, body: controller.remove_widget(str(_require(body, "widget_id"))),
    "reorder_widgets": lambda controller, body: controller.reorder_widgets(
        str(_require(body, "region_id")),
        [str(item) for item in _require(body, "widget_ids")],
    ),
    "add_region": lambda controller, body: controller.add_region(_int_field(body, "column_count"), body.get("region_id")),
    "remove_region": lambda controller, body: controller.remove_region(str(_require(body, "region_id"))),
    "reorder_regions": lambda controller, body: controller.reorder_regions(
        [str(item) for item in _require(body, "region_ids")]
    ),
    "update_widget": lambda controller, body: controller.update_widget(
        str(_require(body, "widget_id")),
        presentation=_presentation_from(body),
        data_source_id=body.get("data_source_id"),
        chart_type=body.get("chart_type"),
    ),
    "rename": lambda controller, body: controller.rename(str(_require(body, "name"))),
    "set_active": lambda controller, body: controller.set_active(bool(_require(body, "is_active"))),
    "save_draft": lambda controller, body: controller.save_draft(),
    "restore_draft": lambda controller, body: controller.restore_draft(),
}


def create_report_builder_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "report-builder")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("REPORTS_DB_PATH", "./reports.db")
    app.config["AUTOSAVE_DRAFTS"] = os.environ.get("REPORTS_AUTOSAVE_DRAFTS", "1") != "0"

    data_sources = default_data_sources()
    store = SqliteKeyValueStore(_db_path(app))
    notifier = SqliteChangeNotifier(_db_path(app))
    gateway = PersistenceGateway(store, data_sources)
    broadcaster = SyncBroadcaster(notifier, cache_store=store)
    broadcaster.init()
    default_provider = BuiltinDefaultReportProvider(data_sources)
    sessions: dict[str, ConfigurationController] = {}

    app.extensions["report_configurator"] = {
        "gateway": gateway,
        "broadcaster": broadcaster,
        "notifier": notifier,
        "sessions": sessions,
    }

    def _session(session_id: str) -> ConfigurationController:
        controller = sessions.get(session_id)
        if controller is None:
            abort(404, description=f"session not found: {session_id}")
        return controller

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "service": app.config["APP_NAME"]})

    @app.get("/api/data-sources")
    def list_data_sources() -> Any:
        payload = [
            {**source.to_dict(), "compatible_chart_types": compatible_chart_types(source)}
            for source in data_sources
        ]
        return jsonify({"data_sources": payload})

    @app.get("/api/chart-types")
    def list_chart_types() -> Any:
        payload = []
        for item in palette():
            requirements = chart_requirements(item["chart_type"]) or ()
            payload.append({**item, "requirements": [requirement.describe() for requirement in requirements]})
        return jsonify({"chart_types": payload})

    @app.post("/api/validate")
    def validate_configuration() -> Any:
        configuration = _configuration_from(_tagged_body())
        return jsonify(validate(configuration, data_sources).to_dict())

    @app.post("/api/placement/can-place")
    def check_placement() -> Any:
        body = _tagged_body()
        if not isinstance(body, dict):
            raise BadRequest("request body must be a JSON object")
        configuration = _configuration_from(_require(body, "configuration"))
        widget = _widget_from(body, configuration)
        region_id = str(_require(body, "region_id"))
        region = configuration.region(region_id)
        if region is None:
            abort(404, description=f"region not found: {region_id}")
        check = can_place(widget, region, _int_field(body, "column_index"), configuration)
        return jsonify({"allowed": check.allowed, "reason": check.reason})

    @app.post("/api/placement/targets")
    def placement_targets() -> Any:
        body = _tagged_body()
        if not isinstance(body, dict):
            raise BadRequest("request body must be a JSON object")
        configuration = _configuration_from(_require(body, "configuration"))
        widget = _widget_from(body, configuration)
        targets = [
            {"region_id": target.region_id, "column_index": target.column_index, "label": target.label}
            for target in list_valid_targets(widget, configuration)
        ]
        return jsonify({"targets": targets})

    @app.get("/api/reports")
    def list_reports() -> Any:
        entries = [entry.to_dict() for entry in gateway.list_configurations()]
        return _tagged_json({"reports": entries})

    @app.get("/api/reports/<label>")
    def get_report(label: str) -> Any:
        scope = _scope_from_label(label)
        cache_key = f"report_cache:{scope.label}"
        cached = store.get(cache_key)
        if cached is not None:
            return Response(cached, mimetype="application/json", headers={"X-Report-Cache": "hit"})

        resolved = gateway.resolve(scope)
        configuration = resolved.configuration or default_provider.default_report(scope)
        payload = {
            "scope": scope.label,
            "source": resolved.source,
            "resolved_scope": resolved.scope.label if resolved.scope else None,
            "failures": resolved.failures,
            "configuration": configuration.to_dict(),
        }
        text = dumps(payload)
        if not store.set(cache_key, text):
            app.logger.warning("report_cache_write_failed", extra={"scope": scope.label})
        return Response(text, mimetype="application/json", headers={"X-Report-Cache": "miss"})

    @app.get("/api/configurations/<label>")
    def get_configuration(label: str) -> Any:
        loaded = gateway.load(_scope_from_label(label))
        if not loaded.success or loaded.configuration is None:
            status = 404 if loaded.failure == StorageFailure.NOT_FOUND else 422
            return jsonify({"error": loaded.message, "failure": loaded.failure.value if loaded.failure else None}), status
        return _tagged_json({"configuration": loaded.configuration.to_dict()})

    @app.put("/api/configurations/<label>")
    def put_configuration(label: str) -> Any:
        scope = _scope_from_label(label)
        configuration = _configuration_from(_tagged_body())
        configuration.owner_scope = scope
        result = gateway.save(configuration)
        if not result.success or result.configuration is None:
            status = 503 if result.failure == StorageFailure.WRITE_FAILED else 422
            return jsonify(result.to_dict()), status
        kind = NotificationKind.CREATED if result.created else NotificationKind.UPDATED
        broadcaster.announce(notification_for(result.configuration, kind))
        broadcaster.invalidate(scope)
        return _tagged_json({**result.to_dict(), "configuration": result.configuration.to_dict()})

    @app.delete("/api/configurations/<label>")
    def delete_configuration(label: str) -> Any:
        scope = _scope_from_label(label)
        result = gateway.delete(scope)
        if not result.success:
            status = 404 if result.failure == StorageFailure.NOT_FOUND else 503
            return jsonify(result.to_dict()), status
        broadcaster.announce(deletion_notification(scope))
        broadcaster.invalidate(scope)
        return jsonify(result.to_dict())

    @app.post("/api/configurations/<label>/duplicate")
    def duplicate_configuration(label: str) -> Any:
        scope = _scope_from_label(label)
        body = _json_body()
        client_id = str(_require(body, "client_id")).strip()
        if not client_id:
            raise BadRequest("client_id is required")
        result = gateway.duplicate(scope, client_id)
        if not result.success or result.configuration is None:
            status = 404 if result.failure == StorageFailure.NOT_FOUND else 422
            return jsonify(result.to_dict()), status
        broadcaster.announce(notification_for(result.configuration, NotificationKind.CREATED))
        broadcaster.invalidate(result.configuration.owner_scope)
        return _tagged_json({**result.to_dict(), "configuration": result.configuration.to_dict()}, 201)

    @app.get("/api/export")
    def export_configurations() -> Any:
        return Response(gateway.export_all(), mimetype="application/json")

    @app.post("/api/import")
    def import_configurations() -> Any:
        result = gateway.import_all(request.get_data(as_text=True))
        for entry in gateway.list_configurations():
            broadcaster.invalidate(entry.scope)
        payload = {"success": result.success, "message": result.message, "imported": result.imported, "errors": result.errors}
        return jsonify(payload), 200 if result.success else 422

    @app.post("/api/sessions/<session_id>/load")
    def load_session(session_id: str) -> Any:
        body = _json_body()
        scope = _scope_from_label(str(body.get("scope") or "global"))
        controller = sessions.get(session_id)
        if controller is None:
            controller = ConfigurationController(
                gateway,
                broadcaster,
                data_sources=data_sources,
                default_provider=default_provider,
                autosave_drafts=app.config["AUTOSAVE_DRAFTS"],
                session_id=session_id,
            )
            sessions[session_id] = controller
        if body.get("empty"):
            result = controller.create_empty(scope, body.get("name"))
        else:
            result = controller.load_for_scope(scope)
        return _tagged_json({"result": result.to_dict(), "session": controller.snapshot()}, _command_status(result))

    @app.post("/api/sessions/<session_id>/operations")
    def apply_session_operation(session_id: str) -> Any:
        controller = _session(session_id)
        body = _json_body()
        name = str(_require(body, "op"))
        operation = SESSION_OPERATIONS.get(name)
        if operation is None:
            raise BadRequest(f"unknown operation: {name}")
        result = operation(controller, body)
        return _tagged_json({"result": result.to_dict(), "session": controller.snapshot()}, _command_status(result))

    @app.post("/api/sessions/<session_id>/save")
    def save_session(session_id: str) -> Any:
        controller = _session(session_id)
        result = controller.save()
        return _tagged_json({"result": result.to_dict(), "session": controller.snapshot()}, _command_status(result))

    @app.get("/api/sessions/<session_id>")
    def get_session(session_id: str) -> Any:
        return _tagged_json({"session": _session(session_id).snapshot()})

    @app.delete("/api/sessions/<session_id>")
    def close_session(session_id: str) -> Any:
        controller = _session(session_id)
        controller.close()
        sessions.pop(session_id, None)
        return jsonify({"status": "closed"})

    @app.post("/api/sync/poll")
    def poll_sync() -> Any:
        delivered = notifier.poll()
        return jsonify({"delivered": delivered, "status": broadcaster.status()})

    return app
