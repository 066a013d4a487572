from __future__ import annotations

import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Any

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .db import connect, fetch_form, init_db, insert_form, insert_submission, list_submissions
from .engine import FormEngine
from .schema import SchemaError


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("formrules").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/") or request.path == "/healthz"


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(SchemaError)
    def handle_schema_error(error: SchemaError) -> Any:
        app.logger.warning("schema_rejected", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

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
    payload = request.get_json(force=True, silent=False)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise BadRequest("expected a JSON object")
    return payload


def _values_from(payload: dict[str, Any], key: str = "values") -> dict[str, Any]:
    values = payload.get(key) or {}
    if not isinstance(values, dict):
        raise BadRequest(f"'{key}' must be an object")
    return values


def create_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "formrules")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("FORM_DB_PATH", "./forms.db")
    init_db(_db_path(app))

    app.config["ENGINE_CACHE_SIZE"] = int(os.environ.get("FORM_ENGINE_CACHE_SIZE", "64"))
    engines: OrderedDict[str, FormEngine] = OrderedDict()
    app.extensions["formrules_engines"] = engines

    def _cache_engine(key: str, engine: FormEngine) -> None:
        engines[key] = engine
        engines.move_to_end(key)
        while len(engines) > app.config["ENGINE_CACHE_SIZE"]:
            engines.popitem(last=False)

    def _engine_for(form: dict[str, Any]) -> FormEngine:
        key = form["fingerprint"]
        engine = engines.get(key)
        if engine is None:
            engine = FormEngine.from_schema(form["schema"])
        _cache_engine(key, engine)
        return engine

    def _load_form(form_id: int) -> dict[str, Any]:
        conn = connect(_db_path(app))
        try:
            form = fetch_form(conn, form_id)
        finally:
            conn.close()
        if form is None:
            abort(404, description=f"form {form_id} not found")
        return form

    def _describe(form: dict[str, Any], engine: FormEngine) -> dict[str, Any]:
        return {
            "id": form["id"],
            "name": form["name"],
            "schema": form["schema"],
            "watch_fields": engine.watch_fields,
            "default_values": engine.initial_values(),
        }

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/forms")
    def create_form() -> Any:
        payload = _json_body()
        name = str(payload.get("name") or "").strip()
        schema = payload.get("schema")
        if not name:
            raise BadRequest("form name is required")
        if schema is None:
            raise BadRequest("form schema is required")

        engine = FormEngine.from_schema(schema)
        conn = connect(_db_path(app))
        try:
            with conn:
                form_id = insert_form(conn, name, schema)
        finally:
            conn.close()
        form = _load_form(form_id)
        _cache_engine(form["fingerprint"], engine)

        app.logger.info("form_saved", extra={"form_id": form_id, "form_name": name, "field_count": len(engine.parsed.all_fields)})
        return jsonify(_describe(form, engine)), 201

    @app.get("/api/forms/<int:form_id>")
    def get_form(form_id: int) -> Any:
        form = _load_form(form_id)
        return jsonify(_describe(form, _engine_for(form)))

    @app.post("/api/forms/<int:form_id>/state")
    def form_state(form_id: int) -> Any:
        engine = _engine_for(_load_form(form_id))
        payload = _json_body()
        previous = payload.get("previous")
        if previous is not None and not isinstance(previous, dict):
            raise BadRequest("'previous' must be an object")
        result = engine.recompute(
            previous,
            _values_from(payload),
            global_disabled=bool(payload.get("disabled", False)),
            global_readonly=bool(payload.get("readonly", False)),
        )
        return jsonify(result.to_dict())

    @app.post("/api/forms/<int:form_id>/validate")
    def validate_form(form_id: int) -> Any:
        engine = _engine_for(_load_form(form_id))
        result = engine.validate(_values_from(_json_body()))
        return jsonify({"success": result.success, "errors": result.errors})

    @app.post("/api/forms/<int:form_id>/submissions")
    def submit_form(form_id: int) -> Any:
        engine = _engine_for(_load_form(form_id))
        values = _values_from(_json_body())
        result = engine.validate(values)
        if not result.success:
            return jsonify({"success": False, "errors": result.errors}), 422

        submission = engine.submission(result.data)
        conn = connect(_db_path(app))
        try:
            with conn:
                submission_id = insert_submission(conn, form_id, submission)
        finally:
            conn.close()
        app.logger.info("form_submitted", extra={"form_id": form_id, "submission_id": submission_id})
        return jsonify({"success": True, "id": submission_id, "payload": submission}), 201

    @app.get("/api/forms/<int:form_id>/submissions")
    def get_submissions(form_id: int) -> Any:
        _load_form(form_id)
        conn = connect(_db_path(app))
        try:
            submissions = list_submissions(conn, form_id)
        finally:
            conn.close()
        return jsonify({"submissions": submissions})

    return app
