"""JSON RPC transport for the Adventar service.

Each RPC is ``POST /adventar.v1.Adventar/<Method>`` with a JSON object body
using protobuf JSON field names; responses are JSON objects too.
"""

from __future__ import annotations

import re
from typing import Any, Callable

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from adventar.errors import AdventarServiceError, InvalidArgumentError
from adventar.service import AdventarService

RPC_PREFIX = "/adventar.v1.Adventar"
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

ServiceProvider = Callable[[], AdventarService]


def create_adventar_blueprint(service_provider: ServiceProvider) -> Blueprint:
    """Factory so the app can inject how a request-scoped service is built."""

    bp = Blueprint("adventar_rpc", __name__, url_prefix=RPC_PREFIX)

    @bp.before_request
    def check_maintenance_mode():
        if current_app.config.get("MAINTENANCE_MODE"):
            return (
                jsonify({"code": "unavailable", "msg": "Adventar is under maintenance."}),
                503,
            )
        return None

    @bp.errorhandler(AdventarServiceError)
    def handle_service_error(exc: AdventarServiceError):
        return jsonify(exc.payload), exc.status_code

    @bp.errorhandler(SQLAlchemyError)
    def handle_database_error(exc: SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("Database error during %s", request.path)
        return jsonify({"code": "internal", "msg": "Database error."}), 500

    def _authorization() -> str:
        return request.headers.get("Authorization", "")

    @bp.post("/ListCalendars")
    def list_calendars():
        body = _request_body()
        return jsonify(
            service_provider().list_calendars(
                year=_int_field(body, "year"),
                user_id=_int_field(body, "userId"),
                query=_str_field(body, "query"),
                page_size=_int_field(body, "pageSize"),
            )
        )

    @bp.post("/GetCalendar")
    def get_calendar():
        body = _request_body()
        return jsonify(service_provider().get_calendar(_int_field(body, "calendarId")))

    @bp.post("/CreateCalendar")
    def create_calendar():
        body = _request_body()
        return jsonify(
            service_provider().create_calendar(
                _authorization(),
                title=_str_field(body, "title"),
                description=_str_field(body, "description"),
            )
        )

    @bp.post("/UpdateCalendar")
    def update_calendar():
        body = _request_body()
        return jsonify(
            service_provider().update_calendar(
                _authorization(),
                calendar_id=_int_field(body, "calendarId"),
                title=_str_field(body, "title"),
                description=_str_field(body, "description"),
            )
        )

    @bp.post("/DeleteCalendar")
    def delete_calendar():
        body = _request_body()
        return jsonify(
            service_provider().delete_calendar(_authorization(), _int_field(body, "calendarId"))
        )

    @bp.post("/ListEntries")
    def list_entries():
        body = _request_body()
        return jsonify(
            service_provider().list_entries(
                user_id=_int_field(body, "userId"),
                year=_int_field(body, "year"),
            )
        )

    @bp.post("/CreateEntry")
    def create_entry():
        body = _request_body()
        return jsonify(
            service_provider().create_entry(
                _authorization(),
                calendar_id=_int_field(body, "calendarId"),
                day=_int_field(body, "day"),
            )
        )

    @bp.post("/UpdateEntry")
    def update_entry():
        body = _request_body()
        return jsonify(
            service_provider().update_entry(
                _authorization(),
                entry_id=_int_field(body, "entryId"),
                comment=_str_field(body, "comment"),
                url=_str_field(body, "url"),
            )
        )

    @bp.post("/DeleteEntry")
    def delete_entry():
        body = _request_body()
        return jsonify(service_provider().delete_entry(_authorization(), _int_field(body, "entryId")))

    @bp.post("/SignIn")
    def sign_in():
        body = _request_body()
        return jsonify(service_provider().sign_in(_str_field(body, "jwt")))

    @bp.post("/UpdateUser")
    def update_user():
        body = _request_body()
        return jsonify(service_provider().update_user(_authorization(), _str_field(body, "name")))

    return bp


def _request_body() -> dict:
    if not request.get_data():
        return {}
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise InvalidArgumentError("Request body must be a JSON object.")
    return payload


def _lookup(body: dict, name: str) -> Any:
    """Read a field by its JSON name, falling back to the proto (snake_case) name."""
    if name in body:
        return body[name]
    return body.get(_CAMEL_BOUNDARY.sub("_", name).lower())


def _int_field(body: dict, name: str) -> int:
    value = _lookup(body, name)
    if value is None or value == "":
        return 0
    number = _parse_int(value)
    if number is None:
        raise InvalidArgumentError(f"{name} must be an integer.")
    if not INT64_MIN <= number <= INT64_MAX:
        raise InvalidArgumentError(f"{name} is out of range.")
    return number


def _parse_int(value: Any):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _str_field(body: dict, name: str) -> str:
    value = _lookup(body, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{name} must be a string.")
    return value
