from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from flask import Flask, Request, jsonify, request

from . import BookingLifecycleController, BookingYamlRepository
from .actors import Actor, Role
from .errors import BookingError, BookingStorageError, InvalidRequest, InvalidWindow

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


class AuthenticationError(Exception):
    pass


def actor_from_headers(incoming: Request) -> Actor | None:
    """Read the principal an upstream gateway has already authenticated.

    Token verification happens before the request reaches this app; the
    gateway forwards the verified user id and role as headers.
    """
    user_id = str(incoming.headers.get(USER_ID_HEADER, "")).strip()
    role_text = str(incoming.headers.get(USER_ROLE_HEADER, "")).strip()
    if not user_id and not role_text:
        return None
    if not user_id or not role_text:
        raise AuthenticationError("Both user id and role are required")
    try:
        role = Role.parse(role_text)
    except InvalidRequest as error:
        raise AuthenticationError(str(error)) from error
    return Actor(user_id=user_id, role=role)


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    actor_provider: Callable[[Request], Actor | None] | None = None,
) -> Flask:
    app = Flask(__name__)
    repository = BookingYamlRepository(data_dir)
    controller = BookingLifecycleController(repository, now_provider=now_provider)
    resolve_actor: Callable[[Request], Actor | None] = actor_provider or actor_from_headers
    app.config["BOOKING_CONTROLLER"] = controller

    def _current_actor(required: bool = True) -> Actor | None:
        actor = resolve_actor(request)
        if actor is None and required:
            raise AuthenticationError("Authentication required")
        return actor

    @app.errorhandler(BookingError)
    def handle_booking_error(error: BookingError) -> Any:
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(AuthenticationError)
    def handle_authentication_error(error: AuthenticationError) -> Any:
        return jsonify({"ok": False, "error": "Unauthenticated", "message": str(error)}), 401

    @app.errorhandler(BookingStorageError)
    def handle_storage_error(error: BookingStorageError) -> Any:
        return jsonify({"ok": False, "error": "StorageError", "message": "Booking storage is unavailable."}), 500

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = f"Content-Type,{USER_ID_HEADER},{USER_ROLE_HEADER}"
        return response

    @app.get("/api/health")
    def health() -> Any:
        return jsonify({"ok": True, "status": "ok", "message": "Campus booking API"})

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        actor = _current_actor(required=False)
        return jsonify({"ok": True, "bookings": controller.list_bookings(actor)})

    @app.get("/api/bookings/availability")
    def check_availability() -> Any:
        resource_name = str(request.args.get("resource_name", ""))
        start = _parse_instant(request.args.get("start_time"), "start_time")
        end = _parse_instant(request.args.get("end_time"), "end_time")
        exclude_id = request.args.get("exclude_id") or None

        busy = controller.check_availability(resource_name, start, end, exclude_id=exclude_id)
        return jsonify({"ok": True, "available": not busy, "busy": [item.to_dict() for item in busy]})

    @app.get("/api/bookings/<booking_id>")
    def get_booking(booking_id: str) -> Any:
        record = controller.get_booking(_current_actor(), booking_id)
        return jsonify({"ok": True, "booking": record.to_dict()})

    @app.post("/api/bookings")
    def create_booking() -> Any:
        actor = _current_actor()
        payload = _json_payload()
        created = controller.create(
            actor,
            resource_type=payload.get("resource_type", ""),
            resource_name=payload.get("resource_name", ""),
            start=_parse_instant(payload.get("start_time"), "start_time"),
            end=_parse_instant(payload.get("end_time"), "end_time"),
            reason=_optional_text(payload.get("reason")),
            on_behalf_of=_optional_text(payload.get("user_id")),
        )
        return jsonify({"ok": True, "booking": created.to_dict()}), 201

    @app.put("/api/bookings/<booking_id>")
    def update_booking(booking_id: str) -> Any:
        actor = _current_actor()
        payload = _json_payload()
        fields: dict[str, Any] = {
            "resource_type": payload.get("resource_type") or None,
            "resource_name": payload.get("resource_name") or None,
            "reason": _reason_change(payload),
        }
        if payload.get("start_time"):
            fields["start"] = _parse_instant(payload.get("start_time"), "start_time")
        if payload.get("end_time"):
            fields["end"] = _parse_instant(payload.get("end_time"), "end_time")

        updated = controller.update(actor, booking_id, **fields)
        return jsonify({"ok": True, "booking": updated.to_dict()})

    @app.patch("/api/bookings/<booking_id>/status")
    def set_booking_status(booking_id: str) -> Any:
        actor = _current_actor()
        payload = _json_payload()
        status = str(payload.get("status", "")).strip()
        if not status:
            raise InvalidRequest("status is required")

        updated = controller.set_status(actor, booking_id, status, override=bool(payload.get("override", False)))
        return jsonify({"ok": True, "booking": updated.to_dict()})

    @app.delete("/api/bookings/<booking_id>")
    def delete_booking(booking_id: str) -> Any:
        deleted = controller.delete(_current_actor(), booking_id)
        return jsonify({"ok": True, "message": "Booking deleted successfully", "booking_id": deleted.booking_id})

    return app


def _json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _parse_instant(value: Any, field_name: str) -> datetime:
    if value is None or not str(value).strip():
        raise InvalidWindow(f"{field_name} is required")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as error:
        raise InvalidWindow(f"{field_name} is not an ISO-8601 datetime") from error
    if parsed.utcoffset() is None:
        raise InvalidWindow(f"{field_name} must include a timezone offset")
    return parsed


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _reason_change(payload: dict[str, Any]) -> str | None:
    if "reason" not in payload:
        return None
    return "" if payload["reason"] is None else str(payload["reason"])


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
