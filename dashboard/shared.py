"""
Shared utilities for dashboard routes.

Route modules reach the trust services through the app they run in, never
through module globals, so each app (and each test) has its own state.
"""
from datetime import datetime

from flask import current_app, request

from core.errors import InternalError, ValidationError
from core.timestamps import parse_timestamp

EXTENSION_KEY = "trust"
PENDING_SETUPS_KEY = "trust_pending_mfa_setups"


def get_services():
    """TrustServices bundle attached by create_app."""
    services = current_app.extensions.get(EXTENSION_KEY)
    if services is None:
        raise InternalError("Trust services are not attached to this app")
    return services


def pending_setups() -> dict:
    """Unconfirmed TOTP setups by user id; dropped on confirm or restart."""
    return current_app.extensions[PENDING_SETUPS_KEY]


def client_context() -> dict:
    """ip_address/user_agent keyword arguments for the current request."""
    return {
        "ip_address": request.remote_addr or "",
        "user_agent": request.headers.get("User-Agent", ""),
    }


def get_json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_field(data: dict, name: str) -> str:
    value = data.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required")
    return value


def optional_datetime(value, name: str) -> datetime | None:
    """Parse an ISO 8601 timestamp argument, or None when absent."""
    if value in (None, ""):
        return None
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO 8601 timestamp") from None
