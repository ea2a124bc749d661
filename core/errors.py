"""
Error types shared by the trust services and the admin API.

APIError subclasses carry an HTTP status and a message that may be shown
to the caller. Anything else reaching a handler is reported as a generic
500 with a short error id for correlating with the logs.

Authorization and verification queries (has_permission, verify_totp,
is_device_trusted) never raise these; they answer False. Administrative
mutations such as assign_role or create_custom_role fail fast instead.
"""

import logging
import uuid
from typing import Any, Tuple

from flask import jsonify

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Expected failure with a client-safe message."""
    status_code = 400


class NotFoundError(APIError):
    """Unknown role, permission request or enrollment (404)."""
    status_code = 404


class ValidationError(APIError):
    status_code = 400


class PermissionDeniedError(APIError):
    status_code = 403


class AuthenticationError(APIError):
    """Missing, invalid or expired bearer token (401)."""
    status_code = 401


class ConflictError(APIError):
    """State does not allow the change, e.g. an already resolved request (409)."""
    status_code = 409


class DuplicateRoleError(ConflictError):
    """A role id is already registered with a different definition."""


class InvalidPermissionError(ValidationError):
    """Permission token outside the registered vocabulary."""

    def __init__(self, permission: str):
        super().__init__(f"Unknown permission '{permission}'")
        self.permission = permission


class ExpiredGrantError(PermissionDeniedError):
    """The principal's role binding has expired.

    Only raised by RBACEngine.require_permission; has_permission reports
    the same condition as a plain False.
    """


class InternalError(Exception):
    """Misconfiguration or bug. The message is logged, never returned."""


def _error_id() -> str:
    return uuid.uuid4().hex[:8]


def safe_error_response(e: Exception, operation: str) -> Tuple[Any, int]:
    """Turn an exception caught in a route into a JSON error response.

    APIError messages are returned as-is with their status; anything else
    is logged with its traceback and answered with "<operation> failed".
    """
    error_id = _error_id()
    if isinstance(e, APIError):
        logger.warning(f"{operation}: {e}", extra={'error_id': error_id})
        return jsonify({"error": str(e), "error_id": error_id}), e.status_code

    logger.exception(f"{operation} failed", extra={'error_id': error_id})
    return jsonify({"error": f"{operation} failed", "error_id": error_id}), 500


def register_error_handlers(app):
    """Map APIError to its status and unhandled errors to a bare 500."""

    @app.errorhandler(APIError)
    def handle_api_error(e):
        error_id = _error_id()
        logger.warning(f"API error: {e}", extra={'error_id': error_id})
        return jsonify({"error": str(e), "error_id": error_id}), e.status_code

    @app.errorhandler(500)
    def handle_internal_error(e):
        error_id = _error_id()
        logger.exception("Internal server error", extra={'error_id': error_id})
        return jsonify({"error": "Internal server error", "error_id": error_id}), 500
