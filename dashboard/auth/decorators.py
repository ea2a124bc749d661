"""
Flask route decorators for authentication and authorization.

Provides:
- jwt_required: Require valid JWT token
- permission_required: Require a permission resolved by the RBAC engine
- mfa_required: Require a second factor unless the device is trusted
"""
import logging
from functools import wraps

from flask import g, jsonify, request

from config.settings import get_settings
from core.errors import AuthenticationError
from dashboard.shared import client_context, get_services
from .tokens import decode_token, get_token_from_request

logger = logging.getLogger(__name__)


def jwt_required(f):
    """Decorator to require valid JWT token for endpoint.

    Sets g.current_user on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_token_from_request()
        if not token:
            raise AuthenticationError("Missing authorization token")

        payload = decode_token(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")

        g.current_user = payload["sub"]
        return f(*args, **kwargs)
    return decorated


def permission_required(permission):
    """Decorator factory to require a permission.

    Usage:
        @permission_required(Permission.ADMIN_MANAGE_USERS)
        def assign_role():
            ...

    Denials are audited by the RBAC engine; the response never says which
    permission was missing.
    """
    def decorator(f):
        @wraps(f)
        @jwt_required
        def decorated(*args, **kwargs):
            rbac = get_services().rbac
            if not rbac.has_permission(g.current_user, permission, **client_context()):
                return jsonify({"error": "Not authorized"}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator


def mfa_required(f):
    """Decorator to require step-up MFA for users who must use it.

    Trusted devices skip the challenge. Otherwise the code in the MFA
    header is checked as a TOTP token when it looks like one, and as a
    backup code otherwise.
    """
    @wraps(f)
    @jwt_required
    def decorated(*args, **kwargs):
        mfa = get_services().mfa
        user_id = g.current_user
        ctx = client_context()

        if not mfa.is_mfa_required(user_id):
            return f(*args, **kwargs)
        if mfa.is_device_trusted(user_id, ctx["ip_address"], ctx["user_agent"]):
            return f(*args, **kwargs)

        code = request.headers.get(get_settings().auth.mfa_token_header, "").strip()
        if not code:
            return jsonify({"error": "MFA verification required", "mfa_required": True}), 401

        if code.isdigit() and len(code) == get_settings().mfa.totp_digits:
            verification = mfa.verify_totp(user_id, code, **ctx)
        else:
            verification = mfa.verify_backup_code(user_id, code, **ctx)

        if not verification.verified:
            logger.warning(f"MFA challenge failed for user {user_id}")
            return jsonify({"error": "Invalid MFA code", "mfa_required": True}), 401
        return f(*args, **kwargs)
    return decorated
