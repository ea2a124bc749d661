"""
Access Control API Routes.

Role assignment, custom grants and denials, and the permission request
workflow. Mutating routes require admin.manage_users; role changes are
further limited to roles the caller's own roles may assign.
"""

import logging

from flask import Blueprint, g, jsonify

from core.errors import ValidationError
from dashboard.auth import jwt_required, permission_required
from dashboard.shared import (
    client_context,
    get_json_body,
    get_services,
    optional_datetime,
    require_field,
)
from trust.permissions import Permission

logger = logging.getLogger(__name__)

access_bp = Blueprint('access', __name__, url_prefix='/api/access')


def _forbidden():
    return jsonify({"error": "Not authorized", "status": "error"}), 403


# =============================================================================
# Current User
# =============================================================================

@access_bp.route('/me', methods=['GET'])
@jwt_required
def my_permissions():
    """Roles and effective permissions of the caller."""
    rbac = get_services().rbac
    permissions = rbac.get_effective_permissions(g.current_user)
    return jsonify({
        "user_id": g.current_user,
        "roles": rbac.get_user_roles(g.current_user),
        "permissions": sorted(p.value for p in permissions),
        "status": "success"
    })


@access_bp.route('/check', methods=['POST'])
@jwt_required
def check_permission():
    """Ask whether the caller holds a permission, optionally on a resource."""
    data = get_json_body()
    permission = require_field(data, 'permission')
    allowed = get_services().rbac.has_permission(
        g.current_user, permission, data.get('resource_id'), **client_context()
    )
    return jsonify({"allowed": allowed, "permission": permission, "status": "success"})


# =============================================================================
# Roles
# =============================================================================

@access_bp.route('/roles', methods=['GET'])
@jwt_required
def list_roles():
    roles = get_services().rbac.get_all_roles()
    return jsonify({
        "roles": [r.to_dict() for r in roles],
        "count": len(roles),
        "status": "success"
    })


@access_bp.route('/roles', methods=['POST'])
@permission_required(Permission.ADMIN_SYSTEM_CONFIG)
def create_role():
    """Create a custom role (id custom-<name>)."""
    data = get_json_body()
    try:
        hierarchy_level = int(data.get('hierarchy_level', 2))
    except (TypeError, ValueError):
        raise ValidationError("hierarchy_level must be an integer") from None

    role = get_services().rbac.create_custom_role(
        require_field(data, 'name'),
        data.get('display_name') or data['name'],
        data.get('description', ''),
        data.get('permissions') or [],
        hierarchy_level,
        created_by=g.current_user,
    )
    return jsonify({"role": role.to_dict(), "status": "success"}), 201


@access_bp.route('/users/<user_id>', methods=['GET'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def get_user_binding(user_id):
    rbac = get_services().rbac
    binding = rbac.get_binding(user_id)
    return jsonify({
        "binding": binding.to_dict() if binding else None,
        "effective_permissions": sorted(p.value for p in rbac.get_effective_permissions(user_id)),
        "status": "success"
    })


@access_bp.route('/users/<user_id>/roles', methods=['POST'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def assign_role(user_id):
    data = get_json_body()
    role = require_field(data, 'role')
    rbac = get_services().rbac

    if not rbac.can_user_assign(g.current_user, role):
        logger.warning(f"User {g.current_user} may not assign role '{role}'")
        return _forbidden()

    added = rbac.assign_role(
        user_id, role, g.current_user, optional_datetime(data.get('expires_at'), 'expires_at')
    )
    return jsonify({
        "assigned": added,
        "roles": rbac.get_user_roles(user_id),
        "status": "success"
    })


@access_bp.route('/users/<user_id>/roles/<role>', methods=['DELETE'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def remove_role(user_id, role):
    rbac = get_services().rbac
    if not rbac.can_user_assign(g.current_user, role):
        return _forbidden()

    removed = rbac.remove_role(user_id, role, removed_by=g.current_user)
    return jsonify({
        "removed": removed,
        "roles": rbac.get_user_roles(user_id),
        "status": "success"
    })


# =============================================================================
# Custom Grants and Denials
# =============================================================================

@access_bp.route('/users/<user_id>/grants', methods=['POST'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def grant_permission(user_id):
    data = get_json_body()
    permission = require_field(data, 'permission')
    get_services().rbac.grant_permission(
        user_id,
        permission,
        optional_datetime(data.get('expires_at'), 'expires_at'),
        granted_by=g.current_user,
    )
    return jsonify({"message": f"Granted {permission}", "status": "success"})


@access_bp.route('/users/<user_id>/grants/<permission>', methods=['DELETE'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def revoke_permission(user_id, permission):
    revoked = get_services().rbac.revoke_permission(user_id, permission, revoked_by=g.current_user)
    return jsonify({"revoked": revoked, "status": "success"})


@access_bp.route('/users/<user_id>/denials', methods=['POST'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def deny_permission(user_id):
    data = get_json_body()
    permission = require_field(data, 'permission')
    get_services().rbac.deny_permission(
        user_id,
        permission,
        optional_datetime(data.get('expires_at'), 'expires_at'),
        denied_by=g.current_user,
    )
    return jsonify({"message": f"Denied {permission}", "status": "success"})


@access_bp.route('/users/<user_id>/denials/<permission>', methods=['DELETE'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def remove_denial(user_id, permission):
    removed = get_services().rbac.remove_denied_permission(user_id, permission, removed_by=g.current_user)
    return jsonify({"removed": removed, "status": "success"})


# =============================================================================
# Permission Requests
# =============================================================================

@access_bp.route('/requests', methods=['POST'])
@jwt_required
def submit_request():
    data = get_json_body()
    req = get_services().rbac.request_permission(
        g.current_user,
        require_field(data, 'permission'),
        resource_id=data.get('resource_id'),
        reason=data.get('reason'),
    )
    return jsonify({"request": req.to_dict(), "status": "success"}), 201


@access_bp.route('/requests/pending', methods=['GET'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def pending_requests():
    requests = get_services().rbac.get_pending_requests()
    return jsonify({
        "requests": [r.to_dict() for r in requests],
        "count": len(requests),
        "status": "success"
    })


@access_bp.route('/requests/<request_id>/approve', methods=['POST'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def approve_request(request_id):
    req = get_services().rbac.approve_permission_request(request_id, g.current_user)
    return jsonify({"request": req.to_dict(), "status": "success"})


@access_bp.route('/requests/<request_id>/deny', methods=['POST'])
@permission_required(Permission.ADMIN_MANAGE_USERS)
def deny_request(request_id):
    req = get_services().rbac.deny_permission_request(request_id, g.current_user)
    return jsonify({"request": req.to_dict(), "status": "success"})
