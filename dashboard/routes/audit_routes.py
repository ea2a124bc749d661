"""
Audit API Routes.

Read access to the audit trail for log viewers, export for reporting,
and retention pruning for system administrators (with step-up MFA).
"""

import logging

from flask import Blueprint, Response, g, jsonify, request

from core.errors import ValidationError, safe_error_response
from dashboard.auth import mfa_required, permission_required
from dashboard.shared import get_json_body, get_services, optional_datetime
from trust.permissions import Permission
from trust.types import AuditAction, AuditQuery, AuditStatus, ResourceType, Severity

logger = logging.getLogger(__name__)

audit_bp = Blueprint('audit', __name__, url_prefix='/api/audit')

_ENUM_FILTERS = {
    'action': AuditAction,
    'resource_type': ResourceType,
    'status': AuditStatus,
    'severity': Severity,
}


def _query_from_args(default_limit: int | None = 100) -> AuditQuery:
    """Build an AuditQuery from query-string filters."""
    args = request.args
    filters = {}
    for name, enum_cls in _ENUM_FILTERS.items():
        value = args.get(name)
        if value:
            try:
                filters[name] = enum_cls(value)
            except ValueError:
                raise ValidationError(f"Unknown {name} '{value}'") from None

    limit = args.get('limit', default=default_limit, type=int)
    return AuditQuery(
        user_id=args.get('user_id') or None,
        resource_id=args.get('resource_id') or None,
        start_date=optional_datetime(args.get('start_date'), 'start_date'),
        end_date=optional_datetime(args.get('end_date'), 'end_date'),
        limit=limit,
        **filters,
    )


@audit_bp.route('/logs', methods=['GET'])
@permission_required(Permission.ADMIN_VIEW_LOGS)
def query_logs():
    entries = get_services().audit.query(_query_from_args())
    return jsonify({
        "entries": [e.to_dict() for e in entries],
        "count": len(entries),
        "status": "success"
    })


@audit_bp.route('/stats', methods=['GET'])
@permission_required(Permission.ADMIN_VIEW_LOGS)
def stats():
    result = get_services().audit.get_stats(
        optional_datetime(request.args.get('start_date'), 'start_date'),
        optional_datetime(request.args.get('end_date'), 'end_date'),
    )
    return jsonify({"stats": result.to_dict(), "status": "success"})


@audit_bp.route('/critical', methods=['GET'])
@permission_required(Permission.SECURITY_AUDIT_LOGS)
def critical_events():
    hours = request.args.get('hours', default=24, type=int)
    entries = get_services().audit.get_critical_events(hours)
    return jsonify({
        "entries": [e.to_dict() for e in entries],
        "count": len(entries),
        "status": "success"
    })


@audit_bp.route('/export', methods=['GET'])
@permission_required(Permission.ANALYTICS_EXPORT)
def export_logs():
    """Download matching entries as json or csv."""
    fmt = request.args.get('format', 'json')
    try:
        body = get_services().audit.export_logs(fmt, _query_from_args(default_limit=None))
    except Exception as e:
        return safe_error_response(e, "export audit logs")
    mimetype = 'text/csv' if fmt == 'csv' else 'application/json'
    return Response(
        body,
        mimetype=mimetype,
        headers={'Content-Disposition': f'attachment; filename=audit-logs.{fmt}'},
    )


@audit_bp.route('/retention', methods=['POST'])
@permission_required(Permission.ADMIN_SYSTEM_CONFIG)
@mfa_required
def prune_logs():
    """Delete entries older than older_than_days."""
    days = get_json_body().get('older_than_days')
    if not isinstance(days, (int, float)) or isinstance(days, bool) or days < 0:
        raise ValidationError("older_than_days must be a non-negative number")

    audit = get_services().audit
    removed = audit.clear_old_logs(days)
    audit.log(
        g.current_user,
        AuditAction.ADMIN_ACTION,
        ResourceType.SYSTEM,
        details={"operation": "clear_old_logs", "older_than_days": days, "removed": removed},
        ip_address=request.remote_addr,
        user_agent=request.headers.get('User-Agent', ''),
    )
    logger.info(f"User {g.current_user} pruned {removed} audit entries older than {days} days")
    return jsonify({"removed": removed, "status": "success"})
