"""
Trust & access control core.

Usage:
    from trust import build_services, Permission

    services = build_services()
    if services.rbac.has_permission(user_id, Permission.FILE_DELETE, file_id):
        ...
"""
from .audit import AuditLog, redact, severity_for
from .mfa import MFAService, derive_device_id
from .permissions import (
    ADMIN,
    BUILTIN_ROLES,
    GUEST,
    MODERATOR,
    USER,
    VOCABULARY_VERSION,
    Permission,
    parse_permission,
)
from .rbac import RBACEngine
from .services import TrustServices, build_services
from .sinks import AuditSink, JSONLinesAuditSink, SQLiteAuditSink
from .types import (
    AuditAction,
    AuditLogEntry,
    AuditQuery,
    AuditStats,
    AuditStatus,
    DeviceTrust,
    MFAStatus,
    MFAVerification,
    PermissionRequest,
    RequestStatus,
    ResourcePermission,
    ResourceType,
    RoleDefinition,
    Severity,
    TOTPSetup,
    UserRoleBinding,
)

__all__ = [
    "ADMIN",
    "AuditAction",
    "AuditLog",
    "AuditLogEntry",
    "AuditQuery",
    "AuditSink",
    "AuditStats",
    "AuditStatus",
    "BUILTIN_ROLES",
    "DeviceTrust",
    "GUEST",
    "JSONLinesAuditSink",
    "MFAService",
    "MFAStatus",
    "MFAVerification",
    "MODERATOR",
    "Permission",
    "PermissionRequest",
    "RBACEngine",
    "RequestStatus",
    "ResourcePermission",
    "ResourceType",
    "RoleDefinition",
    "SQLiteAuditSink",
    "Severity",
    "TOTPSetup",
    "TrustServices",
    "USER",
    "UserRoleBinding",
    "VOCABULARY_VERSION",
    "build_services",
    "derive_device_id",
    "parse_permission",
    "redact",
    "severity_for",
]
