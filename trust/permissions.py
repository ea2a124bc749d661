"""
Permission vocabulary and built-in roles - no dependencies on other trust modules.

The vocabulary is closed: tokens outside it are rejected when roles are
registered and simply fail permission checks. Bump VOCABULARY_VERSION when
a token is added or retired.
"""
from enum import Enum

from core.errors import InvalidPermissionError

VOCABULARY_VERSION = 1


class Permission(str, Enum):
    USER_READ = "user.read"
    USER_WRITE = "user.write"
    USER_DELETE = "user.delete"
    USER_CREATE = "user.create"
    FILE_READ = "file.read"
    FILE_WRITE = "file.write"
    FILE_DELETE = "file.delete"
    FILE_SHARE = "file.share"
    AI_ACCESS = "ai.access"
    AI_ADMIN = "ai.admin"
    SETTINGS_READ = "settings.read"
    SETTINGS_WRITE = "settings.write"
    ADMIN_VIEW_LOGS = "admin.view_logs"
    ADMIN_MANAGE_USERS = "admin.manage_users"
    ADMIN_SYSTEM_CONFIG = "admin.system_config"
    SECURITY_MFA_ENFORCE = "security.mfa_enforce"
    SECURITY_AUDIT_LOGS = "security.audit_logs"
    ANALYTICS_VIEW_ALL = "analytics.view_all"
    ANALYTICS_EXPORT = "analytics.export"
    REPORTS_GENERATE = "reports.generate"
    REPORTS_VIEW = "reports.view"

    def __str__(self) -> str:
        return self.value


def parse_permission(value) -> Permission:
    """Convert a token to a Permission or raise InvalidPermissionError."""
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value)
    except ValueError:
        raise InvalidPermissionError(str(value)) from None


def try_parse_permission(value) -> Permission | None:
    """Like parse_permission, but returns None for unknown tokens."""
    try:
        return parse_permission(value)
    except InvalidPermissionError:
        return None


# =============================================================================
# Built-in Roles
# =============================================================================

ADMIN = "admin"
MODERATOR = "moderator"
USER = "user"
GUEST = "guest"

CUSTOM_ROLE_PREFIX = "custom-"

P = Permission

# Seeded at startup: role id -> definition fields
BUILTIN_ROLES = {
    ADMIN: {
        "display_name": "Administrator",
        "description": "Full system access and management",
        "permissions": list(Permission),
        "assignable_roles": [ADMIN, MODERATOR, USER, GUEST],
        "hierarchy_level": 0,
    },
    MODERATOR: {
        "display_name": "Moderator",
        "description": "Manage users and content",
        "permissions": [
            P.USER_READ, P.USER_WRITE,
            P.FILE_READ, P.FILE_WRITE, P.FILE_DELETE, P.FILE_SHARE,
            P.AI_ACCESS,
            P.SETTINGS_READ,
            P.ADMIN_VIEW_LOGS,
            P.ANALYTICS_VIEW_ALL,
            P.REPORTS_VIEW,
        ],
        "assignable_roles": [USER, GUEST],
        "hierarchy_level": 1,
    },
    USER: {
        "display_name": "User",
        "description": "Standard user access",
        "permissions": [
            P.USER_READ,
            P.FILE_READ, P.FILE_WRITE, P.FILE_DELETE, P.FILE_SHARE,
            P.AI_ACCESS,
            P.SETTINGS_READ, P.SETTINGS_WRITE,
            P.REPORTS_VIEW,
        ],
        "assignable_roles": [],
        "hierarchy_level": 2,
    },
    GUEST: {
        "display_name": "Guest",
        "description": "Limited guest access",
        "permissions": [
            P.USER_READ,
            P.FILE_READ,
            P.AI_ACCESS,
            P.REPORTS_VIEW,
        ],
        "assignable_roles": [],
        "hierarchy_level": 3,
    },
}
