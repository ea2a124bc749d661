"""
Trust domain types - no dependencies on the service modules.

Records handed out by the services are either frozen or copies; mutating
them never changes service state.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.timestamps import parse_timestamp
from .permissions import Permission


# =============================================================================
# RBAC
# =============================================================================

@dataclass(frozen=True)
class RoleDefinition:
    """Named bundle of permissions. hierarchy_level 0 is the most privileged."""
    role_id: str
    display_name: str
    description: str
    permissions: frozenset[Permission]
    assignable_roles: frozenset[str] = frozenset()
    hierarchy_level: int = 0

    def to_dict(self) -> dict:
        return {
            "role": self.role_id,
            "display_name": self.display_name,
            "description": self.description,
            "permissions": sorted(p.value for p in self.permissions),
            "assignable_roles": sorted(self.assignable_roles),
            "hierarchy_level": self.hierarchy_level,
        }


@dataclass
class UserRoleBinding:
    """Authorization state for one principal.

    custom_permissions / denied_permissions map a permission to its optional
    expiry. Bindings are never deleted, only emptied.
    """
    user_id: str
    assigned_at: datetime
    assigned_by: str
    roles: list[str] = field(default_factory=list)
    custom_permissions: dict[Permission, Optional[datetime]] = field(default_factory=dict)
    denied_permissions: dict[Permission, Optional[datetime]] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and at > self.expires_at

    def active_custom(self, at: datetime) -> set[Permission]:
        return {p for p, exp in self.custom_permissions.items() if exp is None or at <= exp}

    def active_denied(self, at: datetime) -> set[Permission]:
        return {p for p, exp in self.denied_permissions.items() if exp is None or at <= exp}

    def copy(self) -> "UserRoleBinding":
        return replace(
            self,
            roles=list(self.roles),
            custom_permissions=dict(self.custom_permissions),
            denied_permissions=dict(self.denied_permissions),
        )

    def to_dict(self) -> dict:
        def _grants(grants):
            return {
                p.value: exp.isoformat() if exp else None
                for p, exp in sorted(grants.items(), key=lambda kv: kv[0].value)
            }

        return {
            "user_id": self.user_id,
            "roles": list(self.roles),
            "custom_permissions": _grants(self.custom_permissions),
            "denied_permissions": _grants(self.denied_permissions),
            "assigned_at": self.assigned_at.isoformat(),
            "assigned_by": self.assigned_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class ResourcePermission:
    """Grant scoped to one (resource_type, resource_id) pair for one user."""
    resource_id: str
    resource_type: str
    user_id: str
    permissions: frozenset[Permission]
    granted_at: datetime
    granted_by: str
    expires_at: Optional[datetime] = None

    def is_active(self, at: datetime) -> bool:
        return self.expires_at is None or at <= self.expires_at

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "user_id": self.user_id,
            "permissions": sorted(p.value for p in self.permissions),
            "granted_at": self.granted_at.isoformat(),
            "granted_by": self.granted_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass(frozen=True)
class PermissionRequest:
    request_id: str
    user_id: str
    permission: Permission
    requested_at: datetime
    resource_id: Optional[str] = None
    reason: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.request_id,
            "user_id": self.user_id,
            "permission": self.permission.value,
            "resource_id": self.resource_id,
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }


# =============================================================================
# MFA
# =============================================================================

class MFAMethod(str, Enum):
    TOTP = "totp"
    EMAIL = "email"
    SMS = "sms"


class VerificationMethod(str, Enum):
    TOTP = "totp"
    BACKUP = "backup"


@dataclass
class MFAConfig:
    """Per-user second-factor configuration.

    The TOTP secret is held Fernet-encrypted and backup codes as SHA-256
    digests. Disabling keeps both for forensic replay.
    """
    user_id: str
    enabled: bool
    method: MFAMethod
    secret_encrypted: Optional[str]
    backup_code_hashes: list[str]
    created_at: datetime
    last_used: Optional[datetime] = None
    disabled_at: Optional[datetime] = None


@dataclass(frozen=True)
class TOTPSetup:
    """Unsaved enrollment material returned by initialize_totp_setup."""
    user_id: str
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...
    backup_codes: tuple[str, ...]
    manual_entry_key: str

    def to_dict(self) -> dict:
        return {
            "secret": self.secret,
            "provisioning_uri": self.provisioning_uri,
            "qr_code": self.qr_code,
            "backup_codes": list(self.backup_codes),
            "manual_entry_key": self.manual_entry_key,
        }


@dataclass(frozen=True)
class MFAVerification:
    """Immutable record of one verification attempt."""
    method: VerificationMethod
    verified: bool
    timestamp: datetime
    ip_address: Optional[str] = None
    device: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "verified": self.verified,
            "timestamp": self.timestamp.isoformat(),
            "ip_address": self.ip_address,
            "device": self.device,
        }


@dataclass(frozen=True)
class DeviceTrust:
    """A remembered device; device_id is derived from (ip, user agent)."""
    user_id: str
    device_id: str
    device_name: str
    trusted_until: datetime
    last_used: datetime
    ip_address: str
    user_agent: str

    def is_active(self, at: datetime) -> bool:
        return self.trusted_until > at

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "trusted_until": self.trusted_until.isoformat(),
            "last_used": self.last_used.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


@dataclass(frozen=True)
class MFAStatus:
    """MFA status for a user. Never carries the secret."""
    enrolled: bool
    enabled: bool
    method: Optional[MFAMethod]
    backup_codes_remaining: int
    last_used: Optional[datetime]
    trusted_devices: int

    def to_dict(self) -> dict:
        return {
            "enrolled": self.enrolled,
            "enabled": self.enabled,
            "method": self.method.value if self.method else None,
            "backup_codes_remaining": self.backup_codes_remaining,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "trusted_devices": self.trusted_devices,
        }


# =============================================================================
# Audit
# =============================================================================

class AuditAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_VERIFICATION = "mfa_verification"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_TRUST_REVOKED = "device_trust_revoked"
    PASSWORD_CHANGED = "password_changed"
    FILE_UPLOADED = "file_uploaded"
    FILE_DOWNLOADED = "file_downloaded"
    FILE_DELETED = "file_deleted"
    FILE_SHARED = "file_shared"
    SETTINGS_CHANGED = "settings_changed"
    PERMISSIONS_MODIFIED = "permissions_modified"
    AI_QUERY = "ai_query"
    ENCRYPTION_KEY_ROTATED = "encryption_key_rotated"
    ADMIN_ACTION = "admin_action"
    SECURITY_ALERT = "security_alert"
    ACCESS_DENIED = "access_denied"


class ResourceType(str, Enum):
    USER = "user"
    FILE = "file"
    SETTINGS = "settings"
    AI_SERVICE = "ai_service"
    ENCRYPTION = "encryption"
    ADMIN = "admin"
    SYSTEM = "system"
    ROLE = "role"
    RESOURCE = "resource"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit fact. seq orders entries sharing a timestamp."""
    id: str
    timestamp: datetime
    user_id: str
    action: AuditAction
    resource_type: ResourceType
    status: AuditStatus
    severity: Severity
    ip_address: str = ""
    user_agent: str = ""
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    changes: Optional[dict[str, dict[str, Any]]] = None  # {"before": ..., "after": ...}
    seq: int = 0

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return self.timestamp, self.seq

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "action": self.action.value,
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "status": self.status.value,
            "severity": self.severity.value,
            "changes": self.changes,
        }

    @classmethod
    def from_dict(cls, data: dict, seq: int = 0) -> "AuditLogEntry":
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            user_id=data["user_id"],
            action=AuditAction(data["action"]),
            resource_type=ResourceType(data["resource_type"]),
            status=AuditStatus(data["status"]),
            severity=Severity(data["severity"]),
            ip_address=data.get("ip_address") or "",
            user_agent=data.get("user_agent") or "",
            resource_id=data.get("resource_id"),
            resource_name=data.get("resource_name"),
            details=data.get("details"),
            changes=data.get("changes"),
            seq=seq,
        )


@dataclass(frozen=True)
class AuditQuery:
    """Filters combined with AND semantics; None means "any"."""
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[str] = None
    status: Optional[AuditStatus] = None
    severity: Optional[Severity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass
class AuditStats:
    total_entries: int
    by_action: dict[str, int]
    by_user: dict[str, int]
    by_severity: dict[str, int]
    failed_attempts: int
    critical_events: int
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "by_action": self.by_action,
            "by_user": self.by_user,
            "by_severity": self.by_severity,
            "failed_attempts": self.failed_attempts,
            "critical_events": self.critical_events,
            "time_range": {"start": self.start.isoformat(), "end": self.end.isoformat()},
        }
