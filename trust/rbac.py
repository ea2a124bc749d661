"""
Role-based access control: role registry, user bindings and permission resolution.

Handles:
- Role registration (built-ins seeded at startup, custom roles at runtime)
- User-role bindings with custom grants and denials
- Resource-scoped grants
- Permission request workflow (pending -> approved | denied)

Resolution order for has_permission (first match decides):
1. binding expired        -> False
2. permission denied      -> False  (deny always wins)
3. custom grant           -> True
4. role grant             -> True
5. resource grant         -> True  (only when resource_id is given)
6. otherwise              -> False

has_permission never raises. Unknown users and unknown permission tokens
resolve to False.
"""
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from core.errors import (
    ConflictError,
    DuplicateRoleError,
    ExpiredGrantError,
    NotFoundError,
    PermissionDeniedError,
)
from core.locks import ReadWriteLock
from core.timestamps import SystemClock
from .permissions import (
    BUILTIN_ROLES,
    CUSTOM_ROLE_PREFIX,
    Permission,
    parse_permission,
    try_parse_permission,
)
from .types import (
    AuditAction,
    AuditStatus,
    PermissionRequest,
    RequestStatus,
    ResourcePermission,
    ResourceType,
    RoleDefinition,
    UserRoleBinding,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class RBACEngine:
    """
    Thread-safe RBAC registry.

    Reads share a reader/writer lock; every mutation takes it exclusively,
    which also serializes concurrent mutations of the same user.
    """

    def __init__(self, audit_log=None, clock=None, seed_builtin_roles: bool = True):
        self._audit_log = audit_log
        self._clock = clock or SystemClock()
        self._lock = ReadWriteLock()

        self._roles: dict[str, RoleDefinition] = {}
        self._bindings: dict[str, UserRoleBinding] = {}
        # resource_id -> user_id -> grant
        self._resource_permissions: dict[str, dict[str, ResourcePermission]] = {}
        self._requests: dict[str, PermissionRequest] = {}

        if seed_builtin_roles:
            self.seed_builtin_roles()

    # =========================================================================
    # Role Registry
    # =========================================================================

    def seed_builtin_roles(self) -> None:
        """Register admin, moderator, user and guest. Safe to call again."""
        for role_id, definition in BUILTIN_ROLES.items():
            self.register_role(role_id, **definition)

    def register_role(
        self,
        role: str,
        display_name: str,
        description: str,
        permissions: Iterable,
        assignable_roles: Iterable[str] = (),
        hierarchy_level: int = 0,
    ) -> RoleDefinition:
        """Register a role definition.

        Re-registering an identical definition is a no-op.

        Raises:
            InvalidPermissionError: a permission is outside the vocabulary
            DuplicateRoleError: the role id exists with a different definition
        """
        definition = RoleDefinition(
            role_id=role,
            display_name=display_name,
            description=description,
            permissions=frozenset(parse_permission(p) for p in permissions),
            assignable_roles=frozenset(assignable_roles),
            hierarchy_level=hierarchy_level,
        )

        with self._lock.write():
            existing = self._roles.get(role)
            if existing is not None:
                if existing == definition:
                    return existing
                raise DuplicateRoleError(f"Role '{role}' already exists")
            self._roles[role] = definition

        logger.debug(f"Registered role '{role}' with {len(definition.permissions)} permissions")
        return definition

    def create_custom_role(
        self,
        name: str,
        display_name: str,
        description: str,
        permissions: Iterable,
        hierarchy_level: int,
        created_by: str = SYSTEM_ACTOR,
    ) -> RoleDefinition:
        """Create a runtime role with id ``custom-<name>``.

        Custom roles cannot grant other roles.
        """
        definition = self.register_role(
            f"{CUSTOM_ROLE_PREFIX}{name}",
            display_name,
            description,
            permissions,
            assignable_roles=(),
            hierarchy_level=hierarchy_level,
        )
        self._audit(
            created_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.ROLE,
            resource_id=definition.role_id,
            resource_name=display_name,
            details={"operation": "create_custom_role"},
            changes={"before": {}, "after": definition.to_dict()},
        )
        return definition

    def get_role_definition(self, role: str) -> Optional[RoleDefinition]:
        with self._lock.read():
            return self._roles.get(role)

    def get_all_roles(self) -> list[RoleDefinition]:
        """All roles, most privileged first."""
        with self._lock.read():
            roles = list(self._roles.values())
        return sorted(roles, key=lambda r: (r.hierarchy_level, r.role_id))

    def can_assign(self, assigner_roles: Iterable[str], role: str) -> bool:
        """True if any of assigner_roles lists role among its assignable roles."""
        with self._lock.read():
            return any(
                role in self._roles[r].assignable_roles
                for r in assigner_roles
                if r in self._roles
            )

    def can_user_assign(self, user_id: str, role: str) -> bool:
        """can_assign over the user's currently effective roles."""
        with self._lock.read():
            binding = self._bindings.get(user_id)
            if binding is None or binding.is_expired(self._clock.now()):
                return False
            roles = list(binding.roles)
        return self.can_assign(roles, role)

    # =========================================================================
    # User-Role Bindings
    # =========================================================================

    def _binding_for_update(self, user_id: str, actor: str) -> UserRoleBinding:
        """Get or lazily create a binding. Caller holds the write lock."""
        binding = self._bindings.get(user_id)
        if binding is None:
            binding = UserRoleBinding(
                user_id=user_id,
                assigned_at=self._clock.now(),
                assigned_by=actor,
            )
            self._bindings[user_id] = binding
        return binding

    def assign_role(
        self,
        user_id: str,
        role: str,
        assigned_by: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Add a role to a user's binding.

        Does not check that assigned_by may grant the role; callers use
        can_assign / can_user_assign for that. A successful assignment
        refreshes the binding's assigned_at/assigned_by/expires_at.

        Returns:
            False if the user already held the role, True otherwise

        Raises:
            NotFoundError: the role is not registered
        """
        with self._lock.write():
            if role not in self._roles:
                raise NotFoundError(f"Role '{role}' not found")

            binding = self._binding_for_update(user_id, assigned_by)
            if role in binding.roles:
                return False

            before = list(binding.roles)
            binding.roles.append(role)
            binding.assigned_by = assigned_by
            binding.assigned_at = self._clock.now()
            binding.expires_at = expires_at
            after = list(binding.roles)

        self._audit(
            assigned_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.USER,
            resource_id=user_id,
            details={
                "operation": "assign_role",
                "role": role,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            changes={"before": {"roles": before}, "after": {"roles": after}},
        )
        return True

    def remove_role(self, user_id: str, role: str, removed_by: str = SYSTEM_ACTOR) -> bool:
        """Remove a role. Returns False if the user did not hold it."""
        with self._lock.write():
            binding = self._bindings.get(user_id)
            if binding is None or role not in binding.roles:
                return False
            before = list(binding.roles)
            binding.roles.remove(role)
            after = list(binding.roles)

        self._audit(
            removed_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.USER,
            resource_id=user_id,
            details={"operation": "remove_role", "role": role},
            changes={"before": {"roles": before}, "after": {"roles": after}},
        )
        return True

    def get_user_roles(self, user_id: str) -> list[str]:
        with self._lock.read():
            binding = self._bindings.get(user_id)
            return list(binding.roles) if binding else []

    def get_binding(self, user_id: str) -> Optional[UserRoleBinding]:
        """Snapshot of the user's binding (a copy; edits are not persisted)."""
        with self._lock.read():
            binding = self._bindings.get(user_id)
            return binding.copy() if binding else None

    # =========================================================================
    # Resolution
    # =========================================================================

    def _evaluate(self, user_id: str, permission, resource_id: Optional[str]) -> tuple[bool, str]:
        perm = try_parse_permission(permission)
        if perm is None:
            return False, "unknown_permission"

        now = self._clock.now()
        with self._lock.read():
            binding = self._bindings.get(user_id)
            if binding is None:
                return False, "no_binding"
            if binding.is_expired(now):
                return False, "binding_expired"
            if perm in binding.active_denied(now):
                return False, "denied"
            if perm in binding.active_custom(now):
                return True, "custom"
            for role in binding.roles:
                definition = self._roles.get(role)
                if definition is not None and perm in definition.permissions:
                    return True, "role"
            if resource_id is not None:
                grant = self._resource_permissions.get(resource_id, {}).get(user_id)
                if grant is not None and grant.is_active(now) and perm in grant.permissions:
                    return True, "resource"
        return False, "not_granted"

    def _check(self, user_id, permission, resource_id, ip_address, user_agent) -> tuple[bool, str]:
        try:
            allowed, reason = self._evaluate(user_id, permission, resource_id)
        except Exception:
            logger.exception(f"Permission evaluation failed for user={user_id} permission={permission}")
            allowed, reason = False, "error"

        if not allowed:
            self._audit(
                user_id,
                AuditAction.ACCESS_DENIED,
                ResourceType.RESOURCE if resource_id else ResourceType.SYSTEM,
                resource_id=resource_id,
                details={"permission": str(permission), "reason": reason},
                status=AuditStatus.FAILURE,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return allowed, reason

    def has_permission(
        self,
        user_id: str,
        permission,
        resource_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Check if a user has a permission, optionally on one resource.

        Denials are recorded as access_denied audit events. Never raises.
        """
        allowed, _ = self._check(user_id, permission, resource_id, ip_address, user_agent)
        return allowed

    def require_permission(
        self,
        user_id: str,
        permission,
        resource_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Raising variant of has_permission for admin code paths.

        Raises:
            ExpiredGrantError: the user's binding has expired
            PermissionDeniedError: any other denial
        """
        allowed, reason = self._check(user_id, permission, resource_id, ip_address, user_agent)
        if allowed:
            return
        if reason == "binding_expired":
            raise ExpiredGrantError("Not authorized")
        raise PermissionDeniedError("Not authorized")

    def get_effective_permissions(self, user_id: str) -> set[Permission]:
        """Role permissions plus custom grants, minus denials.

        Resource-scoped grants are not included. An expired binding has no
        effective permissions.
        """
        now = self._clock.now()
        with self._lock.read():
            binding = self._bindings.get(user_id)
            if binding is None or binding.is_expired(now):
                return set()

            permissions: set[Permission] = set()
            for role in binding.roles:
                definition = self._roles.get(role)
                if definition is not None:
                    permissions |= definition.permissions
            permissions |= binding.active_custom(now)
            permissions -= binding.active_denied(now)
        return permissions

    # =========================================================================
    # Custom Grants and Denials
    # =========================================================================

    def _set_grant(self, field_name, operation, user_id, permission, expires_at, actor) -> None:
        perm = parse_permission(permission)
        with self._lock.write():
            binding = self._binding_for_update(user_id, actor)
            grants = getattr(binding, field_name)
            before = sorted(p.value for p in grants)
            grants[perm] = expires_at
            after = sorted(p.value for p in grants)

        self._audit(
            actor,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.USER,
            resource_id=user_id,
            details={
                "operation": operation,
                "permission": perm.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            changes={"before": {field_name: before}, "after": {field_name: after}},
        )

    def _clear_grant(self, field_name, operation, user_id, permission, actor) -> bool:
        perm = try_parse_permission(permission)
        if perm is None:
            return False
        with self._lock.write():
            binding = self._bindings.get(user_id)
            grants = getattr(binding, field_name) if binding else {}
            if perm not in grants:
                return False
            del grants[perm]

        self._audit(
            actor,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.USER,
            resource_id=user_id,
            details={"operation": operation, "permission": perm.value},
        )
        return True

    def grant_permission(
        self,
        user_id: str,
        permission,
        expires_at: Optional[datetime] = None,
        granted_by: str = SYSTEM_ACTOR,
    ) -> None:
        """Add a custom (additive) permission. A later denial still wins."""
        self._set_grant("custom_permissions", "grant_permission", user_id, permission, expires_at, granted_by)

    def deny_permission(
        self,
        user_id: str,
        permission,
        expires_at: Optional[datetime] = None,
        denied_by: str = SYSTEM_ACTOR,
    ) -> None:
        """Add a denial. Overrides every other grant source while active."""
        self._set_grant("denied_permissions", "deny_permission", user_id, permission, expires_at, denied_by)

    def revoke_permission(self, user_id: str, permission, revoked_by: str = SYSTEM_ACTOR) -> bool:
        """Remove a custom grant. Returns False if there was none."""
        return self._clear_grant("custom_permissions", "revoke_permission", user_id, permission, revoked_by)

    def remove_denied_permission(self, user_id: str, permission, removed_by: str = SYSTEM_ACTOR) -> bool:
        """Lift a denial. Returns False if there was none."""
        return self._clear_grant("denied_permissions", "remove_denied_permission", user_id, permission, removed_by)

    # =========================================================================
    # Resource-scoped Grants
    # =========================================================================

    def grant_resource_permission(
        self,
        user_id: str,
        resource_id: str,
        resource_type: str,
        permissions: Iterable,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> ResourcePermission:
        """Upsert the user's grant on one resource.

        A second call for the same (resource_id, user_id) replaces the
        permission set and expiry.
        """
        perms = frozenset(parse_permission(p) for p in permissions)

        with self._lock.write():
            self._binding_for_update(user_id, granted_by)
            grants = self._resource_permissions.setdefault(resource_id, {})
            existing = grants.get(user_id)
            if existing is not None:
                grant = replace(existing, permissions=perms, expires_at=expires_at)
            else:
                grant = ResourcePermission(
                    resource_id=resource_id,
                    resource_type=resource_type,
                    user_id=user_id,
                    permissions=perms,
                    granted_at=self._clock.now(),
                    granted_by=granted_by,
                    expires_at=expires_at,
                )
            grants[user_id] = grant

        self._audit(
            granted_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.RESOURCE,
            resource_id=resource_id,
            details={
                "operation": "grant_resource_permission",
                "user_id": user_id,
                "resource_type": resource_type,
            },
            changes={
                "before": existing.to_dict() if existing else {},
                "after": grant.to_dict(),
            },
        )
        return grant

    def revoke_resource_permission(self, user_id: str, resource_id: str, revoked_by: str = SYSTEM_ACTOR) -> bool:
        with self._lock.write():
            grants = self._resource_permissions.get(resource_id, {})
            if grants.pop(user_id, None) is None:
                return False
            if not grants:
                self._resource_permissions.pop(resource_id, None)

        self._audit(
            revoked_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.RESOURCE,
            resource_id=resource_id,
            details={"operation": "revoke_resource_permission", "user_id": user_id},
        )
        return True

    def get_resource_permissions(self, resource_id: str) -> list[ResourcePermission]:
        with self._lock.read():
            return list(self._resource_permissions.get(resource_id, {}).values())

    # =========================================================================
    # Permission Requests
    # =========================================================================

    def request_permission(
        self,
        user_id: str,
        permission,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PermissionRequest:
        """File a pending request. Raises InvalidPermissionError for unknown tokens."""
        request = PermissionRequest(
            request_id=str(uuid.uuid4()),
            user_id=user_id,
            permission=parse_permission(permission),
            requested_at=self._clock.now(),
            resource_id=resource_id,
            reason=reason,
        )
        with self._lock.write():
            self._requests[request.request_id] = request
        logger.info(f"Permission request {request.request_id}: {user_id} -> {request.permission.value}")
        return request

    def _resolve_request(self, request_id: str, decided_by: str, status: RequestStatus) -> PermissionRequest:
        with self._lock.write():
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError(f"Permission request {request_id} not found")
            if request.status != RequestStatus.PENDING:
                raise ConflictError(f"Permission request {request_id} is already {request.status.value}")

            request = replace(request, status=status, approved_by=decided_by, approved_at=self._clock.now())
            self._requests[request_id] = request

            if status == RequestStatus.APPROVED:
                binding = self._binding_for_update(request.user_id, decided_by)
                binding.custom_permissions[request.permission] = None

        self._audit(
            decided_by,
            AuditAction.PERMISSIONS_MODIFIED,
            ResourceType.USER,
            resource_id=request.user_id,
            details={
                "operation": f"request_{status.value}",
                "request_id": request_id,
                "permission": request.permission.value,
            },
        )
        return request

    def approve_permission_request(self, request_id: str, approved_by: str) -> PermissionRequest:
        """Approve a pending request and grant its permission as a custom grant.

        Raises:
            NotFoundError: unknown request id
            ConflictError: the request was already resolved
        """
        return self._resolve_request(request_id, approved_by, RequestStatus.APPROVED)

    def deny_permission_request(self, request_id: str, denied_by: str) -> PermissionRequest:
        return self._resolve_request(request_id, denied_by, RequestStatus.DENIED)

    def get_permission_request(self, request_id: str) -> PermissionRequest:
        with self._lock.read():
            request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Permission request {request_id} not found")
        return request

    def get_pending_requests(self) -> list[PermissionRequest]:
        with self._lock.read():
            return [r for r in self._requests.values() if r.status == RequestStatus.PENDING]

    # =========================================================================
    # Audit
    # =========================================================================

    def _audit(self, user_id, action, resource_type, **kwargs) -> None:
        """Record an event. Audit failures never alter the caller's result."""
        if self._audit_log is None:
            return
        try:
            self._audit_log.log(user_id, action, resource_type, **kwargs)
        except Exception:
            logger.exception(f"Audit logging failed for {action.value}")
