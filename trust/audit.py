"""
Append-only audit trail for security-relevant events.

Entries are held in insertion order with secondary indexes by user, action
and resource type. The only mutations are retention pruning
(clear_old_logs) and the size cap; both rebuild every index under the
write lock so an index never drifts from the primary list.

Usage:
    from trust.audit import AuditLog

    audit = AuditLog()
    audit.log("carol", "login", "user", status="failure", ip_address="1.2.3.4")
    audit.get_failed_login_attempts("carol", hours=24)

log() never raises: an event that cannot be recorded or forwarded to a
sink is counted in failed_writes and kept in the dead-letter queue.
"""

import copy
import csv
import io
import itertools
import json
import logging
import re
import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from core.errors import ConflictError, ValidationError
from core.locks import ReadWriteLock
from core.timestamps import SystemClock
from .types import (
    AuditAction,
    AuditLogEntry,
    AuditQuery,
    AuditStats,
    AuditStatus,
    ResourceType,
    Severity,
)

logger = logging.getLogger(__name__)
audit_mirror = logging.getLogger("trustcore.audit")

# Constants
MAX_ENTRIES = 100_000
PRUNE_BATCH = 1_000
DEAD_LETTER_SIZE = 1_000

CSV_HEADERS = [
    "ID",
    "Timestamp",
    "User ID",
    "Action",
    "Resource Type",
    "Resource ID",
    "Status",
    "Severity",
    "IP Address",
]

_CRITICAL_ACTIONS = {
    AuditAction.ADMIN_ACTION,
    AuditAction.ENCRYPTION_KEY_ROTATED,
    AuditAction.SECURITY_ALERT,
}
_HIGH_ACTIONS = {
    AuditAction.MFA_DISABLED,
    AuditAction.PASSWORD_CHANGED,
    AuditAction.PERMISSIONS_MODIFIED,
}
_MEDIUM_ACTIONS = {
    AuditAction.FILE_DELETED,
    AuditAction.FILE_SHARED,
    AuditAction.SETTINGS_CHANGED,
    AuditAction.BACKUP_CODES_REGENERATED,
}

_MIRROR_LEVELS = {
    Severity.LOW: logging.DEBUG,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


def severity_for(action: AuditAction) -> Severity:
    """Default severity for an action."""
    if action in _CRITICAL_ACTIONS:
        return Severity.CRITICAL
    if action in _HIGH_ACTIONS:
        return Severity.HIGH
    if action in _MEDIUM_ACTIONS:
        return Severity.MEDIUM
    return Severity.LOW


# =============================================================================
# Redaction (OWASP A02:2021 - Sensitive Data Exposure)
# =============================================================================

REDACTED = "***REDACTED***"

_SENSITIVE_KEY = re.compile(
    r'(password|passwd|pwd|secret|token|otp|backup_code|api[_-]?key|private[_-]?key|^code$)',
    re.IGNORECASE,
)

REDACTION_PATTERNS = [
    (re.compile(r'\b(password|passwd|pwd)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=' + REDACTED),
    (re.compile(r'\b(secret|api[_-]?key|auth[_-]?token)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=' + REDACTED),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]{20,}', re.IGNORECASE), r'\1' + REDACTED),
]


def redact(value: Any) -> Any:
    """Return a copy of value with sensitive keys and inline secrets masked."""
    if isinstance(value, dict):
        return {
            k: REDACTED if _SENSITIVE_KEY.search(str(k)) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    if isinstance(value, str):
        for pattern, replacement in REDACTION_PATTERNS:
            value = pattern.sub(replacement, value)
        return value
    return value


def _coerce(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(value)


# =============================================================================
# Audit Log
# =============================================================================

class AuditLog:
    """
    Thread-safe, indexed, append-only event store.

    Appends take the write lock only long enough to push the entry and
    update three index lists; queries copy a candidate list under the read
    lock and filter outside it.
    """

    def __init__(
        self,
        clock=None,
        max_entries: int = MAX_ENTRIES,
        prune_batch: int = PRUNE_BATCH,
        sinks: Iterable = (),
        redaction_enabled: bool = True,
        dead_letter_size: int = DEAD_LETTER_SIZE,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._clock = clock or SystemClock()
        self._max_entries = max_entries
        self._prune_batch = max(prune_batch, 0)
        self._sinks = list(sinks)
        self._redaction_enabled = redaction_enabled

        self._lock = ReadWriteLock()
        self._entries: list[AuditLogEntry] = []
        self._by_user: dict[str, list[AuditLogEntry]] = {}
        self._by_action: dict[AuditAction, list[AuditLogEntry]] = {}
        self._by_resource_type: dict[ResourceType, list[AuditLogEntry]] = {}
        self._seq = itertools.count(1)

        self._failure_lock = threading.Lock()
        self._failed_writes = 0
        self._dead_letters: deque = deque(maxlen=dead_letter_size)

    # -------------------------------------------------------------------------
    # Append
    # -------------------------------------------------------------------------

    def log(
        self,
        user_id: str,
        action,
        resource_type,
        *,
        resource_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status=AuditStatus.SUCCESS,
        severity=None,
        changes: Optional[dict] = None,
    ) -> Optional[AuditLogEntry]:
        """
        Append an audit event.

        Args:
            user_id: Principal the event is about
            action: AuditAction (or its string value)
            resource_type: ResourceType (or its string value)
            resource_id: Optional id of the affected object
            resource_name: Optional display name of the affected object
            details: Free-form context; sensitive keys are redacted
            ip_address: Request origin
            user_agent: Request user agent
            status: success, failure or warning
            severity: Overrides the action's default severity
            changes: Optional {"before": {...}, "after": {...}} diff

        Returns:
            The stored entry, or None if the event could not be recorded.
        """
        try:
            action = _coerce(AuditAction, action)
            entry_kwargs = dict(
                id=f"audit-{uuid.uuid4().hex}",
                timestamp=self._clock.now(),
                user_id=str(user_id),
                action=action,
                resource_type=_coerce(ResourceType, resource_type),
                status=_coerce(AuditStatus, status) or AuditStatus.SUCCESS,
                severity=_coerce(Severity, severity) or severity_for(action),
                ip_address=ip_address or "",
                user_agent=user_agent or "",
                resource_id=resource_id,
                resource_name=resource_name,
                details=self._scrub(details),
                changes=self._scrub(changes),
            )
        except (ValueError, TypeError) as e:
            self._report_failure(
                {"user_id": user_id, "action": str(action), "resource_type": str(resource_type)}, e
            )
            return None

        with self._lock.write():
            entry = AuditLogEntry(seq=next(self._seq), **entry_kwargs)
            self._entries.append(entry)
            self._index(entry)
            if len(self._entries) > self._max_entries:
                self._prune_locked()

        self._mirror(entry)
        self._forward(entry)
        return entry

    def _scrub(self, value):
        if value is None:
            return None
        return redact(value) if self._redaction_enabled else copy.deepcopy(value)

    def _index(self, entry: AuditLogEntry) -> None:
        self._by_user.setdefault(entry.user_id, []).append(entry)
        self._by_action.setdefault(entry.action, []).append(entry)
        self._by_resource_type.setdefault(entry.resource_type, []).append(entry)

    def _rebuild_indexes_locked(self) -> None:
        self._by_user = {}
        self._by_action = {}
        self._by_resource_type = {}
        for entry in self._entries:
            self._index(entry)

    def _prune_locked(self) -> None:
        """Drop the oldest entries once the cap is exceeded. Keeps the newest."""
        to_remove = len(self._entries) - self._max_entries + self._prune_batch
        to_remove = min(to_remove, len(self._entries) - 1)
        if to_remove > 0:
            del self._entries[:to_remove]
            self._rebuild_indexes_locked()
            logger.info(f"Audit log pruned {to_remove} oldest entries (cap {self._max_entries})")

    def _mirror(self, entry: AuditLogEntry) -> None:
        audit_mirror.log(
            _MIRROR_LEVELS[entry.severity],
            f"AUDIT: {entry.action.value} user={entry.user_id} status={entry.status.value}",
            extra={
                "audit_id": entry.id,
                "action": entry.action.value,
                "severity": entry.severity.value,
                "user": entry.user_id,
                "remote_addr": entry.ip_address,
            },
        )

    def _forward(self, entry: AuditLogEntry) -> None:
        for sink in self._sinks:
            try:
                sink.write(entry)
            except Exception as e:
                self._report_failure(entry.to_dict(), e, sink=type(sink).__name__)

    def _report_failure(self, payload: dict, error: Exception, sink: str = None) -> None:
        with self._failure_lock:
            self._failed_writes += 1
            self._dead_letters.append({
                "payload": payload,
                "error": f"{type(error).__name__}: {error}",
                "sink": sink,
                "failed_at": self._clock.now().isoformat(),
            })
        logger.exception(f"Audit write failed (sink={sink or 'memory'})", exc_info=error)

    @property
    def failed_writes(self) -> int:
        with self._failure_lock:
            return self._failed_writes

    def dead_letters(self) -> list[dict]:
        with self._failure_lock:
            return list(self._dead_letters)

    def restore(self, entries: Iterable[AuditLogEntry]) -> int:
        """Rehydrate an empty log from a durable sink, preserving order.

        Only the newest max_entries are kept; older rows stay in the sink.
        """
        with self._lock.write():
            if self._entries:
                raise ConflictError("Audit log already contains entries")
            recent = deque(entries, maxlen=self._max_entries)
            for entry in recent:
                self._entries.append(replace(entry, seq=next(self._seq)))
            self._rebuild_indexes_locked()
            return len(self._entries)

    def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def query(self, query: AuditQuery = None, **filters) -> list[AuditLogEntry]:
        """
        Return entries matching every given filter, newest first.

        Accepts an AuditQuery or the same fields as keyword arguments.
        """
        if query is None:
            query = AuditQuery(**filters)
        elif filters:
            raise TypeError("Pass either an AuditQuery or keyword filters, not both")

        action = _coerce(AuditAction, query.action)
        resource_type = _coerce(ResourceType, query.resource_type)
        status = _coerce(AuditStatus, query.status)
        severity = _coerce(Severity, query.severity)

        with self._lock.read():
            if query.user_id is not None:
                candidates = list(self._by_user.get(query.user_id, ()))
            elif action is not None:
                candidates = list(self._by_action.get(action, ()))
            elif resource_type is not None:
                candidates = list(self._by_resource_type.get(resource_type, ()))
            else:
                candidates = list(self._entries)

        def matches(e: AuditLogEntry) -> bool:
            if query.user_id is not None and e.user_id != query.user_id:
                return False
            if action is not None and e.action != action:
                return False
            if resource_type is not None and e.resource_type != resource_type:
                return False
            if query.resource_id is not None and e.resource_id != query.resource_id:
                return False
            if status is not None and e.status != status:
                return False
            if severity is not None and e.severity != severity:
                return False
            if query.start_date is not None and e.timestamp < query.start_date:
                return False
            if query.end_date is not None and e.timestamp > query.end_date:
                return False
            return True

        results = [e for e in candidates if matches(e)]
        results.sort(key=lambda e: e.sort_key, reverse=True)

        if query.limit is not None:
            results = results[:max(query.limit, 0)]
        return results

    def get_user_logs(self, user_id: str, limit: int = 100) -> list[AuditLogEntry]:
        return self.query(user_id=user_id, limit=limit)

    def get_resource_logs(self, resource_type, resource_id: str = None, limit: int = 100) -> list[AuditLogEntry]:
        return self.query(resource_type=resource_type, resource_id=resource_id, limit=limit)

    def get_failed_login_attempts(self, user_id: str, hours: int = 24) -> list[AuditLogEntry]:
        return self.query(
            user_id=user_id,
            action=AuditAction.LOGIN,
            status=AuditStatus.FAILURE,
            start_date=self._since(hours),
        )

    def get_access_denied_events(self, user_id: str = None, hours: int = 24) -> list[AuditLogEntry]:
        return self.query(
            user_id=user_id,
            action=AuditAction.ACCESS_DENIED,
            start_date=self._since(hours),
        )

    def get_critical_events(self, hours: int = 24) -> list[AuditLogEntry]:
        return self.query(severity=Severity.CRITICAL, start_date=self._since(hours))

    def _since(self, hours: float) -> datetime:
        return self._clock.now() - timedelta(hours=hours)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_stats(self, start_date: datetime = None, end_date: datetime = None) -> AuditStats:
        """Counts by action, user and severity inside an optional window."""
        entries = self.query(start_date=start_date, end_date=end_date)

        by_action: dict[str, int] = {}
        by_user: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        failures = 0
        criticals = 0

        for e in entries:
            by_action[e.action.value] = by_action.get(e.action.value, 0) + 1
            by_user[e.user_id] = by_user.get(e.user_id, 0) + 1
            by_severity[e.severity.value] = by_severity.get(e.severity.value, 0) + 1
            if e.status == AuditStatus.FAILURE:
                failures += 1
            if e.severity == Severity.CRITICAL:
                criticals += 1

        return AuditStats(
            total_entries=len(entries),
            by_action=by_action,
            by_user=by_user,
            by_severity=by_severity,
            failed_attempts=failures,
            critical_events=criticals,
            start=start_date or datetime.fromtimestamp(0, tz=timezone.utc),
            end=end_date or self._clock.now(),
        )

    def export_logs(self, format: str, query: AuditQuery = None) -> str:
        """Render matching entries as pretty JSON or a fully quoted CSV."""
        entries = self.query(query or AuditQuery())

        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, default=str)

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for e in entries:
                writer.writerow([
                    e.id,
                    e.timestamp.isoformat(),
                    e.user_id,
                    e.action.value,
                    e.resource_type.value,
                    e.resource_id or "",
                    e.status.value,
                    e.severity.value,
                    e.ip_address,
                ])
            return buffer.getvalue().rstrip("\n")

        raise ValidationError(f"Unsupported export format '{format}' (use json or csv)")

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def clear_old_logs(self, older_than_days: float) -> int:
        """Remove entries older than the cutoff. Returns how many were removed."""
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        with self._lock.write():
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            self._rebuild_indexes_locked()
            removed = before - len(self._entries)

        for sink in self._sinks:
            prune = getattr(sink, "delete_older_than", None)
            if prune is None:
                continue
            try:
                prune(cutoff.isoformat())
            except Exception as e:
                self._report_failure({"retention_cutoff": cutoff.isoformat()}, e, sink=type(sink).__name__)

        if removed:
            logger.info(f"Cleared {removed} audit entries older than {older_than_days} days")
        return removed
