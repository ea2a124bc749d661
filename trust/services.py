"""
Composition root for the trust core.

build_services wires one AuditLog, RBACEngine and MFAService together from
AppSettings. Request handlers receive the bundle through the Flask app
instead of module-level singletons, and tests build their own.
"""
import logging
from dataclasses import dataclass

from config.settings import get_settings
from core.timestamps import SystemClock
from .audit import AuditLog
from .mfa import MFAService, resolve_encryption_key
from .rbac import RBACEngine
from .sinks import build_sink

logger = logging.getLogger(__name__)


@dataclass
class TrustServices:
    audit: AuditLog
    rbac: RBACEngine
    mfa: MFAService

    def close(self) -> None:
        self.audit.close()


def build_services(settings=None, clock=None) -> TrustServices:
    """Create the three services sharing one clock and one audit log.

    When a durable sink is configured, previously persisted entries are
    loaded back into the in-memory log before anything else is appended.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()

    sink = build_sink(settings.audit)
    audit = AuditLog(
        clock=clock,
        max_entries=settings.audit.max_entries,
        prune_batch=settings.audit.prune_batch,
        sinks=[sink] if sink is not None else [],
        redaction_enabled=settings.audit.redaction_enabled,
        dead_letter_size=settings.audit.dead_letter_size,
    )
    if sink is not None and hasattr(sink, "load_entries"):
        restored = audit.restore(sink.load_entries())
        logger.info(f"Restored {restored} audit entries from {type(sink).__name__}")

    rbac = RBACEngine(audit_log=audit, clock=clock)
    mfa = MFAService(
        audit_log=audit,
        rbac=rbac,
        clock=clock,
        settings=settings.mfa,
        encryption_key=resolve_encryption_key(settings),
    )
    return TrustServices(audit=audit, rbac=rbac, mfa=mfa)
