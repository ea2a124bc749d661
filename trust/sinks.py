"""
Durable audit sinks.

An AuditLog forwards every appended entry to its sinks. A sink may raise;
the audit log turns the failure into a failed_writes count and a
dead-letter record instead of failing the caller's action.

- SQLiteAuditSink: append-only ``audit_log`` table (id primary key,
  timestamp indexed) with load_entries() for rehydration at startup.
- JSONLinesAuditSink: one JSON document per line, for shipping to a SIEM.

Both implement delete_older_than so retention done by
AuditLog.clear_old_logs survives a restart.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

from core.timestamps import parse_timestamp
from .types import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Abstract base class for audit sinks."""

    @abstractmethod
    def write(self, entry: AuditLogEntry) -> None:
        """Persist one entry."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Clean up resources."""
        pass


class SQLiteAuditSink(AuditSink):
    """Persist audit entries to SQLite. Rows are never updated."""

    def __init__(self, db_path):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.init_tables()

    def init_tables(self) -> None:
        """Create the audit table if it doesn't exist."""
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    timestamp TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    resource_name TEXT,
                    status TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    details TEXT,
                    changes TEXT
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_log_user_id ON audit_log(user_id)"
            )
            self._conn.commit()

    def write(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO audit_log (
                    id, timestamp, user_id, action, resource_type, resource_id,
                    resource_name, status, severity, ip_address, user_agent,
                    details, changes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.timestamp.isoformat(),
                    entry.user_id,
                    entry.action.value,
                    entry.resource_type.value,
                    entry.resource_id,
                    entry.resource_name,
                    entry.status.value,
                    entry.severity.value,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.details, default=str) if entry.details is not None else None,
                    json.dumps(entry.changes, default=str) if entry.changes is not None else None,
                ),
            )
            self._conn.commit()

    def load_entries(self) -> Iterator[AuditLogEntry]:
        """Yield stored entries in insertion order."""
        with self._lock:
            rows = self._conn.execute("SELECT * FROM audit_log ORDER BY seq").fetchall()

        for row in rows:
            data = dict(row)
            data["details"] = json.loads(data["details"]) if data["details"] else None
            data["changes"] = json.loads(data["changes"]) if data["changes"] else None
            yield AuditLogEntry.from_dict(data, seq=data["seq"])

    def delete_older_than(self, cutoff_iso: str) -> int:
        """Retention counterpart of AuditLog.clear_old_logs."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM audit_log WHERE timestamp < ?", (cutoff_iso,))
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class JSONLinesAuditSink(AuditSink):
    """Append entries to a JSON-lines file."""

    def __init__(self, file_path):
        self._path = Path(file_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, entry: AuditLogEntry) -> None:
        line = json.dumps(entry.to_dict(), default=str)
        with self._lock:
            with open(self._path, "a") as f:
                f.write(line + "\n")

    def _read_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        with open(self._path, "r") as f:
            return [line for line in (raw.strip() for raw in f) if line]

    def load_entries(self) -> Iterator[AuditLogEntry]:
        with self._lock:
            lines = self._read_lines()
        for n, line in enumerate(lines, start=1):
            yield AuditLogEntry.from_dict(json.loads(line), seq=n)

    def delete_older_than(self, cutoff_iso: str) -> int:
        """Rewrite the file without entries older than the cutoff."""
        cutoff = parse_timestamp(cutoff_iso)
        with self._lock:
            lines = self._read_lines()
            kept = [
                line for line in lines
                if parse_timestamp(json.loads(line)["timestamp"]) >= cutoff
            ]
            removed = len(lines) - len(kept)
            if removed:
                # Write atomically using temp file
                temp_file = self._path.with_suffix(".tmp")
                with open(temp_file, "w") as f:
                    f.writelines(line + "\n" for line in kept)
                temp_file.replace(self._path)
        return removed

    def close(self) -> None:
        pass


def build_sink(audit_settings) -> AuditSink | None:
    """Create the sink selected by AuditSettings.sink (None for memory only)."""
    if audit_settings.sink == "sqlite":
        logger.info(f"Audit entries persisted to SQLite at {audit_settings.sqlite_path}")
        return SQLiteAuditSink(audit_settings.sqlite_path)
    if audit_settings.sink == "jsonl":
        logger.info(f"Audit entries appended to {audit_settings.jsonl_path}")
        return JSONLinesAuditSink(audit_settings.jsonl_path)
    return None
