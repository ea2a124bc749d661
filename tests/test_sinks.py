"""Tests for durable audit sinks and service wiring."""

import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from config.settings import AppSettings
from trust.audit import AuditLog
from trust.services import build_services
from trust.sinks import AuditSink, JSONLinesAuditSink, SQLiteAuditSink, build_sink
from trust.types import AuditAction, AuditStatus


class TestSinkBase:
    def test_base_is_abstract(self):
        with pytest.raises(TypeError):
            AuditSink()

    def test_subclass_must_implement_write(self):
        class CloseOnly(AuditSink):
            def close(self):
                pass

        with pytest.raises(TypeError):
            CloseOnly()


class TestSQLiteSink:
    def test_roundtrip_preserves_order(self, tmp_path, clock):
        sink = SQLiteAuditSink(tmp_path / "audit.db")
        audit = AuditLog(clock=clock, sinks=[sink])
        first = audit.log("carol", "login", "user", status="failure", details={"attempt": 1})
        clock.advance(seconds=5)
        second = audit.log("carol", "logout", "user")

        loaded = list(sink.load_entries())
        assert [e.id for e in loaded] == [first.id, second.id]
        assert loaded[0].status == AuditStatus.FAILURE
        assert loaded[0].details == {"attempt": 1}
        assert loaded[0].timestamp == first.timestamp
        sink.close()

    def test_delete_older_than_follows_retention(self, tmp_path, clock):
        sink = SQLiteAuditSink(tmp_path / "audit.db")
        audit = AuditLog(clock=clock, sinks=[sink])
        audit.log("old", "login", "user")
        clock.advance(days=10)
        audit.log("new", "login", "user")

        assert audit.clear_old_logs(5) == 1
        assert [e.user_id for e in sink.load_entries()] == ["new"]
        sink.close()

    def test_restore_honours_entry_cap(self, tmp_path, clock):
        sink = SQLiteAuditSink(tmp_path / "audit.db")
        live = AuditLog(clock=clock, max_entries=50, prune_batch=10, sinks=[sink])
        for n in range(200):
            live.log(f"user-{n}", "login", "user")
        assert len(live) <= 50
        assert len(list(sink.load_entries())) == 200

        restored = AuditLog(clock=clock, max_entries=50)
        assert restored.restore(sink.load_entries()) == 50
        assert restored.get_user_logs("user-199")
        assert restored.get_user_logs("user-150")
        assert restored.get_user_logs("user-149") == []
        sink.close()

    def test_duplicate_id_is_reported_not_raised(self, tmp_path, clock):
        sink = SQLiteAuditSink(tmp_path / "audit.db")
        audit = AuditLog(clock=clock, sinks=[sink])
        entry = audit.log("carol", "login", "user")
        sink_again = AuditLog(clock=clock, sinks=[sink])
        with patch("trust.audit.uuid.uuid4") as fake_uuid:
            fake_uuid.return_value.hex = entry.id.removeprefix("audit-")
            assert sink_again.log("carol", "login", "user") is not None
        assert sink_again.failed_writes == 1
        sink.close()


class TestJSONLinesSink:
    def test_append_and_load(self, tmp_path, clock):
        path = tmp_path / "logs" / "audit.jsonl"
        sink = JSONLinesAuditSink(path)
        audit = AuditLog(clock=clock, sinks=[sink])
        audit.log("carol", "file_shared", "file", resource_id="doc-1")
        audit.log("dan", "file_deleted", "file", resource_id="doc-2")

        assert len(path.read_text().splitlines()) == 2
        loaded = list(sink.load_entries())
        assert [e.action for e in loaded] == [AuditAction.FILE_SHARED, AuditAction.FILE_DELETED]

    def test_missing_file_loads_nothing(self, tmp_path):
        assert list(JSONLinesAuditSink(tmp_path / "none.jsonl").load_entries()) == []

    def test_cleared_entries_stay_cleared_after_restart(self, tmp_path, clock):
        path = tmp_path / "audit.jsonl"
        with patch.dict(os.environ, {"AUDIT_SINK": "jsonl", "AUDIT_JSONL_PATH": str(path)}):
            settings = AppSettings()

        first = build_services(settings, clock=clock)
        first.audit.log("carol", "login", "user")
        clock.advance(days=40)
        first.audit.log("carol", "logout", "user")
        assert first.audit.clear_old_logs(30) == 1
        first.close()

        assert len(path.read_text().splitlines()) == 1
        assert not path.with_suffix(".tmp").exists()

        second = build_services(settings, clock=clock)
        assert [e.action for e in second.audit.query()] == [AuditAction.LOGOUT]
        second.close()

    def test_delete_older_than_without_matches_leaves_file(self, tmp_path, clock):
        path = tmp_path / "audit.jsonl"
        sink = JSONLinesAuditSink(path)
        AuditLog(clock=clock, sinks=[sink]).log("carol", "login", "user")
        before = path.read_text()
        assert sink.delete_older_than((clock.now() - timedelta(days=1)).isoformat()) == 0
        assert path.read_text() == before


class TestBuildServices:
    def test_memory_sink(self):
        settings = AppSettings()
        assert settings.audit.sink == "memory"
        assert build_sink(settings.audit) is None

    def test_restores_from_sqlite(self, tmp_path, clock):
        db_path = tmp_path / "audit.db"
        with patch.dict(os.environ, {"AUDIT_SINK": "sqlite", "AUDIT_SQLITE_PATH": str(db_path)}):
            settings = AppSettings()

        first = build_services(settings, clock=clock)
        first.rbac.has_permission("ghost", "file.read")
        first.close()

        second = build_services(settings, clock=clock)
        events = second.audit.get_access_denied_events("ghost")
        assert len(events) == 1
        second.close()

    def test_services_share_audit_log(self, clock):
        services = build_services(AppSettings(), clock=clock)
        services.rbac.assign_role("alice", "user", "root")
        setup = services.mfa.initialize_totp_setup("alice")
        services.mfa.enable_totp("alice", setup)
        actions = {e.action for e in services.audit.get_user_logs("alice")}
        assert AuditAction.MFA_ENABLED in actions
