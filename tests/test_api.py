"""
Trust API tests.

Exercises the Flask surface end to end: JWT auth, permission checks
backed by the RBAC engine, MFA enrollment and step-up, and audit access.
"""

import json
from datetime import timedelta

import pyotp
import pytest

from trust.permissions import ADMIN, GUEST, MODERATOR, USER
from trust.types import AuditAction

UA = {'User-Agent': 'pytest-browser'}


@pytest.fixture
def admin(services):
    services.rbac.assign_role("root", ADMIN, "system")
    return "root"


@pytest.fixture
def admin_mfa(services, admin):
    """Enroll the admin in MFA; returns the TOTP secret."""
    setup = services.mfa.initialize_totp_setup(admin)
    services.mfa.enable_totp(admin, setup)
    return setup.secret


def _totp(secret, clock):
    return pyotp.TOTP(secret).at(clock.now())


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get('/api/access/me')
        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.get('/api/access/me', headers={'Authorization': 'Bearer not-a-jwt'})
        assert response.status_code == 401

    def test_expired_token(self, client):
        from dashboard.auth import create_token
        token = create_token("alice", expires_in=timedelta(seconds=-1))
        response = client.get('/api/access/me', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 401

    def test_healthz_is_public(self, client):
        response = client.get('/healthz')
        assert response.status_code == 200
        assert response.get_json()["status"] == "ok"


class TestAccessRoutes:
    def test_my_permissions(self, client, services, auth_headers):
        services.rbac.assign_role("alice", USER, "root")
        response = client.get('/api/access/me', headers=auth_headers("alice"))
        data = response.get_json()
        assert response.status_code == 200
        assert data["roles"] == [USER]
        assert "file.read" in data["permissions"]
        assert "admin.manage_users" not in data["permissions"]

    def test_check(self, client, services, auth_headers):
        services.rbac.grant_resource_permission("alice", "doc-1", "file", ["file.delete"], "root")
        response = client.post('/api/access/check', headers=auth_headers("alice"),
                               json={"permission": "file.delete", "resource_id": "doc-1"})
        assert response.get_json()["allowed"] is True

    def test_denied_is_generic_and_audited(self, client, services, auth_headers):
        services.rbac.assign_role("mod", MODERATOR, "root")
        response = client.post('/api/access/users/alice/roles', headers=auth_headers("mod", **UA),
                               json={"role": USER})
        assert response.status_code == 403
        assert response.get_json()["error"] == "Not authorized"

        denied = services.audit.get_access_denied_events("mod")
        assert denied[0].details["permission"] == "admin.manage_users"
        assert denied[0].user_agent == "pytest-browser"

    def test_admin_assigns_role(self, client, services, admin, auth_headers):
        response = client.post('/api/access/users/alice/roles', headers=auth_headers(admin),
                               json={"role": GUEST})
        assert response.status_code == 200
        assert response.get_json()["assigned"] is True
        assert services.rbac.get_user_roles("alice") == [GUEST]

    def test_assign_unknown_role(self, client, admin, auth_headers):
        response = client.post('/api/access/users/alice/roles', headers=auth_headers(admin),
                               json={"role": "custom-missing"})
        assert response.status_code == 403

    def test_assign_requires_role_field(self, client, admin, auth_headers):
        response = client.post('/api/access/users/alice/roles', headers=auth_headers(admin), json={})
        assert response.status_code == 400

    def test_create_custom_role(self, client, services, admin, auth_headers):
        response = client.post('/api/access/roles', headers=auth_headers(admin), json={
            "name": "reviewer", "permissions": ["file.read", "reports.view"], "hierarchy_level": 2,
        })
        assert response.status_code == 201
        assert response.get_json()["role"]["role"] == "custom-reviewer"
        assert services.rbac.get_role_definition("custom-reviewer") is not None

        bad = client.post('/api/access/roles', headers=auth_headers(admin), json={
            "name": "broken", "permissions": ["file.teleport"],
        })
        assert bad.status_code == 400

    def test_grant_and_deny(self, client, services, admin, auth_headers):
        client.post('/api/access/users/alice/grants', headers=auth_headers(admin),
                    json={"permission": "ai.admin"})
        assert services.rbac.has_permission("alice", "ai.admin") is True

        client.post('/api/access/users/alice/denials', headers=auth_headers(admin),
                    json={"permission": "ai.admin"})
        assert services.rbac.has_permission("alice", "ai.admin") is False

        response = client.delete('/api/access/users/alice/denials/ai.admin', headers=auth_headers(admin))
        assert response.get_json()["removed"] is True

    def test_grant_unknown_permission(self, client, admin, auth_headers):
        response = client.post('/api/access/users/alice/grants', headers=auth_headers(admin),
                               json={"permission": "file.teleport"})
        assert response.status_code == 400

    def test_request_workflow(self, client, services, admin, auth_headers):
        response = client.post('/api/access/requests', headers=auth_headers("alice"),
                               json={"permission": "reports.generate", "reason": "quarterly"})
        assert response.status_code == 201
        request_id = response.get_json()["request"]["id"]

        pending = client.get('/api/access/requests/pending', headers=auth_headers(admin)).get_json()
        assert pending["count"] == 1

        response = client.post(f'/api/access/requests/{request_id}/approve', headers=auth_headers(admin))
        assert response.get_json()["request"]["status"] == "approved"
        assert services.rbac.has_permission("alice", "reports.generate") is True

        again = client.post(f'/api/access/requests/{request_id}/deny', headers=auth_headers(admin))
        assert again.status_code == 409

    def test_unknown_request(self, client, admin, auth_headers):
        response = client.post('/api/access/requests/nope/approve', headers=auth_headers(admin))
        assert response.status_code == 404


class TestMFARoutes:
    def test_enrollment_flow(self, client, services, clock, auth_headers):
        setup = client.post('/api/mfa/setup', headers=auth_headers("bob")).get_json()["setup"]
        assert "backup_codes" not in setup
        assert setup["qr_code"].startswith("data:image/png;base64,")

        bad = client.post('/api/mfa/confirm', headers=auth_headers("bob"), json={"code": "000000x"})
        assert bad.status_code == 400

        response = client.post('/api/mfa/confirm', headers=auth_headers("bob"),
                               json={"code": _totp(setup["secret"], clock)})
        data = response.get_json()
        assert response.status_code == 200
        assert data["mfa"]["enabled"] is True
        assert len(data["backup_codes"]) == 10

        status = client.get('/api/mfa/status', headers=auth_headers("bob")).get_json()["mfa"]
        assert status["enabled"] is True
        assert status["required"] is True
        assert "secret" not in status

    def test_enrolled_user_must_disable_before_reenrolling(self, client, services, clock, auth_headers):
        setup = services.mfa.initialize_totp_setup("bob")
        services.mfa.enable_totp("bob", setup)

        response = client.post('/api/mfa/setup', headers=auth_headers("bob"))
        assert response.status_code == 409
        response = client.post('/api/mfa/confirm', headers=auth_headers("bob"),
                               json={"code": _totp(setup.secret, clock)})
        assert response.status_code == 409
        assert services.mfa.verify_totp("bob", _totp(setup.secret, clock)).verified is True

        headers = auth_headers("bob", **{'X-MFA-Code': setup.backup_codes[0]})
        assert client.post('/api/mfa/disable', headers=headers).status_code == 200
        assert client.post('/api/mfa/setup', headers=auth_headers("bob")).status_code == 200

    def test_stale_setup_cannot_replace_factor(self, client, services, clock, auth_headers):
        stale = client.post('/api/mfa/setup', headers=auth_headers("bob")).get_json()["setup"]
        setup = services.mfa.initialize_totp_setup("bob")
        services.mfa.enable_totp("bob", setup)

        response = client.post('/api/mfa/confirm', headers=auth_headers("bob"),
                               json={"code": _totp(stale["secret"], clock)})
        assert response.status_code == 409
        assert services.mfa.verify_totp("bob", _totp(stale["secret"], clock)).verified is False
        assert services.mfa.verify_totp("bob", _totp(setup.secret, clock)).verified is True

    def test_confirm_without_setup(self, client, auth_headers):
        response = client.post('/api/mfa/confirm', headers=auth_headers("bob"), json={"code": "123456"})
        assert response.status_code == 400

    def test_step_up_required(self, client, services, clock, admin_mfa, auth_headers):
        response = client.post('/api/mfa/backup-codes/regenerate', headers=auth_headers("root"))
        assert response.status_code == 401
        assert response.get_json()["mfa_required"] is True

        headers = auth_headers("root", **{'X-MFA-Code': _totp(admin_mfa, clock)})
        response = client.post('/api/mfa/backup-codes/regenerate', headers=headers)
        assert response.status_code == 200
        assert len(response.get_json()["backup_codes"]) == 10

    def test_step_up_with_backup_code(self, client, services, auth_headers):
        setup = services.mfa.initialize_totp_setup("bob")
        services.mfa.enable_totp("bob", setup)

        headers = auth_headers("bob", **{'X-MFA-Code': setup.backup_codes[0]})
        assert client.post('/api/mfa/disable', headers=headers).status_code == 200
        assert services.mfa.get_mfa_status("bob").enabled is False

    def test_wrong_step_up_code(self, client, admin_mfa, auth_headers):
        headers = auth_headers("root", **{'X-MFA-Code': 'WRONGCODE'})
        response = client.post('/api/mfa/backup-codes/regenerate', headers=headers)
        assert response.status_code == 401

    def test_trusted_device_skips_challenge(self, client, services, clock, admin_mfa, auth_headers):
        code = _totp(admin_mfa, clock)
        response = client.post('/api/mfa/verify', headers=auth_headers("root", **UA),
                               json={"code": code, "trust_device": True, "device_name": "Laptop"})
        assert response.get_json()["device"]["device_name"] == "Laptop"

        response = client.post('/api/mfa/backup-codes/regenerate', headers=auth_headers("root", **UA))
        assert response.status_code == 200

        other_browser = auth_headers("root", **{'User-Agent': 'other-browser'})
        assert client.post('/api/mfa/backup-codes/regenerate', headers=other_browser).status_code == 401

    def test_device_listing_and_revoke(self, client, services, auth_headers):
        device = services.mfa.trust_device("bob", "Phone", "127.0.0.1", "pytest-browser")
        listed = client.get('/api/mfa/devices', headers=auth_headers("bob")).get_json()
        assert listed["count"] == 1

        response = client.delete(f'/api/mfa/devices/{device.device_id}', headers=auth_headers("bob"))
        assert response.status_code == 200
        response = client.delete(f'/api/mfa/devices/{device.device_id}', headers=auth_headers("bob"))
        assert response.status_code == 404

    @pytest.mark.parametrize("days", ["soon", 0, -3, [7]])
    def test_trust_device_rejects_bad_days(self, client, auth_headers, days):
        response = client.post('/api/mfa/devices', headers=auth_headers("bob"),
                               json={"device_name": "Phone", "days": days})
        assert response.status_code == 400

    def test_trust_device_with_days(self, client, clock, auth_headers):
        response = client.post('/api/mfa/devices', headers=auth_headers("bob"),
                               json={"device_name": "Phone", "days": "7"})
        assert response.status_code == 201
        trusted_until = response.get_json()["device"]["trusted_until"]
        assert trusted_until == (clock.now() + timedelta(days=7)).isoformat()

    def test_history(self, client, services, auth_headers):
        services.mfa.verify_totp("bob", "123456")
        data = client.get('/api/mfa/history', headers=auth_headers("bob")).get_json()
        assert data["count"] == 1
        assert data["history"][0]["verified"] is False


class TestAuditRoutes:
    def test_viewer_can_query(self, client, services, auth_headers):
        services.rbac.assign_role("mod", MODERATOR, "root")
        services.audit.log("carol", "login", "user", status="failure")
        response = client.get('/api/audit/logs?user_id=carol&status=failure', headers=auth_headers("mod"))
        data = response.get_json()
        assert response.status_code == 200
        assert data["count"] == 1
        assert data["entries"][0]["action"] == "login"

    def test_guest_cannot_query(self, client, services, auth_headers):
        services.rbac.assign_role("gus", GUEST, "root")
        assert client.get('/api/audit/logs', headers=auth_headers("gus")).status_code == 403

    def test_invalid_filter(self, client, admin, auth_headers):
        response = client.get('/api/audit/logs?action=teleport', headers=auth_headers(admin))
        assert response.status_code == 400

    def test_stats(self, client, services, admin, auth_headers):
        services.audit.log("carol", "login", "user", status="failure")
        stats = client.get('/api/audit/stats', headers=auth_headers(admin)).get_json()["stats"]
        assert stats["by_action"]["login"] == 1
        assert stats["failed_attempts"] == 1

    def test_export_csv(self, client, services, admin, auth_headers):
        services.audit.log("carol", "file_shared", "file", resource_id="doc-1")
        response = client.get('/api/audit/export?format=csv&action=file_shared', headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.mimetype == 'text/csv'
        lines = response.get_data(as_text=True).split("\n")
        assert lines[0].startswith('"ID","Timestamp"')
        assert len(lines) == 2

    def test_export_json(self, client, services, admin, auth_headers):
        services.audit.log("carol", "file_shared", "file")
        response = client.get('/api/audit/export?format=json', headers=auth_headers(admin))
        assert isinstance(json.loads(response.get_data(as_text=True)), list)

    def test_export_bad_format(self, client, admin, auth_headers):
        response = client.get('/api/audit/export?format=xml', headers=auth_headers(admin))
        assert response.status_code == 400

    def test_retention_requires_mfa(self, client, services, clock, admin_mfa, auth_headers):
        services.audit.log("carol", "login", "user")
        clock.advance(days=100)

        response = client.post('/api/audit/retention', headers=auth_headers("root"),
                               json={"older_than_days": 90})
        assert response.status_code == 401

        headers = auth_headers("root", **{'X-MFA-Code': _totp(admin_mfa, clock)})
        response = client.post('/api/audit/retention', headers=headers, json={"older_than_days": 90})
        assert response.status_code == 200
        assert response.get_json()["removed"] >= 1
        assert services.audit.query(action=AuditAction.ADMIN_ACTION)

    def test_retention_validates_days(self, client, services, clock, admin_mfa, auth_headers):
        headers = auth_headers("root", **{'X-MFA-Code': _totp(admin_mfa, clock)})
        response = client.post('/api/audit/retention', headers=headers, json={"older_than_days": "soon"})
        assert response.status_code == 400
