"""
MFA API Routes.

Enrollment (setup -> confirm), verification, backup codes and trusted
devices for the calling user. Pending setups live only in the app and are
discarded on confirm.
"""

import logging

from flask import Blueprint, g, jsonify, request

from core.errors import ConflictError, ValidationError
from dashboard.auth import jwt_required, mfa_required
from dashboard.shared import (
    client_context,
    get_json_body,
    get_services,
    pending_setups,
    require_field,
)

logger = logging.getLogger(__name__)

mfa_bp = Blueprint('mfa', __name__, url_prefix='/api/mfa')


@mfa_bp.route('/status', methods=['GET'])
@jwt_required
def mfa_status():
    mfa = get_services().mfa
    status = mfa.get_mfa_status(g.current_user).to_dict()
    status["required"] = mfa.is_mfa_required(g.current_user)
    return jsonify({"mfa": status, "status": "success"})


# =============================================================================
# Enrollment
# =============================================================================

def _refuse_if_enrolled(mfa):
    """An enabled factor is only replaced after a step-up /disable."""
    if mfa.is_mfa_enabled(g.current_user):
        pending_setups().pop(g.current_user, None)
        raise ConflictError("MFA is already enabled; disable it before enrolling again")


@mfa_bp.route('/setup', methods=['POST'])
@jwt_required
def begin_setup():
    """Generate a secret and QR code. Nothing is enabled until /confirm."""
    mfa = get_services().mfa
    _refuse_if_enrolled(mfa)
    setup = mfa.initialize_totp_setup(g.current_user)
    pending_setups()[g.current_user] = setup

    data = setup.to_dict()
    # Backup codes are shown once, after confirmation
    data.pop("backup_codes")
    return jsonify({"setup": data, "status": "success"})


@mfa_bp.route('/confirm', methods=['POST'])
@jwt_required
def confirm_setup():
    code = require_field(get_json_body(), 'code')
    mfa = get_services().mfa
    _refuse_if_enrolled(mfa)

    setup = pending_setups().get(g.current_user)
    if setup is None:
        raise ValidationError("No MFA setup in progress")
    if not mfa.verify_setup_token(setup, code):
        return jsonify({"error": "Invalid verification code", "status": "error"}), 400

    pending_setups().pop(g.current_user, None)
    status = mfa.enable_totp(g.current_user, setup)
    return jsonify({
        "mfa": status.to_dict(),
        "backup_codes": list(setup.backup_codes),
        "status": "success"
    })


@mfa_bp.route('/disable', methods=['POST'])
@mfa_required
def disable():
    disabled = get_services().mfa.disable_mfa(g.current_user)
    return jsonify({"disabled": disabled, "status": "success"})


# =============================================================================
# Verification
# =============================================================================

@mfa_bp.route('/verify', methods=['POST'])
@jwt_required
def verify():
    """Verify a TOTP code; optionally trust this device on success."""
    data = get_json_body()
    ctx = client_context()
    mfa = get_services().mfa

    verification = mfa.verify_totp(g.current_user, str(require_field(data, 'code')), **ctx)
    if not verification.verified:
        return jsonify({"verified": False, "status": "error"}), 401

    response = {"verified": True, "status": "success"}
    if data.get('trust_device'):
        device = mfa.trust_device(
            g.current_user,
            data.get('device_name') or request.user_agent.string or "unknown",
            ctx["ip_address"],
            ctx["user_agent"],
        )
        response["device"] = device.to_dict()
    return jsonify(response)


@mfa_bp.route('/backup-codes/verify', methods=['POST'])
@jwt_required
def verify_backup():
    code = require_field(get_json_body(), 'code')
    mfa = get_services().mfa
    verification = mfa.verify_backup_code(g.current_user, str(code), **client_context())
    if not verification.verified:
        return jsonify({"verified": False, "status": "error"}), 401
    return jsonify({
        "verified": True,
        "backup_codes_remaining": mfa.get_mfa_status(g.current_user).backup_codes_remaining,
        "status": "success"
    })


@mfa_bp.route('/backup-codes/regenerate', methods=['POST'])
@mfa_required
def regenerate_backup_codes():
    codes = get_services().mfa.regenerate_backup_codes(g.current_user)
    return jsonify({"backup_codes": codes, "status": "success"})


@mfa_bp.route('/history', methods=['GET'])
@jwt_required
def history():
    limit = request.args.get('limit', type=int)
    entries = get_services().mfa.get_verification_history(g.current_user, limit)
    return jsonify({
        "history": [v.to_dict() for v in entries],
        "count": len(entries),
        "status": "success"
    })


# =============================================================================
# Trusted Devices
# =============================================================================

@mfa_bp.route('/devices', methods=['GET'])
@jwt_required
def list_devices():
    devices = get_services().mfa.get_trusted_devices(g.current_user)
    return jsonify({
        "devices": [d.to_dict() for d in devices],
        "count": len(devices),
        "status": "success"
    })


@mfa_bp.route('/devices', methods=['POST'])
@mfa_required
def trust_current_device():
    data = get_json_body()
    days = data.get('days')
    if days is not None:
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise ValidationError("days must be a positive integer") from None
        if days < 1:
            raise ValidationError("days must be a positive integer")

    ctx = client_context()
    device = get_services().mfa.trust_device(
        g.current_user,
        data.get('device_name') or "unknown",
        ctx["ip_address"],
        ctx["user_agent"],
        days=days,
    )
    return jsonify({"device": device.to_dict(), "status": "success"}), 201


@mfa_bp.route('/devices/<device_id>', methods=['DELETE'])
@jwt_required
def revoke_device(device_id):
    revoked = get_services().mfa.revoke_device_trust(g.current_user, device_id)
    if not revoked:
        return jsonify({"error": "Device not found", "status": "error"}), 404
    return jsonify({"revoked": True, "status": "success"})
