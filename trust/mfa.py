"""
Multi-Factor Authentication (MFA) Service

Implements TOTP-based MFA (RFC 6238) compatible with Google Authenticator,
Authy, and other TOTP apps.

Features:
- TOTP secret generation and validation (one step of clock skew each way)
- QR code generation for easy enrollment
- Single-use backup codes for account recovery
- Encrypted secret storage
- Trusted devices that skip the challenge for a limited time

Per-user state changes (backup code consumption, last_used) happen under a
per-user mutex so a code cannot be spent twice by concurrent requests.
"""

import base64
import hashlib
import hmac
import logging
import re
import secrets
import string
from dataclasses import replace
from datetime import datetime, timedelta
from io import BytesIO
from typing import Optional

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

from config.settings import MFASettings
from core.errors import NotFoundError, ValidationError
from core.locks import KeyedLock
from core.timestamps import SystemClock
from .types import (
    AuditAction,
    AuditStatus,
    DeviceTrust,
    MFAConfig,
    MFAMethod,
    MFAStatus,
    MFAVerification,
    ResourceType,
    TOTPSetup,
    VerificationMethod,
)

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = string.digits + string.ascii_uppercase
_WHITESPACE = re.compile(r"\s+")


def resolve_encryption_key(settings) -> bytes:
    """Get the Fernet key for TOTP secrets at rest.

    Priority:
    1. MFA_ENCRYPTION_KEY (must be a valid Fernet key)
    2. Derived from the JWT secret (works but logged as warning)
    3. Random per-process key (secrets are lost on restart)

    Args:
        settings: AppSettings

    Returns:
        Fernet-compatible encryption key
    """
    key = settings.mfa.encryption_key.get_secret_value()
    if key:
        try:
            Fernet(key.encode())
            return key.encode()
        except ValueError:
            logger.warning("MFA_ENCRYPTION_KEY is not a valid Fernet key, ignoring it")

    jwt_secret = settings.auth.jwt_secret.get_secret_value()
    if jwt_secret:
        logger.warning("MFA_ENCRYPTION_KEY not set, deriving from JWT secret. Set MFA_ENCRYPTION_KEY for production.")
        derived = hashlib.sha256(jwt_secret.encode()).digest()
        return base64.urlsafe_b64encode(derived)

    logger.warning("No MFA_ENCRYPTION_KEY or JWT secret, using a random key for this process")
    return Fernet.generate_key()


def derive_device_id(ip_address: str, user_agent: str) -> str:
    """Stable device id for an (ip, user agent) pair."""
    raw = f"{ip_address}\x00{user_agent}".encode()
    return hashlib.sha256(raw).hexdigest()[:32]


def normalize_backup_code(code: str) -> str:
    return _WHITESPACE.sub("", code or "").upper()


def _hash_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


def _qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class MFAService:
    """Manages MFA enrollment and verification for users."""

    def __init__(
        self,
        audit_log=None,
        rbac=None,
        clock=None,
        settings: MFASettings = None,
        encryption_key: bytes = None,
    ):
        self._audit_log = audit_log
        self._rbac = rbac
        self._clock = clock or SystemClock()
        self._settings = settings or MFASettings()
        self._fernet = Fernet(encryption_key or Fernet.generate_key())
        self._locks = KeyedLock()

        self._configs: dict[str, MFAConfig] = {}
        self._history: dict[str, list[MFAVerification]] = {}
        self._devices: dict[str, dict[str, DeviceTrust]] = {}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self._settings.totp_digits,
            interval=self._settings.totp_interval,
            issuer=self._settings.issuer_name,
        )

    def _check_totp(self, secret: str, token) -> bool:
        return self._totp(secret).verify(
            str(token), for_time=self._clock.now(), valid_window=self._settings.valid_window
        )

    def _generate_backup_codes(self) -> list[str]:
        return [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(self._settings.backup_code_length))
            for _ in range(self._settings.backup_code_count)
        ]

    def _decrypt_secret(self, config: MFAConfig) -> Optional[str]:
        if not config.secret_encrypted:
            return None
        try:
            return self._fernet.decrypt(config.secret_encrypted.encode()).decode()
        except InvalidToken:
            logger.error(f"Stored TOTP secret for user {config.user_id} cannot be decrypted")
            return None

    def _record(self, user_id, method, verified, ip_address, user_agent) -> MFAVerification:
        """Append to history and audit. Caller holds the user's lock."""
        verification = MFAVerification(
            method=method,
            verified=verified,
            timestamp=self._clock.now(),
            ip_address=ip_address,
            device=user_agent,
        )
        self._history.setdefault(user_id, []).append(verification)
        self._audit(
            user_id,
            AuditAction.MFA_VERIFICATION,
            details={"method": method.value, "verified": verified},
            status=AuditStatus.SUCCESS if verified else AuditStatus.FAILURE,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return verification

    def _audit(self, user_id, action, **kwargs) -> None:
        if self._audit_log is None:
            return
        try:
            self._audit_log.log(user_id, action, ResourceType.USER, resource_id=user_id, **kwargs)
        except Exception:
            logger.exception(f"Audit logging failed for {action.value}")

    # =========================================================================
    # Enrollment
    # =========================================================================

    def initialize_totp_setup(self, user_id: str) -> TOTPSetup:
        """Begin MFA setup for a user.

        Generates a new TOTP secret, QR code and backup codes. Nothing is
        persisted until enable_totp is called with the returned setup.
        """
        secret = pyotp.random_base32()  # 32 chars, 160 bits
        provisioning_uri = self._totp(secret).provisioning_uri(
            name=user_id, issuer_name=self._settings.issuer_name
        )

        return TOTPSetup(
            user_id=user_id,
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code=_qr_data_uri(provisioning_uri),
            backup_codes=tuple(self._generate_backup_codes()),
            manual_entry_key=" ".join(secret[i:i + 4] for i in range(0, len(secret), 4)),
        )

    def verify_setup_token(self, setup: TOTPSetup, token: str) -> bool:
        """Check a token against an unsaved setup before enable_totp."""
        try:
            return self._check_totp(setup.secret, token)
        except Exception:
            logger.exception(f"Setup token verification failed for user {setup.user_id}")
            return False

    def enable_totp(self, user_id: str, setup: TOTPSetup) -> MFAStatus:
        """Persist the setup and enable MFA.

        The caller must have verified a token with verify_setup_token first.
        Re-enrolling replaces the previous secret and backup codes.

        Raises:
            ValidationError: the setup was issued for a different user
        """
        if setup.user_id != user_id:
            raise ValidationError("Setup does not belong to this user")

        with self._locks(user_id):
            self._configs[user_id] = MFAConfig(
                user_id=user_id,
                enabled=True,
                method=MFAMethod.TOTP,
                secret_encrypted=self._fernet.encrypt(setup.secret.encode()).decode(),
                backup_code_hashes=[_hash_code(c) for c in setup.backup_codes],
                created_at=self._clock.now(),
            )

        logger.info(f"MFA enabled for user {user_id}")
        self._audit(user_id, AuditAction.MFA_ENABLED, details={"method": MFAMethod.TOTP.value})
        return self.get_mfa_status(user_id)

    def disable_mfa(self, user_id: str, disabled_by: str = None) -> bool:
        """Disable MFA. The secret and history are kept for forensic replay.

        Returns:
            False if MFA was not enabled
        """
        with self._locks(user_id):
            config = self._configs.get(user_id)
            if config is None or not config.enabled:
                return False
            config.enabled = False
            config.disabled_at = self._clock.now()

        logger.info(f"MFA disabled for user {user_id}")
        self._audit(disabled_by or user_id, AuditAction.MFA_DISABLED, details={"user_id": user_id})
        return True

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_totp(
        self,
        user_id: str,
        token: str,
        ip_address: str = None,
        user_agent: str = None,
    ) -> MFAVerification:
        """Verify a TOTP code. Never raises; unknown users simply fail."""
        with self._locks(user_id):
            verified = False
            try:
                config = self._configs.get(user_id)
                if config is not None and config.enabled:
                    secret = self._decrypt_secret(config)
                    if secret is not None:
                        verified = self._check_totp(secret, token)
                if verified:
                    config.last_used = self._clock.now()
            except Exception:
                logger.exception(f"TOTP verification failed for user {user_id}")
                verified = False
            return self._record(user_id, VerificationMethod.TOTP, verified, ip_address, user_agent)

    def verify_backup_code(
        self,
        user_id: str,
        code: str,
        ip_address: str = None,
        user_agent: str = None,
    ) -> MFAVerification:
        """Verify and consume a backup code (whitespace and case ignored)."""
        with self._locks(user_id):
            verified = False
            try:
                config = self._configs.get(user_id)
                if config is not None and config.enabled:
                    candidate = _hash_code(code)
                    match = None
                    for stored in config.backup_code_hashes:
                        if hmac.compare_digest(stored, candidate):
                            match = stored
                    if match is not None:
                        config.backup_code_hashes.remove(match)
                        config.last_used = self._clock.now()
                        verified = True
            except Exception:
                logger.exception(f"Backup code verification failed for user {user_id}")
                verified = False
            return self._record(user_id, VerificationMethod.BACKUP, verified, ip_address, user_agent)

    def regenerate_backup_codes(self, user_id: str) -> list[str]:
        """Replace every backup code. Old codes stop working immediately.

        Raises:
            NotFoundError: the user never enrolled
        """
        codes = self._generate_backup_codes()
        with self._locks(user_id):
            config = self._configs.get(user_id)
            if config is None:
                raise NotFoundError("MFA is not configured for this user")
            config.backup_code_hashes = [_hash_code(c) for c in codes]

        self._audit(user_id, AuditAction.BACKUP_CODES_REGENERATED, details={"count": len(codes)})
        return codes

    def get_verification_history(self, user_id: str, limit: int = None) -> list[MFAVerification]:
        """Most recent verification attempts, oldest first."""
        limit = self._settings.history_limit if limit is None else limit
        with self._locks(user_id):
            history = list(self._history.get(user_id, []))
        return history[-limit:] if limit > 0 else []

    # =========================================================================
    # Device Trust
    # =========================================================================

    def trust_device(
        self,
        user_id: str,
        device_name: str,
        ip_address: str,
        user_agent: str,
        days: int = None,
    ) -> DeviceTrust:
        """Remember a device. Trusting it again refreshes the expiry."""
        days = self._settings.device_trust_days if days is None else days
        now = self._clock.now()
        device = DeviceTrust(
            user_id=user_id,
            device_id=derive_device_id(ip_address, user_agent),
            device_name=device_name,
            trusted_until=now + timedelta(days=days),
            last_used=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with self._locks(user_id):
            self._devices.setdefault(user_id, {})[device.device_id] = device

        self._audit(
            user_id,
            AuditAction.DEVICE_TRUSTED,
            details={"device_id": device.device_id, "device_name": device_name, "days": days},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return device

    def is_device_trusted(self, user_id: str, ip_address: str, user_agent: str) -> bool:
        """True iff an unexpired trust exists for this (ip, user agent)."""
        try:
            device_id = derive_device_id(ip_address, user_agent)
            now = self._clock.now()
            with self._locks(user_id):
                devices = self._devices.get(user_id, {})
                device = devices.get(device_id)
                if device is None or not device.is_active(now):
                    return False
                devices[device_id] = replace(device, last_used=now)
                return True
        except Exception:
            logger.exception(f"Device trust lookup failed for user {user_id}")
            return False

    def revoke_device_trust(self, user_id: str, device_id: str) -> bool:
        with self._locks(user_id):
            removed = self._devices.get(user_id, {}).pop(device_id, None)
        if removed is None:
            return False

        self._audit(
            user_id,
            AuditAction.DEVICE_TRUST_REVOKED,
            details={"device_id": device_id, "device_name": removed.device_name},
        )
        return True

    def get_trusted_devices(self, user_id: str) -> list[DeviceTrust]:
        """Unexpired trusted devices. Expired entries are dropped."""
        now = self._clock.now()
        with self._locks(user_id):
            devices = self._devices.get(user_id, {})
            for device_id in [d for d, dev in devices.items() if not dev.is_active(now)]:
                del devices[device_id]
            return sorted(devices.values(), key=lambda d: d.last_used, reverse=True)

    # =========================================================================
    # Status
    # =========================================================================

    def get_mfa_status(self, user_id: str) -> MFAStatus:
        trusted = len(self.get_trusted_devices(user_id))
        with self._locks(user_id):
            config = self._configs.get(user_id)
            if config is None:
                return MFAStatus(
                    enrolled=False,
                    enabled=False,
                    method=None,
                    backup_codes_remaining=0,
                    last_used=None,
                    trusted_devices=trusted,
                )
            return MFAStatus(
                enrolled=True,
                enabled=config.enabled,
                method=config.method,
                backup_codes_remaining=len(config.backup_code_hashes),
                last_used=config.last_used,
                trusted_devices=trusted,
            )

    def is_mfa_enabled(self, user_id: str) -> bool:
        with self._locks(user_id):
            config = self._configs.get(user_id)
            return config is not None and config.enabled

    def is_mfa_required(self, user_id: str) -> bool:
        """Check if MFA is required for a user.

        Returns:
            True if MFA is globally on and the user either enabled it or
            holds the enforcement permission
        """
        if not self._settings.enabled:
            return False
        if self.is_mfa_enabled(user_id):
            return True
        if self._rbac is None:
            return False
        return self._settings.enforce_permission in self._rbac.get_effective_permissions(user_id)
