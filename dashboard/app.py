"""
Flask Application Factory.

Creates the app, attaches a TrustServices bundle and registers the
access, MFA and audit blueprints.
"""

import logging
import time
import uuid

from flask import Flask, g, jsonify, request

logger = logging.getLogger(__name__)


def create_app(services=None, config=None):
    """Create and configure the Flask application.

    Args:
        services: Optional TrustServices; built from settings when omitted.
        config: Optional dict of config overrides (e.g. {'TESTING': True}).

    Returns:
        Configured Flask app instance.
    """
    app = Flask(__name__)

    if config:
        app.config.update(config)

    # Configure logging
    from core.logging_config import configure_logging
    configure_logging(app=app)

    # Register custom error handlers for APIError hierarchy
    from core.errors import register_error_handlers
    register_error_handlers(app)

    if services is None:
        from trust.services import build_services
        services = build_services()

    from dashboard.shared import EXTENSION_KEY, PENDING_SETUPS_KEY
    app.extensions[EXTENSION_KEY] = services
    app.extensions[PENDING_SETUPS_KEY] = {}

    _register_blueprints(app)
    _register_middleware(app)

    @app.route('/healthz')
    def healthz():
        return jsonify({
            "status": "ok",
            "audit_entries": len(services.audit),
            "audit_failed_writes": services.audit.failed_writes,
        })

    return app


def _register_blueprints(app):
    """Register all route blueprints."""
    from dashboard.routes import access_bp, audit_bp, mfa_bp

    app.register_blueprint(access_bp)
    app.register_blueprint(mfa_bp)
    app.register_blueprint(audit_bp)


def _register_middleware(app):
    """Register request tracking and security headers."""

    @app.before_request
    def before_request_tracking():
        """Assign request ID."""
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])
        g.start_time = time.time()

    @app.after_request
    def after_request_tracking(response):
        """Log request completion with timing and add security headers."""
        duration_ms = 0
        if hasattr(g, 'start_time'):
            duration_ms = (time.time() - g.start_time) * 1000

        if hasattr(g, 'request_id'):
            response.headers['X-Request-ID'] = g.request_id

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        if request.path == '/healthz':
            log_level = logging.DEBUG

        logger.log(
            log_level,
            f"{request.method} {request.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                'request_id': getattr(g, 'request_id', 'unknown'),
                'method': request.method,
                'endpoint': request.path,
                'status_code': response.status_code,
                'remote_addr': request.remote_addr,
                'user': getattr(g, 'current_user', None),
            }
        )

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Cache-Control'] = 'no-store'
        return response
