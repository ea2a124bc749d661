"""
Route blueprints for the trust API.
"""

from .access import access_bp
from .audit_routes import audit_bp
from .mfa_routes import mfa_bp

__all__ = ['access_bp', 'audit_bp', 'mfa_bp']
