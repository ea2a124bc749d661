"""
Dashboard authentication module.

Public API:
- Decorators: jwt_required, permission_required, mfa_required
- Tokens: create_token, decode_token, get_token_from_request

Import Rules:
- External callers: Use `from dashboard.auth import X` (this facade)
- Internal auth modules: Use `from .submodule import X` (direct imports)
"""
from .decorators import jwt_required, mfa_required, permission_required
from .tokens import create_token, decode_token, get_token_from_request

__all__ = [
    'jwt_required',
    'permission_required',
    'mfa_required',
    'create_token',
    'decode_token',
    'get_token_from_request',
]
