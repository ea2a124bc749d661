"""
Core shared utilities for the trust services and the dashboard API.

Submodules are imported directly:
- core.errors: APIError hierarchy and Flask error handlers
- core.timestamps: UTC helpers and injectable clocks
- core.locks: reader/writer and per-key locks
- core.logging_config: structured JSON logging
"""
