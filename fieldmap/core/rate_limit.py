"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. Only operator write routes opt in;
the dashboard WebSocket is one long-lived connection and is not limited.

Usage in routes:
    @router.patch("/{report_id}/status")
    @limiter.limit("30/minute")
    async def update_status(request: Request, ...):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
