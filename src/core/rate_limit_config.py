"""
Rate limiting configuration for the CaseVault API
"""

import hashlib
from fastapi import Request
from slowapi.util import get_remote_address


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.
    Important for deployments behind load balancers.

    X-Forwarded-For and X-Real-IP are taken as given, so a trusted proxy
    upstream must set or strip them. Otherwise callers pick their own IP.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


def hashed_identifier(prefix: str, value: str) -> str:
    """
    Build a rate limit key from a raw caller value.

    Hashing keeps raw IP addresses out of limiter keys and logs. It does not
    bound memory: every distinct value still gets a window until
    ``purge_expired`` (run by the limiter's cleanup task) drops it.
    """
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}:{digest}"


# HTTP-level limits enforced by slowapi
RATE_LIMIT_TIERS = {
    "default": {
        "session_create": "10/minute",   # New sessions per IP
        "validate": "60/minute",         # Public validation endpoint
        "global": "100/minute"
    },
}

# Fixed-window quotas enforced by the in-process limiter
GATEWAY_LIMITS = {
    "record_read": (60, 60_000),       # full/summary reads per principal
    "search": (10, 60_000),            # searches per principal
    "access_log": (10, 60_000),        # audit log reads per principal
    "public_submission": (10, 60_000), # validation requests per hashed IP
}

RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "session_create": "Too many sign-in attempts. Please wait a minute.",
    "search": "Too many searches. Please slow down.",
}


def get_rate_limit_message(endpoint: str) -> str:
    """Get custom error message for rate limited endpoint"""
    return RATE_LIMIT_MESSAGES.get(endpoint, RATE_LIMIT_MESSAGES["default"])
