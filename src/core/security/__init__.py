"""
Security layer for CaseVault.

Centralizes the trust boundary around client records:
- Session monitoring with idle, warning and absolute timeouts
- Role-gated, audited record access
- Fixed-window rate limiting

Input hardening lives in ``src.services.validation_service``.
"""

from .access_gateway import (
    AccessOutcome,
    AccessResult,
    SecureAccessGateway
)
from .rate_limiter import (
    FixedWindowRateLimiter,
    check_rate_limit,
    rate_limiter
)
from .roles import Role, RoleSet
from .session_monitor import (
    SessionMonitor,
    SessionSecurityConfig
)
from .session_security import (
    SecureSessionStore,
    get_secure_session_store,
    init_secure_session_store
)

__all__ = [
    'AccessOutcome',
    'AccessResult',
    'SecureAccessGateway',
    'FixedWindowRateLimiter',
    'check_rate_limit',
    'rate_limiter',
    'Role',
    'RoleSet',
    'SessionMonitor',
    'SessionSecurityConfig',
    'SecureSessionStore',
    'get_secure_session_store',
    'init_secure_session_store'
]
