"""
Security middleware for the CaseVault API
Handles blocked callers, suspicious request logging and security headers
"""

from fastapi import Request, Response
from fastapi.responses import JSONResponse
import time
import logging
from typing import Callable, Dict, Iterable, Optional

from src.core.rate_limit_config import get_real_ip

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    # Client data must never end up in shared caches
    "Cache-Control": "no-store",
}

SUSPICIOUS_PATTERNS = [
    "../",       # Path traversal
    "<script",   # XSS attempts
    "javascript:",
    "select ",   # SQL injection
    "union ",    # SQL injection
    "${",        # Template injection
    "{{",        # Template injection
]


class SecurityMiddleware:
    """HTTP middleware: reject blocked IPs, flag suspicious input, add headers"""

    def __init__(
        self,
        blocked_ips: Optional[Iterable[str]] = None,
        slow_request_seconds: float = 1.0
    ):
        self.blocked_ips = set(blocked_ips or ())
        self.suspicious_patterns = list(SUSPICIOUS_PATTERNS)
        self.slow_request_seconds = slow_request_seconds
        self.suspicious_count = 0

    def block_ip(self, ip: str) -> None:
        self.blocked_ips.add(ip)
        logger.warning(f"🚫 IP {ip} added to block list")

    def unblock_ip(self, ip: str) -> None:
        self.blocked_ips.discard(ip)

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        client_ip = get_real_ip(request)

        if client_ip in self.blocked_ips:
            logger.warning(f"🚫 Blocked IP attempted access: {client_ip}")
            response = JSONResponse(status_code=403, content={"detail": "Access denied"})
            self._apply_headers(response)
            return response

        # Logged for analysis, not blocked
        if await self._contains_suspicious_content(request):
            self.suspicious_count += 1
            logger.warning(f"⚠️ Suspicious request from {client_ip}: {request.method} {request.url.path}")

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        self._apply_headers(response)
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        if process_time > self.slow_request_seconds:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response

    def _apply_headers(self, response: Response) -> None:
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        if "server" in response.headers:
            del response.headers["server"]

    async def _contains_suspicious_content(self, request: Request) -> bool:
        """Check if the URL or a POST body contains suspicious patterns"""
        candidates = [str(request.url).lower()]

        if request.method == "POST":
            try:
                body = await request.body()
                candidates.append(body.decode("utf-8", errors="ignore").lower())
            except RuntimeError as e:
                logger.debug(f"Request body not readable for inspection: {e}")

        return any(pattern in text for text in candidates for pattern in self.suspicious_patterns)


class RateLimitMonitor:
    """Monitor and log rate limit violations"""

    def __init__(self, violation_threshold: int = 10):
        self.violations: Dict[str, int] = {}  # identifier -> violation count
        self.violation_threshold = violation_threshold

    def record_violation(self, identifier: str) -> bool:
        """
        Record a rate limit violation.

        Returns:
            True once the identifier reached the violation threshold
        """
        self.violations[identifier] = self.violations.get(identifier, 0) + 1

        logger.warning(f"🚦 Rate limit violation #{self.violations[identifier]} from {identifier}")

        if self.violations[identifier] >= self.violation_threshold:
            logger.error(f"🚫 {identifier} exceeded violation threshold - consider blocking")
            return True
        return False

    def reset(self) -> None:
        self.violations.clear()

    def get_violation_stats(self) -> dict:
        """Get statistics about rate limit violations"""
        return {
            "total_violators": len(self.violations),
            "total_violations": sum(self.violations.values()),
            "top_violators": sorted(
                self.violations.items(),
                key=lambda x: x[1],
                reverse=True
            )[:10]
        }
