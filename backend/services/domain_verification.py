"""
Domain Verification Helper
==========================
Registers the serving domain with Stripe once per process so wallet payment
methods (Apple Pay) are allowed on it. Best-effort: it never raises and never
delays a response.
"""

import asyncio
from typing import Optional, Set
from urllib.parse import urlsplit

import structlog

from pipeline.agents.payment_gateway import PaymentGateway, normalize_domain

logger = structlog.get_logger(component="domain_verification")

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def is_secure_context(url: str) -> bool:
    """HTTPS, or plain HTTP on a local development host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme == "https":
        return True
    return (parts.hostname or "") in LOCAL_HOSTS


class DomainVerificationHelper:
    """
    Registers the hostname of the first eligible request.

    A request is eligible when a publishable key exists, the gateway is
    configured and the request arrived in a secure context. Ineligible
    requests (plain-HTTP health checks, internal IPs) leave the helper armed.
    """

    def __init__(self, gateway: PaymentGateway, publishable_key: Optional[str]):
        self.gateway = gateway
        self.publishable_key = publishable_key
        self._attempted = False
        self._tasks: Set[asyncio.Task] = set()
        self.registered_domain: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self._attempted

    def _skip_reason(self, url: str) -> Optional[str]:
        if not self.publishable_key:
            return "no publishable key"
        if not self.gateway.is_configured():
            return "gateway not configured"
        if not is_secure_context(url):
            return "insecure context"
        return None

    async def verify_once(self, url: str) -> Optional[str]:
        """Register the hostname of `url` unless a registration was already attempted."""
        if self._attempted:
            return self.registered_domain

        reason = self._skip_reason(url)
        if reason:
            logger.debug("domain_verification_skipped", reason=reason, url=url)
            return None

        self._attempted = True
        return await self._register(url)

    def schedule(self, url: str) -> Optional[asyncio.Task]:
        """Fire-and-forget verify_once on the running loop."""
        if self._attempted or self._skip_reason(url):
            return None

        self._attempted = True
        task = asyncio.get_running_loop().create_task(self._register(url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _register(self, url: str) -> Optional[str]:
        try:
            hostname = normalize_domain(url)
            result = await self.gateway.register_domain(hostname)
        except Exception as e:
            logger.warning("domain_verification_failed", error=str(e), error_type=type(e).__name__)
            return None

        self.registered_domain = result.get("domain", hostname)
        logger.info("domain_verified", domain=self.registered_domain)
        return self.registered_domain
