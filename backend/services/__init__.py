# services/__init__.py
# ============================================================================
# ECHOBEATS LANDING — SERVICES MODULE
# ============================================================================
# Newsletter signup and wallet domain verification
# ============================================================================

from services.newsletter import NewsletterService

from services.domain_verification import (
    DomainVerificationHelper,
    is_secure_context,
)

__all__ = [
    # Newsletter
    "NewsletterService",
    # Domain verification
    "DomainVerificationHelper",
    "is_secure_context",
]
