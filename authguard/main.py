"""
AuthGuard - Main Entry Point

Process bootstrap: builds the stores and collaborators once and hands them
to the orchestrator.
"""

import logging
import time
from typing import Any, Optional

from .auth.orchestrator import AuthOrchestrator
from .config import Settings, get_settings
from .integration.event_logger import EventLogger
from .integration.notifications import NotificationOutbox
from .storage.memory import InMemoryAccountStore, InMemoryRateLimitStore

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Optional[Settings] = None, **collaborators: Any) -> AuthOrchestrator:
    """
    Wire an orchestrator with in-memory stores.

    Args:
        settings: Configuration (process settings if omitted)
        **collaborators: Overrides for accounts, rate_limits, notifier,
            event_logger, captcha, qr_renderer, hasher or clock

    Returns:
        A ready AuthOrchestrator
    """
    settings = settings or get_settings()
    clock = collaborators.pop('clock', time.time)
    accounts = collaborators.pop('accounts', None) or InMemoryAccountStore()
    rate_limits = collaborators.pop('rate_limits', None) or InMemoryRateLimitStore()
    collaborators.setdefault('notifier', NotificationOutbox())
    collaborators.setdefault('event_logger', EventLogger(clock=clock))

    logger.info("Starting AuthGuard (%s)", settings.ENVIRONMENT)
    return AuthOrchestrator(accounts, rate_limits, settings, clock=clock, **collaborators)


def main():
    """Main entry point for AuthGuard."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    build_orchestrator(settings)

    print("=" * 50)
    print(f"{settings.ISSUER} authentication core")
    print("=" * 50)
    print("\nFlows:")
    print("  - Register, verify email, reset password")
    print("  - Login with optional TOTP challenge")
    print("  - TOTP enrollment with recovery codes")
    print("  - Trusted devices and sessions")
    print(f"\nSession lifetime: {settings.SESSION_TTL_SECONDS}s "
          f"({settings.SESSION_REMEMBER_TTL_SECONDS}s remembered)")
    print(f"Lockout after {settings.MAX_FAILED_LOGINS} failed logins")
    print("\n")


if __name__ == "__main__":
    main()
