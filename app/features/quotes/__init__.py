"""
Quote lifecycle feature package.

Everything that moves a quote through its lifecycle lives here: domain
models and the transition graph, the PostgreSQL repositories, the
lifecycle service with its notification fan-out, and the expiration sweep.
"""

# Re-export the primary building blocks for easy access.
from .jobs.expiration_job import QuoteExpirationScheduler, build_quote_expiration_scheduler  # noqa: F401
from .services.dispatcher import NotificationDispatcher  # noqa: F401
from .services.lifecycle_service import QuoteLifecycleService  # noqa: F401
