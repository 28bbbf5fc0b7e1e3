"""
Job runners for the quote lifecycle feature.
"""

from .expiration_job import (
    QuoteExpirationJob,
    QuoteExpirationScheduler,
    SweepMetrics,
    build_quote_expiration_scheduler,
    run_quote_expiration_once,
    start_quote_expiration_scheduler,
)

__all__ = [
    "QuoteExpirationJob",
    "QuoteExpirationScheduler",
    "SweepMetrics",
    "build_quote_expiration_scheduler",
    "run_quote_expiration_once",
    "start_quote_expiration_scheduler",
]
