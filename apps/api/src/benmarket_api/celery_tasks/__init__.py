"""Celery task modules for the BenMarket API."""

# Import submodules so Celery autodiscovery registers tasks.
from . import loyalty_events as _loyalty_events  # noqa: F401

__all__ = ["_loyalty_events"]
