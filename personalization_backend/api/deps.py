"""
API dependencies - shared across all routes.
"""
from functools import lru_cache

from personalization_backend.services.capabilities import CapabilitySet, build_capabilities


@lru_cache()
def _capabilities() -> CapabilitySet:
    return build_capabilities()


def get_capabilities() -> CapabilitySet:
    """Configured capability ports. Built once per process."""
    return _capabilities()
