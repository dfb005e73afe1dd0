"""
ModelScope API Layer.

This package handles communication with the ModelScope hub's repository
listing endpoint.
"""

from .client import RepositoryClient, build_session
from .rate_limiter import AdaptiveRateLimiter

__all__ = ["AdaptiveRateLimiter", "RepositoryClient", "build_session"]
