"""Core utilities: configuration, exceptions, logging, and rate limiting."""

from .config import Config
from .exceptions import (
    BrowserQAError,
    ConfigurationError,
    ModelError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    StateStoreError,
    ValidationError,
)
from .logging_config import get_logger, setup_logging
from .rate_limiter import SlidingWindowRateLimiter, RateLimitRule, get_rate_limiter

__all__ = [
    "Config",
    "BrowserQAError",
    "ConfigurationError",
    "ModelError",
    "NotFoundError",
    "ProviderError",
    "RateLimitError",
    "StateStoreError",
    "ValidationError",
    "get_logger",
    "setup_logging",
    "SlidingWindowRateLimiter",
    "RateLimitRule",
    "get_rate_limiter",
]
