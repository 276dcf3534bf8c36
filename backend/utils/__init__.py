from .logger import setup_logging, get_logger, api_logger, ingestion_logger
from .retry import RetryConfig, retry_call
from .rate_limiter import RateLimitConfig, SlidingWindowRateLimiter
from .validation import (
    validate_eth_address,
    is_valid_pair,
    is_valid_price,
    is_valid_leverage,
    WalletAddressParam,
    WalletCreateParams,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "api_logger",
    "ingestion_logger",

    # Retry
    "RetryConfig",
    "retry_call",

    # Rate Limiter
    "RateLimitConfig",
    "SlidingWindowRateLimiter",

    # Validation
    "validate_eth_address",
    "is_valid_pair",
    "is_valid_price",
    "is_valid_leverage",
    "WalletAddressParam",
    "WalletCreateParams",
]
