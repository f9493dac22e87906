"""Vision extraction client for tithe register photos."""

from .client import (
    InvalidPageError,
    RateLimitedError,
    VisionAPIError,
    VisionClient,
    VisionConnectionError,
    VisionError,
    VisionResponseError,
)

__all__ = [
    "InvalidPageError",
    "RateLimitedError",
    "VisionAPIError",
    "VisionClient",
    "VisionConnectionError",
    "VisionError",
    "VisionResponseError",
]
