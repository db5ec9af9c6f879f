"""Platform clients."""

from .base import HttpPlatformClient, PlatformClient, detect_platform
from .marketinout import MarketInOutClient
from .tradingview import TradingViewClient

__all__ = [
    "HttpPlatformClient",
    "MarketInOutClient",
    "PlatformClient",
    "TradingViewClient",
    "detect_platform",
]
