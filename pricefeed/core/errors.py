from typing import Optional


class PriceFeedError(Exception):
    """Base class for every error raised by the feed"""


class QuoteSourceError(PriceFeedError):
    """A REST quote source call failed. Subclasses say how."""

    banner = "Failed to load cryptocurrency data"


class NetworkError(QuoteSourceError):
    banner = "Market data provider unreachable. Showing demo data instead."

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(QuoteSourceError):
    banner = "Rate limit exceeded. Retrying in a few minutes."

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(QuoteSourceError):
    banner = "Authentication error: invalid API credentials. Showing demo data instead."


class DecodeError(QuoteSourceError):
    banner = "Market data provider returned an unreadable response. Showing demo data instead."


class ParseError(PriceFeedError):
    """Streaming frame could not be turned into a PriceUpdate. Never surfaced to users."""
