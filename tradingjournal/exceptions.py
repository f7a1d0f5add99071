"""
Exception hierarchy for the trading journal AI core
"""
from typing import Optional


class TradingJournalError(Exception):
    """Base class for all trading journal errors"""


class PersistenceError(TradingJournalError):
    """A Supabase write or read that the caller depends on failed"""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class AIServiceError(TradingJournalError):
    """User-facing failure of a chat or insight request.

    The message is safe to show to the end user; the underlying cause is
    logged and chained, never exposed.
    """


class APIKeyValidationError(TradingJournalError):
    """An API key was rejected; the message explains why in user terms"""


class ProviderError(TradingJournalError):
    """Non-retryable error returned by an LLM or embedding provider"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """5xx, timeout or connection failure; worth retrying"""


class ProviderRateLimitError(ProviderTransientError):
    """Provider signalled rate limiting, optionally with a retry-after hint"""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after
