"""
Resilient outbound dispatch for the Guess Quiz Bot.

Every message, photo, media group and markup edit goes through
``Dispatcher.send`` so that rate limits are retried and unreachable users
end their session instead of crashing the handler.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import discord

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_AFTER = 5.0

# Discord JSON error codes meaning the user can no longer be messaged.
CANNOT_MESSAGE_USER = 50007
UNKNOWN_CHANNEL = 10003
UNKNOWN_USER = 10013


class DeliveryError(Exception):
    """Base exception for outbound delivery failures."""
    pass


class RateLimitedError(DeliveryError):
    """Raised when the channel asks us to wait before retrying."""

    def __init__(self, retry_after: float, message: str = "Rate limited"):
        super().__init__(f"{message} (retry after {retry_after}s)")
        self.retry_after = retry_after


class RecipientUnreachableError(DeliveryError):
    """Raised when the recipient blocked the bot or no longer exists."""
    pass


def classify_discord_error(error: Exception) -> Exception:
    """
    Map a discord.py exception onto the delivery error taxonomy.

    Args:
        error: Exception raised by an outbound call

    Returns:
        ``RateLimitedError`` or ``RecipientUnreachableError`` when the error
        is one of those conditions, otherwise ``error`` unchanged
    """
    if isinstance(error, DeliveryError):
        return error

    if isinstance(error, discord.RateLimited):
        return RateLimitedError(error.retry_after)

    if isinstance(error, discord.HTTPException):
        if error.status == 429:
            retry_after = getattr(error, 'retry_after', None) or DEFAULT_RETRY_AFTER
            return RateLimitedError(float(retry_after))
        if isinstance(error, discord.Forbidden) and error.code == CANNOT_MESSAGE_USER:
            return RecipientUnreachableError(str(error))
        if isinstance(error, discord.NotFound) and error.code in (UNKNOWN_CHANNEL, UNKNOWN_USER):
            return RecipientUnreachableError(str(error))

    return error


class DispatchLogger:
    """Structured logging for dispatch events."""

    @staticmethod
    def log_retry(operation: str, attempt: int, max_attempts: int, delay: float) -> None:
        logger.warning(
            f"Dispatch: RATE_LIMITED - {operation}, Attempt {attempt}/{max_attempts}, retrying in {delay:.2f}s",
            extra={
                'event_type': 'dispatch_retry',
                'operation': operation,
                'attempt': attempt,
                'max_attempts': max_attempts,
                'delay': delay,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_gave_up(operation: str, attempts: int) -> None:
        logger.error(
            f"Dispatch: GAVE_UP - {operation} still rate limited after {attempts} attempts",
            extra={
                'event_type': 'dispatch_gave_up',
                'operation': operation,
                'attempts': attempts,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_unreachable(operation: str, error: Exception) -> None:
        logger.info(
            f"Dispatch: UNREACHABLE - {operation}: {error}",
            extra={
                'event_type': 'dispatch_unreachable',
                'operation': operation,
                'timestamp': time.time()
            }
        )


class Dispatcher:
    """Runs outbound calls with bounded retry on rate limits."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        classify: Callable[[Exception], Exception] = classify_discord_error,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._classify = classify
        self._sleep = sleep

    async def send(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``operation(*args, **kwargs)`` under the retry policy.

        Rate limits suspend only this call for the suggested duration and
        retry, up to ``max_attempts`` attempts in total. An unreachable
        recipient fails immediately. Anything else propagates untouched.

        Raises:
            RecipientUnreachableError: The recipient can no longer be messaged
            RateLimitedError: Still rate limited after the last attempt
        """
        name = getattr(operation, '__name__', None) or repr(operation)
        last_error: Optional[RateLimitedError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(*args, **kwargs)
            except Exception as e:
                error = self._classify(e)
                if isinstance(error, RecipientUnreachableError):
                    DispatchLogger.log_unreachable(name, error)
                    if error is e:
                        raise
                    raise error from e
                if not isinstance(error, RateLimitedError):
                    raise
                if error is not e:
                    error.__cause__ = e
                last_error = error

            if attempt < self.max_attempts:
                DispatchLogger.log_retry(name, attempt, self.max_attempts, last_error.retry_after)
                await self._sleep(last_error.retry_after)

        DispatchLogger.log_gave_up(name, self.max_attempts)
        raise last_error
