"""
Retry Controller - Bounded fixed-backoff replay of the last cast attempt
"""

from typing import Any, Callable, Dict, Optional
import logging
import time

from .errors import NotFoundError, RetryExhaustedError, ValidationError
from .notifier import EventNotifier, EventType
from .session import CastSessionManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_S = 5.0


class RetryController:
    """Replays the LastAttemptMemo through the session manager."""

    def __init__(self, sessions: CastSessionManager, notifier: EventNotifier,
                 sleep: Callable[[float], None] = time.sleep):
        self.sessions = sessions
        self.notifier = notifier
        self.sleep = sleep

    def retry_last_attempt(self, max_retries: int = DEFAULT_MAX_RETRIES,
                           backoff_delay: float = DEFAULT_BACKOFF_S) -> Dict[str, Any]:
        """
        Retry the most recent cast attempt.

        Attempts run strictly one after another with backoff_delay
        seconds between failures and none after the last one.

        Returns:
            Session status plus the attempt number that succeeded

        Raises:
            ValidationError: Bad arguments
            NotFoundError: No previous attempt
            RetryExhaustedError: Every attempt failed (chained from the last error)
        """
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1:
            raise ValidationError(f"max_retries must be >= 1, got {max_retries!r}")
        if not isinstance(backoff_delay, (int, float)) or backoff_delay < 0:
            raise ValidationError(f"backoff_delay must be >= 0, got {backoff_delay!r}")

        memo = self.sessions.last_attempt
        if memo is None:
            raise NotFoundError("nothing to retry")

        logger.info(f"Retrying cast of {memo.item_id} (max {max_retries}, backoff {backoff_delay}s)")
        self.notifier.publish(EventType.CAST_RETRY_STARTED, {
            "itemId": memo.item_id, "deviceId": memo.device_id, "maxRetries": max_retries,
        })

        last_error: Optional[Exception] = None
        for attempt in range(1, max_retries + 1):
            self.notifier.publish(EventType.CAST_RETRY_ATTEMPT, {
                "attempt": attempt, "maxRetries": max_retries, "itemId": memo.item_id,
            })
            try:
                status = self.sessions.start_cast(memo.item_id, memo.device_id, memo.schedule_id,
                                                  memo.item_title)
            except Exception as e:
                last_error = e
                logger.warning(f"Retry attempt {attempt}/{max_retries} failed: {e}")
                if attempt < max_retries:
                    self.sleep(backoff_delay)
                continue

            logger.info(f"Retry succeeded on attempt {attempt}")
            self.notifier.publish(EventType.CAST_RETRY_SUCCESS, {
                "attempt": attempt, "itemId": memo.item_id,
            })
            result = dict(status)
            result["attempt"] = attempt
            return result

        message = f"Cast failed after {max_retries} attempts"
        self.notifier.publish(EventType.CAST_RETRY_FAILED, {
            "maxRetries": max_retries, "error": message, "lastError": str(last_error),
        })
        logger.error(f"{message}: {last_error}")
        raise RetryExhaustedError(message, attempts=max_retries, last_error=last_error) from last_error
