"""Bounded retry with linear backoff for remote calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from patchkit.core.errors import TransientFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 15.0,
    label: str = "remote call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or *attempts* are exhausted.

    Only ``TransientFetchError`` is retried; anything else propagates on
    the first occurrence.  The delay after attempt *n* is ``n * base_delay``.

    Raises
    ------
    TransientFetchError
        The last failure, once every attempt has failed.
    """
    attempts = max(1, attempts)

    def _log_retry(state: RetryCallState) -> None:
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.1fs: %s",
            label,
            state.attempt_number,
            attempts,
            state.next_action.sleep if state.next_action else 0.0,
            state.outcome.exception() if state.outcome else None,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=base_delay, increment=base_delay),
        retry=retry_if_exception_type(TransientFetchError),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(fn)
    except TransientFetchError as exc:
        logger.error("%s failed after %d attempts: %s", label, attempts, exc)
        raise
