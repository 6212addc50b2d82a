"""Bounded-backoff retries for calls into external collaborators."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from memgate.exceptions import ExternalUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    component: str,
    retries: int = 2,
    backoff: float = 0.05,
    max_backoff: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (ExternalUnavailable, ConnectionError, TimeoutError),
    should_continue: Optional[Callable[[], bool]] = None,
) -> T:
    """Call *func*, retrying transient failures with exponential backoff.

    Raises ``ExternalUnavailable`` once ``retries`` extra attempts are spent.
    ``should_continue`` lets a cancelled request stop retrying early.
    """
    delay = max(0.0, backoff)
    last_exc: Optional[BaseException] = None
    for attempt in range(retries + 1):
        try:
            return func()
        except retry_on as exc:
            last_exc = exc
            if attempt >= retries:
                break
            if should_continue is not None and not should_continue():
                break
            logger.warning(
                "%s unavailable (attempt %d/%d): %s. Retrying...",
                component, attempt + 1, retries + 1, exc,
            )
            if delay:
                time.sleep(delay)
            delay = min(max_backoff, delay * 2 if delay else 0.0)

    if isinstance(last_exc, ExternalUnavailable):
        raise last_exc
    raise ExternalUnavailable(component, f"{component} unavailable: {last_exc}") from last_exc
