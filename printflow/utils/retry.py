# printflow/utils/retry.py
from datetime import datetime, timedelta

import redis
from tenacity import (
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from printflow.domain.errors import TransientProviderError


def http_retry():
    """Retry for idempotent provider reads (status lookups, read-backs, catalog)."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(TransientProviderError),
    )


def stage_retrying(max_attempts: int, backoff: float) -> Retrying:
    # bounded exponential backoff for one generation stage
    return Retrying(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff, min=0, max=max(backoff * 16, 0)),
        retry=retry_if_exception_type(TransientProviderError),
    )


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(redis.RedisError),
    )


def order_retry_at(attempts: int, now: datetime, base: float, cap: float) -> datetime:
    """When the next submission attempt is due, doubling per attempt made."""
    delay = min(base * 2 ** max(attempts - 1, 0), cap)
    return now + timedelta(seconds=delay)
