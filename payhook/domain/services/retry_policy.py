"""
Retry policy - exponential backoff with a hard cap.
"""
from dataclasses import dataclass


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Calculate exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Find the smallest exponent whose multiplier reaches ceil(max/base) without computing 2**retry_count.
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    threshold = (required_multiplier - 1).bit_length()

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """
    retry_count is the number of failed attempts recorded so far.

    After k failures the next attempt waits base * 2**(k-1) seconds, so the
    first retry waits exactly `base_seconds` and each later one doubles,
    until `max_backoff_seconds`.
    """

    max_retries: int
    base_seconds: int
    max_backoff_seconds: int

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def backoff_seconds(self, retry_count: int) -> int:
        return _calculate_backoff_seconds(
            retry_count - 1,
            base_seconds=self.base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.WEBHOOK_MAX_RETRIES,
            base_seconds=settings.WEBHOOK_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.WEBHOOK_MAX_BACKOFF_SECONDS,
        )
