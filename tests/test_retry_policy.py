from hypothesis import given, settings as h_settings
from hypothesis.strategies import integers

import pytest

from payhook.domain.services.retry_policy import RetryPolicy, _calculate_backoff_seconds


def test_calculate_backoff_seconds_doubles_from_base() -> None:
    base = 60
    max_backoff = 3600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 120
    assert _calculate_backoff_seconds(5, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 60
    max_backoff = 3600

    # 60 * 2**6 = 3840 -> capped to 3600
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_calculate_backoff_seconds_handles_degenerate_inputs() -> None:
    assert _calculate_backoff_seconds(-3, base_seconds=60, max_backoff_seconds=3600) == 60
    assert _calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0
    assert _calculate_backoff_seconds(2, base_seconds=5000, max_backoff_seconds=3600) == 3600


class TestRetryPolicy:

    @pytest.mark.unit
    def test_first_retry_waits_base_then_doubles(self) -> None:
        policy = RetryPolicy(max_retries=6, base_seconds=60, max_backoff_seconds=3600)

        # retry_count = מספר הכשלונות שנרשמו עד כה
        assert [policy.backoff_seconds(k) for k in range(1, 8)] == [
            60, 120, 240, 480, 960, 1920, 3600,
        ]

    @pytest.mark.unit
    def test_should_retry_until_max_failures(self) -> None:
        policy = RetryPolicy(max_retries=3, base_seconds=60, max_backoff_seconds=3600)

        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)
        assert policy.is_exhausted(3)
        assert policy.is_exhausted(4)

    @pytest.mark.unit
    def test_from_settings(self, pipeline_settings) -> None:
        policy = RetryPolicy.from_settings(
            pipeline_settings.model_copy(update={
                "WEBHOOK_MAX_RETRIES": 5,
                "WEBHOOK_RETRY_BASE_SECONDS": 30,
                "WEBHOOK_MAX_BACKOFF_SECONDS": 900,
            })
        )
        assert policy == RetryPolicy(max_retries=5, base_seconds=30, max_backoff_seconds=900)


@h_settings(max_examples=200)
@given(
    retry_count=integers(min_value=1, max_value=100_000),
    base=integers(min_value=1, max_value=600),
    cap=integers(min_value=600, max_value=86_400),
)
def test_backoff_is_monotonic_and_bounded(retry_count: int, base: int, cap: int) -> None:
    policy = RetryPolicy(max_retries=10, base_seconds=base, max_backoff_seconds=cap)

    current = policy.backoff_seconds(retry_count)
    following = policy.backoff_seconds(retry_count + 1)

    assert base <= current <= cap
    assert current <= following <= cap


@given(retry_count=integers(min_value=1, max_value=30))
def test_backoff_matches_closed_form_below_cap(retry_count: int) -> None:
    policy = RetryPolicy(max_retries=10, base_seconds=7, max_backoff_seconds=10**12)
    assert policy.backoff_seconds(retry_count) == min(7 * 2 ** (retry_count - 1), 10**12)
