"""
Unit tests for the shared retry policy.
"""

from unittest.mock import MagicMock

import pytest

from storefront_ingest.errors import TransientUpstreamError
from storefront_ingest.utils.retry import RetryPolicy


def _transient(error):
    return isinstance(error, TransientUpstreamError)


class TestRetryPolicy:
    policy = RetryPolicy(max_retries=4, base_delay=0.5, max_delay=4.0, retryable=_transient)

    def test_backoff_schedule(self):
        assert [self.policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 4.0]

    def test_server_hint_is_capped(self):
        assert self.policy.delay_for(1, hint=3) == 3
        assert self.policy.delay_for(1, hint=30) == 10.0

    def test_jitter_stays_within_bound(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=1.0, jitter=0.2)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.2

    def test_retries_until_success(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=[TransientUpstreamError("429"), TransientUpstreamError("503"), "ok"])

        assert self.policy.call(fn, sleep=sleep) == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_uses_retry_after_hint(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=[TransientUpstreamError("429", 429, retry_after=2.0), "ok"])

        self.policy.call(fn, sleep=sleep)

        sleep.assert_called_once_with(2.0)

    def test_non_retryable_raises_immediately(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            self.policy.call(fn, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_gives_up_after_max_retries(self):
        sleep = MagicMock()
        fn = MagicMock(side_effect=TransientUpstreamError("503"))

        with pytest.raises(TransientUpstreamError):
            self.policy.call(fn, sleep=sleep)
        assert fn.call_count == 5
        assert sleep.call_count == 4
