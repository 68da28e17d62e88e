import pytest

from tracker.core.backoff import BackoffPolicy
from tracker.core.config import Settings


class TestBackoffPolicy:
    def test_delays_grow_and_cap(self):
        policy = BackoffPolicy(max_attempts=4, base_delay=0.1, max_delay=0.3, jitter=False)
        assert list(policy.delays()) == [0.1, 0.2, 0.3]

    def test_single_attempt_has_no_delays(self):
        assert list(BackoffPolicy(max_attempts=1).delays()) == []

    def test_jitter_stays_within_cap(self):
        policy = BackoffPolicy(max_attempts=10, base_delay=0.05, max_delay=0.2)
        for retry in range(20):
            assert 0 <= policy.delay_for(retry) <= 0.2

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_delay": -1}, {"max_delay": -0.5}],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

    def test_from_settings(self):
        settings = Settings(lock_max_attempts=7, lock_base_delay=0.2, lock_max_delay=3.0)
        policy = BackoffPolicy.from_settings(settings)
        assert policy.max_attempts == 7
        assert policy.base_delay == 0.2
        assert policy.max_delay == 3.0
