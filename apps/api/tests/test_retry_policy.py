"""Tests for the bounded retry policy."""

import pytest

from market_api.errors import LedgerFatal, LedgerOutcomeUnknown, LedgerTimeout, LedgerTransient, RetryExhausted
from market_api.settlement.retry import RetryPolicy


class Flaky:
    """Raise the scripted errors, then return ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def test_success_needs_no_retry(fast_retry, retry_sleeps):
    assert fast_retry.call(Flaky([])) == "ok"
    assert retry_sleeps == []


def test_transient_failures_are_retried_with_backoff(fast_retry, retry_sleeps):
    operation = Flaky([LedgerTransient("busy"), LedgerTransient("busy")])
    assert fast_retry.call(operation) == "ok"
    assert operation.calls == 3
    assert retry_sleeps == [1.0, 2.0]


def test_exhaustion_keeps_last_error(fast_retry):
    operation = Flaky([LedgerTransient("busy", result="telINSUF_FEE_P")] * 5)
    with pytest.raises(RetryExhausted) as exc_info:
        fast_retry.call(operation, "submit escrow_release")
    assert operation.calls == 3
    assert exc_info.value.result == "telINSUF_FEE_P"
    assert exc_info.value.attempts == 3
    assert "submit escrow_release" in str(exc_info.value)


def test_fatal_errors_are_not_retried(fast_retry):
    operation = Flaky([LedgerFatal("bad signature")])
    with pytest.raises(LedgerFatal):
        fast_retry.call(operation)
    assert operation.calls == 1


def test_timeouts_not_retried_when_unsafe(fast_retry):
    operation = Flaky([LedgerTimeout("slow")])
    with pytest.raises(LedgerTimeout):
        fast_retry.call(operation, retry_unknown_outcomes=False)
    assert operation.calls == 1


def test_lost_responses_not_retried_when_unsafe(fast_retry):
    operation = Flaky([LedgerOutcomeUnknown("connection reset by peer")])
    with pytest.raises(LedgerOutcomeUnknown):
        fast_retry.call(operation, retry_unknown_outcomes=False)
    assert operation.calls == 1


def test_timeouts_retried_for_lookups(fast_retry):
    operation = Flaky([LedgerTimeout("slow")])
    assert fast_retry.call(operation) == "ok"
    assert operation.calls == 2


def test_delay_is_capped():
    policy = RetryPolicy(attempts=10, base_delay=1.0, multiplier=3.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 3.0, 5.0, 5.0]


@pytest.mark.parametrize("kwargs", [{"attempts": 0}, {"base_delay": -1}, {"multiplier": 0.5}])
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_from_settings(settings):
    policy = RetryPolicy.from_settings(settings, sleep=lambda seconds: None)
    assert policy.attempts == settings.ledger_retry_attempts
    assert policy.base_delay == settings.ledger_retry_base_delay_seconds
