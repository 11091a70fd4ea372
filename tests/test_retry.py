import pytest

from errors import ConflictError, NotFoundError, StoreError
from retry import RetryPolicy

POLICY = RetryPolicy(
    store_max_attempts=3,
    conflict_max_attempts=4,
    backoff_min_secs=0,
    backoff_max_secs=0,
)


def _flaky(errors):
    calls = []

    def fn():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return "done"

    return fn, calls


def test_store_errors_are_retried_until_success():
    fn, calls = _flaky([StoreError("locked"), StoreError("locked")])
    assert POLICY.call(fn) == "done"
    assert len(calls) == 3


def test_store_errors_give_up_after_max_attempts():
    fn, calls = _flaky([StoreError("down")] * 5)
    with pytest.raises(StoreError):
        POLICY.call(fn)
    assert len(calls) == 3


def test_conflicts_use_their_own_budget():
    fn, calls = _flaky([ConflictError("stale")] * 10)
    with pytest.raises(ConflictError):
        POLICY.call(fn)
    assert len(calls) == 4


def test_not_found_is_never_retried():
    fn, calls = _flaky([NotFoundError("Obligation")])
    with pytest.raises(NotFoundError):
        POLICY.call(fn)
    assert len(calls) == 1
