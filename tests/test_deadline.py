"""
tests/test_deadline.py -- Tests for core/deadline.py and fail-closed validation.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from core.deadline import BoundedExecutor, Deadline
from core.errors import DeadlineExceeded, InternalError
from tests.conftest import PASSWORD


@pytest.fixture
def executor():
    ex = BoundedExecutor(workers=2)
    yield ex
    ex.shutdown(wait=False)


def test_no_deadline_runs_inline(executor) -> None:
    caller = threading.current_thread()
    ran_on = []
    executor.call(lambda: ran_on.append(threading.current_thread()))
    assert ran_on == [caller]


def test_result_and_kwargs_pass_through(executor) -> None:
    assert executor.call(lambda a, b=0: a + b, 2, b=3, deadline=Deadline(1.0)) == 5


def test_slow_call_raises_deadline_exceeded(executor) -> None:
    start = time.perf_counter()
    with pytest.raises(DeadlineExceeded):
        executor.call(time.sleep, 1.0, deadline=Deadline(0.05))
    assert time.perf_counter() - start < 0.5


def test_expired_deadline_never_starts_call(executor) -> None:
    calls = []
    deadline = Deadline(0.0)
    with pytest.raises(DeadlineExceeded):
        executor.call(calls.append, 1, deadline=deadline)
    assert calls == []


def test_deadline_exceeded_is_internal_error() -> None:
    assert issubclass(DeadlineExceeded, InternalError)


def test_callee_errors_propagate(executor) -> None:
    def boom() -> None:
        raise ValueError("bad")

    with pytest.raises(ValueError):
        executor.call(boom, deadline=Deadline(1.0))


def test_deadline_remaining_counts_down() -> None:
    d = Deadline(10.0)
    assert 9.0 < d.remaining() <= 10.0
    assert not d.expired


def test_validation_fails_closed_on_slow_store(service, store, tenant) -> None:
    result = service.register("user@acme.test", PASSWORD, "Acme User", tenant)
    real = store.get_session_by_token_hash

    def slow(token_hash):
        time.sleep(0.5)
        return real(token_hash)

    with patch.object(store, "get_session_by_token_hash", side_effect=slow):
        assert service.validate_token(result.access_token, deadline=Deadline(0.05)) is None
    assert service.validate_token(result.access_token) is not None
