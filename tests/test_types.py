import time
from concurrent.futures import InvalidStateError

import pytest

from script_exporter import (
    AdmissionRejected,
    CancelToken,
    Cancelled,
    ExecutionRequest,
    ExecutionResult,
    TimedOut,
)


def test_token_without_deadline_never_fires_on_its_own() -> None:
    token = CancelToken()
    assert token.remaining() is None
    assert token.done() is False
    assert token.wait(0.01) is False


def test_token_deadline_fires_as_timeout() -> None:
    token = CancelToken.with_timeout(0.05)
    assert token.wait(1.0) is True
    assert isinstance(token.error(), TimedOut)
    assert token.remaining() == 0.0


def test_cancel_fires_as_cancelled_and_first_cause_wins() -> None:
    token = CancelToken.with_timeout(0.05)
    token.cancel()
    time.sleep(0.1)
    err = token.error()
    assert isinstance(err, Cancelled)
    assert not isinstance(err, TimedOut)

    expired = CancelToken(deadline=time.monotonic() - 1)
    assert isinstance(expired.error(), TimedOut)
    expired.cancel()
    assert isinstance(expired.error(), TimedOut)


def test_result_classification_properties() -> None:
    assert ExecutionResult(output="x").ok is True
    timed_out = ExecutionResult(error=TimedOut("deadline exceeded"))
    assert timed_out.timed_out and timed_out.cancelled and not timed_out.ok
    cancelled = ExecutionResult(error=Cancelled("execution cancelled"))
    assert cancelled.cancelled and not cancelled.timed_out
    rejected = ExecutionResult(error=AdmissionRejected("busy"))
    assert not rejected.cancelled and not rejected.ok


def test_result_slot_accepts_a_single_write() -> None:
    request = ExecutionRequest(script="probe.sh", token=CancelToken())
    request.result.set_result(ExecutionResult(output="one"))
    with pytest.raises(InvalidStateError):
        request.result.set_result(ExecutionResult(output="two"))
    assert request.result.result().output == "one"
