from __future__ import annotations

import threading

import pytest

from fieldsync.application.error_policy import classify_error, describe_error
from fieldsync.core.errors import (
    EntityNotFoundError,
    PermanentExternalError,
    RemoteTimeoutError,
    TransientExternalError,
    ValidationError,
)
from fieldsync.core.locks import KeyedLocks
from fieldsync.core.timeouts import call_with_timeout


def test_call_with_timeout_returns_result() -> None:
    assert call_with_timeout("get", lambda: 42, 1.0) == 42
    assert call_with_timeout("get", lambda: 7, None) == 7


def test_call_with_timeout_raises_transient_timeout() -> None:
    release = threading.Event()

    with pytest.raises(RemoteTimeoutError, match="batch_commit"):
        call_with_timeout("batch_commit", lambda: release.wait(5), 0.05)
    release.set()

    assert classify_error(RemoteTimeoutError("x")) == "transient"


def test_call_with_timeout_propagates_errors() -> None:
    def fail() -> None:
        raise EntityNotFoundError("no existe")

    with pytest.raises(EntityNotFoundError):
        call_with_timeout("update", fail, 1.0)


def test_keyed_locks_are_reentrant_and_shared_per_key() -> None:
    locks = KeyedLocks()

    assert locks.lock_for("queue") is locks.lock_for("queue")
    assert locks.lock_for("queue") is not locks.lock_for("dead_letter")
    with locks.hold("queue"), locks.hold("queue"):
        pass


def test_keyed_locks_block_other_threads() -> None:
    locks = KeyedLocks()
    acquired: list[bool] = []

    with locks.hold("entity"):
        worker = threading.Thread(target=lambda: acquired.append(locks.lock_for("entity").acquire(timeout=0.05)))
        worker.start()
        worker.join()

    assert acquired == [False]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TransientExternalError("cuota"), "transient"),
        (TimeoutError(), "transient"),
        (ConnectionResetError(), "transient"),
        (OSError("disco"), "transient"),
        (PermanentExternalError("regla"), "permanent"),
        (ValidationError("datos"), "permanent"),
        (KeyError("x"), "permanent"),
    ],
)
def test_error_classification(error: BaseException, expected: str) -> None:
    assert classify_error(error) == expected


def test_describe_error_includes_type() -> None:
    assert describe_error(ValueError("malo")) == "ValueError: malo"
    assert describe_error(ValueError()) == "ValueError"
