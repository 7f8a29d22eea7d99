import pickle
import threading

import pytest

from engine.exceptions import FatalLaunchError, TaskRuntimeError
from engine.storage.serialization import (
    Outcome,
    WorkUnit,
    decode_outcome,
    decode_work,
    encode_outcome,
    encode_work,
)


def add(a, b=0):
    return a + b


def explode():
    raise ValueError("bad input")


class Unpicklable(Exception):
    def __init__(self, lock):
        super().__init__("holds a lock")
        self.lock = lock


def test_work_unit_calls_function_with_arguments():
    work = decode_work(encode_work(WorkUnit.of(add, 2, b=3)))
    assert work() == 5


def test_work_unit_requires_callable():
    with pytest.raises(TypeError):
        WorkUnit.of(42)


def test_unserializable_work_is_fatal():
    with pytest.raises(FatalLaunchError):
        encode_work(WorkUnit.of(lambda: 1))


def test_malformed_descriptor_is_fatal():
    with pytest.raises(FatalLaunchError):
        decode_work(pickle.dumps({"not": "work"}))


def test_failure_outcome_keeps_type_message_and_traceback():
    try:
        explode()
    except ValueError as exc:
        outcome = Outcome.failure(exc)

    outcome = decode_outcome(encode_outcome(outcome))

    assert not outcome.ok
    assert outcome.error_type == "ValueError"
    assert outcome.message == "bad input"
    assert "explode" in outcome.traceback

    with pytest.raises(TaskRuntimeError) as err:
        outcome.unwrap()

    assert err.value.error_type == "ValueError"
    assert isinstance(err.value.__cause__, ValueError)
    assert str(err.value) == "ValueError: bad input"


def test_unpicklable_exception_is_reported_without_original():
    outcome = Outcome.failure(Unpicklable(threading.Lock()))

    assert outcome.exception is None
    assert decode_outcome(encode_outcome(outcome)).error_type == "Unpicklable"


def test_unpicklable_value_becomes_failure():
    outcome = decode_outcome(encode_outcome(Outcome.success(threading.Lock())))

    assert not outcome.ok
    assert outcome.error_type in ("TypeError", "PicklingError")


def test_malformed_result_payload():
    with pytest.raises(TaskRuntimeError):
        decode_outcome(pickle.dumps("not an outcome"))
