# engine/storage/serialization.py

"""
Wire format for task descriptors and outcomes.

Descriptors and outcomes are pickled. Functions are pickled by
reference, so they must be importable on the worker (module-level
functions in an installed package, or in the worker image).
"""

import pickle
import traceback
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple

from engine.exceptions import CumulusError, FatalLaunchError, TaskRuntimeError

PROTOCOL = pickle.HIGHEST_PROTOCOL


@dataclass(frozen=True)
class WorkUnit:
    """A callable plus its arguments. Opaque to the scheduler."""

    fn: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, fn: Callable[..., Any], *args, **kwargs) -> "WorkUnit":
        if not callable(fn):
            raise TypeError(f"work must be callable, got {type(fn).__name__}")
        return cls(fn=fn, args=args, kwargs=kwargs)

    def __call__(self) -> Any:
        return self.fn(*self.args, **self.kwargs)


@dataclass(frozen=True)
class Outcome:
    """What a worker writes to results/{task_id}."""

    ok: bool
    value: Any = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    traceback: Optional[str] = None
    exception: Optional[BaseException] = None
    # the descriptor itself was unusable; the work never ran
    rejected: bool = False

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: BaseException) -> "Outcome":
        return cls(
            ok=False,
            error_type=type(exc).__name__,
            message=str(exc),
            traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            exception=exc if _picklable(exc) else None,
        )

    @classmethod
    def rejection(cls, exc: BaseException) -> "Outcome":
        if not isinstance(exc, FatalLaunchError):
            error = FatalLaunchError(f"Malformed task descriptor: {exc}")
            error.__cause__ = exc
            exc = error
        return replace(cls.failure(exc), rejected=True)

    def to_error(self) -> CumulusError:
        if self.rejected:
            return FatalLaunchError(self.message or "Malformed task descriptor")

        error = TaskRuntimeError(
            self.message or "Task failed",
            error_type=self.error_type,
            remote_traceback=self.traceback,
        )
        if self.exception is not None:
            error.__cause__ = self.exception
        return error

    def unwrap(self) -> Any:
        if self.ok:
            return self.value
        raise self.to_error()


def _picklable(obj: Any) -> bool:
    # round trip: some exceptions pickle fine but cannot be rebuilt
    try:
        pickle.loads(pickle.dumps(obj, protocol=PROTOCOL))
    except Exception:
        return False
    return True


def encode_work(work: WorkUnit) -> bytes:
    try:
        return pickle.dumps(work, protocol=PROTOCOL)
    except (pickle.PicklingError, AttributeError, TypeError) as exc:
        raise FatalLaunchError(f"Work unit cannot be serialized: {exc}") from exc


def decode_work(payload: bytes) -> WorkUnit:
    work = pickle.loads(payload)
    if not isinstance(work, WorkUnit):
        raise FatalLaunchError(f"Malformed task descriptor: {type(work).__name__}")
    return work


def encode_outcome(outcome: Outcome) -> bytes:
    try:
        return pickle.dumps(outcome, protocol=PROTOCOL)
    except Exception as exc:
        # the value itself could not be pickled; report that as the failure
        return pickle.dumps(Outcome.failure(exc), protocol=PROTOCOL)


def decode_outcome(payload: bytes) -> Outcome:
    outcome = pickle.loads(payload)
    if not isinstance(outcome, Outcome):
        raise TaskRuntimeError(f"Malformed result payload: {type(outcome).__name__}")
    return outcome
