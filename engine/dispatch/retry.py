# engine/dispatch/retry.py

"""
Transient-error retry for provider calls.

Wraps AWS / broker calls with exponential backoff and jitter
(tenacity), and classifies botocore errors into the
transient / fatal split the scheduler understands.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Type, TypeVar

import tenacity
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from engine.exceptions import FatalLaunchError, TransientInfraError
from engine.utils import get_logger

log = get_logger("dispatch.retry")

T = TypeVar("T")

RETRYABLE_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalServerError",
    "ServerException",
    "SlowDown",
    # sometimes transient while a cluster is still being created
    "ClusterNotFoundException",
})

NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

# ECS run_task "failures" reasons that clear up on their own
TRANSIENT_FAILURE_PATTERNS = [
    r"capacity is unavailable",
    r"^RESOURCE:",
    r"^AGENT",
    r"throttl",
]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for transient failures."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0


def is_transient_client_error(exc: ClientError) -> bool:
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in RETRYABLE_ERROR_CODES:
        return True
    if isinstance(status, int) and 500 <= status < 600:
        return True
    return False


def classify_provider_error(
    exc: Exception,
    operation: str,
    fatal: Type[Exception] = FatalLaunchError,
) -> Exception:
    """
    Map a botocore exception onto TransientInfraError or the caller's
    fatal error type (FatalLaunchError by default).
    """
    if isinstance(exc, NETWORK_ERRORS):
        return TransientInfraError(f"{operation}: {exc}")
    if isinstance(exc, ClientError):
        if is_transient_client_error(exc):
            return TransientInfraError(f"{operation}: {exc}")
        return fatal(f"{operation}: {exc}")
    return exc


def is_transient_failure_reason(reason: str) -> bool:
    return any(re.search(p, reason or "", flags=re.IGNORECASE) for p in TRANSIENT_FAILURE_PATTERNS)


def _log_retry(operation: str):
    def before_sleep(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            f"{operation} failed (attempt {retry_state.attempt_number}): "
            f"{str(exc)[:100]} - retrying in {retry_state.next_action.sleep:.1f}s"
        )
    return before_sleep


def build_retryer(
    policy: RetryPolicy,
    operation: str,
    retry_on: Iterable[Type[BaseException]] = (TransientInfraError,),
    sleep: Callable[[float], None] = tenacity.nap.sleep,
) -> tenacity.Retrying:
    """Build a tenacity retryer from a RetryPolicy."""
    wait = tenacity.wait_exponential(
        multiplier=policy.base_delay,
        max=policy.max_delay,
    ) + tenacity.wait_random(0, policy.base_delay * 0.1)

    return tenacity.Retrying(
        stop=tenacity.stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait,
        retry=tenacity.retry_if_exception_type(tuple(retry_on)),
        before_sleep=_log_retry(operation),
        sleep=sleep,
        reraise=True,
    )


def call_with_retry(
    fn: Callable[..., T],
    *args,
    policy: RetryPolicy,
    operation: str,
    sleep: Callable[[float], None] = tenacity.nap.sleep,
    fatal: Type[Exception] = FatalLaunchError,
    **kwargs,
) -> T:
    """
    Call fn, translating provider errors and retrying transient ones.

    Raises the last TransientInfraError once attempts are exhausted,
    or a FatalLaunchError immediately.
    """

    def attempt() -> T:
        try:
            return fn(*args, **kwargs)
        except (ClientError,) + NETWORK_ERRORS as exc:
            raise classify_provider_error(exc, operation, fatal) from exc

    return build_retryer(policy, operation, sleep=sleep)(attempt)
