"""Timeout-bounded collaborator calls.

Every call the pipeline makes to a stock source or advisory generator goes
through guarded_call(), which returns a CollaboratorResult. Failures and
timeouts become a DegradedInput value plus the documented fallback; they
never propagate as pipeline failures.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, TypeVar

import requests

from ..errors import DegradedInput
from ..models import CollaboratorResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collaborator failures that degrade instead of failing the run
RECOVERABLE_ERRORS = (
    requests.RequestException,
    FutureTimeoutError,
    TimeoutError,
    OSError,
    ValueError,
)


def guarded_call(
    source: str,
    operation: str,
    func: Callable[[], T],
    fallback: T,
    timeout: float,
    fallback_description: str = "",
) -> CollaboratorResult[T]:
    """Run a collaborator call with an independent timeout.

    Args:
        source: Collaborator name for the audit trail (e.g. "stock")
        operation: Operation name (e.g. "check_availability:Amoxicillin")
        func: Zero-argument callable performing the call
        fallback: Value substituted on failure
        timeout: Seconds before the call is abandoned
        fallback_description: Human-readable fallback for the audit trail

    Returns:
        CollaboratorResult with the value, or the fallback and a DegradedInput
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(func)
        value = future.result(timeout=timeout)
        return CollaboratorResult(value=value)
    except RECOVERABLE_ERRORS as e:
        reason = f"timed out after {timeout:g}s" if isinstance(e, FutureTimeoutError) else str(e)
        logger.warning(f"{source} {operation} degraded: {reason or type(e).__name__}")
        return CollaboratorResult(
            value=fallback,
            degraded=DegradedInput(
                source=source,
                operation=operation,
                reason=reason or type(e).__name__,
                fallback=fallback_description or repr(fallback),
            ),
        )
    finally:
        # Do not block on a hung collaborator
        executor.shutdown(wait=False)
