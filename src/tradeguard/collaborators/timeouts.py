"""Bounded calls into external collaborators."""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, Callable, TypeVar

from tradeguard.errors import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXECUTOR = concurrent.futures.ThreadPoolExecutor(
    max_workers=8, thread_name_prefix="tradeguard-collab",
)


def call_with_timeout(
    fn: Callable[..., T],
    timeout_seconds: float,
    *args: Any,
    label: str = "collaborator",
) -> T:
    """Run ``fn(*args)`` and wait at most ``timeout_seconds`` for it.

    Raises CollaboratorError on timeout or on any exception raised by
    the collaborator. A timed-out call keeps running in the pool but
    its result is discarded.
    """
    future = _EXECUTOR.submit(fn, *args)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError as exc:
        future.cancel()
        raise CollaboratorError(
            f"{label} timed out after {timeout_seconds}s"
        ) from exc
    except Exception as exc:
        raise CollaboratorError(f"{label} failed: {exc}") from exc
