"""Bounded readiness polling with a fixed interval.

A single abstraction replaces the ad hoc ``while attempt < max`` loops that
wait for PostgreSQL and the application health endpoint.  The wait between
attempts is interruptible by a :class:`threading.Event` so that an operator
signal aborts the poll promptly instead of sleeping out the full window.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

import httpx

from vault_engine.errors import OperationCancelled, ReadinessTimeoutError

logger = logging.getLogger(__name__)


def await_ready(
    check: Callable[[], bool],
    max_attempts: int,
    interval: float,
    *,
    cancel_event: threading.Event | None = None,
    label: str = "dependency",
) -> int:
    """Poll *check* until it returns true.

    Parameters
    ----------
    check:
        Zero-argument readiness predicate.  It must not raise for the
        ordinary "not up yet" case; return ``False`` instead.
    max_attempts:
        Maximum number of calls to *check* (must be positive).
    interval:
        Seconds to wait after each failed attempt (must be positive).
    cancel_event:
        Optional event; once set, the poll stops with
        :class:`OperationCancelled`.
    label:
        Human-readable dependency name used in logs and errors.

    Returns
    -------
    int
        The number of attempts made, including the successful one.

    Raises
    ------
    ReadinessTimeoutError
        After *max_attempts* failed checks.
    OperationCancelled
        When *cancel_event* is set before or during the wait.
    """
    if max_attempts <= 0:
        raise ValueError(f"max_attempts must be positive, got {max_attempts}")
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")

    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"cancelled while waiting for {label}")
        if check():
            logger.info("%s ready after %d attempt(s)", label, attempt)
            return attempt
        logger.debug("%s not ready (attempt %d/%d)", label, attempt, max_attempts)
        _wait(interval, cancel_event, label)

    raise ReadinessTimeoutError(label, max_attempts)


def _wait(interval: float, cancel_event: threading.Event | None, label: str) -> None:
    if cancel_event is None:
        time.sleep(interval)
        return
    if cancel_event.wait(interval):
        raise OperationCancelled(f"cancelled while waiting for {label}")


def http_health_check(url: str, timeout: float = 5.0) -> Callable[[], bool]:
    """Build a check that is ready when *url* answers with a 2xx status."""

    def _check() -> bool:
        try:
            response = httpx.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            logger.debug("Health check %s failed: %s", url, exc)
            return False
        return response.is_success

    return _check
