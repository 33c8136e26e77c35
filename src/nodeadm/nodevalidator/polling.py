"""Bounded background polling raced against an overall deadline.

Each wait runs exactly one worker thread. The worker retries its action
until it succeeds or fails more than ``max_failures`` times in a row, and it
checks a cancellation event between attempts. The caller waits on the
worker's future no longer than the time left on the shared :class:`Deadline`;
on timeout the event is set and the worker stops at its next check.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class NodeValidationError(RuntimeError):
    """Raised when post-init node validation fails."""


class ValidationTimeoutError(NodeValidationError):
    """Raised when the overall validation deadline passes."""


class CancelledError(NodeValidationError):
    """Raised inside a worker once its wait has been abandoned."""


@dataclass
class Deadline:
    """A fixed point in monotonic time shared by consecutive waits."""

    timeout: float
    clock: Callable[[], float] = time.monotonic
    _start: float = field(init=False)

    def __post_init__(self) -> None:
        self._start = self.clock()

    def remaining(self) -> float:
        return max(0.0, self.timeout - (self.clock() - self._start))

    def expired(self) -> bool:
        return self.remaining() <= 0


def poll(
    label: str,
    action: Callable[[threading.Event], T],
    deadline: Deadline,
    *,
    max_failures: int,
    interval: float = 2.0,
) -> T:
    """Run *action* in one background worker until it succeeds.

    *action* receives the cancellation event and should return promptly once
    it is set. The worker gives up after more than *max_failures*
    consecutive failures and the last error is raised here.
    """
    cancel = threading.Event()

    def _loop() -> T:
        failures = 0
        while True:
            if cancel.is_set():
                raise CancelledError(f"{label} cancelled")
            try:
                return action(cancel)
            except Exception as exc:
                failures += 1
                if failures > max_failures or cancel.is_set():
                    raise NodeValidationError(f"{label} failed after multiple attempts: {exc}") from exc
                LOGGER.debug("%s attempt %d failed: %s", label, failures, exc)
                cancel.wait(interval)

    LOGGER.info("Starting %s...", label)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nodeadm-validate")
    future = executor.submit(_loop)
    try:
        result = future.result(timeout=deadline.remaining())
    except FutureTimeout as exc:
        cancel.set()
        raise ValidationTimeoutError(f"{label} timeout occurred") from exc
    finally:
        executor.shutdown(wait=False)
    LOGGER.info("%s completed successfully", label.capitalize())
    return result


__all__ = ["CancelledError", "Deadline", "NodeValidationError", "ValidationTimeoutError", "poll"]
