"""Named, skippable validation pipeline.

A :class:`Validation` pairs a phase name with a callable. The runner skips
phases named by the operator, reports progress through an :class:`Informer`
and stops at the first failure. Skip names are compared without their
``-validation`` suffix so ``--skip node-ip`` and ``--skip node-ip-validation``
are equivalent.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

from .remediation import remediation

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

_SUFFIX = "-validation"


def normalize_phase(name: str) -> str:
    """Strip the ``-validation`` suffix from a phase name."""
    text = name.strip()
    if text.endswith(_SUFFIX):
        return text[: -len(_SUFFIX)]
    return text


class Informer(Protocol):
    """Receives progress events for each validation that runs."""

    def starting(self, name: str, description: str) -> None:
        """Called before a validation runs."""

    def done(self, name: str, err: BaseException | None) -> None:
        """Called after a validation finishes (``err`` is ``None`` on success)."""


class LoggingInformer:
    """Informer that writes validation events to the progress log."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def starting(self, name: str, description: str) -> None:
        self._logger.info("Validating %s: %s", name, description)

    def done(self, name: str, err: BaseException | None) -> None:
        if err is None:
            self._logger.info("Validation %s passed", name)
            return
        self._logger.error("Validation %s failed: %s", name, err)
        fix = remediation(err)
        if fix:
            self._logger.error("Remediation: %s", fix)


@dataclass(frozen=True)
class Validation(Generic[T]):
    """A single named validation phase over a subject of type ``T``."""

    name: str
    description: str
    run: Callable[[T], None]


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one phase when collecting results instead of failing fast."""

    name: str
    description: str
    error: BaseException | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ValidationRunner(Generic[T]):
    """Execute validations in order, honouring a skip list."""

    def __init__(self, informer: Informer | None = None, skip: Iterable[str] = ()) -> None:
        self.informer: Informer = informer or LoggingInformer()
        self.skip = {normalize_phase(name) for name in skip if name.strip()}

    def is_skipped(self, name: str) -> bool:
        """Return ``True`` when *name* was requested to be skipped."""
        return normalize_phase(name) in self.skip

    def run(self, subject: T, validations: Sequence[Validation[T]]) -> None:
        """Run *validations* against *subject*, raising the first failure."""
        for item in validations:
            if self.is_skipped(item.name):
                LOGGER.debug("Skipping validation %s", item.name)
                continue
            self.informer.starting(item.name, item.description)
            try:
                item.run(subject)
            except Exception as exc:
                self.informer.done(item.name, exc)
                raise
            self.informer.done(item.name, None)

    def collect(self, subject: T, validations: Sequence[Validation[T]]) -> list[ValidationResult]:
        """Run every validation and return all outcomes without raising."""
        results: list[ValidationResult] = []
        for item in validations:
            if self.is_skipped(item.name):
                results.append(ValidationResult(item.name, item.description, skipped=True))
                continue
            self.informer.starting(item.name, item.description)
            error: BaseException | None = None
            try:
                item.run(subject)
            except Exception as exc:
                error = exc
            self.informer.done(item.name, error)
            results.append(ValidationResult(item.name, item.description, error=error))
        return results


def run_validations(
    subject: T,
    validations: Sequence[Validation[T]],
    *,
    skip: Iterable[str] = (),
    informer: Informer | None = None,
) -> None:
    """Convenience wrapper around :meth:`ValidationRunner.run`."""
    ValidationRunner(informer, skip).run(subject, validations)


__all__ = [
    "Informer",
    "LoggingInformer",
    "Validation",
    "ValidationResult",
    "ValidationRunner",
    "normalize_phase",
    "run_validations",
]
