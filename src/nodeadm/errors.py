"""Cross-cutting error markers used by the lifecycle flows and the CLI."""
from __future__ import annotations

import os


class SilentError(RuntimeError):
    """Failure whose context was already reported to the operator.

    The CLI still exits non-zero for these errors but does not print them a
    second time.
    """


class MustRunAsRootError(RuntimeError):
    """Raised when a mutating command is invoked by a non-root user."""

    def __init__(self) -> None:
        super().__init__("nodeadm must be run as root")


def is_silent(exc: BaseException | None) -> bool:
    """Return ``True`` when *exc* or any exception in its cause chain is silent."""
    seen: set[int] = set()
    current = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, SilentError):
            return True
        seen.add(id(current))
        current = current.__cause__
    return False


def check_root(euid: int | None = None) -> None:
    """Raise :class:`MustRunAsRootError` unless the effective user is root."""
    effective = os.geteuid() if euid is None else euid
    if effective != 0:
        raise MustRunAsRootError()


__all__ = ["SilentError", "MustRunAsRootError", "is_silent", "check_root"]
