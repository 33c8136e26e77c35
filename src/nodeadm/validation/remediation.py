"""Errors annotated with operator-facing remediation advice."""
from __future__ import annotations


class RemediableError(RuntimeError):
    """An error carrying a human-readable fix suggestion.

    The original exception, when there is one, is kept as ``__cause__`` so
    callers can still match on its type.
    """

    def __init__(self, message: str, remediation: str) -> None:
        super().__init__(message)
        self.remediation = remediation


def with_remediation(err: BaseException, text: str) -> RemediableError:
    """Wrap *err* so that it carries *text* as remediation."""
    wrapped = RemediableError(str(err), text)
    wrapped.__cause__ = err
    return wrapped


def new_remediable_error(message: str, text: str) -> RemediableError:
    """Build a fresh remediable error."""
    return RemediableError(message, text)


def _find(err: BaseException | None) -> RemediableError | None:
    seen: set[int] = set()
    current = err
    while current is not None and id(current) not in seen:
        if isinstance(current, RemediableError):
            return current
        seen.add(id(current))
        current = current.__cause__
    return None


def is_remediable(err: BaseException | None) -> bool:
    """Return ``True`` when *err* or its cause chain carries remediation."""
    return _find(err) is not None


def remediation(err: BaseException | None) -> str:
    """Return the remediation text attached to *err* (empty when absent)."""
    found = _find(err)
    return found.remediation if found is not None else ""


def flatten_remediation(err: BaseException) -> str:
    """Merge the error message and its remediation into one line."""
    text = remediation(err)
    if not text:
        return str(err)
    return f"{err}: {text}"


__all__ = [
    "RemediableError",
    "flatten_remediation",
    "is_remediable",
    "new_remediable_error",
    "remediation",
    "with_remediation",
]
