"""Validation primitives shared by the node provider and lifecycle flows."""
from __future__ import annotations

from .remediation import (
    RemediableError,
    flatten_remediation,
    is_remediable,
    new_remediable_error,
    remediation,
    with_remediation,
)
from .runner import (
    Informer,
    LoggingInformer,
    Validation,
    ValidationResult,
    ValidationRunner,
    normalize_phase,
    run_validations,
)

__all__ = [
    "Informer",
    "LoggingInformer",
    "RemediableError",
    "Validation",
    "ValidationResult",
    "ValidationRunner",
    "flatten_remediation",
    "is_remediable",
    "new_remediable_error",
    "normalize_phase",
    "remediation",
    "run_validations",
    "with_remediation",
]
