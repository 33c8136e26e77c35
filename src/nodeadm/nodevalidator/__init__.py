"""Post-initialization checks that the node joined the cluster and is Ready."""
from __future__ import annotations

from .cni import CniDetector, CniType
from .polling import Deadline, NodeValidationError, ValidationTimeoutError, poll
from .validator import execute_active_node_validator

__all__ = [
    "CniDetector",
    "CniType",
    "Deadline",
    "NodeValidationError",
    "ValidationTimeoutError",
    "execute_active_node_validator",
    "poll",
]
