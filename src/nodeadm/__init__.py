"""nodeadm package bootstrap.

Exposes the version metadata consumed by the CLI ``--version`` flag and by
the Hatch build backend.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the version from this module when building the wheel.
__version__ = "1.0.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
