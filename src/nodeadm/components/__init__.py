"""Per-component installers and the daemons nodeadm configures.

Every component module exposes ``install``, ``uninstall`` and ``upgrade``
against its own narrow source protocol. Components that run as services also
provide a daemon object implementing :class:`Daemon`.
"""
from __future__ import annotations

from typing import Protocol

from ..nodeconfig import NodeConfig


class Daemon(Protocol):
    """A host service configured and started during ``init``."""

    @property
    def name(self) -> str: ...

    def configure(self, cfg: NodeConfig) -> None: ...

    def ensure_running(self) -> None: ...

    def post_launch(self, cfg: NodeConfig) -> None: ...

    def stop(self) -> None: ...


__all__ = ["Daemon"]
