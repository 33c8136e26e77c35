"""iptables OS package required by kube-proxy."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from typing import Protocol

from .. import artifact
from ..artifact import Package, retry_with_delay
from ..state.tracker import Tracker

LOGGER = logging.getLogger(__name__)

RETRY_DELAY = 5.0
RETRY_TIMEOUT = 300.0


class Source(Protocol):
    def get_iptables(self) -> Package: ...


def install(
    tracker: Tracker,
    source: Source,
    *,
    which: Callable[[str], str | None] = shutil.which,
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    """Install iptables unless the host already provides it."""
    if which("iptables"):
        LOGGER.info("iptables already present, skipping install")
        return
    retry_with_delay(source.get_iptables().install, delay=retry_delay, timeout=retry_timeout)
    tracker.add(artifact.IPTABLES)


def uninstall(
    source: Source,
    *,
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    retry_with_delay(source.get_iptables().uninstall, delay=retry_delay, timeout=retry_timeout)


def upgrade(
    source: Source,
    *,
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    retry_with_delay(source.get_iptables().upgrade, delay=retry_delay, timeout=retry_timeout)


__all__ = ["Source", "install", "uninstall", "upgrade"]
