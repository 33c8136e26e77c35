"""Top-level lifecycle flows: install, init, upgrade, uninstall and cleanup."""
from __future__ import annotations

from .cleanup import ForceCleanup
from .init import InitCommand, Initer, InitError
from .install import Installer
from .uninstall import Uninstaller, UninstallError
from .upgrade import Upgrader, UpgradeError

__all__ = [
    "ForceCleanup",
    "InitCommand",
    "InitError",
    "Initer",
    "Installer",
    "UninstallError",
    "Uninstaller",
    "UpgradeError",
    "Upgrader",
]
