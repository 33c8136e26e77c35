"""Detect which supported CNI (Cilium or Calico) serves this node.

Detection falls through four tiers and stops at the first that finds a
CNI: plugin binaries, CNI config file names, the node's
``NetworkUnavailable`` condition reason, then node taint keys. Within a tier
Cilium always wins over Calico.
"""
from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any

from ..components.cni_plugins import BIN_DIR, CONFIG_DIR
from .polling import NodeValidationError

LOGGER = logging.getLogger(__name__)

NETWORK_UNAVAILABLE = "NetworkUnavailable"


class CniType(str, Enum):
    NONE = "none"
    CILIUM = "cilium"
    CALICO = "calico"


def _prefer_cilium(has_cilium: bool, has_calico: bool) -> CniType:
    if has_cilium:
        return CniType.CILIUM
    if has_calico:
        return CniType.CALICO
    return CniType.NONE


def _scan_names(names: list[str]) -> CniType:
    lowered = [name.lower() for name in names]
    return _prefer_cilium(
        any("cilium" in name for name in lowered),
        any("calico" in name for name in lowered),
    )


def _file_names(directory: Path) -> list[str]:
    if not directory.is_dir():
        LOGGER.debug("CNI directory %s not found", directory)
        return []
    return [entry.name for entry in directory.iterdir() if not entry.is_dir()]


def detect_from_binaries(bin_dir: Path = BIN_DIR) -> CniType:
    return _scan_names(_file_names(bin_dir))


def detect_from_config_files(config_dir: Path = CONFIG_DIR) -> CniType:
    return _scan_names(_file_names(config_dir))


def detect_from_node_condition(node: Any) -> CniType:
    """Use the reason of a cleared ``NetworkUnavailable`` condition."""
    for condition in getattr(node.status, "conditions", None) or []:
        if condition.type != NETWORK_UNAVAILABLE:
            continue
        if condition.status != "False":
            return CniType.NONE
        if condition.reason == "CiliumIsUp":
            return CniType.CILIUM
        if condition.reason == "CalicoIsUp":
            return CniType.CALICO
        LOGGER.info("NetworkUnavailable condition present but unknown CNI: %s", condition.reason)
        return CniType.NONE
    return CniType.NONE


def detect_from_taints(node: Any) -> CniType:
    keys = [taint.key for taint in getattr(node.spec, "taints", None) or []]
    return _scan_names(keys)


class CniDetector:
    """Runs the four detection tiers against the host and the Node object."""

    def __init__(self, api: Any, *, bin_dir: Path = BIN_DIR, config_dir: Path = CONFIG_DIR) -> None:
        self.api = api
        self.bin_dir = bin_dir
        self.config_dir = config_dir

    def detect(self, node_name: str) -> CniType:
        """Return the detected CNI or raise :class:`NodeValidationError`."""
        for tier, found in (
            ("binaries", detect_from_binaries(self.bin_dir)),
            ("config files", detect_from_config_files(self.config_dir)),
        ):
            if found is not CniType.NONE:
                LOGGER.info("Detected CNI %s from %s", found.value, tier)
                return found
        if node_name:
            node = self.api.read_node(node_name)
            for tier, detector in (("node condition", detect_from_node_condition), ("node taints", detect_from_taints)):
                found = detector(node)
                if found is not CniType.NONE:
                    LOGGER.info("Detected CNI %s from %s", found.value, tier)
                    return found
        raise NodeValidationError("cni not detected")


__all__ = [
    "CniDetector",
    "CniType",
    "detect_from_binaries",
    "detect_from_config_files",
    "detect_from_node_condition",
    "detect_from_taints",
]
