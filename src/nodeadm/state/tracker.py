"""Record of the components nodeadm itself installed on the host.

The tracker lives at ``/opt/nodeadm/tracker`` by default and is written as
YAML::

    Artifacts:
      Containerd: docker
      CniPlugins: true
      ...

A field is set only when nodeadm installed the component. Software that was
already present on the host (for example a pre-existing containerd) is left
unset so that ``upgrade`` and ``uninstall`` never touch it.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage nodeadm state. Install with `pip install nodeadm`."
    ) from exc

from .. import artifact

LOGGER = logging.getLogger(__name__)

DEFAULT_TRACKER_FILE = Path("/opt/nodeadm/tracker")
TRACKER_FILE_MODE = 0o644


class TrackerError(RuntimeError):
    """Raised when the tracker cannot be read, mutated or written."""


class ContainerdSourceName(str, Enum):
    """Where nodeadm obtained containerd from."""

    NONE = "none"
    DISTRO = "distro"
    DOCKER = "docker"


def containerd_source(value: object) -> ContainerdSourceName:
    """Normalise *value* to a :class:`ContainerdSourceName`.

    Empty values and ``None`` mean nodeadm does not manage containerd.
    """
    if isinstance(value, ContainerdSourceName):
        return value
    text = "" if value is None else str(value)
    if text in ("", "none"):
        return ContainerdSourceName.NONE
    if text == "distro":
        return ContainerdSourceName.DISTRO
    if text == "docker":
        return ContainerdSourceName.DOCKER
    raise TrackerError(f"invalid containerd source: {text}")


# Artifact name -> InstalledArtifacts attribute.
_TRACKED_FLAGS = {
    artifact.CNI_PLUGINS: "cni_plugins",
    artifact.IAM_AUTHENTICATOR: "iam_authenticator",
    artifact.IAM_ROLES_ANYWHERE: "iam_roles_anywhere",
    artifact.IMAGE_CREDENTIAL_PROVIDER: "image_credential_provider",
    artifact.KUBECTL: "kubectl",
    artifact.KUBELET: "kubelet",
    artifact.SSM: "ssm",
    artifact.IPTABLES: "iptables",
}

# InstalledArtifacts attribute -> serialised key.
_YAML_KEYS = {
    "containerd": "Containerd",
    "cni_plugins": "CniPlugins",
    "iam_authenticator": "IamAuthenticator",
    "iam_roles_anywhere": "IamRolesAnywhere",
    "image_credential_provider": "ImageCredentialProvider",
    "kubectl": "Kubectl",
    "kubelet": "Kubelet",
    "ssm": "Ssm",
    "iptables": "Iptables",
}


@dataclass
class InstalledArtifacts:
    """Flags for every component nodeadm can install."""

    containerd: ContainerdSourceName = ContainerdSourceName.NONE
    cni_plugins: bool = False
    iam_authenticator: bool = False
    iam_roles_anywhere: bool = False
    image_credential_provider: bool = False
    kubectl: bool = False
    kubelet: bool = False
    ssm: bool = False
    iptables: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        data: dict[str, object] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, ContainerdSourceName):
                value = value.value
            data[_YAML_KEYS[item.name]] = value
        return data

    @classmethod
    def from_dict(cls, raw: object) -> InstalledArtifacts:
        """Build from the on-disk mapping, tolerating missing keys."""
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise TrackerError("invalid yaml data in tracker: Artifacts must be a mapping")
        values: dict[str, object] = {}
        for attr, key in _YAML_KEYS.items():
            if key not in raw:
                continue
            if attr == "containerd":
                values[attr] = containerd_source(raw[key])
            else:
                values[attr] = bool(raw[key])
        return cls(**values)  # type: ignore[arg-type]


@dataclass
class Tracker:
    """In-memory view of the tracker file."""

    path: Path = DEFAULT_TRACKER_FILE
    artifacts: InstalledArtifacts = field(default_factory=InstalledArtifacts)

    def add(self, component: str) -> None:
        """Mark *component* as installed by nodeadm."""
        attr = _TRACKED_FLAGS.get(component)
        if attr is None:
            raise TrackerError(f"invalid artifact to track: {component}")
        setattr(self.artifacts, attr, True)

    def save(self) -> None:
        """Atomically persist the tracker with mode 0644."""
        self.artifacts.containerd = containerd_source(self.artifacts.containerd)
        payload = {"Artifacts": self.artifacts.to_dict()}

        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, TRACKER_FILE_MODE)
        finally:
            tmp_path.unlink(missing_ok=True)


def get_installed_artifacts(path: Path = DEFAULT_TRACKER_FILE) -> Tracker:
    """Read the tracker at *path*; raises ``FileNotFoundError`` when absent."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise TrackerError(f"invalid yaml data in tracker: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise TrackerError("invalid yaml data in tracker: expected a mapping")
    return Tracker(path=path, artifacts=InstalledArtifacts.from_dict(data.get("Artifacts")))


def get_current_state(path: Path = DEFAULT_TRACKER_FILE) -> Tracker:
    """Return the persisted tracker, or an empty one on first install."""
    try:
        return get_installed_artifacts(path)
    except FileNotFoundError:
        return Tracker(path=Path(path))


def clear(path: Path = DEFAULT_TRACKER_FILE) -> None:
    """Remove the directory containing the tracker file."""
    tracker_dir = Path(path).parent
    LOGGER.info("Clearing tracker directory %s", tracker_dir)
    if tracker_dir.exists():
        shutil.rmtree(tracker_dir)


__all__ = [
    "ContainerdSourceName",
    "DEFAULT_TRACKER_FILE",
    "InstalledArtifacts",
    "Tracker",
    "TrackerError",
    "clear",
    "containerd_source",
    "get_current_state",
    "get_installed_artifacts",
]
