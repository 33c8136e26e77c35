"""Release manifest and download sources for EKS hybrid artifacts.

The hybrid-assets manifest lists, for every supported Kubernetes minor
release, the patch releases and the per-OS/arch artifacts that make them up::

    supported_eks_releases:
      - kubernetes_version: "1.31"
        latest_patch_version: "1.31.2"
        patch_releases:
          - version: "1.31.2"
            artifacts:
              - name: kubelet
                os: linux
                arch: amd64
                uri: https://.../kubelet
                checksum_uri: https://.../kubelet.sha256
    iam_roles_anywhere_releases:
      - version: "1.2.0"
        artifacts: [...]

Every artifact stream returned here is a :class:`~nodeadm.artifact.ChecksumSource`
carrying the digest published next to it.
"""
from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import requests
from packaging.version import InvalidVersion, Version

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read the release manifest. Install with `pip install nodeadm`."
    ) from exc

from .artifact import ChecksumSource, parse_checksum

LOGGER = logging.getLogger(__name__)

KUBELET = "kubelet"
KUBECTL = "kubectl"
CNI_PLUGINS = "cni-plugins"
IMAGE_CREDENTIAL_PROVIDER = "image-credential-provider"
IAM_AUTHENTICATOR = "aws-iam-authenticator"
SIGNING_HELPER = "aws_signing_helper"

SSM_INSTALLER_URL = (
    "https://amazon-ssm-{region}.s3.{region}.amazonaws.com/latest/linux_{arch}/ssm-setup-cli"
)


class ManifestError(RuntimeError):
    """Raised when the manifest cannot be fetched or lacks an artifact."""


@dataclass(frozen=True)
class ManifestArtifact:
    """One downloadable artifact entry."""

    name: str
    os: str
    arch: str
    uri: str
    checksum_uri: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ManifestArtifact:
        return cls(
            name=str(raw.get("name", "")),
            os=str(raw.get("os", "linux")),
            arch=str(raw.get("arch", "")),
            uri=str(raw.get("uri", "")),
            checksum_uri=str(raw.get("checksum_uri", "")),
        )


@dataclass(frozen=True)
class Release:
    """A versioned collection of artifacts."""

    version: str
    artifacts: tuple[ManifestArtifact, ...]

    def find(self, name: str, arch: str, os_name: str = "linux") -> ManifestArtifact:
        for item in self.artifacts:
            if item.name == name and item.arch == arch and item.os == os_name:
                return item
        raise ManifestError(f"artifact {name} for {os_name}/{arch} not found in release {self.version}")


@dataclass(frozen=True)
class Manifest:
    """Parsed release manifest."""

    eks_releases: Mapping[str, tuple[str, tuple[Release, ...]]]
    iam_roles_anywhere_releases: tuple[Release, ...] = ()

    @classmethod
    def parse(cls, text: str) -> Manifest:
        """Parse manifest YAML text."""
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ManifestError(f"invalid manifest yaml: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ManifestError("invalid manifest: expected a mapping at the top level")

        eks: dict[str, tuple[str, tuple[Release, ...]]] = {}
        for entry in _as_list(data.get("supported_eks_releases")):
            minor = str(entry.get("kubernetes_version", ""))
            latest = str(entry.get("latest_patch_version", ""))
            patches = tuple(_release(item) for item in _as_list(entry.get("patch_releases")))
            eks[minor] = (latest, patches)

        iam_ra = tuple(_release(item) for item in _as_list(data.get("iam_roles_anywhere_releases")))
        return cls(eks_releases=eks, iam_roles_anywhere_releases=iam_ra)

    def eks_release(self, kubernetes_version: str) -> Release:
        """Return the patch release for ``1.31`` (latest patch) or ``1.31.2``."""
        try:
            parsed = Version(kubernetes_version.lstrip("v"))
        except InvalidVersion as exc:
            raise ManifestError(f"invalid kubernetes version {kubernetes_version!r}") from exc
        minor = f"{parsed.major}.{parsed.minor}"
        if minor not in self.eks_releases:
            raise ManifestError(f"kubernetes version {kubernetes_version} is not supported")
        latest, patches = self.eks_releases[minor]
        wanted = latest if len(parsed.release) < 3 else str(parsed)
        for release in patches:
            if release.version.lstrip("v") == wanted.lstrip("v"):
                return release
        raise ManifestError(f"kubernetes version {kubernetes_version} is not supported")

    def latest_iam_roles_anywhere_release(self) -> Release:
        """Return the newest IAM Roles Anywhere release."""
        if not self.iam_roles_anywhere_releases:
            raise ManifestError("no iam roles anywhere releases found in manifest")
        return max(self.iam_roles_anywhere_releases, key=lambda item: _sort_key(item.version))


def _sort_key(version: str) -> Version:
    try:
        return Version(version.lstrip("v"))
    except InvalidVersion:
        return Version("0")


def _release(raw: Mapping[str, object]) -> Release:
    return Release(
        version=str(raw.get("version", "")),
        artifacts=tuple(ManifestArtifact.from_mapping(item) for item in _as_list(raw.get("artifacts"))),
    )


def _as_list(value: object) -> list[Mapping[str, object]]:
    if value is None:
        return []
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ManifestError("invalid manifest: expected a list")
    return [item for item in value if isinstance(item, Mapping)]


# ----------------------------------------------------------------------
# HTTP helpers
# ----------------------------------------------------------------------
class _ResponseStream:
    """File-like view of a streaming :class:`requests.Response`."""

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._response.raw.decode_content = True

    def read(self, size: int = -1) -> bytes:
        return self._response.raw.read(None if size < 0 else size) or b""

    def close(self) -> None:
        self._response.close()


@dataclass
class HttpFetcher:
    """Small wrapper around a ``requests`` session."""

    timeout: float = 300.0
    session: requests.Session = field(default_factory=requests.Session)

    def text(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ManifestError(f"downloading {url}: {exc}") from exc
        return response.text

    def stream(self, url: str) -> _ResponseStream:
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ManifestError(f"downloading {url}: {exc}") from exc
        return _ResponseStream(response)

    def content(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ManifestError(f"downloading {url}: {exc}") from exc
        return response.content


# ----------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------
@dataclass
class ManifestSource:
    """Serve EKS artifacts for one Kubernetes version and architecture."""

    manifest: Manifest
    kubernetes_version: str
    arch: str
    fetcher: HttpFetcher = field(default_factory=HttpFetcher)

    @classmethod
    def load(
        cls,
        url: str,
        kubernetes_version: str,
        arch: str,
        *,
        fetcher: HttpFetcher | None = None,
    ) -> ManifestSource:
        """Download the manifest from *url* and build a source."""
        fetcher = fetcher or HttpFetcher()
        LOGGER.info("Loading release manifest from %s", url)
        manifest = Manifest.parse(fetcher.text(url))
        source = cls(manifest=manifest, kubernetes_version=kubernetes_version, arch=arch, fetcher=fetcher)
        source.release()
        return source

    def release(self) -> Release:
        return self.manifest.eks_release(self.kubernetes_version)

    def _open(self, item: ManifestArtifact) -> ChecksumSource:
        checksum = parse_checksum(self.fetcher.text(item.checksum_uri))
        return ChecksumSource(stream=self.fetcher.stream(item.uri), checksum=checksum, name=item.name)  # type: ignore[arg-type]

    def _eks(self, name: str) -> ChecksumSource:
        return self._open(self.release().find(name, self.arch))

    def get_kubelet(self) -> ChecksumSource:
        return self._eks(KUBELET)

    def get_kubectl(self) -> ChecksumSource:
        return self._eks(KUBECTL)

    def get_cni_plugins(self) -> ChecksumSource:
        return self._eks(CNI_PLUGINS)

    def get_image_credential_provider(self) -> ChecksumSource:
        return self._eks(IMAGE_CREDENTIAL_PROVIDER)

    def get_iam_authenticator(self) -> ChecksumSource:
        return self._eks(IAM_AUTHENTICATOR)

    def get_signing_helper(self) -> ChecksumSource:
        release = self.manifest.latest_iam_roles_anywhere_release()
        return self._open(release.find(SIGNING_HELPER, self.arch))


@dataclass
class SsmInstallerSource:
    """Serve ``ssm-setup-cli`` and its detached signature for a region."""

    region: str
    arch: str
    public_key: str | None = None
    fetcher: HttpFetcher = field(default_factory=HttpFetcher)

    @property
    def installer_url(self) -> str:
        return SSM_INSTALLER_URL.format(region=self.region, arch=self.arch)

    def get_ssm_installer(self) -> bytes:
        return self.fetcher.content(self.installer_url)

    def get_ssm_installer_signature(self) -> bytes:
        return self.fetcher.content(f"{self.installer_url}.sig")


class SignatureError(ManifestError):
    """Raised when a detached GPG signature does not verify."""


def verify_signature(
    data: bytes,
    signature: bytes,
    public_key: str | None,
    *,
    gpg_bin: str = "gpg",
) -> None:
    """Verify *signature* over *data* with ``gpg --verify``.

    With *public_key* the check runs against a throwaway keyring holding only
    that key; otherwise the caller's default keyring is used.
    """
    with tempfile.TemporaryDirectory(prefix="nodeadm-gpg-") as tmp:
        tmp_dir = Path(tmp)
        data_path = tmp_dir / "payload"
        sig_path = tmp_dir / "payload.sig"
        data_path.write_bytes(data)
        sig_path.write_bytes(signature)

        base = [gpg_bin, "--batch", "--no-tty"]
        if public_key:
            home = tmp_dir / "gnupg"
            home.mkdir(mode=0o700)
            key_path = tmp_dir / "key.asc"
            key_path.write_text(public_key, encoding="utf-8")
            base.extend(["--homedir", str(home)])
            _run_gpg([*base, "--import", str(key_path)])
        _run_gpg([*base, "--verify", str(sig_path), str(data_path)])


def _run_gpg(argv: list[str]) -> None:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)  # noqa: S603
    except FileNotFoundError as exc:
        raise SignatureError(f"{argv[0]} not found: {exc}") from exc
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise SignatureError(f"signature verification failed: {message}")


__all__ = [
    "HttpFetcher",
    "Manifest",
    "ManifestArtifact",
    "ManifestError",
    "ManifestSource",
    "Release",
    "SignatureError",
    "SsmInstallerSource",
    "verify_signature",
]
