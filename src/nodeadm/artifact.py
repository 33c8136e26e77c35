"""Artifact primitives shared by every component installer.

An artifact source is a readable stream paired with the SHA-256 digest the
stream is expected to produce. Installation writes the stream to its
destination and then verifies the digest; upgrades are decided by comparing
the digest of the installed file with the digest advertised by the source.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Protocol, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

LOGGER = logging.getLogger(__name__)

# Names recorded in the installed-artifact tracker.
CONTAINERD = "containerd"
CNI_PLUGINS = "cni-plugins"
IAM_AUTHENTICATOR = "aws-iam-authenticator"
IAM_ROLES_ANYWHERE = "iam-roles-anywhere"
IMAGE_CREDENTIAL_PROVIDER = "image-credential-provider"
KUBECTL = "kubectl"
KUBELET = "kubelet"
SSM = "ssm"
IPTABLES = "iptables"

DEFAULT_DIR_PERMS = 0o755
_CHUNK_SIZE = 1024 * 1024

T = TypeVar("T")


class ArtifactError(RuntimeError):
    """Raised when an artifact cannot be installed or inspected."""


class ChecksumError(ArtifactError):
    """Raised when a downloaded artifact does not match its digest."""


class Source(Protocol):
    """A readable artifact stream with an expected SHA-256 digest."""

    def read(self, size: int = -1) -> bytes:
        """Read up to *size* bytes."""

    def close(self) -> None:
        """Release the underlying stream."""

    def expected_checksum(self) -> bytes:
        """Return the raw SHA-256 digest the stream should hash to."""


@dataclass
class ChecksumSource:
    """Wrap a binary stream so the digest is computed as it is read."""

    stream: BinaryIO
    checksum: bytes
    name: str = "artifact"
    _digest: Any = field(default_factory=hashlib.sha256, repr=False)

    def read(self, size: int = -1) -> bytes:
        chunk = self.stream.read(size)
        if chunk:
            self._digest.update(chunk)
        return chunk

    def close(self) -> None:
        self.stream.close()

    def expected_checksum(self) -> bytes:
        return self.checksum

    def verify_checksum(self) -> None:
        """Raise :class:`ChecksumError` unless the consumed bytes match."""
        if self._digest.digest() != self.checksum:
            raise ChecksumError(f"{self.name} checksum mismatch")

    def __enter__(self) -> ChecksumSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def parse_checksum(text: str) -> bytes:
    """Parse a ``sha256sum``-style line (``<hex>  <name>``) into raw bytes."""
    token = text.strip().split()[0] if text.strip() else ""
    try:
        digest = bytes.fromhex(token)
    except ValueError as exc:
        raise ArtifactError(f"invalid checksum data: {text.strip()!r}") from exc
    if len(digest) != hashlib.sha256().digest_size:
        raise ArtifactError(f"invalid checksum length: {token!r}")
    return digest


def file_sha256(path: Path) -> bytes:
    """Return the SHA-256 digest of *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.digest()


def install_file(dst: Path, src: BinaryIO | Source, perms: int) -> None:
    """Replace *dst* with the content of *src*, creating parent directories."""
    dst = Path(dst)
    if dst.is_dir() and not dst.is_symlink():
        shutil.rmtree(dst)
    else:
        dst.unlink(missing_ok=True)
    dst.parent.mkdir(mode=DEFAULT_DIR_PERMS, parents=True, exist_ok=True)
    fd = os.open(dst, os.O_CREAT | os.O_RDWR | os.O_TRUNC, perms)
    with os.fdopen(fd, "wb") as handle:
        shutil.copyfileobj(src, handle, _CHUNK_SIZE)
    os.chmod(dst, perms)


def install_verified(dst: Path, source: ChecksumSource, perms: int) -> None:
    """Install *source* to *dst* and verify its checksum afterwards."""
    install_file(dst, source, perms)
    source.verify_checksum()


def _valid_rel_path(name: str) -> bool:
    return not (name == "" or "\\" in name or name.startswith("/") or "../" in name)


def install_tar_gz(dst: Path, src: Path) -> None:
    """Extract the ``.tar.gz`` at *src* into *dst* and delete *src*."""
    dst = Path(dst)
    dst.mkdir(mode=DEFAULT_DIR_PERMS, parents=True, exist_ok=True)
    try:
        archive = tarfile.open(src, "r:gz")
    except (OSError, tarfile.TarError) as exc:
        raise ArtifactError(f"opening source file: {exc}") from exc
    with archive:
        for member in archive:
            if not _valid_rel_path(member.name):
                raise ArtifactError(f"tar contained invalid name error {member.name!r}")
            target = dst / member.name
            if member.isdir():
                target.mkdir(mode=member.mode or DEFAULT_DIR_PERMS, parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            extracted = archive.extractfile(member)
            if extracted is None:
                continue
            target.parent.mkdir(mode=DEFAULT_DIR_PERMS, parents=True, exist_ok=True)
            with extracted:
                install_file(target, extracted, member.mode)
    Path(src).unlink()


def install_tar_gz_stream(dst: Path, source: ChecksumSource) -> None:
    """Spool *source* to a temporary file, verify it, then extract it."""
    fd, tmp_name = tempfile.mkstemp(prefix="nodeadm-", suffix=".tar.gz")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        install_verified(tmp_path, source, 0o600)
        install_tar_gz(dst, tmp_path)
    finally:
        tmp_path.unlink(missing_ok=True)


def upgrade_available(installed_path: Path, source: Source) -> bool:
    """Return ``True`` when the installed file differs from *source*'s digest."""
    try:
        digest = file_sha256(Path(installed_path))
    except OSError as exc:
        raise ArtifactError(f"checking for available upgrades: {exc}") from exc
    return digest != source.expected_checksum()


def upgrade_file(name: str, path: Path, source: ChecksumSource, perms: int) -> bool:
    """Reinstall *path* from *source* when the digests differ.

    Returns ``True`` when the file was replaced.
    """
    if not upgrade_available(path, source):
        LOGGER.info("No new version found for %s. Skipping upgrade...", name)
        return False
    LOGGER.info("Upgrading %s...", name)
    install_verified(path, source, perms)
    LOGGER.info("Upgraded %s", name)
    return True


def install_from_source(
    name: str,
    dst: Path,
    opener: Callable[[], ChecksumSource],
    perms: int,
    *,
    attempts: int = 3,
) -> None:
    """Download a fresh stream from *opener* and install it, with retries.

    Every attempt opens a new stream.
    """

    def _attempt() -> None:
        with opener() as source:
            install_verified(dst, source, perms)

    try:
        retry_download(name, _attempt, attempts=attempts)
    except Exception as exc:
        raise ArtifactError(f"installing {name}: {exc}") from exc


def upgrade_from_source(name: str, dst: Path, opener: Callable[[], ChecksumSource], perms: int) -> bool:
    """Open one stream from *opener* and upgrade *dst* when it differs."""
    with opener() as source:
        return upgrade_file(name, dst, source, perms)


# ----------------------------------------------------------------------
# Retry helpers
# ----------------------------------------------------------------------
def retry_download(
    name: str,
    action: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 0.0,
) -> T:
    """Run *action* up to *attempts* times, logging each failure."""

    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        LOGGER.info("Downloading %s failed. Retrying...: %s", name, exc)

    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(Exception),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(action)


def retry_with_delay(
    action: Callable[[], T],
    *,
    delay: float,
    timeout: float,
) -> T:
    """Retry *action* on failure with a fixed *delay* until *timeout* expires."""
    retrying = Retrying(
        stop=stop_after_delay(timeout) if timeout > 0 else stop_after_attempt(1),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    )
    return retrying(action)


# ----------------------------------------------------------------------
# OS package artifacts
# ----------------------------------------------------------------------
class PackageError(ArtifactError):
    """Raised when a package manager command fails."""


@dataclass(frozen=True)
class Command:
    """A command line executed through :func:`subprocess.run`."""

    argv: tuple[str, ...]
    env: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(cls, *argv: str) -> Command:
        return cls(tuple(argv))

    def run(self) -> subprocess.CompletedProcess[str]:
        """Execute the command and raise :class:`PackageError` on failure."""
        environment = None
        if self.env:
            environment = dict(os.environ)
            environment.update(dict(self.env))
        try:
            result = subprocess.run(  # noqa: S603
                list(self.argv),
                capture_output=True,
                text=True,
                check=False,
                env=environment,
            )
        except FileNotFoundError as exc:
            raise PackageError(f"{self.argv[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise PackageError(
                f"running command {' '.join(self.argv)} failed (exit {result.returncode}): {message}"
            )
        return result


@dataclass(frozen=True)
class Package:
    """An OS package modelled as install/uninstall/upgrade command triples."""

    name: str
    install_cmd: Command
    uninstall_cmd: Command
    upgrade_cmd: Command | None = None

    def install(self) -> None:
        self.install_cmd.run()

    def uninstall(self) -> None:
        self.uninstall_cmd.run()

    def upgrade(self) -> None:
        (self.upgrade_cmd or self.install_cmd).run()


__all__ = [
    "ArtifactError",
    "CNI_PLUGINS",
    "CONTAINERD",
    "ChecksumError",
    "ChecksumSource",
    "Command",
    "IAM_AUTHENTICATOR",
    "IAM_ROLES_ANYWHERE",
    "IMAGE_CREDENTIAL_PROVIDER",
    "IPTABLES",
    "KUBECTL",
    "KUBELET",
    "Package",
    "PackageError",
    "SSM",
    "Source",
    "file_sha256",
    "install_file",
    "install_from_source",
    "install_tar_gz",
    "install_tar_gz_stream",
    "install_verified",
    "parse_checksum",
    "retry_download",
    "retry_with_delay",
    "upgrade_available",
    "upgrade_file",
    "upgrade_from_source",
]
