"""Tests for artifact installation, upgrade detection and command helpers."""
from __future__ import annotations

import hashlib
import io
import stat
import subprocess
import tarfile
from pathlib import Path

import pytest

from nodeadm import artifact
from nodeadm.artifact import (
    ArtifactError,
    ChecksumError,
    ChecksumSource,
    Command,
    PackageError,
)


def _source(payload: bytes, *, checksum: bytes | None = None) -> ChecksumSource:
    digest = hashlib.sha256(payload).digest() if checksum is None else checksum
    return ChecksumSource(io.BytesIO(payload), digest, name="kubelet")


class DummyResult:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_parse_checksum_accepts_sha256sum_line() -> None:
    digest = hashlib.sha256(b"x").digest()

    assert artifact.parse_checksum(f"{digest.hex()}  kubelet\n") == digest


@pytest.mark.parametrize("text", ["", "zz  kubelet", "abcd  kubelet"])
def test_parse_checksum_rejects_bad_data(text: str) -> None:
    with pytest.raises(ArtifactError):
        artifact.parse_checksum(text)


def test_install_verified_writes_file_with_permissions(tmp_path: Path) -> None:
    dst = tmp_path / "usr" / "bin" / "kubelet"

    artifact.install_verified(dst, _source(b"binary"), 0o755)

    assert dst.read_bytes() == b"binary"
    assert stat.S_IMODE(dst.stat().st_mode) == 0o755


def test_install_verified_raises_on_mismatch(tmp_path: Path) -> None:
    dst = tmp_path / "kubelet"

    with pytest.raises(ChecksumError, match="kubelet checksum mismatch"):
        artifact.install_verified(dst, _source(b"binary", checksum=b"\x00" * 32), 0o755)


def test_upgrade_available_compares_digests(tmp_path: Path) -> None:
    installed = tmp_path / "kubectl"
    installed.write_bytes(b"v1")

    assert artifact.upgrade_available(installed, _source(b"v1")) is False
    assert artifact.upgrade_available(installed, _source(b"v2")) is True


def test_upgrade_available_requires_installed_file(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError, match="checking for available upgrades"):
        artifact.upgrade_available(tmp_path / "missing", _source(b"v1"))


def test_upgrade_file_skips_identical_content(tmp_path: Path) -> None:
    installed = tmp_path / "kubectl"
    installed.write_bytes(b"v1")

    assert artifact.upgrade_file("kubectl", installed, _source(b"v1"), 0o755) is False
    assert artifact.upgrade_file("kubectl", installed, _source(b"v2"), 0o755) is True
    assert installed.read_bytes() == b"v2"


def test_install_from_source_retries_with_fresh_stream(tmp_path: Path) -> None:
    dst = tmp_path / "kubelet"
    calls: list[int] = []

    def opener() -> ChecksumSource:
        calls.append(1)
        if len(calls) == 1:
            return _source(b"partial", checksum=hashlib.sha256(b"full").digest())
        return _source(b"full")

    artifact.install_from_source("kubelet", dst, opener, 0o755, attempts=3)

    assert len(calls) == 2
    assert dst.read_bytes() == b"full"


def test_install_from_source_gives_up_after_attempts(tmp_path: Path) -> None:
    calls: list[int] = []

    def opener() -> ChecksumSource:
        calls.append(1)
        return _source(b"bad", checksum=b"\x01" * 32)

    with pytest.raises(ArtifactError, match="installing kubelet"):
        artifact.install_from_source("kubelet", tmp_path / "kubelet", opener, 0o755, attempts=2)
    assert len(calls) == 2


def _tarball(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def test_install_tar_gz_stream_extracts_members(tmp_path: Path) -> None:
    payload = _tarball({"bridge": b"b", "loopback": b"l"})

    artifact.install_tar_gz_stream(tmp_path / "bin", _source(payload))

    assert (tmp_path / "bin" / "bridge").read_bytes() == b"b"
    assert (tmp_path / "bin" / "loopback").read_bytes() == b"l"


def test_install_tar_gz_rejects_path_traversal(tmp_path: Path) -> None:
    archive = tmp_path / "cni.tar.gz"
    archive.write_bytes(_tarball({"../escape": b"x"}))

    with pytest.raises(ArtifactError, match="invalid name"):
        artifact.install_tar_gz(tmp_path / "bin", archive)
    assert not (tmp_path / "escape").exists()


def test_retry_with_delay_eventually_succeeds() -> None:
    attempts: list[int] = []

    def action() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("dnf is locked")
        return "ok"

    assert artifact.retry_with_delay(action, delay=0, timeout=5) == "ok"
    assert len(attempts) == 3


def test_command_run_reports_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: DummyResult(returncode=1, stderr="No match for argument"),
    )

    with pytest.raises(PackageError, match="No match for argument"):
        Command.of("dnf", "install", "-y", "containerd").run()


def test_command_run_reports_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(*args: object, **kwargs: object) -> DummyResult:
        raise FileNotFoundError("apt-get")

    monkeypatch.setattr(subprocess, "run", missing)

    with pytest.raises(PackageError, match="apt-get not found"):
        Command.of("apt-get", "update").run()


def test_package_upgrade_falls_back_to_install(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[list[str]] = []

    def fake_run(argv: list[str], **kwargs: object) -> DummyResult:
        seen.append(argv)
        return DummyResult()

    monkeypatch.setattr(subprocess, "run", fake_run)
    package = artifact.Package(
        "iptables",
        install_cmd=Command.of("yum", "install", "-y", "iptables"),
        uninstall_cmd=Command.of("yum", "remove", "-y", "iptables"),
    )

    package.upgrade()
    package.uninstall()

    assert seen == [["yum", "install", "-y", "iptables"], ["yum", "remove", "-y", "iptables"]]
