"""Tests for mount-aware removal, firewall probes and the NTP check."""
from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from nodeadm.system import ntp
from nodeadm.system.firewall import (
    FirewalldManager,
    FirewallError,
    UfwManager,
    firewall_manager_for,
    validate_vxlan_ports_open,
)
from nodeadm.system.osinfo import OsInfo
from nodeadm.system.safe_remove import SafeRemoveError, SafeRemover, read_mount_points
from nodeadm.validation.remediation import RemediableError


class DummyResult:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FakeMounter:
    """Tracks a set of mounted paths; unmounting removes them."""

    def __init__(self, mounts: set[str], *, stuck: set[str] | None = None) -> None:
        self.mounts = set(mounts)
        self.stuck = stuck or set()
        self.unmounted: list[str] = []
        self.forced: list[str] = []

    def is_mount_point(self, path: str) -> bool:
        return path in self.mounts

    def unmount(self, path: str) -> None:
        if path in self.stuck:
            raise SafeRemoveError("target is busy")
        self.unmounted.append(path)
        self.mounts.discard(path)

    def force_unmount(self, path: str) -> None:
        self.forced.append(path)
        self.stuck.discard(path)
        self.mounts.discard(path)


def _tree(root: Path) -> tuple[str, str]:
    pod = root / "pods" / "uid" / "volumes" / "secret"
    pod.mkdir(parents=True)
    (pod / "token").write_text("x", encoding="utf-8")
    return str(root / "pods" / "uid" / "volumes"), str(pod)


# ----------------------------------------------------------------------
# Safe removal
# ----------------------------------------------------------------------
def test_remove_without_mounts(tmp_path: Path) -> None:
    target = tmp_path / "kubelet"
    _tree(target)

    SafeRemover(FakeMounter(set()), sleep=lambda s: None).safe_remove_all(target, allow_unmount=False)

    assert not target.exists()


def test_refuses_to_delete_through_mounts(tmp_path: Path) -> None:
    target = tmp_path / "kubelet"
    _, secret = _tree(target)

    with pytest.raises(SafeRemoveError, match="mount points detected"):
        SafeRemover(FakeMounter({secret}), sleep=lambda s: None).safe_remove_all(target, allow_unmount=False)

    assert target.exists()


def test_unmounts_deepest_first_then_removes(tmp_path: Path) -> None:
    target = tmp_path / "kubelet"
    volumes, secret = _tree(target)
    mounter = FakeMounter({volumes})
    remover = SafeRemover(mounter, sleep=lambda s: None)

    # A mount below another mount is not descended into.
    assert remover.find_mount_points(str(target)) == [volumes]

    mounter.mounts.add(str(target))
    remover.safe_remove_all(target, allow_unmount=True)

    assert mounter.unmounted == [volumes, str(target)]
    assert not target.exists()


def test_force_unmount_used_when_regular_unmount_fails(tmp_path: Path) -> None:
    target = tmp_path / "cni"
    _, secret = _tree(target)
    mounter = FakeMounter({secret}, stuck={secret})

    SafeRemover(mounter, sleep=lambda s: None).safe_remove_all(target, allow_unmount=True, force_unmount=True)

    assert mounter.forced == [secret]
    assert not target.exists()


def test_stuck_mount_aborts_removal(tmp_path: Path) -> None:
    target = tmp_path / "cni"
    _, secret = _tree(target)
    sleeps: list[float] = []
    mounter = FakeMounter({secret}, stuck={secret})

    with pytest.raises(SafeRemoveError, match=f"failed to unmount {secret}"):
        SafeRemover(mounter, sleep=sleeps.append).safe_remove_all(target, allow_unmount=True)

    assert sleeps == [1.0, 2.0]
    assert target.exists()


def test_missing_target_is_noop(tmp_path: Path) -> None:
    SafeRemover(FakeMounter(set())).safe_remove_all(tmp_path / "absent", allow_unmount=False)


def test_read_mount_points_decodes_escapes(tmp_path: Path) -> None:
    mountinfo = tmp_path / "mountinfo"
    mountinfo.write_text(
        "36 35 98:0 / /var/lib/kubelet/pods/a\\040b rw - tmpfs tmpfs rw\n"
        "37 35 98:0 / / rw - ext4 /dev/root rw\n",
        encoding="utf-8",
    )

    assert read_mount_points(mountinfo) == {"/var/lib/kubelet/pods/a b", os.path.normpath("/")}


# ----------------------------------------------------------------------
# Firewall
# ----------------------------------------------------------------------
class FakeFirewall:
    def __init__(self, *, enabled: bool, open_ports: set[str]) -> None:
        self.enabled = enabled
        self.open_ports = open_ports
        self.flushed = False

    def is_enabled(self) -> bool:
        return self.enabled

    def flush_rules(self) -> None:
        self.flushed = True

    def is_port_open(self, port: str, protocol: str) -> bool:
        return f"{port}/{protocol}" in self.open_ports


@pytest.mark.parametrize("ports", [{"8472/udp"}, {"4789/udp"}, {"8472/udp", "4789/udp"}])
def test_vxlan_check_passes_with_either_port(ports: set[str]) -> None:
    firewall = FakeFirewall(enabled=True, open_ports=ports)

    validate_vxlan_ports_open(firewall)

    assert firewall.flushed


def test_vxlan_check_fails_when_both_closed() -> None:
    with pytest.raises(FirewallError, match="both cilium and calico vxlan ports are closed"):
        validate_vxlan_ports_open(FakeFirewall(enabled=True, open_ports={"22/tcp"}))


def test_inactive_firewall_allows_everything() -> None:
    firewall = FakeFirewall(enabled=False, open_ports=set())

    validate_vxlan_ports_open(firewall)

    assert not firewall.flushed


def test_firewall_manager_for_os() -> None:
    assert isinstance(firewall_manager_for(OsInfo("ubuntu", "22.04")), UfwManager)
    assert isinstance(firewall_manager_for(OsInfo("rhel", "9")), FirewalldManager)


UFW_STATUS = """Status: active

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW       Anywhere
8472/udp                   ALLOW       Anywhere
"""


def test_ufw_parses_status(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(subprocess, "run", lambda *a, **k: DummyResult(stdout=UFW_STATUS))
    ufw = UfwManager(which=lambda name: "/usr/sbin/ufw")

    assert ufw.is_enabled()
    assert ufw.is_port_open("8472", "udp")
    assert not ufw.is_port_open("4789", "udp")


def test_ufw_not_installed_is_disabled() -> None:
    assert not UfwManager(which=lambda name: None).is_enabled()


def test_firewalld_query_port(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(argv: list[str], **kwargs: object) -> DummyResult:
        calls.append(argv)
        if argv[1] == "--state":
            return DummyResult(stdout="running\n")
        if argv[1] == "--query-port=4789/udp":
            return DummyResult(stdout="yes\n")
        return DummyResult(returncode=1, stdout="no\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    firewalld = FirewalldManager(which=lambda name: "/usr/bin/firewall-cmd")

    assert firewalld.is_enabled()
    assert firewalld.is_port_open("4789", "udp")
    assert not firewalld.is_port_open("8472", "udp")


# ----------------------------------------------------------------------
# NTP
# ----------------------------------------------------------------------
@pytest.mark.parametrize(("stdout", "expected"), [("yes\n", True), ("no\n", False), ("NTPSynchronized=yes\n", True)])
def test_ntp_synchronized(monkeypatch: pytest.MonkeyPatch, stdout: str, expected: bool) -> None:
    monkeypatch.setattr(subprocess, "run", lambda *a, **k: DummyResult(stdout=stdout))

    assert ntp.ntp_synchronized() is expected


def test_validate_ntp_sync_carries_remediation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(subprocess, "run", lambda *a, **k: DummyResult(stdout="no\n"))

    with pytest.raises(RemediableError) as excinfo:
        ntp.validate_ntp_sync()

    assert "chronyd" in excinfo.value.remediation


def test_ntp_missing_timedatectl(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(*args: object, **kwargs: object) -> DummyResult:
        raise FileNotFoundError("timedatectl")

    monkeypatch.setattr(subprocess, "run", missing)

    with pytest.raises(ntp.NtpError):
        ntp.ntp_synchronized()
