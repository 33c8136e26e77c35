"""Clock synchronisation check via ``timedatectl``."""
from __future__ import annotations

import subprocess

from ..validation.remediation import new_remediable_error

NTP_REMEDIATION = (
    "Ensure an NTP client such as chronyd or systemd-timesyncd is running and can reach "
    "its time servers. Kubelet certificates and AWS request signatures depend on an "
    "accurate clock."
)


class NtpError(RuntimeError):
    """Raised when the synchronisation state cannot be read."""


def ntp_synchronized(timedatectl_bin: str = "timedatectl") -> bool:
    """Return the ``NTPSynchronized`` property reported by systemd."""
    argv = [timedatectl_bin, "show", "-p", "NTPSynchronized", "--value"]
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)  # noqa: S603
    except FileNotFoundError as exc:
        raise NtpError(f"{timedatectl_bin} not found: {exc}") from exc
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise NtpError(f"{' '.join(argv)} failed (exit {result.returncode}): {message}")
    value = (result.stdout or "").strip()
    # Older systemd prints "NTPSynchronized=yes" even with --value.
    _, _, value = value.rpartition("=")
    return value == "yes"


def validate_ntp_sync(timedatectl_bin: str = "timedatectl") -> None:
    """Raise a remediable error when the system clock is not synchronised."""
    if not ntp_synchronized(timedatectl_bin):
        raise new_remediable_error("system clock is not NTP synchronized", NTP_REMEDIATION)


__all__ = ["NTP_REMEDIATION", "NtpError", "ntp_synchronized", "validate_ntp_sync"]
