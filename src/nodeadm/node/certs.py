"""Kubelet serving certificate health checks.

:func:`validate_certificate` walks a fixed sequence of checks and raises one
of a closed set of :class:`CertificateError` subclasses. Callers branch on
the exception type, never on its message. :func:`validate_kubelet_cert`
applies the caller's policy: during ``init`` a missing or out-of-date
certificate is tolerated because kubelet will request a fresh one.
"""
from __future__ import annotations

import datetime as _dt
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature

from ..validation.remediation import with_remediation

KUBELET_CERT_PATH = Path("/var/lib/kubelet/pki/kubelet-server-current.pem")
KUBELET_CONFIG_HINT = "/etc/kubernetes/kubelet/config.json"
KUBELET_CERT_VALIDATION = "kubelet-cert-validation"

_PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


class CertKind(str, Enum):
    NOT_FOUND = "NotFound"
    FILE_ERROR = "FileError"
    READ_ERROR = "ReadError"
    INVALID_FORMAT = "InvalidFormat"
    CLOCK_SKEW = "ClockSkew"
    EXPIRED = "Expired"
    PARSE_CA = "ParseCA"
    INVALID_CA = "InvalidCA"


class CertificateError(RuntimeError):
    """Base class for certificate validation failures."""

    kind: CertKind


class CertNotFoundError(CertificateError):
    kind = CertKind.NOT_FOUND


class CertFileError(CertificateError):
    kind = CertKind.FILE_ERROR


class CertReadError(CertificateError):
    kind = CertKind.READ_ERROR


class CertInvalidFormatError(CertificateError):
    kind = CertKind.INVALID_FORMAT


class CertClockSkewError(CertificateError):
    kind = CertKind.CLOCK_SKEW


class CertExpiredError(CertificateError):
    kind = CertKind.EXPIRED


class CertParseCAError(CertificateError):
    kind = CertKind.PARSE_CA


class CertInvalidCAError(CertificateError):
    kind = CertKind.INVALID_CA


class CertPolicy(str, Enum):
    """How tolerant a caller is of transient certificate states."""

    # init: kubelet regenerates missing or out-of-date certificates
    BOOTSTRAP = "bootstrap"
    STRICT = "strict"


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def load_certificate(path: Path) -> x509.Certificate:
    """Read the first PEM certificate in *path*."""
    try:
        path.stat()
    except FileNotFoundError as exc:
        raise CertNotFoundError(f"no certificate found at {path}") from exc
    except OSError as exc:
        raise CertFileError(f"checking certificate file {path}: {exc}") from exc
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise CertReadError(f"reading certificate file {path}: {exc}") from exc
    if _PEM_MARKER not in data:
        raise CertInvalidFormatError(f"certificate file {path} does not contain a PEM certificate")
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise CertInvalidFormatError(f"parsing certificate {path}: {exc}") from exc


def validate_certificate(
    path: Path,
    ca: bytes = b"",
    *,
    now: Callable[[], _dt.datetime] = _utcnow,
) -> x509.Certificate:
    """Check presence, format, validity window and issuer of *path*.

    The issuer check only runs when *ca* (PEM) is non-empty.
    """
    cert = load_certificate(Path(path))
    current = now()
    if current < cert.not_valid_before_utc:
        raise CertClockSkewError(
            f"server certificate is not yet valid: current time {current.isoformat()} is before "
            f"{cert.not_valid_before_utc.isoformat()}"
        )
    if current > cert.not_valid_after_utc:
        raise CertExpiredError(
            f"server certificate has expired: current time {current.isoformat()} is after "
            f"{cert.not_valid_after_utc.isoformat()}"
        )
    if not ca:
        return cert
    try:
        ca_cert = x509.load_pem_x509_certificate(ca)
    except ValueError as exc:
        raise CertParseCAError(f"parsing cluster CA certificate: {exc}") from exc
    try:
        cert.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature) as exc:
        raise CertInvalidCAError(
            f"server certificate is not signed by the cluster CA: {str(exc) or 'signature mismatch'}"
        ) from exc
    return cert


def is_date_validation_error(err: BaseException) -> bool:
    return isinstance(err, (CertClockSkewError, CertExpiredError))


def is_no_cert_error(err: BaseException) -> bool:
    return isinstance(err, CertNotFoundError)


def add_kubelet_remediation(cert_path: Path, err: CertificateError) -> Exception:
    """Return *err* wrapped with the kubelet-specific fix for its kind."""
    wrapped = CertificateError(f"validating kubelet certificate: {err}")
    wrapped.__cause__ = err
    if isinstance(err, (CertNotFoundError, CertFileError, CertReadError)):
        text = (
            "Kubelet certificate will be created when the kubelet is able to authenticate with "
            "the API server. Check previous authentication remediation advice."
        )
    elif isinstance(err, CertInvalidFormatError):
        text = f"Delete the kubelet server certificate file {cert_path} and restart kubelet"
    elif isinstance(err, CertClockSkewError):
        text = "Verify the system time is correct and restart the kubelet."
    elif isinstance(err, CertExpiredError):
        text = (
            f"Delete the kubelet server certificate file {cert_path} and restart kubelet. "
            f"Validate `serverTLSBootstrap` is true in the kubelet config {KUBELET_CONFIG_HINT} "
            "to automatically rotate the certificate."
        )
    elif isinstance(err, CertParseCAError):
        text = "Ensure the cluster CA certificate is valid"
    elif isinstance(err, CertInvalidCAError):
        text = (
            f"Please remove the kubelet server certificate file {cert_path} or use "
            f'"--skip {KUBELET_CERT_VALIDATION}" if this is expected'
        )
    else:
        return wrapped
    return with_remediation(wrapped, text)


def validate_kubelet_cert(
    cert_path: Path,
    ca: bytes,
    *,
    policy: CertPolicy = CertPolicy.STRICT,
    now: Callable[[], _dt.datetime] = _utcnow,
) -> None:
    """Validate the kubelet serving certificate under *policy*."""
    try:
        validate_certificate(cert_path, ca, now=now)
    except CertificateError as exc:
        if policy is CertPolicy.BOOTSTRAP and (is_date_validation_error(exc) or is_no_cert_error(exc)):
            return
        raise add_kubelet_remediation(cert_path, exc) from exc


__all__ = [
    "CertClockSkewError",
    "CertExpiredError",
    "CertFileError",
    "CertInvalidCAError",
    "CertInvalidFormatError",
    "CertKind",
    "CertNotFoundError",
    "CertParseCAError",
    "CertPolicy",
    "CertReadError",
    "CertificateError",
    "KUBELET_CERT_PATH",
    "add_kubelet_remediation",
    "is_date_validation_error",
    "is_no_cert_error",
    "load_certificate",
    "validate_certificate",
    "validate_kubelet_cert",
]
