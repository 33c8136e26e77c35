"""Tests for kubelet serving certificate validation."""
from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from nodeadm.node.certs import (
    CertClockSkewError,
    CertExpiredError,
    CertificateError,
    CertInvalidCAError,
    CertInvalidFormatError,
    CertKind,
    CertNotFoundError,
    CertParseCAError,
    CertPolicy,
    validate_certificate,
    validate_kubelet_cert,
)
from nodeadm.validation.remediation import RemediableError, remediation

NOW = dt.datetime(2025, 6, 1, tzinfo=dt.timezone.utc)


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _issue(
    subject: str,
    *,
    issuer_name: str | None = None,
    issuer_key: ec.EllipticCurvePrivateKey | None = None,
    not_before: dt.datetime = NOW - dt.timedelta(days=1),
    not_after: dt.datetime = NOW + dt.timedelta(days=30),
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = ec.generate_private_key(ec.SECP256R1())
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer_name or subject))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    cert = builder.sign(issuer_key or key, hashes.SHA256())
    return cert, key


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def cluster_ca() -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    return _issue("kubernetes")


def _write_serving_cert(tmp_path: Path, ca, **kwargs) -> Path:
    ca_cert, ca_key = ca
    cert, _ = _issue("system:node:node-1", issuer_name="kubernetes", issuer_key=ca_key, **kwargs)
    path = tmp_path / "kubelet-server-current.pem"
    path.write_bytes(_pem(cert))
    return path


def test_valid_certificate_signed_by_cluster_ca(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca)

    cert = validate_certificate(path, _pem(cluster_ca[0]), now=lambda: NOW)

    assert cert.subject == _name("system:node:node-1")


def test_issuer_check_skipped_without_ca(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca)

    validate_certificate(path, b"", now=lambda: NOW)


def test_missing_certificate(tmp_path: Path) -> None:
    with pytest.raises(CertNotFoundError) as excinfo:
        validate_certificate(tmp_path / "missing.pem", now=lambda: NOW)

    assert excinfo.value.kind is CertKind.NOT_FOUND


def test_non_pem_file_is_invalid_format(tmp_path: Path) -> None:
    path = tmp_path / "cert.pem"
    path.write_text("not a certificate", encoding="utf-8")

    with pytest.raises(CertInvalidFormatError):
        validate_certificate(path, now=lambda: NOW)


def test_not_yet_valid_is_clock_skew(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca, not_before=NOW + dt.timedelta(hours=1))

    with pytest.raises(CertClockSkewError):
        validate_certificate(path, now=lambda: NOW)


def test_expired_certificate(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(
        tmp_path,
        cluster_ca,
        not_before=NOW - dt.timedelta(days=60),
        not_after=NOW - dt.timedelta(days=1),
    )

    with pytest.raises(CertExpiredError):
        validate_certificate(path, now=lambda: NOW)


def test_unparseable_ca(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca)

    with pytest.raises(CertParseCAError):
        validate_certificate(path, b"-----BEGIN CERTIFICATE-----\ngarbage\n", now=lambda: NOW)


def test_certificate_from_other_ca(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca)
    other_ca, _ = _issue("other-ca")

    with pytest.raises(CertInvalidCAError):
        validate_certificate(path, _pem(other_ca), now=lambda: NOW)


def test_bootstrap_policy_tolerates_missing_and_expired(tmp_path: Path, cluster_ca) -> None:
    """During init kubelet will request a fresh certificate."""
    validate_kubelet_cert(tmp_path / "missing.pem", b"", policy=CertPolicy.BOOTSTRAP, now=lambda: NOW)

    path = _write_serving_cert(tmp_path, cluster_ca, not_after=NOW - dt.timedelta(seconds=1), not_before=NOW - dt.timedelta(days=2))
    validate_kubelet_cert(path, b"", policy=CertPolicy.BOOTSTRAP, now=lambda: NOW)


def test_bootstrap_policy_still_rejects_wrong_ca(tmp_path: Path, cluster_ca) -> None:
    path = _write_serving_cert(tmp_path, cluster_ca)
    other_ca, _ = _issue("other-ca")

    with pytest.raises(RemediableError) as excinfo:
        validate_kubelet_cert(path, _pem(other_ca), policy=CertPolicy.BOOTSTRAP, now=lambda: NOW)

    assert "--skip kubelet-cert-validation" in remediation(excinfo.value)


def test_strict_policy_adds_remediation(tmp_path: Path) -> None:
    with pytest.raises(RemediableError) as excinfo:
        validate_kubelet_cert(tmp_path / "missing.pem", b"", policy=CertPolicy.STRICT, now=lambda: NOW)

    assert "validating kubelet certificate" in str(excinfo.value)
    assert "Kubelet certificate will be created" in remediation(excinfo.value)
    assert isinstance(excinfo.value.__cause__, CertificateError)
