"""kubelet binary, systemd unit and runtime configuration."""
from __future__ import annotations

import ipaddress
import json
import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to write the kubeconfig. Install with `pip install nodeadm`."
    ) from exc

from .. import artifact
from ..artifact import ChecksumSource
from ..nodeconfig import NodeConfig
from ..providers.systemd import DaemonManager
from ..state.tracker import Tracker
from . import iam_authenticator, image_credential_provider

LOGGER = logging.getLogger(__name__)

DAEMON_NAME = "kubelet"
BIN_PATH = Path("/usr/bin/kubelet")
UNIT_PATH = Path("/etc/systemd/system/kubelet.service")
BIN_PERMS = 0o755
UNIT_PERMS = 0o644

KUBELET_CONFIG_ROOT = Path("/etc/kubernetes/kubelet")
KUBELET_CONFIG_PATH = KUBELET_CONFIG_ROOT / "config.json"
KUBECONFIG_PATH = Path("/var/lib/kubelet/kubeconfig")
CA_CERT_PATH = Path("/etc/kubernetes/pki/ca.crt")
ICP_CONFIG_PATH = image_credential_provider.BIN_PATH.parent / "config.json"
ENVIRONMENT_PATH = Path("/etc/eks/kubelet/environment")
KUBELET_ARGS_ENV = "NODEADM_KUBELET_ARGS"

SSM_PROFILE = "default"
SSM_CREDENTIALS_PATH = "/root/.aws/credentials"
IAM_RA_PROFILE = "default"

UNIT_FILE = f"""[Unit]
Description=Kubernetes Kubelet
Documentation=https://github.com/kubernetes/kubernetes
After=containerd.service
Wants=containerd.service

[Service]
Slice=runtime.slice
EnvironmentFile={ENVIRONMENT_PATH}
ExecStartPre=/sbin/iptables -P FORWARD ACCEPT -w 5
ExecStart={BIN_PATH} ${KUBELET_ARGS_ENV}
Restart=on-failure
RestartForceExitStatus=SIGPIPE
RestartSec=5
KillMode=process
CPUAccounting=true
MemoryAccounting=true

[Install]
WantedBy=multi-user.target
"""

_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+\.\d+)")


class KubeletError(RuntimeError):
    """Raised when the kubelet cannot be configured or inspected."""


class Source(Protocol):
    def get_kubelet(self) -> ChecksumSource: ...


# ----------------------------------------------------------------------
# Install / uninstall / upgrade
# ----------------------------------------------------------------------
def install(
    tracker: Tracker,
    source: Source,
    *,
    bin_path: Path = BIN_PATH,
    unit_path: Path = UNIT_PATH,
    attempts: int = 3,
) -> None:
    """Install the kubelet binary and its systemd unit."""
    artifact.install_from_source(artifact.KUBELET, bin_path, source.get_kubelet, BIN_PERMS, attempts=attempts)
    tracker.add(artifact.KUBELET)
    _write(unit_path, UNIT_FILE, UNIT_PERMS)


def uninstall(
    *,
    bin_path: Path = BIN_PATH,
    unit_path: Path = UNIT_PATH,
    kubeconfig_path: Path = KUBECONFIG_PATH,
    config_root: Path = KUBELET_CONFIG_ROOT,
) -> None:
    """Remove the binary, unit, kubeconfig and kubelet config directory."""
    for path in (bin_path, unit_path, kubeconfig_path):
        path.unlink(missing_ok=True)
    if config_root.exists():
        shutil.rmtree(config_root)


def upgrade(source: Source, *, bin_path: Path = BIN_PATH) -> bool:
    return artifact.upgrade_from_source(artifact.KUBELET, bin_path, source.get_kubelet, BIN_PERMS)


def kubelet_version(bin_path: Path = BIN_PATH) -> str:
    """Return the installed kubelet version (``1.31.2``)."""
    argv = [str(bin_path), "--version"]
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)  # noqa: S603
    except FileNotFoundError as exc:
        raise KubeletError(f"kubelet not found at {bin_path}") from exc
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise KubeletError(f"{' '.join(argv)} failed (exit {result.returncode}): {message}")
    match = _VERSION_PATTERN.search(result.stdout or "")
    if match is None:
        raise KubeletError(f"unable to parse kubelet version from {result.stdout!r}")
    return match.group(1)


# ----------------------------------------------------------------------
# Configuration rendering
# ----------------------------------------------------------------------
def cluster_dns(service_cidr: str) -> str:
    """Return the conventional cluster DNS address (``.10``) of *service_cidr*."""
    network = ipaddress.ip_network(service_cidr, strict=False)
    return str(network.network_address + 10)


def kubelet_config(cfg: NodeConfig, *, ca_path: Path = CA_CERT_PATH) -> dict[str, object]:
    """Return the KubeletConfiguration document, with user overrides applied."""
    config: dict[str, object] = {
        "kind": "KubeletConfiguration",
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "address": "0.0.0.0",
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"cacheTTL": "2m0s", "enabled": True},
            "x509": {"clientCAFile": str(ca_path)},
        },
        "authorization": {
            "mode": "Webhook",
            "webhook": {"cacheAuthorizedTTL": "5m0s", "cacheUnauthorizedTTL": "30s"},
        },
        "cgroupDriver": "systemd",
        "clusterDomain": "cluster.local",
        "containerRuntimeEndpoint": "unix:///run/containerd/containerd.sock",
        "featureGates": {"RotateKubeletServerCertificate": True},
        "hairpinMode": "hairpin-veth",
        "protectKernelDefaults": True,
        "readOnlyPort": 0,
        "serializeImagePulls": False,
        "serverTLSBootstrap": True,
        "tlsCipherSuites": [
            "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
            "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
            "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
            "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
        ],
    }
    if cfg.cluster.cidr:
        config["clusterDNS"] = [cluster_dns(cfg.cluster.cidr)]
    config.update(cfg.kubelet.config)
    return config


def credential_env(cfg: NodeConfig) -> dict[str, str]:
    """AWS environment used by aws-iam-authenticator and the ECR provider."""
    iam_ra = cfg.hybrid.iam_roles_anywhere
    if iam_ra is not None:
        return {"AWS_CONFIG_FILE": iam_ra.aws_config_path, "AWS_PROFILE": IAM_RA_PROFILE}
    return {"AWS_SHARED_CREDENTIALS_FILE": SSM_CREDENTIALS_PATH, "AWS_PROFILE": SSM_PROFILE}


def kubeconfig(
    cfg: NodeConfig,
    *,
    ca_path: Path = CA_CERT_PATH,
    authenticator: Path = iam_authenticator.BIN_PATH,
) -> dict[str, object]:
    """Return a kubeconfig authenticating through aws-iam-authenticator."""
    env = [{"name": key, "value": value} for key, value in credential_env(cfg).items()]
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": "kubernetes",
                "cluster": {
                    "certificate-authority": str(ca_path),
                    "server": cfg.cluster.api_server_endpoint,
                },
            }
        ],
        "contexts": [{"name": "kubelet", "context": {"cluster": "kubernetes", "user": "kubelet"}}],
        "current-context": "kubelet",
        "users": [
            {
                "name": "kubelet",
                "user": {
                    "exec": {
                        "apiVersion": "client.authentication.k8s.io/v1beta1",
                        "command": str(authenticator),
                        "args": ["token", "-i", cfg.cluster.name, "--region", cfg.cluster.region],
                        "env": env,
                    }
                },
            }
        ],
    }


def image_credential_provider_config(cfg: NodeConfig) -> dict[str, object]:
    env = [{"name": key, "value": value} for key, value in credential_env(cfg).items()]
    return {
        "apiVersion": "kubelet.config.k8s.io/v1",
        "kind": "CredentialProviderConfig",
        "providers": [
            {
                "name": image_credential_provider.BIN_PATH.name,
                "matchImages": [
                    "*.dkr.ecr.*.amazonaws.com",
                    "*.dkr.ecr.*.amazonaws.com.cn",
                    "*.dkr.ecr-fips.*.amazonaws.com",
                ],
                "defaultCacheDuration": "12h",
                "apiVersion": "credentialprovider.kubelet.k8s.io/v1",
                "env": env,
            }
        ],
    }


def kubelet_args(
    cfg: NodeConfig,
    *,
    config_path: Path = KUBELET_CONFIG_PATH,
    kubeconfig_path: Path = KUBECONFIG_PATH,
    icp_config_path: Path = ICP_CONFIG_PATH,
) -> list[str]:
    """Return kubelet command-line flags; user flags come last and win."""
    args = [
        f"--config={config_path}",
        f"--kubeconfig={kubeconfig_path}",
        f"--image-credential-provider-bin-dir={icp_config_path.parent}",
        f"--image-credential-provider-config={icp_config_path}",
    ]
    if cfg.status.node_name:
        args.append(f"--hostname-override={cfg.status.node_name}")
    args.extend(cfg.kubelet.flags)
    return args


def _write(path: Path, content: str | bytes, perms: int) -> None:
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    path.chmod(perms)


@dataclass
class KubeletPaths:
    """Every file the kubelet daemon writes."""

    config: Path = KUBELET_CONFIG_PATH
    kubeconfig: Path = KUBECONFIG_PATH
    ca_cert: Path = CA_CERT_PATH
    icp_config: Path = ICP_CONFIG_PATH
    environment: Path = ENVIRONMENT_PATH


@dataclass
class KubeletDaemon:
    """kubelet service: writes configuration and (re)starts the unit."""

    manager: DaemonManager
    paths: KubeletPaths = field(default_factory=KubeletPaths)

    @property
    def name(self) -> str:
        return DAEMON_NAME

    def configure(self, cfg: NodeConfig) -> None:
        paths = self.paths
        LOGGER.info("Writing kubelet configuration...")
        _write(paths.config, json.dumps(kubelet_config(cfg, ca_path=paths.ca_cert), indent=2), 0o644)
        _write(paths.kubeconfig, yaml.safe_dump(kubeconfig(cfg, ca_path=paths.ca_cert), sort_keys=False), 0o644)
        _write(paths.icp_config, json.dumps(image_credential_provider_config(cfg), indent=2), 0o644)
        if not cfg.cluster.certificate_authority:
            raise KubeletError("cluster certificate authority is empty")
        _write(paths.ca_cert, cfg.cluster.certificate_authority, 0o644)
        args = kubelet_args(
            cfg,
            config_path=paths.config,
            kubeconfig_path=paths.kubeconfig,
            icp_config_path=paths.icp_config,
        )
        _write(paths.environment, f"{KUBELET_ARGS_ENV}={shlex.quote(' '.join(args))}\n", 0o644)

    def ensure_running(self) -> None:
        self.manager.daemon_reload()
        self.manager.enable_daemon(DAEMON_NAME)
        self.manager.restart_daemon(DAEMON_NAME)

    def post_launch(self, cfg: NodeConfig) -> None:
        return None

    def stop(self) -> None:
        self.manager.stop_daemon(DAEMON_NAME)


__all__ = [
    "BIN_PATH",
    "CA_CERT_PATH",
    "ENVIRONMENT_PATH",
    "KUBECONFIG_PATH",
    "KUBELET_CONFIG_PATH",
    "KubeletDaemon",
    "KubeletError",
    "KubeletPaths",
    "Source",
    "UNIT_PATH",
    "cluster_dns",
    "credential_env",
    "install",
    "kubeconfig",
    "kubelet_args",
    "kubelet_config",
    "kubelet_version",
    "uninstall",
    "upgrade",
]
