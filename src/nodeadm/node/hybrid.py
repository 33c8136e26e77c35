"""Hybrid node provider: the ordered bootstrap stages behind ``init``.

The provider owns the node configuration for one invocation and exposes the
stages the init flow sequences:

``validate_config`` -> ``pre_process`` -> ``enrich`` -> ``validate`` ->
``configure`` -> ``validate_configured`` -> ``run``

Validations are named phases run through a
:class:`~nodeadm.validation.runner.ValidationRunner`, so any of them can be
skipped by name.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from botocore.config import Config as BotoConfig

from ..components import Daemon, containerd, iamrolesanywhere, kubelet, ssm
from ..nodeconfig import NodeConfig, validate_node_config
from ..providers import kube
from ..providers.eks import Cluster, ClusterReader
from ..providers.systemd import DaemonManager, DaemonStatus
from ..system.network import HostNetwork, Network
from ..system.ntp import validate_ntp_sync
from ..system.osinfo import OsInfo
from ..validation.remediation import with_remediation
from ..validation.runner import Informer, LoggingInformer, Validation, ValidationRunner, normalize_phase
from . import checks
from .certs import KUBELET_CERT_PATH, CertPolicy, validate_kubelet_cert
from .enricher import enrich
from .ip import get_node_ip, validate_ip_in_remote_networks

LOGGER = logging.getLogger(__name__)

# Stage names.
PREPROCESS = "preprocess"
CONFIG = "config"
RUN = "run"

NODE_IP_VALIDATION = "node-ip-validation"
KUBELET_CERT_VALIDATION = "kubelet-cert-validation"
KUBELET_VERSION_SKEW_VALIDATION = "kubelet-version-skew-validation"
NTP_SYNC_VALIDATION = "ntp-sync-validation"
NETWORK_INTERFACE_VALIDATION = "network-interface-validation"
CREDENTIALS_VALIDATION = "credentials-validation"
SSM_API_NETWORK_VALIDATION = "ssm-api-network-validation"
IAM_RA_API_NETWORK_VALIDATION = "iam-ra-api-network-validation"
AWS_AUTH_VALIDATION = "aws-auth-validation"
K8S_ENDPOINT_NETWORK_VALIDATION = "k8s-endpoint-network-validation"
K8S_AUTHENTICATION_VALIDATION = "k8s-authentication-validation"
API_SERVER_RESOLUTION_VALIDATION = "api-server-endpoint-resolution-validation"
PROXY_VALIDATION = "proxy-validation"
NODE_INACTIVE_VALIDATION = "node-inactive-validation"

INSTALL_VALIDATION = "install-validation"
CNI_VALIDATION = "cni-validation"

INIT_PHASES = (
    INSTALL_VALIDATION,
    CNI_VALIDATION,
    NODE_IP_VALIDATION,
    CREDENTIALS_VALIDATION,
    KUBELET_CERT_VALIDATION,
    SSM_API_NETWORK_VALIDATION,
    IAM_RA_API_NETWORK_VALIDATION,
    AWS_AUTH_VALIDATION,
    K8S_ENDPOINT_NETWORK_VALIDATION,
    K8S_AUTHENTICATION_VALIDATION,
    KUBELET_VERSION_SKEW_VALIDATION,
    API_SERVER_RESOLUTION_VALIDATION,
    PROXY_VALIDATION,
    NODE_INACTIVE_VALIDATION,
    NTP_SYNC_VALIDATION,
    NETWORK_INTERFACE_VALIDATION,
    PREPROCESS,
    CONFIG,
    RUN,
)

EKS_CLIENT_MAX_ATTEMPTS = 5


@dataclass
class NodeDaemons:
    """The services a hybrid node runs, in start order."""

    credentials: Daemon
    containerd: Daemon
    kubelet: Daemon

    def node_daemons(self, only: Iterable[str] = ()) -> list[Daemon]:
        """containerd and kubelet, optionally filtered by daemon name."""
        selected = set(only)
        daemons = [self.containerd, self.kubelet]
        if not selected:
            return daemons
        return [daemon for daemon in daemons if daemon.name in selected]


def build_daemons(cfg: NodeConfig, manager: DaemonManager, os_info: OsInfo) -> NodeDaemons:
    """Return the daemon set matching the configured credential provider."""
    credentials: Daemon
    if cfg.is_iam_roles_anywhere():
        credentials = iamrolesanywhere.SigningHelperDaemon(manager)
    else:
        credentials = ssm.SsmDaemon(manager, daemon_name=ssm.daemon_name_for(os_info))
    return NodeDaemons(
        credentials=credentials,
        containerd=containerd.ContainerdDaemon(manager),
        kubelet=kubelet.KubeletDaemon(manager),
    )


@dataclass
class NodeProviderOptions:
    """Collaborators and tunables of :class:`HybridNodeProvider`."""

    skip: Sequence[str] = ()
    daemon_filter: Sequence[str] = ()
    cert_path: Path = KUBELET_CERT_PATH
    cert_policy: CertPolicy = CertPolicy.BOOTSTRAP
    network: Network = field(default_factory=HostNetwork)
    cluster_reader: ClusterReader | None = None
    informer: Informer | None = None
    kubelet_version: Callable[[], str] = kubelet.kubelet_version
    kube_api: Callable[[], Any] = kube.core_v1
    session_factory: Callable[[NodeConfig], Any] = checks.aws_session
    ntp_check: Callable[[], None] = validate_ntp_sync
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    credentials_timeout: float = 60.0


class HybridNodeProvider:
    """Bootstraps a hybrid node from a validated :class:`NodeConfig`."""

    def __init__(
        self,
        cfg: NodeConfig,
        daemons: NodeDaemons,
        manager: DaemonManager,
        options: NodeProviderOptions | None = None,
    ) -> None:
        self.cfg = cfg
        self.daemons = daemons
        self.manager = manager
        self.options = options or NodeProviderOptions()
        self.runner: ValidationRunner[NodeConfig] = ValidationRunner(
            self.options.informer or LoggingInformer(LOGGER), self.options.skip
        )
        self._reader = self.options.cluster_reader

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def cluster_reader(self) -> ClusterReader:
        if self._reader is None:
            cfg = self.cfg
            session_factory = self.options.session_factory

            def _client(region: str) -> Any:
                return session_factory(cfg).client(
                    "eks",
                    region_name=region,
                    config=BotoConfig(retries={"mode": "standard", "max_attempts": EKS_CLIENT_MAX_ATTEMPTS}),
                )

            self._reader = ClusterReader(self.cfg.cluster.region, client_factory=_client)
        return self._reader

    def cluster(self) -> Cluster:
        """The cluster description, fetched at most once."""
        return self.cluster_reader.read(self.cfg.cluster.name)

    def is_skipped(self, phase: str) -> bool:
        return self.runner.is_skipped(phase)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def validate_config(self) -> None:
        LOGGER.info("Validating configuration...")
        self.cfg.populate_defaults()
        validate_node_config(self.cfg)

    def pre_process(self) -> None:
        """Configure and start the credential provider."""
        daemon = self.daemons.credentials
        LOGGER.info("Configuring AWS credentials with %s...", daemon.name)
        daemon.configure(self.cfg)
        daemon.ensure_running()
        daemon.post_launch(self.cfg)
        if self.cfg.is_ssm():
            checks.wait_for_credentials(timeout=self.options.credentials_timeout)

    def enrich(self) -> None:
        enrich(self.cfg, self.cluster_reader)

    def validate(self) -> None:
        """Run the pre-configuration validation phases."""
        self.runner.run(self.cfg, self.pre_config_validations())

    def configure(self) -> None:
        for daemon in self.daemons.node_daemons(self.options.daemon_filter):
            LOGGER.info("Configuring daemon %s...", daemon.name)
            daemon.configure(self.cfg)

    def validate_configured(self) -> None:
        """Run validations that need the kubelet kubeconfig on disk."""
        self.runner.run(self.cfg, self.post_config_validations())

    def run(self) -> None:
        for daemon in self.daemons.node_daemons(self.options.daemon_filter):
            LOGGER.info("Ensuring daemon %s is running...", daemon.name)
            daemon.ensure_running()
            daemon.post_launch(self.cfg)

    def cleanup(self) -> None:
        self._reader = self.options.cluster_reader

    # ------------------------------------------------------------------
    # Validations
    # ------------------------------------------------------------------
    def pre_config_validations(self) -> list[Validation[NodeConfig]]:
        connect_env = self.options.env
        return [
            Validation(PROXY_VALIDATION, "Validating proxy configuration", lambda _: checks.validate_proxy(connect_env)),
            Validation(CREDENTIALS_VALIDATION, "Validating AWS credentials", self._validate_credentials),
            Validation(SSM_API_NETWORK_VALIDATION, "Validating access to the SSM API", checks.validate_ssm_api_network),
            Validation(
                IAM_RA_API_NETWORK_VALIDATION,
                "Validating access to the IAM Roles Anywhere API",
                checks.validate_iam_ra_api_network,
            ),
            Validation(AWS_AUTH_VALIDATION, "Validating access to the EKS DescribeCluster API", self._validate_aws_auth),
            Validation(
                API_SERVER_RESOLUTION_VALIDATION,
                "Validating the Kubernetes API server endpoint resolves",
                lambda cfg: checks.validate_endpoint_resolution(cfg.cluster.api_server_endpoint),
            ),
            Validation(
                K8S_ENDPOINT_NETWORK_VALIDATION,
                "Validating access to the Kubernetes API endpoint",
                checks.validate_k8s_endpoint_network,
            ),
            Validation(NODE_IP_VALIDATION, "Validating the node IP is in a remote node network", self.validate_node_ip),
            Validation(
                NETWORK_INTERFACE_VALIDATION,
                "Validating hybrid node network interface",
                lambda cfg: checks.validate_network_interface(cfg, self.cluster(), self.options.network),
            ),
            Validation(KUBELET_CERT_VALIDATION, "Validating kubelet certificate", self.check_kubelet_cert),
            Validation(
                KUBELET_VERSION_SKEW_VALIDATION,
                "Validating kubelet version skew",
                self._validate_version_skew,
            ),
            Validation(NTP_SYNC_VALIDATION, "Validating NTP synchronization", lambda _: self.options.ntp_check()),
        ]

    def post_config_validations(self) -> list[Validation[NodeConfig]]:
        return [
            Validation(
                K8S_AUTHENTICATION_VALIDATION,
                "Validating authentication against the Kubernetes API",
                lambda _: checks.validate_k8s_authentication(self.options.kube_api()),
            ),
            Validation(NODE_INACTIVE_VALIDATION, "Validating the node is not already active", self._validate_inactive),
        ]

    def validate_node_ip(self, cfg: NodeConfig) -> None:
        """Resolve the node IP and require it in a remote node network."""
        iam_node_name = cfg.status.node_name if cfg.is_iam_roles_anywhere() else ""
        node_ip = get_node_ip(cfg.kubelet.flags, iam_node_name, self.options.network)
        validate_ip_in_remote_networks(node_ip, self.cluster().remote_node_networks)

    def _validate_credentials(self, cfg: NodeConfig) -> None:
        checks.validate_aws_credentials(cfg, session_factory=self.options.session_factory)

    def _validate_aws_auth(self, cfg: NodeConfig) -> None:
        self.cluster()

    def check_kubelet_cert(self, cfg: NodeConfig) -> None:
        validate_kubelet_cert(self.options.cert_path, cfg.cluster.certificate_authority, policy=self.options.cert_policy)

    def _validate_version_skew(self, cfg: NodeConfig) -> None:
        try:
            version = self.options.kubelet_version()
        except RuntimeError as exc:
            raise with_remediation(exc, checks.VERSION_SKEW_REMEDIATION) from exc
        checks.validate_kubelet_version_skew(version, self.cluster().kubernetes_version)

    def _validate_inactive(self, cfg: NodeConfig) -> None:
        # A re-run of init on this host sees its own node as active.
        if self.manager.get_daemon_status(kubelet.DAEMON_NAME) is DaemonStatus.RUNNING:
            return
        checks.validate_node_inactive(self.options.kube_api(), cfg.status.node_name or _hostname())


def _hostname() -> str:
    return os.uname().nodename.lower()


def skip_list(values: Iterable[str]) -> list[str]:
    """Split comma separated ``--skip`` values into normalized phase names."""
    phases: list[str] = []
    for value in values:
        for item in value.split(","):
            if item.strip():
                phases.append(item.strip())
    return phases


def is_phase_skipped(skip: Iterable[str], phase: str) -> bool:
    target = normalize_phase(phase)
    return any(normalize_phase(item) == target for item in skip)


__all__ = [
    "CONFIG",
    "HybridNodeProvider",
    "INIT_PHASES",
    "NodeDaemons",
    "NodeProviderOptions",
    "PREPROCESS",
    "RUN",
    "build_daemons",
    "is_phase_skipped",
    "skip_list",
]
