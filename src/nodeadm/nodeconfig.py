"""The ``NodeConfig`` document supplied through ``--config-source``.

Only ``file://`` sources are supported. The document may be YAML or JSON::

    apiVersion: node.eks.aws/v1alpha1
    kind: NodeConfig
    spec:
      cluster:
        name: my-cluster
        region: us-west-2
      hybrid:
        ssm:
          activationCode: ...
          activationId: ...
      kubelet:
        flags:
          - --node-labels=team=infra
"""
from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read node configuration. Install with `pip install nodeadm`."
    ) from exc

API_VERSION = "node.eks.aws/v1alpha1"
KIND = "NodeConfig"
DEFAULT_AWS_CONFIG_PATH = "/etc/aws/hybrid/config"
HOSTNAME_OVERRIDE_FLAG = "hostname-override"
NODE_IP_FLAG = "node-ip"
MAX_NODE_NAME_LENGTH = 64


class NodeConfigError(RuntimeError):
    """Raised when a node configuration is missing, malformed or invalid."""


@dataclass
class ClusterDetails:
    """Identity of the EKS cluster the node joins."""

    name: str = ""
    region: str = ""
    api_server_endpoint: str = ""
    certificate_authority: bytes = b""
    cidr: str = ""


@dataclass
class SSMOptions:
    """Hybrid activation used to register the node with Systems Manager."""

    activation_code: str = ""
    activation_id: str = ""


@dataclass
class IAMRolesAnywhereOptions:
    """IAM Roles Anywhere settings for certificate-based credentials."""

    node_name: str = ""
    trust_anchor_arn: str = ""
    profile_arn: str = ""
    role_arn: str = ""
    certificate_path: str = ""
    private_key_path: str = ""
    aws_config_path: str = ""


@dataclass
class HybridOptions:
    """Exactly one of ``ssm`` or ``iam_roles_anywhere`` is expected."""

    ssm: SSMOptions | None = None
    iam_roles_anywhere: IAMRolesAnywhereOptions | None = None


@dataclass
class KubeletOptions:
    """Extra kubelet configuration and command-line flags."""

    config: dict[str, object] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)


@dataclass
class ContainerdOptions:
    """Inline containerd configuration merged into the generated config."""

    config: str = ""


@dataclass
class NodeConfigStatus:
    """Values derived at runtime rather than supplied by the operator."""

    node_name: str = ""
    default_ipv4: str = ""


@dataclass
class NodeConfig:
    """In-memory representation of a NodeConfig document."""

    cluster: ClusterDetails = field(default_factory=ClusterDetails)
    hybrid: HybridOptions = field(default_factory=HybridOptions)
    kubelet: KubeletOptions = field(default_factory=KubeletOptions)
    containerd: ContainerdOptions = field(default_factory=ContainerdOptions)
    status: NodeConfigStatus = field(default_factory=NodeConfigStatus)

    def is_ssm(self) -> bool:
        return self.hybrid.ssm is not None

    def is_iam_roles_anywhere(self) -> bool:
        return self.hybrid.iam_roles_anywhere is not None

    def populate_defaults(self) -> None:
        """Fill derived defaults for IAM Roles Anywhere nodes."""
        iam_ra = self.hybrid.iam_roles_anywhere
        if iam_ra is None:
            return
        if not iam_ra.aws_config_path:
            iam_ra.aws_config_path = DEFAULT_AWS_CONFIG_PATH
        self.status.node_name = iam_ra.node_name

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> NodeConfig:
        """Build a config from a parsed document."""
        kind = raw.get("kind")
        if kind not in (None, KIND):
            raise NodeConfigError(f"unsupported kind {kind!r}; expected {KIND}")
        spec = _mapping(raw.get("spec"), "spec")

        cluster_raw = _mapping(spec.get("cluster"), "spec.cluster")
        cluster = ClusterDetails(
            name=_text(cluster_raw.get("name")),
            region=_text(cluster_raw.get("region")),
            api_server_endpoint=_text(cluster_raw.get("apiServerEndpoint")),
            certificate_authority=_decode_ca(cluster_raw.get("certificateAuthority")),
            cidr=_text(cluster_raw.get("cidr")),
        )

        hybrid_raw = _mapping(spec.get("hybrid"), "spec.hybrid")
        ssm_raw = hybrid_raw.get("ssm")
        iam_raw = hybrid_raw.get("iamRolesAnywhere")
        ssm = None
        if ssm_raw is not None:
            ssm_map = _mapping(ssm_raw, "spec.hybrid.ssm")
            ssm = SSMOptions(
                activation_code=_text(ssm_map.get("activationCode")),
                activation_id=_text(ssm_map.get("activationId")),
            )
        iam_ra = None
        if iam_raw is not None:
            iam_map = _mapping(iam_raw, "spec.hybrid.iamRolesAnywhere")
            iam_ra = IAMRolesAnywhereOptions(
                node_name=_text(iam_map.get("nodeName")),
                trust_anchor_arn=_text(iam_map.get("trustAnchorArn")),
                profile_arn=_text(iam_map.get("profileArn")),
                role_arn=_text(iam_map.get("roleArn")),
                certificate_path=_text(iam_map.get("certificatePath")),
                private_key_path=_text(iam_map.get("privateKeyPath")),
                aws_config_path=_text(iam_map.get("awsConfigPath")),
            )

        kubelet_raw = _mapping(spec.get("kubelet"), "spec.kubelet")
        flags_raw = kubelet_raw.get("flags") or []
        if not isinstance(flags_raw, Sequence) or isinstance(flags_raw, (str, bytes)):
            raise NodeConfigError("spec.kubelet.flags must be a list of strings")
        kubelet = KubeletOptions(
            config=dict(_mapping(kubelet_raw.get("config"), "spec.kubelet.config")),
            flags=[str(flag) for flag in flags_raw],
        )

        containerd_raw = _mapping(spec.get("containerd"), "spec.containerd")
        return cls(
            cluster=cluster,
            hybrid=HybridOptions(ssm=ssm, iam_roles_anywhere=iam_ra),
            kubelet=kubelet,
            containerd=ContainerdOptions(config=_text(containerd_raw.get("config"))),
        )


def _mapping(value: object, label: str) -> Mapping[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise NodeConfigError(f"{label} must be a mapping")
    return value


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _decode_ca(value: object) -> bytes:
    if value in (None, ""):
        return b""
    text = str(value).strip()
    if text.startswith("-----BEGIN"):
        return text.encode("utf-8")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise NodeConfigError(f"spec.cluster.certificateAuthority is not valid base64: {exc}") from exc


def load_node_config(source: str) -> NodeConfig:
    """Load a NodeConfig from a ``file://`` URI."""
    if not source:
        raise NodeConfigError("--config-source is a required flag")
    parsed = urlparse(source)
    if parsed.scheme != "file":
        raise NodeConfigError(f"unknown configuration source scheme: {parsed.scheme!r}")
    path = Path(unquote(parsed.netloc + parsed.path))
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise NodeConfigError(f"reading config source {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise NodeConfigError(f"parsing config source {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise NodeConfigError(f"config source {path} must contain a NodeConfig document")
    return NodeConfig.from_dict(data)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
def extract_flag_value(args: Sequence[str], flag: str) -> str:
    """Return the value of the last ``--flag=value`` in *args*."""
    prefix = f"--{flag}="
    value = ""
    for arg in args:
        if arg.startswith(prefix):
            value = arg[len(prefix) :]
    return value


def validate_node_config(
    cfg: NodeConfig,
    *,
    exists: Callable[[str], bool] = lambda path: Path(path).exists(),
) -> None:
    """Raise :class:`NodeConfigError` when *cfg* is unusable for a hybrid node."""
    if not cfg.cluster.name:
        raise NodeConfigError("Name is missing in cluster configuration")
    if not cfg.cluster.region:
        raise NodeConfigError("Region is missing in cluster configuration")
    override = extract_flag_value(cfg.kubelet.flags, HOSTNAME_OVERRIDE_FLAG)
    if override:
        raise NodeConfigError(
            "hostname-override kubelet flag is not supported for hybrid nodes but found "
            f"override: {override}"
        )
    if not cfg.is_iam_roles_anywhere() and not cfg.is_ssm():
        raise NodeConfigError(
            "Either IAMRolesAnywhere or SSM must be provided for hybrid node configuration"
        )
    if cfg.is_iam_roles_anywhere() and cfg.is_ssm():
        raise NodeConfigError(
            "Only one of IAMRolesAnywhere or SSM must be provided for hybrid node configuration"
        )
    if cfg.hybrid.iam_roles_anywhere is not None:
        _validate_roles_anywhere(cfg.hybrid.iam_roles_anywhere, exists)
    if cfg.hybrid.ssm is not None:
        if not cfg.hybrid.ssm.activation_code:
            raise NodeConfigError("ActivationCode is missing in hybrid ssm configuration")
        if not cfg.hybrid.ssm.activation_id:
            raise NodeConfigError("ActivationID is missing in hybrid ssm configuration")


def _validate_roles_anywhere(
    options: IAMRolesAnywhereOptions,
    exists: Callable[[str], bool],
) -> None:
    suffix = "in hybrid iam roles anywhere configuration"
    if not options.role_arn:
        raise NodeConfigError(f"RoleARN is missing {suffix}")
    if not options.profile_arn:
        raise NodeConfigError(f"ProfileARN is missing {suffix}")
    if not options.trust_anchor_arn:
        raise NodeConfigError(f"TrustAnchorARN is missing {suffix}")
    if not options.node_name:
        raise NodeConfigError(f"NodeName can't be empty {suffix}")
    if len(options.node_name) > MAX_NODE_NAME_LENGTH:
        raise NodeConfigError(f"NodeName can't be longer than 64 characters {suffix}")
    if not options.certificate_path:
        raise NodeConfigError(f"CertificatePath is missing {suffix}")
    if not options.private_key_path:
        raise NodeConfigError(f"PrivateKeyPath is missing {suffix}")
    if not exists(options.certificate_path):
        raise NodeConfigError(f"IAM Roles Anywhere certificate {options.certificate_path} not found")
    if not exists(options.private_key_path):
        raise NodeConfigError(f"IAM Roles Anywhere private key {options.private_key_path} not found")


__all__ = [
    "ClusterDetails",
    "ContainerdOptions",
    "HybridOptions",
    "IAMRolesAnywhereOptions",
    "KubeletOptions",
    "NodeConfig",
    "NodeConfigError",
    "NodeConfigStatus",
    "SSMOptions",
    "extract_flag_value",
    "load_node_config",
    "validate_node_config",
]
