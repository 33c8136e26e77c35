"""Tests for the nodeadm command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from nodeadm import __version__
from nodeadm import cli as cli_module
from nodeadm.cli import app
from nodeadm.errors import MustRunAsRootError
from nodeadm.nodeconfig import NodeConfig
from nodeadm.state.tracker import InstalledArtifacts, Tracker
from nodeadm.system.osinfo import OsInfo
from nodeadm.validation.remediation import new_remediable_error
from nodeadm.validation.runner import Validation, ValidationRunner

runner = CliRunner()

SSM_NODE_CONFIG = """\
apiVersion: node.eks.aws/v1alpha1
kind: NodeConfig
spec:
  cluster:
    name: hybrid
    region: us-west-2
  hybrid:
    ssm:
      activationCode: code
      activationId: id
"""


def _prepare_environment(tmp_path: Path) -> dict[str, str]:
    """Write a nodeadm config that keeps every path under *tmp_path*."""
    config_file = tmp_path / "nodeadm.yml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "tracker_file": str(tmp_path / "opt" / "tracker"),
                "logs_dir": str(tmp_path / "logs"),
                "runtime_dir": str(tmp_path / "run"),
                "eks_config_dir": str(tmp_path / "etc" / "eks"),
                "lock_timeout": 1.0,
            }
        ),
        encoding="utf-8",
    )
    return {"NODEADM_CONFIG_FILE": str(config_file)}


def _node_config(tmp_path: Path, text: str = SSM_NODE_CONFIG) -> str:
    path = tmp_path / "nodeConfig.yaml"
    path.write_text(text, encoding="utf-8")
    return f"file://{path}"


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    log = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "check_root", lambda: None)


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--version"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    result = runner.invoke(app, env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "EKS hybrid nodes" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` reflects the file and the built-in defaults."""
    result = runner.invoke(app, ["config", "show", "--json"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    payload = json.loads(result.stdout[result.stdout.find("{") : result.stdout.rfind("}") + 1])
    assert payload["tracker_file"] == str(tmp_path / "opt" / "tracker")
    assert payload["lock_timeout"] == 1.0
    assert payload["validation"]["timeout"] == "10m0s"


def test_config_show_table(tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "show"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "manifest_url" in result.stdout
    assert _operations(tmp_path)[-1]["operation"] == "config show"


def test_invalid_config_file_is_reported(tmp_path: Path) -> None:
    env = _prepare_environment(tmp_path)
    Path(env["NODEADM_CONFIG_FILE"]).write_text("unknown_key: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 1


def test_config_check_accepts_valid_node_config(tmp_path: Path) -> None:
    source = _node_config(tmp_path)

    result = runner.invoke(app, ["config", "check", "-c", source], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "Configuration is valid." in result.stdout


def test_config_check_reports_missing_activation(tmp_path: Path) -> None:
    source = _node_config(tmp_path, SSM_NODE_CONFIG.replace("      activationId: id\n", ""))

    result = runner.invoke(app, ["config", "check", "-c", source], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    assert "ActivationID is missing" in result.stdout
    assert _operations(tmp_path)[-1]["result"]["status"] == "error"


def test_init_requires_config_source(tmp_path: Path, as_root: None) -> None:
    result = runner.invoke(app, ["init"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 2
    assert "--config-source is a required flag" in result.stdout


def test_mutating_commands_require_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def not_root() -> None:
        raise MustRunAsRootError()

    monkeypatch.setattr(cli_module, "check_root", not_root)

    result = runner.invoke(app, ["install", "1.31", "-p", "ssm"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    assert "must be run as root" in result.stdout


def test_install_rejects_unknown_credential_provider(tmp_path: Path, as_root: None) -> None:
    result = runner.invoke(app, ["install", "1.31", "-p", "kerberos"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    assert "invalid credential process provided" in result.stdout


def test_install_rejects_containerd_source_for_os(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, as_root: None
) -> None:
    ran: list[str] = []
    monkeypatch.setattr(cli_module, "detect_os", lambda: OsInfo("amzn", "2023"))
    monkeypatch.setattr(cli_module.Installer, "run", lambda self: ran.append(self.containerd_source.value))

    result = runner.invoke(
        app,
        ["install", "1.31", "-p", "ssm", "--containerd-source", "docker"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 1
    assert ran == []
    errors = _operations(tmp_path)[-1]["result"]["errors"]
    assert errors[0].startswith("docker source for containerd is not supported on AL2023")


def test_init_before_install_warns(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, as_root: None) -> None:
    monkeypatch.setattr(cli_module, "detect_os", lambda: OsInfo("amzn", "2023"))
    source = _node_config(tmp_path)

    result = runner.invoke(app, ["init", "-c", source, "--skip", "cni-validation"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    record = _operations(tmp_path)[-1]
    assert record["operation"] == "init"
    assert record["result"]["status"] == "warning"
    assert record["args"]["skip"] == ["cni-validation"]


def test_init_rejects_bad_validation_timeout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, as_root: None
) -> None:
    monkeypatch.setattr(cli_module, "detect_os", lambda: OsInfo("amzn", "2023"))
    source = _node_config(tmp_path)

    result = runner.invoke(
        app,
        ["init", "-c", source, "-s", "install-validation,cni-validation", "--validation-timeout", "ten"],
        env=_prepare_environment(tmp_path),
    )

    assert result.exit_code == 1
    assert "invalid validation-timeout duration" in result.stdout


def test_upgrade_rejects_provider_mismatch(tmp_path: Path, as_root: None) -> None:
    Tracker(path=tmp_path / "opt" / "tracker", artifacts=InstalledArtifacts(iam_roles_anywhere=True)).save()
    source = _node_config(tmp_path)

    result = runner.invoke(app, ["upgrade", "1.31", "-c", source], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    errors = _operations(tmp_path)[-1]["result"]["errors"]
    assert errors == ["nodeConfig uses the ssm credential provider but iam-ra is installed"]


def test_uninstall_without_tracker(tmp_path: Path, as_root: None) -> None:
    result = runner.invoke(app, ["uninstall", "--skip", "pod-validation"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "No nodeadm components installed." in result.stdout
    steps = _operations(tmp_path)[-1]["steps"]
    assert steps[0]["name"] == "tracker.load"
    assert steps[0]["status"] == "skipped"


def test_uninstall_blocked_by_pods(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, as_root: None) -> None:
    def blocked() -> None:
        raise RuntimeError("there are pods running on the node. Drain the node first")

    monkeypatch.setattr(cli_module, "validate_running_pods_for_uninstall", blocked)

    result = runner.invoke(app, ["uninstall"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    assert "Drain the node" in result.stdout


def test_uninstall_skip_accepts_short_phase_name(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, as_root: None
) -> None:
    def blocked() -> None:
        raise RuntimeError("there are pods running on the node. Drain the node first")

    monkeypatch.setattr(cli_module, "validate_running_pods_for_uninstall", blocked)

    result = runner.invoke(app, ["uninstall", "--skip", "pod"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "No nodeadm components installed." in result.stdout


class FakeDebugProvider:
    def __init__(self) -> None:
        self.runner: ValidationRunner[NodeConfig] = ValidationRunner(skip=["ntp-sync"])

    def validate_config(self) -> None:
        pass

    def enrich(self) -> None:
        pass

    def pre_config_validations(self) -> list[Validation[NodeConfig]]:
        def unreachable(cfg: NodeConfig) -> None:
            raise new_remediable_error("connecting to ssm.us-west-2.amazonaws.com:443", "Open port 443.")

        return [
            Validation("proxy-validation", "Validating proxy configuration", lambda cfg: None),
            Validation("ssm-api-network-validation", "Validating access to the SSM API", unreachable),
            Validation("ntp-sync-validation", "Validating NTP synchronization", lambda cfg: None),
        ]

    def post_config_validations(self) -> list[Validation[NodeConfig]]:
        return []


def test_debug_reports_every_validation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "detect_os", lambda: OsInfo("ubuntu", "22.04", "jammy"))
    monkeypatch.setattr(cli_module, "_build_provider", lambda *args, **kwargs: FakeDebugProvider())
    source = _node_config(tmp_path)

    result = runner.invoke(app, ["debug", "-c", source], env=_prepare_environment(tmp_path))

    assert result.exit_code == 1
    assert "PASS" in result.stdout
    assert "FAIL" in result.stdout
    assert "SKIP" in result.stdout
    record = _operations(tmp_path)[-1]
    assert record["result"]["errors"] == ["ssm-api-network-validation"]
