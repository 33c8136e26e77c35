"""Typer command line for ``nodeadm``.

Each command is a thin shell around a lifecycle flow: it resolves the tool
configuration, records the invocation in the operations log and, for the
commands that change the host, holds the single-instance lock while the flow
runs. Any failure ends the command with exit code 1.
"""
from __future__ import annotations

import functools
import json
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .components import containerd, ssm
from .config import AppConfig, format_duration, load_config
from .creds import (
    CredentialProvider,
    CredentialProviderError,
    from_installed_artifacts,
    from_node_config,
    get_credential_provider,
    validate_credential_provider,
)
from .errors import check_root, is_silent
from .exit_codes import ExitCode
from .flows import ForceCleanup, InitCommand, Installer, Uninstaller, Upgrader
from .locking import LockManager
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .manifest import HttpFetcher, ManifestSource, SsmInstallerSource
from .node.certs import CertPolicy
from .node.hybrid import (
    INIT_PHASES,
    HybridNodeProvider,
    NodeProviderOptions,
    build_daemons,
    is_phase_skipped,
    skip_list,
)
from .nodeconfig import NodeConfig, load_node_config, validate_node_config
from .nodevalidator import execute_active_node_validator
from .pods import POD_VALIDATION, validate_running_pods_for_uninstall
from .providers.packagemanager import DistroPackageManager
from .providers.systemd import SystemdDaemonManager
from .state.tracker import containerd_source, get_current_state, get_installed_artifacts
from .system.firewall import firewall_manager_for
from .system.osinfo import OsInfo, detect_os, host_arch
from .validation.remediation import flatten_remediation, remediation
from .validation.runner import ValidationResult

console = Console()

DEFAULT_SSM_REGION = "us-west-2"
CONFIG_SOURCE_HELP = (
    "Source of node configuration. The format is a URI with supported schemes: [file]. "
    "For example on hybrid nodes --config-source file://nodeConfig.yaml"
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nodeadm's YAML config file.",
)

CONFIG_SOURCE_OPTION = typer.Option(
    "",
    "--config-source",
    "-c",
    help=CONFIG_SOURCE_HELP,
)

SKIP_OPTION = typer.Option(
    [],
    "--skip",
    "-s",
    help="Phases to skip (repeatable or comma separated).",
)

KUBERNETES_VERSION_ARGUMENT = typer.Argument(
    ...,
    help="Kubernetes minor (1.31) or patch (1.31.2) version.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Bootstrap, upgrade and remove EKS hybrid nodes.

        Run `nodeadm install` once to put the node components on the host,
        then `nodeadm init` to join the cluster.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect nodeadm and node configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    daemon_manager: SystemdDaemonManager


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        daemon_manager=SystemdDaemonManager(systemctl_bin=config.systemd.systemctl_bin),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nodeadm version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose=verbose)
    if version:
        console.print(f"nodeadm {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except RuntimeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    if is_silent(exc):
        op.error(str(exc), rc=ExitCode.FAILURE)
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    _command_error(op, f"Command failed: {flatten_remediation(exc)}", errors=[str(exc)])


@contextmanager
def _operation(
    runtime: RuntimeContext,
    name: str,
    *,
    args: Mapping[str, object],
    target: Mapping[str, object] | None = None,
    lock: bool = True,
) -> Iterator[OperationScope]:
    """Log the operation, hold the host lock and turn errors into exit codes."""
    with runtime.logger.operation(name, args=args, target=target) as op:
        try:
            if lock:
                with runtime.locks.host_lock() as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    yield op
            else:
                yield op
        except typer.Exit:
            raise
        except Exception as exc:  # noqa: BLE001 - every failure maps to exit code 1
            _fail(op, exc)


def _require_config_source(op: OperationScope, config_source: str) -> None:
    if not config_source:
        _command_error(op, f"--config-source is a required flag. {CONFIG_SOURCE_HELP}", rc=ExitCode.USAGE)


def _fetcher(config: AppConfig) -> HttpFetcher:
    return HttpFetcher(timeout=config.download.timeout)


def _build_provider(
    runtime: RuntimeContext,
    cfg: NodeConfig,
    os_info: OsInfo,
    *,
    skip: Sequence[str],
    daemons: Sequence[str] = (),
    cert_policy: CertPolicy = CertPolicy.BOOTSTRAP,
) -> HybridNodeProvider:
    manager = runtime.daemon_manager
    options = NodeProviderOptions(skip=skip, daemon_filter=daemons, cert_policy=cert_policy)
    return HybridNodeProvider(cfg, build_daemons(cfg, manager, os_info), manager, options)


def _ssm_region(cfg: NodeConfig | None = None) -> str:
    registration = ssm.SsmRegistration()
    if registration.exists():
        region = registration.region()
        if region:
            return region
    if cfg is not None and cfg.cluster.region:
        return cfg.cluster.region
    return DEFAULT_SSM_REGION


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    kubernetes_version: str = KUBERNETES_VERSION_ARGUMENT,
    credential_provider: str = typer.Option(
        "",
        "--credential-provider",
        "-p",
        help="Credential process to install. Allowed values: [ssm, iam-ra].",
    ),
    containerd_source_name: str = typer.Option(
        "distro",
        "--containerd-source",
        "-s",
        help="Source for containerd artifact. Allowed values: [none, distro, docker].",
    ),
    region: str = typer.Option(
        DEFAULT_SSM_REGION,
        "--region",
        "-r",
        help="AWS region to download the SSM agent installer from.",
    ),
) -> None:
    """Install the components required to join an EKS cluster."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    args = {
        "kubernetes_version": kubernetes_version,
        "credential_provider": credential_provider,
        "containerd_source": containerd_source_name,
        "region": region,
    }
    with _operation(runtime, "install", args=args, target={"kind": "node"}) as op:
        check_root()
        provider = get_credential_provider(credential_provider)
        source_name = containerd_source(containerd_source_name)
        os_info = detect_os()
        validate_credential_provider(provider, os_info)
        containerd.validate_containerd_source(source_name, os_info)

        arch = host_arch()
        fetcher = _fetcher(config)
        artifact_source = ManifestSource.load(config.manifest_url, kubernetes_version, arch, fetcher=fetcher)
        op.add_step("manifest.load", status="success", detail=artifact_source.release().version)

        installer = Installer(
            tracker=get_current_state(config.tracker_file),
            source=artifact_source,
            package_manager=DistroPackageManager.detect(source_name, os_info),
            credential_provider=provider,
            containerd_source=source_name,
            os_info=os_info,
            ssm_source=SsmInstallerSource(region, arch, fetcher=fetcher)
            if provider is CredentialProvider.SSM
            else None,
            ssm_region=region,
            attempts=config.download.attempts,
            retry_delay=config.package_manager.retry_delay,
            retry_timeout=config.package_manager.retry_timeout,
        )
        installer.run()
        console.print(f"[green]Installed nodeadm components for Kubernetes {kubernetes_version}.[/green]")
        op.success("Install completed.", context={"tracker": config.tracker_file})


@app.command()
def init(
    ctx: typer.Context,
    config_source: str = CONFIG_SOURCE_OPTION,
    skip: list[str] = typer.Option(
        [],
        "--skip",
        "-s",
        help=f"Phases of the bootstrap to skip. Allowed values: [{', '.join(INIT_PHASES)}].",
    ),
    daemon: list[str] = typer.Option(
        [],
        "--daemon",
        "-d",
        help="Only manage these daemons (containerd, kubelet). Intended for testing.",
    ),
    validation_timeout: str | None = typer.Option(
        None,
        "--validation-timeout",
        help="Post-init node validation timeout (30s, 10m, 1h). Use 0s to disable.",
    ),
) -> None:
    """Initialize this instance as a node in an EKS cluster."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    phases = skip_list(skip)
    timeout = validation_timeout or format_duration(config.validation.timeout)
    args = {"config_source": config_source, "skip": phases, "daemon": daemon, "validation_timeout": timeout}
    with _operation(runtime, "init", args=args, target={"kind": "node"}) as op:
        check_root()
        _require_config_source(op, config_source)
        cfg = load_node_config(config_source)
        os_info = detect_os()
        command = InitCommand(
            provider_factory=lambda: _build_provider(runtime, cfg, os_info, skip=phases, daemons=daemon),
            manager=runtime.daemon_manager,
            firewall=firewall_manager_for(os_info),
            skip=phases,
            validation_timeout=timeout,
            tracker_path=config.tracker_file,
            node_validator=functools.partial(
                execute_active_node_validator,
                api_wait_timeout=config.validation.api_wait_timeout,
                poll_interval=config.validation.poll_interval,
            ),
        )
        if not command.run():
            op.warning("Nodeadm components are not installed.")
            return
        op.success("Node initialized.")


@app.command()
def upgrade(
    ctx: typer.Context,
    kubernetes_version: str = KUBERNETES_VERSION_ARGUMENT,
    config_source: str = CONFIG_SOURCE_OPTION,
    skip: list[str] = SKIP_OPTION,
) -> None:
    """Upgrade the node components to a new Kubernetes version."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    phases = skip_list(skip)
    args = {"kubernetes_version": kubernetes_version, "config_source": config_source, "skip": phases}
    with _operation(runtime, "upgrade", args=args, target={"kind": "node"}) as op:
        check_root()
        _require_config_source(op, config_source)
        cfg = load_node_config(config_source)
        tracker = get_installed_artifacts(config.tracker_file)
        provider = from_installed_artifacts(tracker.artifacts)
        configured = from_node_config(cfg)
        if configured is not provider:
            raise CredentialProviderError(
                f"nodeConfig uses the {configured.value} credential provider but {provider.value} is installed"
            )
        os_info = detect_os()
        arch = host_arch()
        fetcher = _fetcher(config)
        artifact_source = ManifestSource.load(config.manifest_url, kubernetes_version, arch, fetcher=fetcher)
        region = _ssm_region(cfg)

        upgrader = Upgrader(
            provider=_build_provider(runtime, cfg, os_info, skip=phases, cert_policy=CertPolicy.STRICT),
            source=artifact_source,
            package_manager=DistroPackageManager.detect(tracker.artifacts.containerd, os_info),
            credential_provider=provider,
            artifacts=tracker.artifacts,
            ssm_source=SsmInstallerSource(region, arch, fetcher=fetcher)
            if provider is CredentialProvider.SSM
            else None,
            ssm_region=region,
            retry_delay=config.package_manager.retry_delay,
            retry_timeout=config.package_manager.retry_timeout,
        )
        upgrader.run()
        console.print(f"[green]Upgraded node to Kubernetes {kubernetes_version}.[/green]")
        op.success("Upgrade completed.")


@app.command()
def uninstall(
    ctx: typer.Context,
    skip: list[str] = typer.Option(
        [],
        "--skip",
        "-s",
        help=f"Phases to skip. Allowed values: [{POD_VALIDATION}].",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Also remove leftover kubelet and CNI state directories.",
    ),
) -> None:
    """Remove every component nodeadm installed."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    phases = skip_list(skip)
    with _operation(runtime, "uninstall", args={"skip": phases, "force": force}, target={"kind": "node"}) as op:
        check_root()
        if not is_phase_skipped(phases, POD_VALIDATION):
            console.print("Validating if pods have been drained...")
            validate_running_pods_for_uninstall()
            op.add_step(POD_VALIDATION, status="success")

        try:
            tracker = get_installed_artifacts(config.tracker_file)
        except FileNotFoundError:
            console.print("No nodeadm components installed.")
            op.add_step("tracker.load", status="skipped", detail="not installed")
        else:
            os_info = detect_os()
            uninstaller = Uninstaller(
                artifacts=tracker.artifacts,
                manager=runtime.daemon_manager,
                package_manager=DistroPackageManager.detect(tracker.artifacts.containerd, os_info),
                ssm_daemon_name=ssm.daemon_name_for(os_info),
                tracker_path=config.tracker_file,
                eks_config_dir=config.eks_config_dir,
            )
            uninstaller.run()
            op.add_step("uninstall", status="success")

        if force:
            ForceCleanup().run()
            op.add_step("cleanup.force", status="success")
        console.print("[green]Uninstall completed.[/green]")
        op.success("Uninstall completed.")


@app.command()
def debug(
    ctx: typer.Context,
    config_source: str = CONFIG_SOURCE_OPTION,
    skip: list[str] = SKIP_OPTION,
) -> None:
    """Run the node validations and report every result."""
    runtime = _get_runtime(ctx)
    phases = skip_list(skip)
    with _operation(
        runtime, "debug", args={"config_source": config_source, "skip": phases}, lock=False
    ) as op:
        _require_config_source(op, config_source)
        cfg = load_node_config(config_source)
        provider = _build_provider(runtime, cfg, detect_os(), skip=phases)
        provider.validate_config()
        provider.enrich()
        results = provider.runner.collect(
            cfg, provider.pre_config_validations() + provider.post_config_validations()
        )
        _render_validation_results(results)
        failed = [result.name for result in results if not result.skipped and not result.ok]
        if failed:
            _command_error(op, f"{len(failed)} validation(s) failed.", errors=failed)
        op.success("All validations passed.", context={"skipped": [r.name for r in results if r.skipped]})


def _render_validation_results(results: Sequence[ValidationResult]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Validation", style="bold")
    table.add_column("Status")
    table.add_column("Details")
    for result in results:
        if result.skipped:
            table.add_row(result.name, "[yellow]SKIP[/yellow]", "")
            continue
        if result.ok:
            table.add_row(result.name, "[green]PASS[/green]", result.description)
            continue
        detail = str(result.error)
        fix = remediation(result.error)
        if fix:
            detail = f"{detail}\nRemediation: {fix}"
        table.add_row(result.name, "[red]FAIL[/red]", detail)
    console.print(table)


@config_app.command("check")
def config_check(
    ctx: typer.Context,
    config_source: str = CONFIG_SOURCE_OPTION,
) -> None:
    """Parse and validate a NodeConfig."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "config check", args={"config_source": config_source}, lock=False) as op:
        _require_config_source(op, config_source)
        cfg = load_node_config(config_source)
        cfg.populate_defaults()
        validate_node_config(cfg)
        console.print("[green]Configuration is valid.[/green]")
        op.success("Configuration is valid.")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective nodeadm configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with _operation(runtime, "config show", args={"json": json_output}, lock=False) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            rendered = json.dumps(value, indent=2, sort_keys=True) if isinstance(value, dict) else str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
