"""Typer-powered command line front-end for ``sitedeploy``.

Commands are thin: they build the runtime from configuration, take the site
lock, hand the work to an orchestrator and render the returned outcome. Every
command is recorded through :class:`~sitedeploy.logging.StructuredLogger`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupsRegistry
from .certificates import CertificateError, CertificateProvisioner
from .certstore import DirectoryCertificateStore
from .config import AppConfig, ConfigError, load_config
from .deploy import DeploymentOrchestrator
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .outcome import DeploymentOutcome
from .package import PackageError, find_package
from .providers import StateSiteRegistry, SystemdProvider
from .sites import DEFAULT_HTTPS_PORT, SiteProvisioner
from .state import StateRegistry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitedeploy's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the outcome as JSON.",
)

PFX_PASSWORD_OPTION = typer.Option(
    ...,
    "--pfx-password",
    prompt=True,
    hide_input=True,
    help="Password protecting the exported PFX file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Deploy packaged web applications onto hosted sites.

        Redeploy an existing site from a ZIP package with automatic backup, or
        create a new site with its own execution pool and HTTPS certificate.
        """
    ).strip(),
)
sites_app = typer.Typer(help="Inspect registered sites.")
site_app = typer.Typer(help="Create sites and manage their bindings.")
tls_app = typer.Typer(help="Manage site certificates.")

app.add_typer(sites_app, name="sites")
app.add_typer(site_app, name="site")
app.add_typer(tls_app, name="tls")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    state: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    systemd_provider: SystemdProvider | None
    certificates: CertificateProvisioner

    def open_registry(self) -> StateSiteRegistry:
        """Return a fresh site registry handle."""
        return StateSiteRegistry(self.state, controller=self.systemd_provider)

    def orchestrator(self) -> DeploymentOrchestrator:
        """Build a deployment orchestrator from the loaded config."""
        config = self.config
        backups: BackupsRegistry | Callable[[Path], BackupsRegistry]
        if config.backups.root is not None and config.backups.index is not None:
            backups = BackupsRegistry(config.backups.root, config.backups.index)
        else:
            backups = BackupsRegistry.beside_package
        return DeploymentOrchestrator(
            self.open_registry,
            backups=backups,
            root_marker=config.package.root_marker,
            protected_files=config.package.protected_files,
            settle_seconds=config.deploy.settle_seconds,
        )

    def provisioner(self) -> SiteProvisioner:
        """Build a site provisioner from the loaded config."""
        config = self.config
        return SiteProvisioner(
            self.open_registry,
            self.certificates,
            base_path=config.sites_root,
            certs_path=config.certs_dir,
            pool_runtime=config.pool.runtime,
            root_marker=config.package.root_marker,
            protected_files=config.package.protected_files,
            sample_suffix=config.package.sample_suffix,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    config = load_config(config_file=config_file)
    state = StateRegistry(config.registry_dir)
    state.ensure_root()
    systemd_provider = (
        SystemdProvider(systemctl_bin=config.systemd.systemctl_bin)
        if config.systemd.enabled
        else None
    )
    store = DirectoryCertificateStore(config.tls.store_dir, config.tls.store_name)
    runtime = RuntimeContext(
        config=config,
        state=state,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        systemd_provider=systemd_provider,
        certificates=CertificateProvisioner(
            store,
            local_domain=config.tls.local_domain,
            validity_years=config.tls.validity_years,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitedeploy version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    except OSError as exc:
        console.print(f"[red]Unable to prepare sitedeploy directories: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sitedeploy {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(outcome: DeploymentOutcome) -> ExitCode:
    failure = outcome.failure
    if failure is None or isinstance(failure, (PackageError, ValueError)):
        return ExitCode.VALIDATION
    if isinstance(failure, (OSError, LockTimeoutError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _render_outcome(outcome: DeploymentOutcome, *, json_output: bool = False) -> None:
    if json_output:
        console.print_json(data=outcome.to_dict())
        return
    for line in outcome.log:
        if not outcome.succeeded and line == outcome.summary:
            console.print(f"[red]{escape(line)}[/red]")
        elif line.startswith("Warning:"):
            console.print(f"[yellow]{escape(line)}[/yellow]")
        else:
            console.print(escape(line))
    if outcome.succeeded:
        console.print(f"[green]{escape(outcome.summary)}[/green]")


def _finish(
    op: OperationScope,
    outcome: DeploymentOutcome,
    *,
    changed: int,
    json_output: bool = False,
) -> None:
    """Render *outcome*, record it on *op* and exit non-zero on failure."""
    _render_outcome(outcome, json_output=json_output)
    payload = outcome.to_dict()
    context = {"details": payload["details"], "log": payload["log"]}
    backup = outcome.details.get("backup")
    backups = [backup] if backup is not None else []

    if outcome.succeeded:
        if outcome.warnings:
            op.warning(
                outcome.summary,
                warnings=outcome.warnings,
                changed=changed,
                backups=backups,
                context=context,
            )
        else:
            op.success(outcome.summary, changed=changed, backups=backups, context=context)
        return

    rc = _exit_code_for(outcome)
    errors = [str(payload["failure"])] if payload["failure"] else [outcome.summary]
    op.error(outcome.summary, errors=errors, warnings=outcome.warnings, rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


@sites_app.command("list")
def sites_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit site names as JSON instead of a table.",
    ),
) -> None:
    """List sites registered with the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sites list",
        args={"json": json_output},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        outcome = runtime.provisioner().list_sites()
        if not outcome.succeeded:
            _finish(op, outcome, changed=0)
            return

        if json_output:
            console.print_json(data={"sites": outcome.log})
            op.success("Reported site list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        if not outcome.log:
            table.add_row("(none)")
        for name in outcome.log:
            table.add_row(escape(name))
        console.print(table)
        op.success("Reported site list.", changed=0)


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Name of the site to redeploy."),
    package: Path | None = typer.Option(
        None,
        "--package",
        "-p",
        dir_okay=False,
        help="ZIP package to deploy.",
    ),
    package_dir: Path | None = typer.Option(
        None,
        "--package-dir",
        file_okay=False,
        help="Directory holding exactly one ZIP package to deploy.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop a site, back it up, replace its content and start it again."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "deploy",
        args={"site": site, "package": package, "package_dir": package_dir, "json": json_output},
        target={"kind": "site", "name": site},
    ) as op:
        if package is not None and package_dir is not None:
            _command_error(op, "Specify only one of --package or --package-dir.")
        if package is not None:
            package_path = package
        elif package_dir is not None:
            try:
                package_path = find_package(package_dir)
            except PackageError as exc:
                _command_error(op, str(exc))
        else:
            _command_error(op, "Specify one of --package or --package-dir.")

        try:
            with runtime.locks.mutate_sites([site]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = runtime.orchestrator().deploy(site, package_path)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish(op, outcome, changed=1, json_output=json_output)


@site_app.command("create")
def site_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new site."),
    package: Path = typer.Option(
        ...,
        "--package",
        "-p",
        dir_okay=False,
        help="ZIP package with the initial site content.",
    ),
    port: int = typer.Option(..., "--port", help="HTTPS port for the site binding."),
    pfx_password: str = PFX_PASSWORD_OPTION,
    base_path: Path | None = typer.Option(
        None,
        "--base-path",
        file_okay=False,
        help="Parent folder for the site root (defaults to sites_root).",
    ),
    certs_path: Path | None = typer.Option(
        None,
        "--certs-path",
        file_okay=False,
        help="Folder receiving the exported PFX (defaults to certs_dir).",
    ),
    runtime_label: str | None = typer.Option(
        None,
        "--runtime",
        help="Runtime label for the new execution pool.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a new site, its execution pool and its certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site create",
        args={
            "name": name,
            "package": package,
            "port": port,
            "base_path": base_path,
            "certs_path": certs_path,
            "runtime": runtime_label,
        },
        target={"kind": "site", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_sites([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = runtime.provisioner().create_site(
                    name,
                    package,
                    port,
                    pfx_password,
                    base_path=base_path,
                    certs_path=certs_path,
                    pool_runtime=runtime_label,
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish(op, outcome, changed=3, json_output=json_output)


@site_app.command("bind-cert")
def site_bind_cert(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the site to update."),
    thumbprint: str = typer.Option(
        ...,
        "--thumbprint",
        help="Hex thumbprint of the certificate; separators are ignored.",
    ),
    port: int = typer.Option(DEFAULT_HTTPS_PORT, "--port", help="HTTPS port to bind."),
    ip: str = typer.Option("*", "--ip", help="IP address pattern for the binding."),
) -> None:
    """Bind an installed certificate to a site's HTTPS port."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site bind-cert",
        args={"name": name, "thumbprint": thumbprint, "port": port, "ip": ip},
        target={"kind": "site", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_sites([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = runtime.provisioner().bind_certificate(
                    name, thumbprint, ip=ip, port=port
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish(op, outcome, changed=1)


@tls_app.command("provision")
def tls_provision(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name the certificate is issued for."),
    out_dir: Path | None = typer.Option(
        None,
        "--out-dir",
        file_okay=False,
        help="Folder receiving the exported PFX (defaults to certs_dir).",
    ),
    pfx_password: str = PFX_PASSWORD_OPTION,
) -> None:
    """Return the site's certificate, creating and installing one if needed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tls provision",
        args={"name": name, "out_dir": out_dir},
        target={"kind": "certificate", "name": name},
    ) as op:
        outcome = DeploymentOutcome(summary=f"Provisioning certificate for site: {name}")
        try:
            identity = runtime.certificates.provision(
                name, out_dir or runtime.config.certs_dir, pfx_password, outcome
            )
        except CertificateError as exc:
            outcome.fail(str(exc), exc)
        else:
            outcome.details["subject"] = identity.subject
            outcome.details["thumbprint"] = identity.thumbprint
            outcome.details["pfx"] = identity.pfx_path
            outcome.succeed(f"Certificate ready: {identity.subject} ({identity.thumbprint}).")
        _finish(op, outcome, changed=1 if outcome.details.get("pfx") is not None else 0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
