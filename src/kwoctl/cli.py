"""Typer command line interface for ``kwoctl``.

Each entity variant gets its own command group with the same shape
(``add``/``create``, ``remove``/``delete``, ``list``, ``update``, ``check``).
Commands build a :class:`RuntimeContext` once per invocation, open a
structured operation scope, and hand the work to the variant's lifecycle
controller. Failures are printed as one categorised line and mapped to the
documented exit codes.
"""
from __future__ import annotations

import os
import textwrap
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .archive import ArchiveManager
from .config import AppConfig, ConfigError, load_config
from .errors import (
    AlreadyExistsError,
    KwoError,
    MissingCredentialError,
    PrivilegeError,
    UsageError,
    format_error,
)
from .exit_codes import ExitCode
from .lifecycle import (
    STATUS_FILTERS,
    AdminDeployerController,
    CheckResult,
    ControllerContext,
    DnsResolverController,
    EntityController,
    EntityView,
    OperationResult,
    RegistryController,
    TenantController,
)
from .logging import OperationScope, StructuredLogger
from .naming import get_provider, resolver_name
from .providers import (
    CredentialProbe,
    HtpasswdProvider,
    KubectlError,
    KubectlProvider,
    SystemdError,
    SystemdProvider,
)
from .status import collect_status
from .templates import TemplateEngine
from .tls import TLSInspector

console = Console()

OUTPUT_FORMATS = ("table", "json")
TRUTHY = {"1", "true", "yes", "on"}
# Typer may ship its own click; take the usage-error base from the class it raises.
USAGE_ERROR: Any = typer.BadParameter.__base__

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to kwoctl's YAML config file.",
)
FORMAT_OPTION = typer.Option(
    "table",
    "--format",
    help="Output format (table|json).",
)
STATUS_OPTION = typer.Option(
    "active",
    "--status",
    help="Which entities to list (active|archived|all).",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    help="Skip the confirmation prompt.",
)
NO_ARCHIVE_OPTION = typer.Option(
    False,
    "--no-archive",
    help="Do not capture an archive bundle before removing.",
)
NON_INTERACTIVE_OPTION = typer.Option(
    False,
    "--non-interactive",
    help="Never prompt; read credentials from the environment only.",
)
ROTATE_TOKEN_OPTION = typer.Option(
    False,
    "--rotate-token",
    help="Revoke the current token and issue a new one.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        k3s Web Orchestrator admin CLI.

        Provisions tenants, admin deployers, DNS certificate resolvers and
        private registry credentials, keeping cluster objects, local metadata
        and derived configuration consistent.
        """
    ).strip(),
)
tenant_app = typer.Typer(help="Manage tenant namespaces and their deployer accounts.")
admin_app = typer.Typer(help="Manage cluster-wide admin deployer accounts.")
dns_app = typer.Typer(help="Manage DNS providers backing Traefik certificate resolvers.")
registry_app = typer.Typer(help="Manage private image registry credentials.")
archive_app = typer.Typer(help="Inspect archive bundles.")

app.add_typer(tenant_app, name="tenant")
app.add_typer(admin_app, name="admin-deployer")
app.add_typer(dns_app, name="dns")
app.add_typer(registry_app, name="registry")
app.add_typer(archive_app, name="archive")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    kubectl: KubectlProvider
    archives: ArchiveManager
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    htpasswd_provider: HtpasswdProvider
    probes: CredentialProbe

    def controller_context(self) -> ControllerContext:
        """Return the collaborators handed to lifecycle controllers."""
        return ControllerContext(
            config=self.config,
            kubectl=self.kubectl,
            archives=self.archives,
            templates=self.templates,
            systemd=self.systemd_provider,
            htpasswd=self.htpasswd_provider,
            probes=self.probes,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(f'Error [Config]: {exc}')}[/red]")
        raise typer.Exit(code=int(ExitCode.USAGE)) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        kubectl=KubectlProvider(kubectl_bin=config.cluster.kubectl_bin),
        archives=ArchiveManager(config.archive_dir),
        templates=templates,
        systemd_provider=SystemdProvider(
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
        ),
        htpasswd_provider=HtpasswdProvider(htpasswd_bin=config.registry.htpasswd_bin),
        probes=CredentialProbe(
            timeout_seconds=config.probes.timeout,
            verify_tls=config.probes.verify_tls,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _require_root(config: AppConfig) -> None:
    if not config.require_root or os.geteuid() == 0:
        return
    error = PrivilegeError("kwoctl must run as root (set require_root: false to override).")
    console.print(f"[red]{escape(format_error(error))}[/red]")
    raise typer.Exit(code=int(error.exit_code))


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the kwoctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"kwoctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    runtime = _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    _require_root(runtime.config)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.USAGE),
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=dict(context or {}))
    raise typer.Exit(code=rc)


@contextmanager
def _handle_errors(op: OperationScope, runtime: RuntimeContext) -> Iterator[None]:
    """Translate lifecycle failures into a single line and an exit code."""
    try:
        yield
    except KwoError as exc:
        _command_error(
            op,
            format_error(exc),
            rc=int(exc.exit_code),
            context={"category": exc.category, "writeMode": runtime.config.stores.write_mode},
        )


def _non_interactive(flag: bool) -> bool:
    return flag or os.environ.get("NON_INTERACTIVE", "").strip().lower() in TRUTHY


def _check_format(output_format: str) -> str:
    normalised = output_format.strip().lower()
    if normalised not in OUTPUT_FORMATS:
        raise UsageError(
            f"unknown format '{output_format}' (expected one of {', '.join(OUTPUT_FORMATS)})."
        )
    return normalised


def _confirm(prompt: str) -> bool:
    try:
        return typer.confirm(prompt, default=False)
    except typer.Abort:
        return False


def _prompt(label: str, *, hide_input: bool) -> str:
    try:
        value = typer.prompt(label, default="", show_default=False, hide_input=hide_input)
    except typer.Abort:
        return ""
    return str(value).strip()


def _controller(
    runtime: RuntimeContext,
    controller_cls: type[EntityController],
    op: OperationScope,
) -> EntityController:
    return controller_cls(runtime.controller_context(), observer=op.add_step)


def _finish(op: OperationScope, runtime: RuntimeContext, result: OperationResult) -> None:
    """Print an operation result and close the scope with the right status."""
    verbs = {"create": "Created", "update": "Updated", "delete": "Removed"}
    console.print(f"[green]{verbs.get(result.action, result.action)} {result.kind} "
                  f"'{result.name}'.[/green]")
    if result.archive is not None:
        location = result.archive.path or "not written"
        console.print(f"Archive: {result.archive.bundle_id} ({location})")
    for key, value in sorted(result.artifacts.items()):
        console.print(f"{key}: {value}")
    if result.regeneration is not None:
        entries = ", ".join(result.regeneration.entries) or "(none)"
        console.print(f"Regenerated {result.regeneration.target}: {entries}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

    context = result.to_payload()
    context["writeMode"] = runtime.config.stores.write_mode
    backups = [result.archive.bundle_id] if result.archive is not None else None
    message = f"{result.kind} {result.action} '{result.name}' complete."
    if result.warnings:
        op.warning(
            message,
            warnings=list(result.warnings),
            changed=1,
            backups=backups,
            context=context,
        )
    else:
        op.success(message, changed=1, backups=backups, context=context)


def _summary(view: EntityView) -> str:
    record = view.record
    if view.details:
        counts = ", ".join(f"{key}={value}" for key, value in sorted(view.details.items()))
    else:
        counts = ""
    if "provider" in record:
        suffix = record.get("suffix")
        return f"{record.get('provider')}" + (f" (suffix {suffix})" if suffix else "")
    if "domain" in record:
        return f"{record.get('domain')} as {record.get('username')}"
    if "clusterRole" in record:
        return f"clusterrole {record.get('clusterRole')}"
    if "namespace" in record:
        return f"namespace {record.get('namespace')}" + (f" ({counts})" if counts else "")
    return counts


def _run_list(
    ctx: typer.Context,
    controller_cls: type[EntityController],
    command: str,
    output_format: str,
    status: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"format": output_format, "status": status},
        target={"kind": controller_cls.kind, "scope": "list"},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        if status not in STATUS_FILTERS:
            raise UsageError(
                f"unknown status '{status}' (expected one of {', '.join(STATUS_FILTERS)})."
            )
        views = _controller(runtime, controller_cls, op).list(status)
        if fmt == "json":
            console.print_json(data={"kind": controller_cls.kind,
                                     "entities": [view.to_payload() for view in views]})
            op.success(f"Reported {len(views)} {controller_cls.kind} entities as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Resources")
        table.add_column("Details")
        table.add_column("Created")
        if not views:
            table.add_row("(none)", "", "", "", "")
        for view in views:
            table.add_row(
                view.name,
                view.status,
                view.resource_status,
                escape(_summary(view)),
                str(view.record.get("createdAt") or ""),
            )
        console.print(table)
        op.success(f"Reported {len(views)} {controller_cls.kind} entities.", changed=0)


def _run_create(
    ctx: typer.Context,
    controller_cls: type[EntityController],
    command: str,
    name: str,
    spec: Mapping[str, Any] | None = None,
    *,
    args: Mapping[str, object] | None = None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args=dict(args or {"name": name}),
        target={"kind": controller_cls.kind, "name": name},
    ) as op, _handle_errors(op, runtime):
        result = _controller(runtime, controller_cls, op).create(name, spec)
        _finish(op, runtime, result)


def _run_delete(
    ctx: typer.Context,
    controller_cls: type[EntityController],
    command: str,
    name: str,
    *,
    force: bool,
    no_archive: bool,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"name": name, "force": force, "no_archive": no_archive},
        target={"kind": controller_cls.kind, "name": name},
    ) as op, _handle_errors(op, runtime):
        result = _controller(runtime, controller_cls, op).delete(
            name,
            archive=not no_archive,
            force=force,
            confirm=_confirm,
        )
        _finish(op, runtime, result)


def _run_update(
    ctx: typer.Context,
    controller_cls: type[EntityController],
    command: str,
    name: str,
    mutation_factory: Callable[[], Mapping[str, Any]],
    *,
    args: Mapping[str, object] | None = None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args=dict(args or {"name": name}),
        target={"kind": controller_cls.kind, "name": name},
    ) as op, _handle_errors(op, runtime):
        controller = _controller(runtime, controller_cls, op)
        result = controller.update(name, mutation_factory())
        _finish(op, runtime, result)


def _run_check(
    ctx: typer.Context,
    controller_cls: type[EntityController],
    command: str,
    name: str | None,
    output_format: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"name": name, "format": output_format},
        target={"kind": controller_cls.kind, "name": name or "*"},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        results = _controller(runtime, controller_cls, op).check(name)
        failed = [result.name for result in results if not result.passed]
        if fmt == "json":
            console.print_json(data={"kind": controller_cls.kind,
                                     "results": [result.to_payload() for result in results]})
        else:
            _render_checks(results)
        if failed:
            _command_error(
                op,
                f"Check failed for {', '.join(failed)}.",
                rc=int(ExitCode.USAGE),
                context={"results": [result.to_payload() for result in results]},
            )
        op.success(
            f"Checked {len(results)} {controller_cls.kind} entities.",
            changed=0,
            context={"results": [result.to_payload() for result in results]},
        )


def _render_checks(results: Sequence[CheckResult]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Entity", style="bold")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Detail")
    if not results:
        table.add_row("(none)", "", "", "")
    for result in results:
        for item in result.checks:
            table.add_row(
                result.name,
                item.name,
                "[green]PASS[/green]" if item.passed else "[red]FAIL[/red]",
                escape(item.detail),
            )
    console.print(table)


# ----------------------------------------------------------------------
# tenant
# ----------------------------------------------------------------------
@tenant_app.command("add")
@tenant_app.command("create")
def tenant_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tenant (namespace) name."),
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Create a tenant namespace with its deployer account and kubeconfig."""
    _run_create(ctx, TenantController, "tenant add", name,
                args={"name": name, "non_interactive": _non_interactive(non_interactive)})


@tenant_app.command("remove")
@tenant_app.command("delete")
def tenant_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tenant to remove."),
    force: bool = FORCE_OPTION,
    no_archive: bool = NO_ARCHIVE_OPTION,
) -> None:
    """Archive and remove a tenant and every resource in its namespace."""
    _run_delete(ctx, TenantController, "tenant remove", name, force=force, no_archive=no_archive)


@tenant_app.command("list")
def tenant_list(
    ctx: typer.Context,
    output_format: str = FORMAT_OPTION,
    status: str = STATUS_OPTION,
) -> None:
    """List tenants."""
    _run_list(ctx, TenantController, "tenant list", output_format, status)


@tenant_app.command("update")
def tenant_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tenant to update."),
    rotate_token: bool = ROTATE_TOKEN_OPTION,
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Rotate the tenant deployer token."""
    _run_update(ctx, TenantController, "tenant update", name,
                lambda: _token_rotation(rotate_token),
                args={"name": name, "rotate_token": rotate_token})


@tenant_app.command("check")
def tenant_check(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Tenant to check (default: all)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Verify tenant tokens and kubeconfigs against the API server."""
    _run_check(ctx, TenantController, "tenant check", name, output_format)


def _token_rotation(rotate_token: bool) -> dict[str, Any]:
    if not rotate_token:
        raise UsageError("nothing to update; pass --rotate-token to issue a new token.")
    return {"rotate_token": True}


# ----------------------------------------------------------------------
# admin-deployer
# ----------------------------------------------------------------------
@admin_app.command("add")
@admin_app.command("create")
def admin_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Admin deployer name."),
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Create a cluster-wide admin deployer account and kubeconfig."""
    _run_create(ctx, AdminDeployerController, "admin-deployer add", name,
                args={"name": name, "non_interactive": _non_interactive(non_interactive)})


@admin_app.command("remove")
@admin_app.command("delete")
def admin_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Admin deployer to remove."),
    force: bool = FORCE_OPTION,
    no_archive: bool = NO_ARCHIVE_OPTION,
) -> None:
    """Archive and remove an admin deployer account."""
    _run_delete(ctx, AdminDeployerController, "admin-deployer remove", name,
                force=force, no_archive=no_archive)


@admin_app.command("list")
def admin_list(
    ctx: typer.Context,
    output_format: str = FORMAT_OPTION,
    status: str = STATUS_OPTION,
) -> None:
    """List admin deployers."""
    _run_list(ctx, AdminDeployerController, "admin-deployer list", output_format, status)


@admin_app.command("update")
def admin_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Admin deployer to update."),
    rotate_token: bool = ROTATE_TOKEN_OPTION,
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Rotate the admin deployer token."""
    _run_update(ctx, AdminDeployerController, "admin-deployer update", name,
                lambda: _token_rotation(rotate_token),
                args={"name": name, "rotate_token": rotate_token})


@admin_app.command("check")
def admin_check(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Admin deployer to check (default: all)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Verify admin deployer tokens and kubeconfigs."""
    _run_check(ctx, AdminDeployerController, "admin-deployer check", name, output_format)


# ----------------------------------------------------------------------
# dns
# ----------------------------------------------------------------------
SUFFIX_OPTION = typer.Option(
    None,
    "--suffix",
    help="Optional resolver suffix (letsencrypt-<provider>-<suffix>).",
)


def _collect_dns_credentials(provider: str, *, non_interactive: bool) -> dict[str, str]:
    """Read provider credentials from the environment, prompting when allowed."""
    definition = get_provider(provider)
    values: dict[str, str] = {}
    for key in definition.credential_keys:
        value = os.environ.get(key, "").strip()
        if not value and not non_interactive:
            value = _prompt(f"{definition.display_name} {key}", hide_input=True)
        if not value:
            raise MissingCredentialError(
                f"{key} is required for {definition.display_name} "
                f"(export it or run interactively; see {definition.docs_url})."
            )
        values[key] = value
    return values


def _resolver_argument(name: str, suffix: str | None) -> str:
    if suffix:
        return resolver_name(name, suffix)
    return name


@dns_app.command("add")
@dns_app.command("create")
def dns_add(
    ctx: typer.Context,
    provider: str = typer.Argument(
        ..., help="DNS provider (cloudflare|ovh|route53|digitalocean)."
    ),
    suffix: str | None = SUFFIX_OPTION,
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Register DNS provider credentials as a Traefik certificate resolver."""
    interactive = not _non_interactive(non_interactive)
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dns add",
        args={"provider": provider, "suffix": suffix, "non_interactive": not interactive},
        target={"kind": "dns", "name": provider},
    ) as op, _handle_errors(op, runtime):
        controller = _controller(runtime, DnsResolverController, op)
        canonical = controller.canonical_name(provider, {"suffix": suffix})
        if controller.metadata.find(canonical) is not None:
            # Fail before prompting for secrets.
            raise AlreadyExistsError(f"DNS resolver '{canonical}' already exists.")
        credentials = _collect_dns_credentials(provider, non_interactive=not interactive)
        result = controller.create(provider, {"suffix": suffix, "credentials": credentials})
        _finish(op, runtime, result)


@dns_app.command("remove")
@dns_app.command("delete")
def dns_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Resolver name, or a provider with --suffix."),
    suffix: str | None = SUFFIX_OPTION,
    force: bool = FORCE_OPTION,
    no_archive: bool = NO_ARCHIVE_OPTION,
) -> None:
    """Archive and remove a certificate resolver, then republish Traefik config."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dns remove",
        args={"name": name, "suffix": suffix, "force": force, "no_archive": no_archive},
        target={"kind": "dns", "name": name},
    ) as op, _handle_errors(op, runtime):
        result = _controller(runtime, DnsResolverController, op).delete(
            _resolver_argument(name, suffix),
            archive=not no_archive,
            force=force,
            confirm=_confirm,
        )
        _finish(op, runtime, result)


@dns_app.command("list")
def dns_list(
    ctx: typer.Context,
    output_format: str = FORMAT_OPTION,
    status: str = STATUS_OPTION,
) -> None:
    """List registered certificate resolvers."""
    _run_list(ctx, DnsResolverController, "dns list", output_format, status)


@dns_app.command("update")
def dns_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Resolver name, or a provider with --suffix."),
    suffix: str | None = SUFFIX_OPTION,
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Replace the credentials behind a certificate resolver."""
    interactive = not _non_interactive(non_interactive)
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dns update",
        args={"name": name, "suffix": suffix, "non_interactive": not interactive},
        target={"kind": "dns", "name": name},
    ) as op, _handle_errors(op, runtime):
        controller = _controller(runtime, DnsResolverController, op)
        record = controller.get(_resolver_argument(name, suffix))
        credentials = _collect_dns_credentials(
            str(record.get("provider")), non_interactive=not interactive
        )
        result = controller.update(str(record.get("name")), {"credentials": credentials})
        _finish(op, runtime, result)


@dns_app.command("check")
def dns_check(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Resolver to check (default: all)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Verify resolver credentials and their presence in the Traefik config."""
    _run_check(ctx, DnsResolverController, "dns check", name, output_format)


# ----------------------------------------------------------------------
# registry
# ----------------------------------------------------------------------
@registry_app.command("add")
@registry_app.command("create")
def registry_add(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry name (default from config)."),
    domain: str | None = typer.Option(None, "--domain", help="Registry host name."),
    username: str | None = typer.Option(None, "--username", help="Registry login user."),
    cert_resolver: str | None = typer.Option(
        None,
        "--cert-resolver",
        help="Certificate resolver serving the registry's TLS certificate.",
    ),
    non_interactive: bool = NON_INTERACTIVE_OPTION,
) -> None:
    """Generate registry credentials and publish them to k3s."""
    runtime = _get_runtime(ctx)
    interactive = not _non_interactive(non_interactive)
    entity = name or runtime.config.registry.default_name
    resolved_domain = domain or os.environ.get("REGISTRY_DOMAIN", "").strip()
    if not resolved_domain and interactive:
        resolved_domain = _prompt("Registry domain", hide_input=False)
    spec = {
        "domain": resolved_domain,
        "username": username
        or os.environ.get("REGISTRY_USERNAME", "").strip()
        or runtime.config.registry.default_username,
        "cert_resolver": cert_resolver or os.environ.get("REGISTRY_CERT_RESOLVER", "").strip(),
    }
    _run_create(
        ctx,
        RegistryController,
        "registry add",
        entity,
        spec,
        args={"name": entity, **spec, "non_interactive": not interactive},
    )


@registry_app.command("remove")
@registry_app.command("delete")
def registry_remove(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry to remove (default from config)."),
    force: bool = FORCE_OPTION,
    no_archive: bool = NO_ARCHIVE_OPTION,
) -> None:
    """Archive and remove registry credentials, then republish k3s auth."""
    runtime = _get_runtime(ctx)
    entity = name or runtime.config.registry.default_name
    _run_delete(ctx, RegistryController, "registry remove", entity,
                force=force, no_archive=no_archive)


@registry_app.command("list")
def registry_list(
    ctx: typer.Context,
    output_format: str = FORMAT_OPTION,
    status: str = STATUS_OPTION,
) -> None:
    """List registry credential sets."""
    _run_list(ctx, RegistryController, "registry list", output_format, status)


@registry_app.command("update")
def registry_update(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry to rotate (default from config)."),
) -> None:
    """Rotate the registry password and republish k3s auth."""
    runtime = _get_runtime(ctx)
    entity = name or runtime.config.registry.default_name
    _run_update(ctx, RegistryController, "registry update", entity,
                lambda: {"rotate_password": True},
                args={"name": entity})


@registry_app.command("check")
def registry_check(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry to check (default: all)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Verify registry credentials against the registry endpoint."""
    _run_check(ctx, RegistryController, "registry check", name, output_format)


@registry_app.command("get-credentials")
def registry_get_credentials(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry name (default from config)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Print the registry login (domain, username, password)."""
    runtime = _get_runtime(ctx)
    entity = name or runtime.config.registry.default_name
    with runtime.logger.operation(
        "registry get-credentials",
        args={"name": entity, "format": output_format},
        target={"kind": "registry", "name": entity},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        controller = RegistryController(runtime.controller_context(), observer=op.add_step)
        login = controller.get_credentials(entity)
        if fmt == "json":
            console.print_json(data=login)
        else:
            console.print(f"Registry: {login['domain']}")
            console.print(f"Username: {login['username']}")
            console.print(f"Password: {login['password']}")
            console.print(
                f"docker login {login['domain']} -u {login['username']} --password-stdin"
            )
        op.success("Reported registry credentials.", changed=0,
                   context={"name": entity, "domain": login["domain"]})


@registry_app.command("status")
def registry_status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Registry name (default: all)."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Show registry credential, auth file and pod status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "registry status",
        args={"name": name, "format": output_format},
        target={"kind": "registry", "name": name or "*"},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        controller = RegistryController(runtime.controller_context(), observer=op.add_step)
        rows = controller.status(name)
        if fmt == "json":
            console.print_json(data={"registries": rows})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Domain")
            table.add_column("Secret")
            table.add_column("registries.yaml")
            table.add_column("Pods running")
            if not rows:
                table.add_row("(none)", "", "", "", "")
            for row in rows:
                table.add_row(
                    str(row["name"]),
                    str(row.get("domain") or ""),
                    "yes" if row["secret"] else "[red]missing[/red]",
                    "yes" if row["registriesFile"] else "[red]missing[/red]",
                    str(row["podsRunning"]),
                )
            console.print(table)
        op.success("Reported registry status.", changed=0, context={"registries": rows})


# ----------------------------------------------------------------------
# archive
# ----------------------------------------------------------------------
@archive_app.command("list")
def archive_list(
    ctx: typer.Context,
    label: str | None = typer.Option(
        None,
        "--label",
        help="Only bundles whose label starts with this prefix.",
    ),
    output_format: str = FORMAT_OPTION,
) -> None:
    """List archive bundles, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "archive list",
        args={"label": label, "format": output_format},
        target={"kind": "archive", "scope": str(runtime.archives.root)},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        bundles = runtime.archives.list_bundles(label)
        if fmt == "json":
            console.print_json(data={"bundles": bundles})
            op.success("Reported archive bundles as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Bundle", style="bold")
        table.add_column("Operation")
        table.add_column("Created")
        table.add_column("Captured")
        table.add_column("Skipped")
        if not bundles:
            table.add_row("(none)", "", "", "", "")
        for bundle in bundles:
            table.add_row(
                str(bundle.get("id")),
                str(bundle.get("operation") or ""),
                str(bundle.get("createdAt") or ""),
                ", ".join(bundle.get("captured") or []),
                ", ".join(sorted(bundle.get("skipped") or {})),
            )
        console.print(table)
        op.success(f"Reported {len(bundles)} archive bundles.", changed=0)


# ----------------------------------------------------------------------
# platform
# ----------------------------------------------------------------------
@app.command("status")
def platform_status(
    ctx: typer.Context,
    output_format: str = FORMAT_OPTION,
) -> None:
    """Show k3s, Traefik, certificate resolvers and entity counts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"format": output_format},
        target={"kind": "platform", "scope": runtime.config.cluster.cluster_name},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        status = collect_status(runtime.controller_context())
        payload = status.to_dict()
        if fmt == "json":
            console.print_json(data=payload)
        else:
            console.print(f"kwoctl {status.version}")
            console.print(f"Cluster API: {escape(status.api_server)}")
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Component", style="bold")
            table.add_column("State")
            table.add_column("Detail")
            for component in status.components:
                colour = "green" if component.state in {"active", "Running"} else "red"
                table.add_row(
                    component.name,
                    f"[{colour}]{escape(component.state)}[/{colour}]",
                    escape(component.detail or ""),
                )
            console.print(table)
            console.print(
                "Certificate resolvers: "
                + (", ".join(status.resolvers) if status.resolvers else "(none)")
            )
            counts = Table(show_header=True, header_style="bold magenta")
            counts.add_column("Entities", style="bold")
            counts.add_column("Active")
            counts.add_column("Archived")
            counts.add_column("Total")
            for kind, entity_counts in status.entities.items():
                counts.add_row(
                    kind,
                    str(entity_counts.active),
                    str(entity_counts.archived),
                    str(entity_counts.total),
                )
            console.print(counts)
            for warning in status.warnings:
                console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
        if status.warnings:
            op.warning(
                "Reported platform status with warnings.",
                warnings=status.warnings,
                context=payload,
            )
        else:
            op.success("Reported platform status.", changed=0, context=payload)


@app.command("check-tls")
def check_tls(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served through Traefik."),
    output_format: str = FORMAT_OPTION,
) -> None:
    """Trace a domain to its ingress, cert resolver and served certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check-tls",
        args={"domain": domain, "format": output_format},
        target={"kind": "domain", "name": domain},
    ) as op, _handle_errors(op, runtime):
        fmt = _check_format(output_format)
        resolvers = DnsResolverController(runtime.controller_context()).metadata.list()
        inspector = TLSInspector(runtime.kubectl, runtime.config.tls)
        report = inspector.inspect(domain, known_resolvers={name for name, _ in resolvers})
        payload = report.to_dict()
        if fmt == "json":
            console.print_json(data=payload)
        else:
            console.print(f"Ingress: {escape(report.ingress or '(none)')}")
            console.print(f"Cert resolver: {escape(report.cert_resolver or 'none')}")
            if report.certificate is not None:
                console.print(f"Issuer: {escape(report.certificate.issuer)}")
                console.print(
                    f"Valid: {report.certificate.not_valid_before.isoformat()} -> "
                    f"{report.certificate.not_valid_after.isoformat()}"
                )
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Result")
            table.add_column("Detail")
            colours = {"ok": "green", "warning": "yellow", "error": "red"}
            for finding in report.findings:
                colour = colours[finding.severity.value]
                table.add_row(
                    finding.check,
                    f"[{colour}]{finding.severity.value.upper()}[/{colour}]",
                    escape(finding.message),
                )
            console.print(table)
        if not report.passed:
            _command_error(
                op,
                f"TLS check failed for {report.domain}.",
                rc=int(ExitCode.USAGE),
                context=payload,
            )
        op.success(f"TLS check passed for {report.domain}.", changed=0, context=payload)


@app.command("logs")
def logs(
    ctx: typer.Context,
    component: str = typer.Argument(
        ...,
        help="traefik, registry, k3s or tenant:<name>.",
    ),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming new lines."),
    tail: int | None = typer.Option(None, "--tail", min=0, help="Only the last N lines."),
    selector: str | None = typer.Option(
        None,
        "--selector",
        "-l",
        help="Label selector for tenant pods (default: every pod in the namespace).",
    ),
) -> None:
    """Stream logs of a platform component or a tenant's pods."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "logs",
        args={"component": component, "follow": follow, "tail": tail, "selector": selector},
        target={"kind": "logs", "name": component},
    ) as op, _handle_errors(op, runtime):
        kind, _, tenant = component.partition(":")
        try:
            if kind == "traefik":
                rc = runtime.kubectl.stream_logs(
                    namespace=config.cluster.namespace,
                    selector=config.traefik.pod_selector,
                    tail=tail,
                    follow=follow,
                )
            elif kind == "registry":
                rc = runtime.kubectl.stream_logs(
                    namespace=config.cluster.namespace,
                    selector=config.registry.pod_selector,
                    tail=tail,
                    follow=follow,
                )
            elif kind == "k3s":
                rc = runtime.systemd_provider.journal(
                    config.registry.k3s_service, lines=tail, follow=follow
                )
            elif kind == "tenant" and tenant:
                rc = _tenant_logs(runtime, tenant, selector=selector, tail=tail, follow=follow)
            else:
                raise UsageError(
                    f"unknown component '{component}' (expected traefik, registry, k3s "
                    "or tenant:<name>)."
                )
        except (KubectlError, SystemdError) as exc:
            _command_error(op, f"Cannot stream logs for {component}: {exc}", rc=1)
        if rc != 0:
            _command_error(op, f"Log streaming for {component} exited with {rc}.", rc=1)
        op.success(f"Streamed logs for {component}.", changed=0)


def _tenant_logs(
    runtime: RuntimeContext,
    name: str,
    *,
    selector: str | None,
    tail: int | None,
    follow: bool,
) -> int:
    controller = TenantController(runtime.controller_context())
    namespace = controller.validate_existing_name(name)
    controller.get(namespace)
    if selector:
        return runtime.kubectl.stream_logs(
            namespace=namespace, selector=selector, tail=tail, follow=follow
        )
    pods = [
        str((pod.get("metadata") or {}).get("name"))
        for pod in runtime.kubectl.list_objects("pods", namespace=namespace)
    ]
    if not pods:
        console.print(f"No pods in namespace {namespace}.")
        return 0
    if follow and len(pods) > 1:
        raise UsageError("--follow needs --selector when the tenant runs several pods.")
    rc = 0
    for pod in pods:
        rc = runtime.kubectl.stream_logs(namespace=namespace, pod=pod, tail=tail, follow=follow)
        if rc != 0:
            break
    return rc


def main() -> None:
    """Console script entry point."""
    try:
        rc = app(standalone_mode=False)
    except USAGE_ERROR as exc:
        exc.show()
        raise SystemExit(int(ExitCode.USAGE)) from exc
    except typer.Abort as exc:
        console.print("[red]Aborted.[/red]")
        raise SystemExit(int(ExitCode.DECLINED)) from exc
    raise SystemExit(rc if isinstance(rc, int) else 0)
