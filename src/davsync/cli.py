"""Typer-powered command line interface for ``davsync``.

``davsync setup`` drives the provisioning saga end to end: it discovers the
server, negotiates the authentication scheme, verifies the credentials and
provisions the local/remote folder pair before anything is persisted.
``davsync probe`` runs only the anonymous discovery steps.
"""
from __future__ import annotations

import asyncio
import getpass
import json
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .accounts import AccountError, AccountManager
from .config import AppConfig, ConfigError, load_config
from .credentials import Credentials, HttpBasicCredentials, SsoSessionCredentials
from .errors import ErrorCategory
from .exit_codes import ExitCode
from .folders import FolderRegistry, FolderRegistryError
from .logging import OperationScope, StructuredLogger
from .provisioning import (
    AuthKind,
    AuthTypeNegotiator,
    FolderRequest,
    LogLevel,
    ProbeClient,
    ProvisioningResult,
    ProvisioningSaga,
    SagaEvent,
    SagaSlot,
    ServerExistenceProbe,
)
from .provisioning.saga import normalize_user_url
from .proxy import ProxyResolutionError, resolve_proxy
from .state import StateRegistry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to davsync's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Connect this machine to a WebDAV file-sync server.

        Run ``davsync setup URL`` to create an account and a synchronized
        folder pair, or ``davsync probe URL`` to check a server first.
        """
    ).strip(),
)
accounts_app = typer.Typer(help="Inspect configured accounts.")
folders_app = typer.Typer(help="Inspect registered sync folders.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(accounts_app, name="accounts")
app.add_typer(folders_app, name="folders")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    logger: StructuredLogger
    accounts: AccountManager
    folders: FolderRegistry
    slot: SagaSlot = field(default_factory=SagaSlot)
    transport: httpx.AsyncBaseTransport | None = None
    favorites_file: Path | None = None


def build_runtime(
    config: AppConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    favorites_file: Path | None = None,
) -> RuntimeContext:
    """Wire the collaborators used by every command."""
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    return RuntimeContext(
        config=config,
        registry=registry,
        logger=StructuredLogger(config.logs_dir),
        accounts=AccountManager(
            registry,
            dav_path=config.server.dav_path,
            proxy_mode=config.proxy.mode,
        ),
        folders=FolderRegistry(registry),
        transport=transport,
        favorites_file=favorites_file,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    try:
        runtime = build_runtime(config)
    except OSError as exc:
        console.print(f"[red]Unable to prepare state directory:[/red] {exc}")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc
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
        help="Show the davsync version and exit.",
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
            console.print(f"davsync {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    json_output: bool = False,
    payload: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    if json_output:
        console.print_json(data=payload or {"success": False, "error": message})
    else:
        console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(category: ErrorCategory | None) -> ExitCode:
    if category in (ErrorCategory.USER_CANCELLED, ErrorCategory.AUTHENTICATION_INVALID):
        return ExitCode.VALIDATION
    if category is ErrorCategory.LOCAL_FILESYSTEM:
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


_LEVEL_STYLES = {
    LogLevel.INFO: "",
    LogLevel.SUCCESS: "green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
}


def _render_entry_line(level: LogLevel, message: str) -> str:
    style = _LEVEL_STYLES[level]
    escaped = escape(message)
    return f"[{style}]{escaped}[/{style}]" if style else escaped


# ----------------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------------
@dataclass
class PromptCredentialSupplier:
    """Use command-line credentials first, then prompt when attached to a TTY."""

    user: str | None = None
    password: str | None = None
    token: str | None = None
    interactive: bool = False

    def credentials_for(
        self,
        auth_kind: AuthKind,
        account_url: str,
        *,
        rejected: bool = False,
    ) -> Credentials | None:
        """Return credentials for *auth_kind* or ``None`` to give up."""
        if rejected:
            if not self.interactive:
                return None
            console.print(f"[yellow]The server at {account_url} rejected the credentials.[/yellow]")
            self.password = None
            self.token = None

        if auth_kind is AuthKind.FEDERATED_SSO:
            if self.token is None and self.interactive:
                console.print(
                    f"{account_url} uses single sign-on. Log in with a browser and paste "
                    "the session cookie."
                )
                self.token = getpass.getpass("Session cookie: ")
            if not self.token:
                return None
            return SsoSessionCredentials(user=self.user, cookie=self.token)

        if self.user is None and self.interactive:
            self.user = typer.prompt("User name")
        if self.password is None and self.token is not None:
            self.password = self.token
        if self.password is None and self.interactive:
            self.password = getpass.getpass("Password: ")
        if not self.user or self.password is None:
            return None
        return HttpBasicCredentials(user=self.user, password=self.password)


# ----------------------------------------------------------------------------
# probe
# ----------------------------------------------------------------------------
async def _probe_server(runtime: RuntimeContext, url: str) -> dict[str, object]:
    config = runtime.config
    selection = await resolve_proxy(config.proxy, url)
    async with ProbeClient.from_config(
        config, proxy=selection.url, transport=runtime.transport
    ) as client:
        existence = ServerExistenceProbe(
            client,
            status_path=config.server.status_path,
            max_redirects=config.server.max_redirects,
        )
        scheme = url.split(":", 1)[0]
        outcome = await existence.probe(url, config.timeouts.for_scheme(scheme))
        payload: dict[str, object] = {
            "url": url,
            "outcome": outcome.kind.value,
            "message": outcome.message,
            "status_code": outcome.status_code,
            "downgrade_advised": outcome.downgrade_advised,
            "category": outcome.category.value if outcome.category else None,
        }
        if not outcome.is_success or outcome.canonical_url is None:
            return payload
        info = outcome.info or {}
        payload.update(
            {
                "canonical_url": outcome.canonical_url,
                "version": outcome.version,
                "versionstring": info.get("versionstring"),
                "productname": info.get("productname"),
            }
        )
        negotiator = AuthTypeNegotiator(
            client,
            sso_indicators=config.server.sso_indicators,
            timeout=config.timeouts.request,
        )
        auth_kind = await negotiator.negotiate(
            outcome.canonical_url,
            config.server.dav_path,
            config.server.max_redirects,
        )
        payload["auth_kind"] = auth_kind.value
        return payload


@app.command("probe")
def probe(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Server URL; https is assumed without a scheme."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that URL hosts a compatible server and report its auth scheme."""
    runtime = _get_runtime(ctx)
    normalized = normalize_user_url(url)
    with runtime.logger.operation(
        "probe",
        args={"url": url, "json": json_output},
        target={"kind": "server", "url": normalized},
    ) as op:
        try:
            payload = asyncio.run(_probe_server(runtime, normalized))
        except ProxyResolutionError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION, json_output=json_output)

        op.add_step("server-existence-check", status=str(payload["outcome"]))
        if "auth_kind" in payload:
            op.add_step("auth-type-negotiation", status=str(payload["auth_kind"]))

        if payload["outcome"] != "success":
            message = str(payload["message"])
            if payload.get("downgrade_advised"):
                message += " Retrying with http:// may work."
            _command_error(
                op,
                message,
                rc=ExitCode.PROVIDER,
                json_output=json_output,
                payload=payload,
            )

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key in ("canonical_url", "productname", "version", "versionstring", "auth_kind"):
                value = payload.get(key)
                table.add_row(key, "" if value is None else str(value))
            console.print(table)
        op.success("Server probed.", changed=0, context=payload)


# ----------------------------------------------------------------------------
# setup
# ----------------------------------------------------------------------------
def _result_payload(result: ProvisioningResult) -> dict[str, object]:
    return {
        "success": result.success,
        "state": result.state.value,
        "error": result.error.value if result.error else None,
        "downgrade_advised": result.downgrade_advised,
        "account": result.account.to_dict() if result.account else None,
        "folder": result.committed_folder.to_dict() if result.committed_folder else None,
        "log": [{"level": entry.level.value, "message": entry.message} for entry in result.log],
    }


@app.command("setup")
def setup(
    ctx: typer.Context,
    url: str | None = typer.Argument(
        None,
        help="Server URL (defaults to server.override_url from the config).",
    ),
    user: str | None = typer.Option(None, "--user", "-u", help="Account user name."),
    password: str | None = typer.Option(
        None,
        "--password",
        envvar="DAVSYNC_PASSWORD",
        help="Account password (or set DAVSYNC_PASSWORD).",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="App token, or the session cookie for single sign-on servers.",
    ),
    local_folder: Path | None = typer.Option(
        None,
        "--local-folder",
        file_okay=False,
        help="Local folder to synchronize (defaults to folders.local).",
    ),
    remote_folder: str | None = typer.Option(
        None,
        "--remote-folder",
        help="Remote folder to synchronize (defaults to folders.remote).",
    ),
    skip_folders: bool = typer.Option(
        False,
        "--skip-folders",
        help="Only create the account; do not configure a sync folder.",
    ),
    sync_from_scratch: bool = typer.Option(
        False,
        "--sync-from-scratch",
        help="Move an existing local folder aside and start with an empty one.",
    ),
    sync_hidden: bool = typer.Option(
        False,
        "--sync-hidden",
        help="Synchronize hidden files too.",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Remote folder to leave out of synchronization (repeatable).",
    ),
    confirm_big_folders: bool = typer.Option(
        False,
        "--confirm-big-folders",
        help="Ask before synchronizing large remote folders instead of syncing everything.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create an account and a synchronized folder pair."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    target_url = url or config.server.override_url

    folder_request: FolderRequest | None = None
    if not skip_folders:
        folder_request = FolderRequest(
            local_path=str((local_folder or config.folders.local).expanduser()),
            remote_path=remote_folder if remote_folder is not None else config.folders.remote,
            ignore_hidden_files=config.folders.ignore_hidden_files and not sync_hidden,
            selective_sync_blacklist=tuple(exclude or ()),
            confirm_big_folders=confirm_big_folders,
            start_from_scratch=sync_from_scratch,
        )

    with runtime.logger.operation(
        "setup",
        args={
            "url": target_url,
            "user": user,
            "local_folder": folder_request.local_path if folder_request else None,
            "remote_folder": folder_request.remote_path if folder_request else None,
            "skip_folders": skip_folders,
            "sync_from_scratch": sync_from_scratch,
            "json": json_output,
        },
        target={"kind": "account", "url": target_url},
    ) as op:
        if not target_url:
            _command_error(
                op,
                "No server URL given and server.override_url is not configured.",
                rc=ExitCode.VALIDATION,
                json_output=json_output,
            )

        supplier = PromptCredentialSupplier(
            user=user,
            password=password,
            token=token,
            interactive=sys.stdin.isatty() and not json_output,
        )
        saga = ProvisioningSaga(
            config,
            accounts=runtime.accounts,
            folders=runtime.folders,
            supplier=supplier,
            transport=runtime.transport,
            favorites_file=runtime.favorites_file,
        )

        def on_event(event: SagaEvent) -> None:
            if event.kind == "state":
                op.add_step(event.state.value, status="entered")
            elif event.kind == "log" and event.entry is not None and not json_output:
                console.print(_render_entry_line(event.entry.level, event.entry.message))

        saga.subscribe(on_event)
        try:
            result = asyncio.run(runtime.slot.run(saga, target_url, folder_request))
        except (AccountError, FolderRegistryError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT, json_output=json_output)
        finally:
            saga.close()

        if result is None:
            _command_error(
                op,
                "Another setup is already in progress.",
                rc=ExitCode.VALIDATION,
                json_output=json_output,
            )

        payload = _result_payload(result)
        if not result.success:
            errors = [entry.message for entry in result.errors]
            _command_error(
                op,
                errors[0] if errors else "Setup failed.",
                rc=_exit_code_for(result.error),
                errors=errors,
                json_output=json_output,
                payload=payload,
            )

        if json_output:
            console.print_json(data=payload)
        warnings = [entry.message for entry in result.log if entry.level is LogLevel.WARNING]
        context = {
            "account": payload["account"],
            "folder": payload["folder"],
        }
        if warnings:
            op.warning(
                "Account configured with warnings.",
                warnings=warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Account configured.", changed=1, context=context)


# ----------------------------------------------------------------------------
# accounts / folders / config
# ----------------------------------------------------------------------------
@accounts_app.command("list")
def accounts_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List configured accounts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "accounts list",
        args={"json": json_output},
        target={"kind": "account", "scope": "registry"},
    ) as op:
        try:
            accounts = runtime.accounts.list_accounts()
        except AccountError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT, json_output=json_output)

        if json_output:
            console.print_json(data={"accounts": [account.to_dict() for account in accounts]})
            op.success("Reported account list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("URL")
        table.add_column("User")
        table.add_column("Auth")
        table.add_column("Server")
        if not accounts:
            table.add_row("(none)", "", "", "", "")
        for account in accounts:
            table.add_row(
                account.id,
                account.url,
                account.user or "",
                account.auth_kind.value if account.auth_kind else "",
                account.server_version or "",
            )
        console.print(table)
        op.success("Reported account list.", changed=0)


@folders_app.command("list")
def folders_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered sync folders."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "folders list",
        args={"json": json_output},
        target={"kind": "folder", "scope": "registry"},
    ) as op:
        try:
            handles = runtime.folders.list_folders()
        except FolderRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT, json_output=json_output)

        if json_output:
            console.print_json(data={"folders": [handle.to_dict() for handle in handles]})
            op.success("Reported folder list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Account")
        table.add_column("Local")
        table.add_column("Remote")
        table.add_column("Hidden files")
        if not handles:
            table.add_row("(none)", "", "", "", "")
        for handle in handles:
            definition = handle.definition
            table.add_row(
                handle.id,
                handle.account_id,
                definition.local_path,
                definition.remote_path,
                "ignored" if definition.ignore_hidden_files else "synced",
            )
        console.print(table)
        op.success("Reported folder list.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["PromptCredentialSupplier", "RuntimeContext", "app", "build_runtime", "main"]
