"""confighub command line: manage backend credentials and call backends through the gateway.

Commands
--------
  add       Save a credential for a backend
  get       Show one credential (secrets masked unless --show)
  list      List credentials in a rich table
  update    Rotate a credential's secret or edit its settings
  delete    Remove a credential and its encrypted secrets
  test      Test the connection for a stored credential
  request   Send a request through the gateway and print the response
  check     Verify the vault can store, read and delete a secret
  keygen    Generate a master key for CONFIGHUB_MASTER_KEY
  info      Show paths, key source and credential counts
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import warnings
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from . import __version__
from .config import Settings
from .crypto import CredentialCipher
from .errors import ConfigHubError, PartialReadWarning
from .gateway import GatewayResult, RequestGateway
from .keys import describe_key_source, generate_master_key, load_master_key
from .models import AuthMethod, BackendKind, Credential
from .session import SessionManager
from .store import CredentialStore

# ---------------------------------------------------------------------------
# App & consoles
# ---------------------------------------------------------------------------

_THEME = Theme(
    {
        "success": "bold green",
        "warning": "bold yellow",
        "danger": "bold red",
        "muted": "dim",
        "label": "cyan",
        "highlight": "bold white",
    }
)

console = Console(theme=_THEME)
err = Console(stderr=True, theme=_THEME)

app = typer.Typer(
    name="confighub",
    help="[bold cyan]confighub[/bold cyan]: encrypted credentials and sessions for DevOps backends.",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
    rich_markup_mode="rich",
    add_completion=True,
)

# Secret field prompted for each auth method.
_SECRET_FIELD = {
    AuthMethod.TOKEN: "token",
    AuthMethod.USERPASS: "password",
    AuthMethod.LDAP: "password",
    AuthMethod.APPROLE: "secret_id",
    AuthMethod.SSH: "private_key",
}

_MASK = "••••••••••••"

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValidationError as exc:
        err.print(f"[danger]Invalid configuration:[/danger] {exc}")
        raise typer.Exit(1) from exc


def _store(settings: Optional[Settings] = None) -> CredentialStore:
    settings = settings or _settings()
    try:
        key = load_master_key(settings)
    except (ConfigHubError, ValueError) as exc:
        err.print(f"[danger]{exc}[/danger]")
        raise typer.Exit(1) from exc
    return CredentialStore(settings.data_dir, CredentialCipher(key))


def _gateway(store: CredentialStore, settings: Settings) -> RequestGateway:
    sessions = SessionManager(store, safety_margin=settings.safety_margin, timeout=settings.request_timeout)
    return RequestGateway(sessions)


def _print_warnings(caught: list[warnings.WarningMessage]) -> None:
    for w in caught:
        err.print(f"[warning]Warning:[/warning] {w.message}")


def _load_record(store: CredentialStore, credential_id: str) -> tuple[Credential, bool]:
    """The credential and whether its secrets failed to decrypt."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            cred = store.get(credential_id)
        except (ConfigHubError, ValueError) as exc:
            err.print(f"[danger]{exc}[/danger]")
            raise typer.Exit(1) from exc
    _print_warnings(caught)
    if cred is None:
        err.print(f"[danger]No credential with id '[bold]{credential_id}[/bold]'.[/danger]")
        raise typer.Exit(1)
    return cred, any(issubclass(w.category, PartialReadWarning) for w in caught)


def _load(store: CredentialStore, credential_id: str) -> Credential:
    return _load_record(store, credential_id)[0]


def _save(store: CredentialStore, cred: Credential) -> None:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            store.store(cred)
        except ConfigHubError as exc:
            err.print(f"[danger]{exc}[/danger]")
            raise typer.Exit(1) from exc
    _print_warnings(caught)


def _read_secret(label: str, from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    return Prompt.ask(f"  {label} [muted](blank to skip)[/muted]", password=True, default="", console=console)


def _split_tags(tags: Optional[str]) -> list[str]:
    return [t.strip() for t in tags.split(",") if t.strip()] if tags else []


def _parse_query(pairs: Optional[list[str]]) -> Optional[dict[str, str]]:
    if not pairs:
        return None
    query = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            err.print(f"[danger]Query parameters must look like name=value, got '{pair}'.[/danger]")
            raise typer.Exit(1)
        query[name] = value
    return query


def _render_credential(cred: Credential, *, show_secrets: bool = False) -> None:
    body = Text()

    def row(label: str, value: str, style: str = "highlight") -> None:
        body.append(f"  {label:<12}", style="label")
        body.append(value + "\n", style=style)

    row("Kind", cred.kind.value)
    row("Environment", cred.environment)
    row("Server", cred.server_url, style="blue underline")
    row("Auth", cred.auth_method.value)
    if cred.username:
        row("Username", cred.username)
    if cred.namespace:
        row("Namespace", cred.namespace)
    if cred.mount_path:
        row("Mount", cred.mount_path)
    if cred.role:
        row("Role", cred.role)
    for name, value in sorted(cred.sensitive.items()):
        row(name, value if show_secrets else _MASK, style="bold green" if show_secrets else "muted")
    for name, value in sorted(cred.extra.items()):
        row(name, str(value), style="")
    if cred.tags:
        row("Tags", "  ".join(f"#{t}" for t in cred.tags), style="yellow")
    row("Created", cred.created_at.strftime("%Y-%m-%d %H:%M UTC"), style="muted")
    row("Updated", cred.updated_at.strftime("%Y-%m-%d %H:%M UTC"), style="muted")
    row("ID", cred.id, style="muted")

    console.print(
        Panel(body, title=f"[bold cyan]{cred.name}[/bold cyan]", expand=False, border_style="cyan")
    )


def _render_table(creds: list[Credential], title: str = "Credentials") -> None:
    table = Table(
        title=title,
        box=box.ROUNDED,
        header_style="bold cyan",
        show_lines=False,
        highlight=True,
        title_style="bold",
    )
    table.add_column("ID", style="muted", no_wrap=True)
    table.add_column("Name", style="bold white", min_width=16)
    table.add_column("Kind", style="cyan")
    table.add_column("Env", style="magenta")
    table.add_column("Server", style="blue", max_width=40)
    table.add_column("Auth", style="dim")
    table.add_column("Tags", style="yellow")
    table.add_column("Updated", style="muted", no_wrap=True)

    for c in creds:
        table.add_row(
            c.id,
            c.name,
            c.kind.value,
            c.environment,
            c.server_url,
            c.auth_method.value,
            " ".join(f"#{t}" for t in c.tags),
            c.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def _render_result(result: GatewayResult) -> None:
    if not result.ok:
        err.print(f"[danger]{result.error_type}:[/danger] {result.error}")
        raise typer.Exit(1)
    if isinstance(result.data, (dict, list)):
        console.print(Syntax(json.dumps(result.data, indent=2), "json", background_color="default"))
    elif result.data is not None:
        console.print(result.data)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log at DEBUG level.")] = False,
) -> None:
    """Configure logging for every command."""
    level = "DEBUG" if verbose else _settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err, show_path=False, rich_tracebacks=False)],
        force=True,
    )


@app.command()
def add(
    kind: Annotated[BackendKind, typer.Argument(help="Backend kind.")],
    name: Annotated[str, typer.Argument(help="Label for this credential.")],
    url: Annotated[str, typer.Option("--url", help="Backend server URL.")],
    environment: Annotated[str, typer.Option("--env", "-e", help="Environment label.")] = "default",
    auth: Annotated[AuthMethod, typer.Option("--auth", "-a", help="Authentication method.")] = AuthMethod.TOKEN,
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="Username.")] = None,
    namespace: Annotated[Optional[str], typer.Option("--namespace", help="Backend namespace.")] = None,
    mount_path: Annotated[Optional[str], typer.Option("--mount-path", help="Secret engine mount path.")] = None,
    role: Annotated[Optional[str], typer.Option("--role", help="Role for approle / platform identity logins.")] = None,
    tags: Annotated[Optional[str], typer.Option("--tags", "-t", help="Comma-separated tags.")] = None,
    secret_stdin: Annotated[
        bool, typer.Option("--secret-stdin", help="Read the secret from the first line of stdin.")
    ] = False,
) -> None:
    """Save a credential for a backend."""
    store = _store()

    sensitive: dict[str, str] = {}
    field = _SECRET_FIELD.get(auth)
    if field:
        value = _read_secret(field.replace("_", " ").capitalize(), secret_stdin)
        if value:
            sensitive[field] = value

    try:
        cred = Credential(
            name=name,
            kind=kind,
            environment=environment,
            server_url=url,
            auth_method=auth,
            username=username,
            namespace=namespace,
            mount_path=mount_path,
            role=role,
            tags=_split_tags(tags),
            sensitive=sensitive,
        )
    except ValidationError as exc:
        err.print(f"[danger]Invalid credential:[/danger] {exc}")
        raise typer.Exit(1) from exc

    _save(store, cred)
    console.print(f"[success]Credential '[bold]{name}[/bold]' saved[/success] [muted]({cred.id})[/muted]")


@app.command()
def get(
    credential_id: Annotated[str, typer.Argument(help="Credential id.")],
    show: Annotated[bool, typer.Option("--show", "-s", help="Display secrets in plain text.")] = False,
) -> None:
    """Show one credential."""
    _render_credential(_load(_store(), credential_id), show_secrets=show)


@app.command("list")
def list_creds(
    kind: Annotated[Optional[BackendKind], typer.Option("--kind", "-k", help="Filter by backend kind.")] = None,
    environment: Annotated[Optional[str], typer.Option("--env", "-e", help="Filter by environment.")] = None,
    tag: Annotated[Optional[str], typer.Option("--tag", "-t", help="Filter by tag.")] = None,
) -> None:
    """List credentials, most recently updated first."""
    store = _store()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        creds = store.find(kind=kind, environment=environment, tags=[tag] if tag else None)
    _print_warnings(caught)

    if not creds:
        console.print("[muted]No credentials match your query.[/muted]")
        return
    _render_table(creds, title=f"Credentials ({len(creds)} total)")


@app.command()
def update(
    credential_id: Annotated[str, typer.Argument(help="Credential id.")],
    new_name: Annotated[Optional[str], typer.Option("--name", help="Rename the credential.")] = None,
    url: Annotated[Optional[str], typer.Option("--url", help="New server URL.")] = None,
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="New username.")] = None,
    tags: Annotated[Optional[str], typer.Option("--tags", "-t", help="Replace tags (comma-separated).")] = None,
    rotate: Annotated[bool, typer.Option("--rotate", "-r", help="Replace the stored secret.")] = False,
    secret_stdin: Annotated[
        bool, typer.Option("--secret-stdin", help="Read the new secret from the first line of stdin.")
    ] = False,
) -> None:
    """Rotate a credential's secret or edit its settings."""
    store = _store()
    cred, partial = _load_record(store, credential_id)

    changed = False
    if new_name and new_name != cred.name:
        cred.name = new_name
        changed = True
    if url is not None:
        cred.server_url = url
        changed = True
    if username is not None:
        cred.username = username or None
        changed = True
    if tags is not None:
        cred.tags = _split_tags(tags)
        changed = True

    if rotate:
        field = _SECRET_FIELD.get(cred.auth_method)
        if field is None:
            err.print(f"[danger]{cred.auth_method.value} credentials have no secret to rotate.[/danger]")
            raise typer.Exit(1)
        value = _read_secret(f"New {field.replace('_', ' ')}", secret_stdin)
        if value:
            cred.sensitive[field] = value
            changed = True

    if not changed:
        console.print("[muted]No changes made.[/muted]")
        return

    if partial and not cred.sensitive:
        err.print(
            "[danger]The stored secrets could not be decrypted with the current master key.[/danger]\n"
            "  Restore the original key, or supply a new secret with [bold]--rotate[/bold]."
        )
        raise typer.Exit(1)

    _save(store, cred)
    console.print(f"[success]Credential '[bold]{cred.name}[/bold]' updated.[/success]")


@app.command()
def delete(
    credential_id: Annotated[str, typer.Argument(help="Credential id.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
) -> None:
    """Permanently delete a credential and its encrypted secrets."""
    store = _store()

    if not yes:
        confirmed = Confirm.ask(
            f"  Delete '[bold]{credential_id}[/bold]'? [muted]This cannot be undone.[/muted]",
            default=False,
            console=console,
        )
        if not confirmed:
            raise typer.Exit(0)

    try:
        removed = store.delete(credential_id)
    except (ConfigHubError, ValueError) as exc:
        err.print(f"[danger]{exc}[/danger]")
        raise typer.Exit(1) from exc

    if removed:
        console.print(f"[danger]Credential '[bold]{credential_id}[/bold]' deleted.[/danger]")
    else:
        console.print(f"[muted]Nothing stored under '{credential_id}'.[/muted]")


@app.command()
def test(
    credential_id: Annotated[str, typer.Argument(help="Credential id.")],
) -> None:
    """Test the connection for a stored credential."""
    settings = _settings()
    store = _store(settings)
    cred = _load(store, credential_id)

    result = asyncio.run(_gateway(store, settings).test_connection(cred))
    if result.ok:
        console.print(f"[success]Connected to {cred.server_url}[/success] [muted]({cred.session_key})[/muted]")
    else:
        err.print(f"[danger]Connection failed, {result.error_type}:[/danger] {result.error}")
        raise typer.Exit(1)


@app.command("request")
def request_cmd(
    kind: Annotated[BackendKind, typer.Argument(help="Backend kind.")],
    environment: Annotated[str, typer.Argument(help="Environment label.")],
    path: Annotated[str, typer.Argument(help="API path, e.g. /v1/sys/health.")],
    method: Annotated[str, typer.Option("--method", "-X", help="HTTP method.")] = "GET",
    query: Annotated[Optional[list[str]], typer.Option("--query", "-q", help="Query parameter name=value.")] = None,
    data: Annotated[Optional[str], typer.Option("--data", "-d", help="JSON request body.")] = None,
) -> None:
    """Send a request through the gateway and print the response."""
    body: Any = None
    if data is not None:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as exc:
            err.print(f"[danger]Invalid JSON body: {exc}[/danger]")
            raise typer.Exit(1) from exc

    settings = _settings()
    gateway = _gateway(_store(settings), settings)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = asyncio.run(gateway.request(kind, environment, path, method, _parse_query(query), body))
    _print_warnings(caught)
    _render_result(result)


@app.command()
def check() -> None:
    """Verify the vault can store, read back and delete a secret."""
    store = _store()
    if store.check_access():
        console.print("[success]Credential vault is readable and writable.[/success]")
    else:
        err.print("[danger]Credential vault access check failed.[/danger]")
        raise typer.Exit(1)


@app.command()
def keygen() -> None:
    """Generate a master key suitable for CONFIGHUB_MASTER_KEY."""
    key = generate_master_key()
    console.print(
        Panel(
            f"[bold green]{key}[/bold green]",
            title="[bold]New master key[/bold]",
            subtitle="[muted]export CONFIGHUB_MASTER_KEY=…[/muted]",
            border_style="green",
            expand=False,
        )
    )


@app.command()
def info() -> None:
    """Show paths, master key source and credential counts."""
    settings = _settings()

    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Version", __version__)
    table.add_row("Data directory", str(settings.data_dir))
    table.add_row("Metadata table", str(settings.metadata_path))
    table.add_row("Master key", describe_key_source(settings))
    table.add_row("Timeout", f"{settings.request_timeout:g}s")
    table.add_row("Safety margin", f"{settings.safety_margin:g}s")

    if settings.metadata_path.exists():
        store = _store(settings)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            creds = store.list()
        _print_warnings(caught)
        table.add_row("Credentials", str(len(creds)))
        for kind in BackendKind:
            count = sum(1 for c in creds if c.kind == kind)
            if count:
                table.add_row(f"  {kind.value}", str(count))

    console.print(Panel(table, title="[bold cyan]confighub info[/bold cyan]", border_style="cyan", expand=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    app()


if __name__ == "__main__":
    main()
