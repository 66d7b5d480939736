"""
CLI interface for depot.

Usage:
    depot name "Ada"                 # create a persona, print its recovery code
    depot --as <id> upload report.pdf
    depot --as <id> list --search report
    depot recover ABCD1234
"""

import json
import os
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .api import DEFAULT_PAGE_SIZE, Depot
from .errors import DepotError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Caller


# Configure quiet mode by default
# Set DEPOT_VERBOSE=1 to enable debug mode via environment
if os.environ.get("DEPOT_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"depot {version('depot')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_data_dir_override: Optional[Path] = None
_caller_id: str = ""


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _data_dir_callback(value: Optional[Path]):
    global _data_dir_override
    _data_dir_override = value


def _as_callback(value: Optional[str]):
    global _caller_id
    _caller_id = value or ""


def _get_caller() -> Caller:
    return Caller(persona_id=_caller_id)


app = typer.Typer(
    name="depot",
    help="Persona-scoped file sharing.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    data_dir: Annotated[Optional[Path], typer.Option(
        "--data-dir", "-d",
        envvar="DEPOT_DATA_DIR",
        help="Data directory (default: ~/.depot)",
        callback=_data_dir_callback,
        is_eager=True,
    )] = None,
    as_persona: Annotated[Optional[str], typer.Option(
        "--as",
        envvar="DEPOT_CLIENT_ID",
        help="Act as this persona id",
        callback=_as_callback,
        is_eager=True,
    )] = None,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Persona-scoped file sharing."""


def _get_depot() -> Depot:
    """Open the service, handling errors gracefully."""
    import atexit

    try:
        depot = Depot(_data_dir_override)
    except Exception as e:
        log_path = log_exception(e, "open")
        typer.echo(f"Error: {e} (details in {log_path})", err=True)
        raise typer.Exit(1)
    atexit.register(depot.close)
    return depot


def _fail(e: DepotError, context: str) -> None:
    log_exception(e, context)
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


def _emit(data: Any, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


def _format_time(ts: int) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _format_file(f: dict) -> str:
    return (
        f"{f['id']}  {_format_time(f['upload_time'])}  {_format_size(f['size']):>9}  "
        f"{f['owner_name']:<12}  {f['original_name']}"
    )


# -----------------------------------------------------------------------------
# Persona Commands
# -----------------------------------------------------------------------------

@app.command()
def persona():
    """Show the current persona (anonymous if --as is not set or unknown)."""
    depot = _get_depot()
    info = depot.get_persona(_get_caller())
    if info["name"]:
        text = f"{info['persona']}: {info['name']} ({info['id']})\nrecovery code: {info['recovery_code']}"
    else:
        text = f"{info['persona']}: anonymous"
    _emit(info, text)


@app.command()
def name(
    display_name: Annotated[str, typer.Argument(help="Display name to save")],
):
    """
    Set the display name, creating the persona on first use.

    \b
    Prints the persona id and its recovery code. Keep the code: it is
    the only way to get this persona back on another device.
    """
    depot = _get_depot()
    caller = _get_caller()
    if not caller.persona_id:
        # First contact: any placeholder id works, the real one is derived
        caller = Caller(persona_id="anonymous")
    try:
        result = depot.set_name(caller, display_name)
    except DepotError as e:
        _fail(e, "name")
    _emit(result, f"id: {result['id']}\nrecovery code: {result['recovery_code']}")


@app.command()
def recover(
    code: Annotated[str, typer.Argument(help="Recovery code")],
):
    """Recover a persona id from its recovery code."""
    depot = _get_depot()
    try:
        result = depot.recover(code)
    except DepotError as e:
        _fail(e, "recover")
    _emit(result, f"{result['persona']}: {result['name']} ({result['id']})")


@app.command()
def admin(
    secret: Annotated[str, typer.Option(
        "--secret",
        prompt=True,
        hide_input=True,
        help="Shared admin secret",
    )],
):
    """Escalate the current persona to admin."""
    depot = _get_depot()
    try:
        result = depot.activate_admin(_get_caller(), secret)
    except DepotError as e:
        _fail(e, "admin")
    _emit(result, "Admin activated.")


@app.command("personas")
def list_personas():
    """List every persona (admin only)."""
    depot = _get_depot()
    try:
        personas = depot.list_personas(_get_caller())
    except DepotError as e:
        _fail(e, "personas")
    lines = [
        f"{p['id']}  {p['recovery_code']}  {'admin ' if p['is_admin'] else 'client'}  "
        f"{_format_time(p['last_active'])}  {p['name']}"
        for p in personas
    ]
    _emit(personas, "\n".join(lines) if lines else "No personas.")


@app.command("persona-update")
def persona_update(
    id: Annotated[str, typer.Argument(help="Persona id")],
    display_name: Annotated[str, typer.Option("--name", help="Display name")],
    code: Annotated[str, typer.Option("--code", help="Recovery code")],
    is_admin: Annotated[bool, typer.Option("--admin/--client", help="Admin flag")] = False,
):
    """Edit a persona (admin only)."""
    depot = _get_depot()
    try:
        result = depot.update_persona(
            _get_caller(), id, name=display_name, recovery_code=code, is_admin=is_admin,
        )
    except DepotError as e:
        _fail(e, "persona-update")
    _emit(result, f"Updated {id}")


@app.command("persona-rm")
def persona_rm(
    id: Annotated[str, typer.Argument(help="Persona id")],
):
    """Delete a persona (admin only)."""
    depot = _get_depot()
    try:
        result = depot.delete_persona(_get_caller(), id)
    except DepotError as e:
        _fail(e, "persona-rm")
    _emit(result, f"Deleted {id}")


# -----------------------------------------------------------------------------
# File Commands
# -----------------------------------------------------------------------------

@app.command()
def upload(
    path: Annotated[Path, typer.Argument(
        exists=True, dir_okay=False, readable=True, help="File to upload",
    )],
):
    """Upload a file as the current persona."""
    depot = _get_depot()
    try:
        with open(path, "rb") as f:
            record = depot.upload(_get_caller(), path.name, f)
    except DepotError as e:
        _fail(e, "upload")
    _emit(record, f"{record['id']}  link: {record['download_link']}")


@app.command("list")
def list_files(
    search: Annotated[str, typer.Option("--search", "-s", help="Name substring")] = "",
    page: Annotated[int, typer.Option("--page", "-p", help="Page number")] = 1,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Page size")] = DEFAULT_PAGE_SIZE,
):
    """
    List files visible to the current persona, newest first.

    \b
    Examples:
        depot --as <id> list
        depot --as <id> list --search report --page 2
    """
    depot = _get_depot()
    try:
        result = depot.list_files(_get_caller(), search=search, page=page, limit=limit)
    except DepotError as e:
        _fail(e, "list")
    lines = [_format_file(f) for f in result["files"]]
    lines.append(f"{len(result['files'])} of {result['total']}")
    _emit(result, "\n".join(lines))


@app.command()
def info(
    id: Annotated[str, typer.Argument(help="File id")],
):
    """Show file metadata."""
    depot = _get_depot()
    try:
        record = depot.get_file(id)
    except DepotError as e:
        _fail(e, "info")
    _emit(record, "\n".join(f"{k}: {v}" for k, v in record.items()))


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="File id")],
    original_name: Annotated[str, typer.Option("--name", help="New file name")],
    owner: Annotated[str, typer.Option("--owner", help="New owner persona id ('' for system)")],
):
    """Rename a file or transfer its ownership (admin only)."""
    depot = _get_depot()
    try:
        record = depot.update_file(_get_caller(), id, original_name=original_name, owner_id=owner)
    except DepotError as e:
        _fail(e, "update")
    _emit(record, _format_file(record))


@app.command()
def public(
    id: Annotated[str, typer.Argument(help="File id")],
    make_public: Annotated[bool, typer.Option("--on/--off", help="Public flag")] = True,
):
    """Mark a file public or private (owner or admin)."""
    depot = _get_depot()
    try:
        record = depot.set_public(_get_caller(), id, make_public)
    except DepotError as e:
        _fail(e, "public")
    _emit(record, f"{record['id']} public={record['is_public']}")


@app.command()
def rm(
    id: Annotated[str, typer.Argument(help="File id")],
):
    """Delete a file (owner or admin)."""
    depot = _get_depot()
    try:
        result = depot.delete_file(_get_caller(), id)
    except DepotError as e:
        _fail(e, "rm")
    _emit(result, f"Deleted {id}")


@app.command()
def download(
    id_or_link: Annotated[str, typer.Argument(help="File id or public download link")],
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o", help="Destination (default: original name in cwd, '-' for stdout)",
    )] = None,
):
    """Download a file by id or public link."""
    depot = _get_depot()
    try:
        record, stream = depot.open_download(id_or_link)
    except DepotError as e:
        _fail(e, "download")
    with stream:
        if output is not None and str(output) == "-":
            shutil.copyfileobj(stream, sys.stdout.buffer)
            return
        target = output if output is not None else Path(record["original_name"])
        with open(target, "wb") as f:
            shutil.copyfileobj(stream, f)
    typer.echo(f"Saved {target}", err=True)


def main():
    app()


if __name__ == "__main__":
    main()
