"""
Tomos CLI - symbol-level code editing through language servers.

Every command prints JSON on stdout; logs go to stderr. Edit commands exit
with status 1 when the edit fails.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from tomos import __version__
from tomos.cli._context import cli_workspace_scope
from tomos.constants import CONFIG_DIR_NAME, CONFIG_FILE_NAME
from tomos.lsp.binary import is_binary_available
from tomos.lsp.settings import ClientSettings
from tomos.types.core import EditOperation, EditResult
from tomos.types.errors import TomosError
from tomos.utils.logger import configure_logging

root_option = click.option(
    "--root",
    "-r",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    show_default=True,
    help="Workspace root",
)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: TomosError) -> None:
    _echo_json({"success": False, "error": error.code.value, "message": error.message})
    sys.exit(1)


def _finish_edit(result: EditResult) -> None:
    _echo_json(result.to_dict())
    if not result.success:
        sys.exit(1)


def _read_code(code: str | None, code_file: str | None) -> str:
    if code is not None and code_file is not None:
        raise click.UsageError("Use either --code or --code-file, not both")
    if code_file is not None:
        return Path(code_file).read_text(encoding="utf-8")
    if code is None:
        raise click.UsageError("One of --code or --code-file is required")
    return code


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="Tomos", message="%(prog)s v%(version)s")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Tomos - Surgical Code Editing over the Language Server Protocol.

    Find, insert, replace, delete and rename code one named symbol at a
    time, with a language server resolving every position.
    """
    configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ============================================================================
# Setup and status
# ============================================================================


@cli.command()
@click.argument("path", type=click.Path(file_okay=False), default=".")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(path: str, force: bool) -> None:
    """Write a default .tomos/config.json into PATH."""
    root = Path(path).resolve()
    config_file = root / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if config_file.exists() and not force:
        click.echo(f"Config already exists: {config_file} (use --force to overwrite)")
        return

    settings = ClientSettings()
    data = settings.to_dict()
    servers = data.pop("servers")
    config = {"version": __version__, "settings": data, "servers": servers}
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
    click.echo(f"Tomos initialized: {config_file}")


@cli.command()
@root_option
def status(root: str) -> None:
    """Show configured language servers and whether their binaries resolve."""
    try:
        settings = ClientSettings.load(root)
    except TomosError as e:
        _fail(e)
        return
    _echo_json(
        {
            "root": root,
            "servers": {
                language: {
                    "command": config.command,
                    "extensions": config.extensions,
                    "available": is_binary_available(config.command),
                }
                for language, config in sorted(settings.servers.items())
            },
        }
    )


# ============================================================================
# Navigation
# ============================================================================


@cli.command()
@click.argument("file")
@root_option
def symbols(file: str, root: str) -> None:
    """List every symbol in FILE."""
    with cli_workspace_scope(root) as ctx:
        try:
            found = ctx.get_edit_service().get_all_symbols(file)
        except TomosError as e:
            _fail(e)
            return
        _echo_json([s.to_dict() for s in found])


@cli.command()
@click.argument("file")
@click.argument("name")
@root_option
def find(file: str, name: str, root: str) -> None:
    """Find the symbol NAME (or Container/name) in FILE."""
    with cli_workspace_scope(root) as ctx:
        try:
            symbol = ctx.get_edit_service().find_symbol(file, name)
        except TomosError as e:
            _fail(e)
            return
        if symbol is None:
            _echo_json({"found": False, "name": name})
            sys.exit(1)
        _echo_json({"found": True, **symbol.to_dict()})


@cli.command()
@click.argument("file")
@click.argument("line", type=int)
@click.argument("col", type=int)
@root_option
def hover(file: str, line: int, col: int, root: str) -> None:
    """Show hover information (type) at LINE:COL of FILE (0-based)."""
    with cli_workspace_scope(root) as ctx:
        try:
            text = ctx.get_edit_service().get_type_inference(file, line, col)
        except TomosError as e:
            _fail(e)
            return
        _echo_json({"hover": text})


@cli.command()
@click.argument("file")
@click.argument("name")
@root_option
def references(file: str, name: str, root: str) -> None:
    """List references to the symbol NAME defined in FILE."""
    with cli_workspace_scope(root) as ctx:
        try:
            locations = ctx.get_edit_service().find_references(file, name)
        except TomosError as e:
            _fail(e)
            return
        _echo_json([loc.to_dict() for loc in locations])


@cli.command()
@click.argument("file")
@root_option
def diagnostics(file: str, root: str) -> None:
    """Show the diagnostics the language server reports for FILE."""
    with cli_workspace_scope(root) as ctx:
        try:
            found = ctx.get_edit_service().get_diagnostics(file)
        except TomosError as e:
            _fail(e)
            return
        _echo_json([d.to_dict() for d in found])


# ============================================================================
# Edits
# ============================================================================


@cli.command("insert-after")
@click.argument("file")
@click.argument("name")
@click.option("--code", help="Code to insert")
@click.option("--code-file", type=click.Path(exists=True, dir_okay=False), help="Read the code from a file")
@root_option
def insert_after(file: str, name: str, code: str | None, code_file: str | None, root: str) -> None:
    """Insert code after the symbol NAME in FILE."""
    new_code = _read_code(code, code_file)
    with cli_workspace_scope(root) as ctx:
        _finish_edit(ctx.get_edit_service().insert_after_symbol(file, name, new_code))


@cli.command()
@click.argument("file")
@click.argument("name")
@click.option("--code", help="Replacement code")
@click.option("--code-file", type=click.Path(exists=True, dir_okay=False), help="Read the code from a file")
@root_option
def replace(file: str, name: str, code: str | None, code_file: str | None, root: str) -> None:
    """Replace the whole definition of NAME in FILE."""
    new_code = _read_code(code, code_file)
    with cli_workspace_scope(root) as ctx:
        _finish_edit(ctx.get_edit_service().replace_symbol(file, name, new_code))


@cli.command()
@click.argument("file")
@click.argument("name")
@root_option
def delete(file: str, name: str, root: str) -> None:
    """Delete the definition of NAME from FILE."""
    with cli_workspace_scope(root) as ctx:
        _finish_edit(ctx.get_edit_service().delete_symbol(file, name))


@cli.command()
@click.argument("file")
@click.argument("old_name")
@click.argument("new_name")
@click.option("--dry-run", is_flag=True, help="Show the edits without applying them")
@root_option
def rename(file: str, old_name: str, new_name: str, dry_run: bool, root: str) -> None:
    """Rename OLD_NAME (defined in FILE) to NEW_NAME across the workspace."""
    with cli_workspace_scope(root) as ctx:
        _finish_edit(ctx.get_edit_service().refactor_symbol(file, old_name, new_name, dry_run=dry_run))


@cli.command()
@click.argument("ops_file", type=click.Path(exists=True, dir_okay=False))
@root_option
def batch(ops_file: str, root: str) -> None:
    """Run the edit operations listed in OPS_FILE (a JSON array) in order.

    Stops at the first failure. Each entry has "type", "uri",
    "symbol_name" and, depending on the type, "code" or "new_name".
    """
    try:
        raw = json.loads(Path(ops_file).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise click.UsageError(f"{ops_file} must contain a JSON array")
        ops = [EditOperation.from_dict(item) for item in raw]
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        raise click.UsageError(f"Invalid operations file {ops_file}: {e}") from e

    with cli_workspace_scope(root) as ctx:
        results = ctx.get_edit_service().perform_batch_edits(ops)
    _echo_json(
        {
            "total": len(ops),
            "completed": len(results),
            "results": [r.to_dict() for r in results],
        }
    )
    if not all(r.success for r in results):
        sys.exit(1)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
