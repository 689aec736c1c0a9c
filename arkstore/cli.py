"""
CLI interface for the ark store.

Usage:
    ark link create https://example.com "Example" "An example site"
    ark file append tags https://example.com search,engine
    ark list --tags --scores --sort desc
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from typing_extensions import Annotated

from .api import Store, discover_root
from .errors import ArkError, InvalidPayload, log_exception
from .kinds import AttributeKind, PayloadFormat
from .logging_config import configure_quiet_mode, enable_debug_mode
from .query import SortOrder
from .types import VersionRecord

# Configure quiet mode by default
# Set ARK_VERBOSE=1 to enable debug mode via environment
if os.environ.get("ARK_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"ark {version('ark-store')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_root_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _root_callback(value: Optional[Path]):
    global _root_override
    _root_override = value


app = typer.Typer(
    name="ark",
    help="Manage ARK tag, score and property storages and the resource index.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
link_app = typer.Typer(help="Create and load links.", no_args_is_help=True)
file_app = typer.Typer(help="Append to and read attribute storages.", no_args_is_help=True)
app.add_typer(link_app, name="link")
app.add_typer(file_app, name="file")


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
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    root: Annotated[Optional[Path], typer.Option(
        "--root", "-r",
        envvar="ARK_ROOT",
        help="Root folder of the store (default: nearest folder with .ark, else the working directory)",
        callback=_root_callback,
        is_eager=True,
    )] = None,
):
    """Manage ARK tag, score and property storages and the resource index."""


def _get_store() -> Store:
    """Open the store for the current invocation."""
    root = _root_override
    if root is None:
        root = discover_root() or Path.cwd()
    try:
        return Store(root)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _run(context: str, fn: Callable[[Store], Any]) -> Any:
    """Run fn against the store, mapping errors to messages and exit codes."""
    store = _get_store()
    try:
        return fn(store)
    except ArkError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(e.exit_code)
    except Exception as e:
        log_path = log_exception(e, context, root=store.root)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)
    finally:
        store.close()


def _parse_kind(value: str) -> AttributeKind:
    try:
        return AttributeKind.parse(value)
    except InvalidPayload as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(e.exit_code)


def _parse_format(value: str) -> PayloadFormat:
    try:
        return PayloadFormat.parse(value)
    except InvalidPayload as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(e.exit_code)


def _render_value(kind: AttributeKind, value: Any) -> str:
    if _get_json_output():
        if kind is AttributeKind.TAG_SET:
            value = sorted(value)
        return json.dumps(value, ensure_ascii=False)
    if kind is AttributeKind.TAG_SET:
        return ",".join(sorted(value))
    if kind is AttributeKind.PROPERTY_MAP:
        return json.dumps(value, ensure_ascii=False, indent=2)
    return str(value)


def _render_record(record: VersionRecord) -> str:
    if record.kind is AttributeKind.TAG_SET:
        payload = ",".join(sorted(record.payload))
    elif record.kind is AttributeKind.PROPERTY_MAP:
        payload = json.dumps(record.payload, ensure_ascii=False)
    else:
        payload = str(record.payload)
    return f"{record.version_number}\t{record.timestamp}\t{payload}"


def _record_to_dict(record: VersionRecord) -> dict:
    payload = sorted(record.payload) if record.kind is AttributeKind.TAG_SET else record.payload
    return {
        "version": record.version_number,
        "timestamp": record.timestamp,
        "payload": payload,
    }


KindArgument = Annotated[str, typer.Argument(
    help="Attribute kind: tags, scores or properties (or tag-set, score-series, property-map)"
)]
IdArgument = Annotated[str, typer.Argument(help="Resource id, or the URL/path it was created from")]


# -----------------------------------------------------------------------------
# Links
# -----------------------------------------------------------------------------

@link_app.command("create")
def link_create(
    url: Annotated[str, typer.Argument(help="URL or path of the resource")],
    title: Annotated[str, typer.Argument(help="Title")],
    desc: Annotated[Optional[str], typer.Argument(help="Description")] = None,
):
    """
    Create a resource from a URL or path.

    \b
    Examples:
        ark link create https://google.com Google "Search engine"
    """
    resource = _run("link create", lambda s: s.create(url, {"title": title, "desc": desc}))
    if _get_json_output():
        typer.echo(json.dumps(resource.to_dict(), ensure_ascii=False))
    else:
        typer.echo(resource.id)


@link_app.command("load")
def link_load(ref: IdArgument):
    """Show a resource's metadata."""
    resource = _run("link load", lambda s: s.resolve(ref))
    if _get_json_output():
        typer.echo(json.dumps(resource.to_dict(), ensure_ascii=False))
        return
    typer.echo(f"id:       {resource.id}")
    typer.echo(f"key:      {resource.defining_key}")
    for name, value in sorted(resource.display_fields.items()):
        typer.echo(f"{name + ':':<9} {value}")
    typer.echo(f"created:  {resource.created_at}")
    typer.echo(f"modified: {resource.modified_at}")


# -----------------------------------------------------------------------------
# Attribute storages
# -----------------------------------------------------------------------------

@file_app.command("append")
def file_append(
    kind: KindArgument,
    ref: IdArgument,
    content: Annotated[str, typer.Argument(help="Payload: tags a,b / score 15 / properties k=v or JSON")],
    fmt: Annotated[str, typer.Option(
        "--format", "-f",
        help="Payload format: raw (comma list, number, key=value pairs) or json"
    )] = "raw",
):
    """
    Append a version to a resource's tags, scores or properties.

    \b
    Examples:
        ark file append tags https://google.com search,engine
        ark file append scores https://google.com 15
        ark file append properties https://google.com lang=en,kind=search
        ark file append properties https://google.com '{"rank": 1}' --format json
    """
    parsed_kind = _parse_kind(kind)
    parsed_fmt = _parse_format(fmt)
    record = _run("file append", lambda s: s.append(ref, parsed_kind, content, fmt=parsed_fmt))
    if _get_json_output():
        typer.echo(json.dumps(_record_to_dict(record), ensure_ascii=False))
    else:
        typer.echo(f"{record.kind.folder} v{record.version_number} for {record.resource_id}")


@file_app.command("read")
def file_read(kind: KindArgument, ref: IdArgument):
    """Print the current value of a resource's tags, score or properties."""
    parsed_kind = _parse_kind(kind)
    value = _run("file read", lambda s: s.read_current(ref, parsed_kind))
    typer.echo(_render_value(parsed_kind, value))


@file_app.command("versions")
def file_versions(kind: KindArgument, ref: IdArgument):
    """List every version of a resource's tags, scores or properties."""
    parsed_kind = _parse_kind(kind)
    records = _run("file versions", lambda s: s.list_versions(ref, parsed_kind))
    if _get_json_output():
        typer.echo(json.dumps([_record_to_dict(r) for r in records], ensure_ascii=False))
        return
    for record in records:
        typer.echo(_render_record(record))


@file_app.command("list")
def file_list(kind: KindArgument):
    """List ids of resources that have history of a kind."""
    parsed_kind = _parse_kind(kind)
    ids = _run("file list", lambda s: s.list_resources(parsed_kind))
    if _get_json_output():
        typer.echo(json.dumps(ids))
        return
    for resource_id in ids:
        typer.echo(resource_id)


# -----------------------------------------------------------------------------
# Index
# -----------------------------------------------------------------------------

@app.command("list")
def list_resources(
    fields: Annotated[Optional[str], typer.Option(
        "--fields", "-f",
        help="Comma-separated fields: id,path,timestamp,created,fields,tags,scores,history"
    )] = None,
    timestamp: Annotated[bool, typer.Option("--timestamp", "-t", help="Include modification time")] = False,
    tags: Annotated[bool, typer.Option("--tags", help="Include tags")] = False,
    scores: Annotated[bool, typer.Option("--scores", help="Include current score")] = False,
    sort: Annotated[Optional[SortOrder], typer.Option(
        "--sort", "-s", help="Sort by score: asc or desc"
    )] = None,
    tag_filter: Annotated[Optional[str], typer.Option(
        "--filter", help="Only resources carrying this tag (comma-separated: all of them)"
    )] = None,
):
    """
    List resources with their tags and scores.

    \b
    Examples:
        ark list                         # ids and paths
        ark list --tags --scores         # decorated
        ark list --scores --sort desc    # best scored first
        ark list --filter engine         # tagged 'engine'
    """
    selected = [f.strip() for f in fields.split(",") if f.strip()] if fields else ["id", "path"]
    for flag, name in ((timestamp, "timestamp"), (tags, "tags"), (scores, "scores")):
        if flag and name not in selected:
            selected.append(name)

    rows = _run("list", lambda s: s.query(filter_by_tag=tag_filter, sort_by_score=sort, project=selected))

    if _get_json_output():
        typer.echo(json.dumps(rows, ensure_ascii=False))
        return
    for row in rows:
        cells = []
        for name in selected:
            value = row[name]
            if name == "tags":
                value = ",".join(value)
            elif value is None:
                value = "-"
            elif isinstance(value, (dict, list)):
                value = json.dumps(value, ensure_ascii=False)
            cells.append(str(value))
        typer.echo("\t".join(cells))


# -----------------------------------------------------------------------------
# Maintenance
# -----------------------------------------------------------------------------

@app.command("backup")
def backup(dest: Annotated[Path, typer.Argument(help="Folder that receives timestamped backups")]):
    """Copy the store's .ark folder into DEST/<timestamp>/."""
    target = _run("backup", lambda s: s.backup(dest))
    typer.echo(str(target))


@app.command("collisions")
def collisions():
    """Report resources whose keys no longer derive to their ids."""
    report = _run("collisions", lambda s: s.collisions())
    if _get_json_output():
        typer.echo(json.dumps(report, ensure_ascii=False))
        return
    if not report:
        typer.echo("No collisions.")
        return
    for resource_id, keys in sorted(report.items()):
        typer.echo(f"{resource_id} calculated {len(keys)} time(s): {', '.join(keys)}")


def main():
    app()


if __name__ == "__main__":
    main()
