"""CLI for contentsync: configuration export, bulk pulls and ledger inspection."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import json
from collections import deque
from collections.abc import AsyncIterator, Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from contentsync.config import AppConfig, ensure_dirs, get_base_dir, load_config, save_config
from contentsync.content import MemoryContentStore
from contentsync.errors import RemoteAuthError, RemoteError
from contentsync.logging import ENGINE_LOG, SYNC_LOG, setup_logging
from contentsync.policy.repository import TomlConfigRepository
from contentsync.storage import Database, StatusFlag, StatusLedger
from contentsync.sync import SyncEngine, SyncStats

if TYPE_CHECKING:
    from contentsync.content import ContentStore

app = typer.Typer(
    name="contentsync",
    help="Synchronize content entities between sites through remote pools.",
    add_completion=False,
)
console = Console()

T = TypeVar("T")


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


def _load_store(cfg: AppConfig) -> ContentStore:
    """Build the host content store named by ``engine.content_store``."""
    target = cfg.engine.content_store
    if not target:
        return MemoryContentStore()
    module_name, _, attr = target.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr or "content_store")
    except (ImportError, AttributeError) as exc:
        console.print(f"[red]Cannot load content store[/red] {target!r}: {exc}")
        raise typer.Exit(1) from exc
    return factory()


@contextlib.asynccontextmanager
async def _ledger(cfg: AppConfig | None = None) -> AsyncIterator[StatusLedger]:
    ensure_dirs()
    async with Database((cfg or AppConfig()).db_path) as db:
        yield StatusLedger(db)


@contextlib.asynccontextmanager
async def _engine(cfg: AppConfig) -> AsyncIterator[SyncEngine]:
    setup_logging(cfg.engine.log_level, cfg.log_dir)
    async with _ledger(cfg) as ledger:
        engine = SyncEngine(TomlConfigRepository(cfg), ledger, _load_store(cfg), settings=cfg)
        async with engine:
            yield engine


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run an engine coroutine, turning remote failures into a clean exit."""
    try:
        return asyncio.run(coro)
    except RemoteAuthError as exc:
        console.print(f"[red]Authentication failed:[/red] {exc}")
        raise typer.Exit(1) from exc
    except RemoteError as exc:
        console.print(f"[red]Remote error:[/red] {exc}")
        raise typer.Exit(1) from exc


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _human_time(timestamp: float | None) -> str:
    """Render a unix timestamp relative to now."""
    if timestamp is None:
        return "—"
    diff = (datetime.now(UTC) - datetime.fromtimestamp(timestamp, UTC)).total_seconds()
    if diff < 0:
        return datetime.fromtimestamp(timestamp, UTC).isoformat(timespec="seconds")
    if diff < 60:
        return f"{int(diff)}s ago"
    if diff < 3600:
        return f"{int(diff / 60)} min ago"
    if diff < 86400:
        return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
    return f"{int(diff / 86400)}d ago"


def _flag_by_name(name: str) -> StatusFlag:
    try:
        return StatusFlag[name.upper().replace("-", "_")]
    except KeyError:
        valid = ", ".join(f.name.lower() for f in StatusFlag if f.name)
        console.print(f"[red]Unknown flag:[/red] {name}")
        console.print(f"[dim]Valid flags: {valid}[/dim]")
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# Remote commands
# ---------------------------------------------------------------------------


@app.command(name="export-config")
def export_config(
    flow: str = typer.Option("", "--flow", help="Only export this Flow"),
) -> None:
    """Push Flows and Pools to the remote endpoints so they know this site."""
    cfg = load_config()
    if not cfg.pools:
        console.print("[yellow]No pools configured.[/yellow] Add a [bold]\\[pools.<id>][/bold] table first.")
        raise typer.Exit(1)

    async def _export() -> int:
        async with _engine(cfg) as engine:
            return await engine.export_configuration(flow or None)

    count = _run(_export())
    console.print(f"[green]Exported[/green] {count} configuration record(s).")


@app.command()
def login() -> None:
    """Ask every pool to log in to this site again."""
    cfg = load_config()

    async def _login() -> dict[str, bool]:
        async with _engine(cfg) as engine:
            return await engine.login_all()

    results = _run(_login())
    if not results:
        console.print("[yellow]No pool connections configured.[/yellow]")
        return
    failed = False
    for pool_id, ok in results.items():
        mark = "[green]ok[/green]" if ok else "[red]failed[/red]"
        console.print(f"  {pool_id:20s} {mark}")
        failed = failed or not ok
    if failed:
        raise typer.Exit(1)


@app.command()
def pull(
    flow: str = typer.Option("", "--flow", help="Only pull bundles of this Flow"),
    force: bool = typer.Option(False, "--force", help="Also re-send entities that did not change"),
) -> None:
    """Pull every automatically imported bundle from its pools."""
    cfg = load_config()

    async def _pull() -> SyncStats:
        async with _engine(cfg) as engine:
            return await engine.run_units(engine.pull_all(flow or None, force=force), kind="pull")

    stats = _run(_pull())
    console.print(f"[green]Pull finished[/green]  {_stats_line(stats)}")


@app.command()
def push(
    flow: str = typer.Option("", "--flow", help="Only push bundles of this Flow"),
) -> None:
    """Export every entity of the automatically exported bundles."""
    cfg = load_config()

    async def _push() -> SyncStats:
        async with _engine(cfg) as engine:
            return await engine.run_units(engine.push_all(flow or None), kind="push")

    stats = _run(_push())
    console.print(f"[green]Push finished[/green]  {_stats_line(stats)}")


def _stats_line(stats: SyncStats) -> str:
    data = json.loads(stats.to_json())
    return ", ".join(f"{k}: {v}" for k, v in data.items())


# ---------------------------------------------------------------------------
# Ledger commands
# ---------------------------------------------------------------------------


@app.command(name="reset-status")
def reset_status(
    pool: str = typer.Option("", "--pool", help="Only reset entities of this pool"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Forget when entities were last exported/imported so everything syncs again."""
    scope = f"pool {pool}" if pool else "all pools"
    if not yes and not typer.confirm(f"Reset the synchronization status for {scope}?"):
        console.print("[dim]Aborted.[/dim]")
        raise typer.Exit(1)

    async def _reset() -> int:
        async with _ledger() as ledger:
            return await ledger.reset(pool or None)

    count = asyncio.run(_reset())
    console.print(f"[green]Reset[/green] {count} status row(s) for {scope}.")


@app.command(name="check-flags")
def check_flags(
    uuid: str = typer.Argument(help="Entity UUID"),
    flag: str = typer.Option("", "--flag", help="Only report whether this flag is set"),
) -> None:
    """Show the ledger rows and flags of one entity."""
    wanted = _flag_by_name(flag) if flag else None

    async def _rows():
        async with _ledger() as ledger:
            return await ledger.rows_for_uuid(uuid)

    rows = asyncio.run(_rows())
    if not rows:
        console.print(f"[yellow]No status found for[/yellow] {uuid}")
        raise typer.Exit(1)

    if wanted is not None:
        for row in rows:
            state = "[green]set[/green]" if row.has(wanted) else "[dim]not set[/dim]"
            console.print(f"  {row.flow}/{row.pool}: {wanted.name.lower()} {state}")
        return

    table = Table(title=f"{rows[0].entity_type} {uuid}")
    table.add_column("Flow")
    table.add_column("Pool")
    table.add_column("Last export")
    table.add_column("Last import")
    table.add_column("Flags")
    for row in rows:
        table.add_row(
            row.flow,
            row.pool,
            _human_time(row.last_export),
            _human_time(row.last_import),
            ", ".join(n.lower() for n in row.flag_names) or "—",
        )
    console.print(table)


@app.command()
def report(
    limit: int = typer.Option(10, "--limit", "-l", help="Number of recent failures to list"),
) -> None:
    """Summarise the ledger: flag counts, per-pool counts and recent failures."""

    async def _collect():
        async with _ledger() as ledger:
            return (
                await ledger.count_by_flag(),
                await ledger.count_by_pool(),
                await ledger.recent_failures(limit=limit),
            )

    by_flag, by_pool, failures = asyncio.run(_collect())

    console.print(f"\n[bold]Entities tracked:[/bold] {by_flag.get('total', 0)}\n")
    flags = Table(title="Flags")
    flags.add_column("Flag")
    flags.add_column("Count", justify="right")
    for name, count in by_flag.items():
        if name != "total" and count:
            flags.add_row(name, str(count))
    console.print(flags)

    pools = Table(title="Pools")
    for column in ("Pool", "Total", "Exported", "Imported", "Failed"):
        pools.add_column(column, justify="left" if column == "Pool" else "right")
    for row in by_pool:
        pools.add_row(
            row["pool"],
            str(row["total"]),
            str(row["exported"] or 0),
            str(row["imported"] or 0),
            str(row["failed"] or 0),
        )
    console.print(pools)

    if not failures:
        console.print("[green]No failures recorded.[/green]\n")
        return
    recent = Table(title="Recent failures")
    for column in ("Entity", "Flow", "Pool", "Reason", "Message"):
        recent.add_column(column)
    for status in failures:
        entry = status.export_failure or status.import_failure or {}
        recent.add_row(
            f"{status.entity_type} {status.entity_uuid}",
            status.flow,
            status.pool,
            entry.get("error", "—"),
            entry.get("message", ""),
        )
    console.print(recent)


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of engine.log"),
) -> None:
    """Show recent log output."""
    log_file = get_base_dir() / "logs" / (SYNC_LOG if sync else ENGINE_LOG)
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style for the level found in *line* (console or JSON renderer)."""
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)

_SECTIONS = ("engine", "remote")


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")

    for section_name in _SECTIONS:
        section = getattr(cfg, section_name)
        console.print(f"[bold cyan]\\[{section_name}][/bold cyan]")
        for name in type(section).model_fields:
            value = getattr(section, name)
            if isinstance(value, SecretStr):
                shown = _mask(value)
            else:
                shown = value if value != "" else "[dim](not set)[/dim]"
            console.print(f"  {name:26s} = {shown}")
        console.print()

    console.print("[bold cyan]Pools[/bold cyan]")
    for pool in cfg.pools.values():
        console.print(f"  {pool.id:20s} {pool.backend_url or '[dim](no backend)[/dim]'}  site={pool.site_id}")
    console.print("\n[bold cyan]Flows[/bold cyan]")
    for flow in cfg.flows.values():
        state = "[green]enabled[/green]" if flow.enabled else "[dim]disabled[/dim]"
        console.print(f"  {flow.id:20s} {state}  weight={flow.weight}  bundles={len(flow.bundle_configs())}")
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. remote.timeout_seconds"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. contentsync config set engine.log_level debug)."""

    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. engine.log_level).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    if section_name not in _SECTIONS:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(_SECTIONS)}[/dim]")
        raise typer.Exit(1)

    section_model = getattr(cfg, section_name)
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    section_data = section_model.model_dump(mode="python")
    section_data[field_name] = coerced
    setattr(cfg, section_name, type(section_model)(**section_data))
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: type | None) -> object:
    """Coerce a string value to the expected field type."""
    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    return raw
