from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer

from app.schemas import ProbeKind
from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_probe, render_probes, render_series
from models.records import parse_timestamp
from services.errors import DerivedMetricsError

T = TypeVar("T")


@dataclass
class CLIState:
    config: CLIConfig


app = typer.Typer(
    help="Edit derived sensor catalogs and read derived series.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
probes_app = typer.Typer(help="Manage derived sensor definitions.")
app.add_typer(probes_app, name="probes")


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.find_object(CLIState)
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


def _run(state: CLIState, operation: Callable[[ApiClient], Awaitable[T]]) -> T:
    async def runner() -> T:
        client = ApiClient(state.config)
        try:
            return await operation(client)
        finally:
            await client.aclose()

    try:
        return asyncio.run(runner())
    except DerivedMetricsError as exc:
        typer.secho(f"Request failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _parse_parameters(values: Optional[List[str]]) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {}
    for item in values or []:
        name, separator, raw = item.partition("=")
        if not separator or not name.strip():
            raise typer.BadParameter(f"Expected name=value, got {item!r}.")
        try:
            parameters[name.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            parameters[name.strip()] = raw
    return parameters


def _parse_moment(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise typer.BadParameter(f"{option} must be an ISO 8601 timestamp.") from exc


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    station: Optional[str] = typer.Option(
        None,
        "--station",
        "-s",
        help="Station identifier (defaults to STATION_ID env or 'station').",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds before a request is abandoned.",
    ),
) -> None:
    """Entry point for the CLI."""
    ctx.obj = CLIState(config=load_config(base_url=base_url, station_id=station, timeout=timeout))


@probes_app.command("list")
def list_command(
    ctx: typer.Context,
    kind: ProbeKind = typer.Option(ProbeKind.composite, "--kind", "-k", help="Catalog to read."),
) -> None:
    """Show every derived sensor of a catalog."""
    state = _get_state(ctx)
    settings = _run(state, lambda client: client.list_probes(kind))
    render_probes(settings)


@probes_app.command("set")
def set_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Derived sensor key; '_calc' is appended when missing."),
    formula: Optional[str] = typer.Option(None, "--formula", "-f", help="Formula source."),
    formula_file: Optional[Path] = typer.Option(
        None, "--formula-file", exists=True, dir_okay=False, readable=True, help="Read the formula from a file."
    ),
    label: Optional[str] = typer.Option(None, "--label", help="Display label."),
    comment: Optional[str] = typer.Option(None, "--comment", help="Free-form comment."),
    category: Optional[str] = typer.Option(None, "--category", help="Measurement category for units."),
    period: Optional[int] = typer.Option(None, "--period", min=0, help="Refresh period in seconds."),
    param: Optional[List[str]] = typer.Option(
        None, "--param", "-p", help="Model parameter as name=value (repeatable)."
    ),
    kind: ProbeKind = typer.Option(ProbeKind.composite, "--kind", "-k", help="Catalog to write."),
) -> None:
    """Create or update a derived sensor."""
    state = _get_state(ctx)
    if formula_file is not None:
        formula = formula_file.read_text(encoding="utf-8")
    if not formula or not formula.strip():
        raise typer.BadParameter("Provide --formula or --formula-file.")
    parameters = _parse_parameters(param)

    stored = _run(
        state,
        lambda client: client.set_probe(
            kind,
            key,
            formula,
            label=label,
            comment=comment,
            category=category,
            period=period,
            parameters=parameters,
        ),
    )
    typer.secho(f"Saved {stored.get('key', key)}.", fg=typer.colors.GREEN)
    render_probe(stored)


@probes_app.command("remove")
def remove_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Derived sensor key."),
    kind: ProbeKind = typer.Option(ProbeKind.composite, "--kind", "-k", help="Catalog to write."),
) -> None:
    """Delete a derived sensor."""
    state = _get_state(ctx)
    remaining = _run(state, lambda client: client.remove_probe(kind, key))
    typer.secho(f"Removed {key}. {len(remaining)} definition(s) left.", fg=typer.colors.GREEN)


@app.command("series")
def series_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Derived sensor key."),
    start: Optional[str] = typer.Option(None, "--start", help="Window start (ISO 8601)."),
    end: Optional[str] = typer.Option(None, "--end", help="Window end (ISO 8601)."),
    step_count: Optional[int] = typer.Option(None, "--step-count", min=1, help="Points requested per raw series."),
) -> None:
    """Fetch a derived series and print it."""
    state = _get_state(ctx)
    start_at = _parse_moment(start, "--start")
    end_at = _parse_moment(end, "--end")
    payload = _run(
        state,
        lambda client: client.get_series(key, start=start_at, end=end_at, step_count=step_count),
    )
    render_series(payload)
