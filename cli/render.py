from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_probe(definition: Dict[str, Any]) -> None:
    echo_heading(definition.get("key") or "?")
    echo_key_values(
        [
            ("label", definition.get("label")),
            ("kind", definition.get("kind")),
            ("category", definition.get("measurementCategory") or "-"),
            ("period", definition.get("refreshPeriodSeconds")),
            ("dependencies", ", ".join(definition.get("dependencyKeys") or [])),
        ]
    )
    parameters = definition.get("modelParameters") or {}
    if parameters:
        typer.echo("parameters:")
        for name, value in parameters.items():
            typer.echo(f"  - {name}: {value}")
    typer.echo("formula:")
    for line in str(definition.get("formulaSource") or "").splitlines():
        typer.echo(f"  {line}")


def render_probes(settings: Dict[str, Dict[str, Any]]) -> None:
    if not settings:
        typer.echo("No derived sensors defined.")
        return
    for index, key in enumerate(sorted(settings)):
        if index:
            typer.echo()
        render_probe(settings[key])


def render_series(payload: Dict[str, Any]) -> None:
    metadata = payload.get("metadata") or {}
    echo_heading(f"Derived Series {metadata.get('key', '')}".rstrip())
    echo_key_values(
        [
            ("label", metadata.get("label")),
            ("measurement", metadata.get("measurement")),
            ("unit", metadata.get("userUnit") or metadata.get("unit") or "-"),
            ("count", metadata.get("count")),
            ("dropped", metadata.get("droppedPoints")),
            ("formula_errors", metadata.get("formulaErrors")),
        ]
    )

    points = payload.get("data") or []
    typer.echo()
    echo_heading("Points")
    if points:
        for point in points:
            typer.echo(f"  {point.get('d')}  {point.get('v')}")
    else:
        typer.echo(payload.get("message") or "No points.")
