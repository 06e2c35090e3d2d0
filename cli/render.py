from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _flatten(value: Any) -> Any:
    # min/max and rate extremes arrive as {"value", "timestamp"} objects
    if isinstance(value, dict) and "value" in value:
        return f"{value.get('value')} @ {value.get('timestamp')}"
    return value


def render_last(payload: Dict[str, Any]) -> None:
    echo_heading(f"Last value of {payload.get('device_key')}")
    echo_key_values(
        [
            ("value", payload.get("value")),
            ("timestamp", payload.get("timestamp")),
            ("units", payload.get("units")),
        ]
    )


def render_samples(key: str, samples: List[Dict[str, Any]]) -> None:
    echo_heading(f"History of {key}")
    if not samples:
        typer.echo("No samples recorded.")
        return
    for sample in samples:
        units = sample.get("units")
        suffix = f" {units}" if units else ""
        typer.echo(f"  - {sample.get('timestamp')}: {sample.get('value')}{suffix}")


def render_stats(key: str, payload: Any) -> None:
    echo_heading(f"Statistics of {key}")
    if payload is None:
        typer.echo("No data in range.")
        return
    if isinstance(payload, dict):
        echo_key_values((name, _flatten(value)) for name, value in payload.items())
        return
    for index, bucket in enumerate(payload):
        if index:
            typer.echo()
        echo_key_values((name, _flatten(value)) for name, value in bucket.items())


def render_cumulative(payload: Dict[str, Any]) -> None:
    echo_heading(f"Counter of {payload.get('device_key')}")
    echo_key_values(
        [
            ("current", payload.get("current")),
            ("count", payload.get("count")),
            ("count_changes", payload.get("count_changes")),
            ("start_date", payload.get("start_date")),
            ("end_date", payload.get("end_date")),
        ]
    )
