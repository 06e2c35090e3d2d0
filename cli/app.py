from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_cumulative, render_last, render_samples, render_stats


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Query and record device sensor history.",
    context_settings={"help_option_names": ["-h", "--help"]},
)

_DATE_MIN_HELP = "Window start, ISO-8601 or epoch milliseconds (defaults to 24h before the end)."
_DATE_MAX_HELP = "Window end, ISO-8601 or epoch milliseconds (defaults to now)."


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _range_params(
    date_min: Optional[str],
    date_max: Optional[str],
    **extra: Any,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"date_min": date_min, "date_max": date_max}
    params.update(extra)
    return params


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="History API base URL (defaults to HISTORY_API_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds before an HTTP request is abandoned.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("last")
def last_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Device key, e.g. kitchen@temp or kitchen/temp."),
) -> None:
    """Show the most recent value of a device."""
    state = _get_state(ctx)
    render_last(state.client.get_last(key))


@app.command("history")
def history_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Device key."),
    date_min: Optional[str] = typer.Option(None, "--from", help=_DATE_MIN_HELP),
    date_max: Optional[str] = typer.Option(None, "--to", help=_DATE_MAX_HELP),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum number of samples."),
    descending: bool = typer.Option(False, "--desc", help="Newest samples first."),
) -> None:
    """List raw samples of a device."""
    state = _get_state(ctx)
    params = _range_params(
        date_min,
        date_max,
        limit=limit,
        order="descending" if descending else None,
    )
    render_samples(key, state.client.get_history(key, params))


@app.command("aggregate")
def aggregate_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Device key."),
    date_min: Optional[str] = typer.Option(None, "--from", help=_DATE_MIN_HELP),
    date_max: Optional[str] = typer.Option(None, "--to", help=_DATE_MAX_HELP),
    step: Optional[str] = typer.Option(None, "--step", "-s", help="Bucket width in milliseconds or 'day'."),
    fields: Optional[str] = typer.Option(None, "--fields", "-f", help="Comma-separated fields to return."),
    units: Optional[str] = typer.Option(None, "--units", help="Expected units of the samples."),
) -> None:
    """Show min/max/average/sum statistics, optionally per bucket."""
    state = _get_state(ctx)
    params = _range_params(date_min, date_max, step=step, fields=fields, units=units)
    render_stats(key, state.client.get_aggregate(key, params))


@app.command("cumulative")
def cumulative_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Device key of a counter."),
    date_min: Optional[str] = typer.Option(None, "--from", help=_DATE_MIN_HELP),
    date_max: Optional[str] = typer.Option(None, "--to", help=_DATE_MAX_HELP),
) -> None:
    """Show the reconstructed total of a counter, accounting for resets."""
    state = _get_state(ctx)
    render_cumulative(state.client.get_cumulative(key, _range_params(date_min, date_max)))


@app.command("record")
def record_command(
    ctx: typer.Context,
    device: str = typer.Argument(..., help="Device name."),
    current: str = typer.Argument(..., help="Value; on/off/true/false and numbers are coerced."),
    sensor_type: Optional[str] = typer.Option(None, "--type", "-t", help="Sensor type."),
    units: Optional[str] = typer.Option(None, "--units", "-u"),
    date: Optional[str] = typer.Option(None, "--date", help="Reading time; defaults to now."),
) -> None:
    """Record a single reading."""
    state = _get_state(ctx)
    payload = {"device": device, "current": current, "type": sensor_type, "units": units, "date": date}
    recorded = state.client.record({name: value for name, value in payload.items() if value is not None})
    typer.secho(
        f"Recorded {recorded.get('device_key')} = {recorded.get('value')} at {recorded.get('timestamp')}",
        fg=typer.colors.GREEN,
    )
