from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import typer

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_TIMEOUT = 30.0

BASE_URL_ENV = "HISTORY_API_URL"
TIMEOUT_ENV = "HISTORY_API_TIMEOUT"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT


def _positive_seconds(raw: Optional[str]) -> float:
    try:
        seconds = float((raw or "").strip())
    except ValueError:
        return DEFAULT_TIMEOUT
    return seconds if seconds > 0 else DEFAULT_TIMEOUT


def _normalize_url(url: str) -> str:
    candidate = url.strip().rstrip("/")
    if not candidate.startswith(("http://", "https://")):
        raise typer.BadParameter(f"Base URL {url!r} must start with http:// or https://.")
    return candidate


def load_config(
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CLIConfig:
    """Command-line values win over ``HISTORY_API_*`` variables, which win over defaults."""
    url = base_url or os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL
    seconds = timeout if timeout is not None and timeout > 0 else _positive_seconds(os.getenv(TIMEOUT_ENV))
    return CLIConfig(base_url=_normalize_url(url), timeout=seconds)
