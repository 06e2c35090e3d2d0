from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the history service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def get_last(self, key: str) -> Dict[str, Any]:
        return self._get(f"/last/{key}")

    def get_history(self, key: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._get(f"/history/{key}", params)

    def get_aggregate(self, key: str, params: Dict[str, Any]) -> Any:
        return self._get(f"/aggregate/{key}", params)

    def get_cumulative(self, key: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._get(f"/cumulative/{key}", params)

    def record(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post("/samples", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = {name: value for name, value in (params or {}).items() if value is not None}
        try:
            response = self._client.get(path, params=query)
            if response.status_code == 404:
                raise typer.BadParameter(self._detail(response) or f"{path} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _detail(response: httpx.Response) -> str | None:
        try:
            data = response.json()
        except ValueError:
            return response.text.strip() or None
        if isinstance(data, dict):
            return data.get("detail")
        return None

    @classmethod
    def _handle_http_error(cls, exc: httpx.HTTPStatusError) -> None:
        detail = cls._detail(exc.response)
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
