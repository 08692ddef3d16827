"""Shared runtime helpers for Python sidecar services."""

from __future__ import annotations

import os
from typing import Optional

import httpx

DEFAULT_PROVIDER_CONNECT_TIMEOUT = 5.0
DEFAULT_PROVIDER_TIMEOUT = 8.0

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def env_int(name: str, default: str) -> int:
    """Parse an integer env var using a string default value."""
    return int(os.getenv(name, default))


def env_float(name: str, default: str) -> float:
    """Parse a float env var using a string default value."""
    return float(os.getenv(name, default))


def env_bool(name: str, default: bool = False) -> bool:
    """Parse a boolean env var; unset or blank falls back to the default."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY_VALUES


def env_list(name: str, default: list[str]) -> list[str]:
    """Parse a comma-separated env var, dropping blank entries."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def provider_timeout(seconds: float = DEFAULT_PROVIDER_TIMEOUT) -> httpx.Timeout:
    """Return the per-call timeout for outbound provider requests."""
    return httpx.Timeout(
        seconds,
        connect=min(DEFAULT_PROVIDER_CONNECT_TIMEOUT, seconds),
    )


def build_provider_client(
    timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    user_agent: Optional[str] = None,
) -> httpx.AsyncClient:
    """Build an AsyncClient bounded by the provider timeout that follows redirects."""
    client_kwargs = {"timeout": provider_timeout(timeout), "follow_redirects": True}
    if user_agent is not None:
        client_kwargs["headers"] = {"User-Agent": user_agent}
    return httpx.AsyncClient(**client_kwargs)
