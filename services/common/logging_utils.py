"""Shared logging helpers for Python sidecar services."""

from __future__ import annotations

import functools
import inspect
import json
import logging
import os
import time
from typing import Any, Callable, TypeVar

R = TypeVar("R")

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_VALID_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
DEFAULT_LOG_BODY_LIMIT = 500


def _is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY_VALUES


def _resolve_level(
    *,
    default_level: str = "INFO",
    log_level_env: str = "LOG_LEVEL",
    debug_env: str = "DEBUG",
) -> int:
    configured = os.getenv(log_level_env, "").strip().lower()
    if configured:
        return _VALID_LEVEL_NAMES.get(configured, logging.INFO)

    if _is_truthy(os.getenv(debug_env)):
        return logging.DEBUG

    return _VALID_LEVEL_NAMES.get(default_level.strip().lower(), logging.INFO)


def configure_service_logger(
    service_name: str,
    *,
    default_level: str = "INFO",
    log_level_env: str = "LOG_LEVEL",
    debug_env: str = "DEBUG",
    fmt: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """Configure and return a named service logger."""
    level = _resolve_level(
        default_level=default_level,
        log_level_env=log_level_env,
        debug_env=debug_env,
    )
    logging.basicConfig(level=level, format=fmt)
    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    return logger


def truncate_for_log(value: Any, limit: int = DEFAULT_LOG_BODY_LIMIT) -> str:
    """
    Render an upstream response body for a log line.

    Scraper endpoints sometimes answer with whole HTML pages, so bodies are
    cut to `limit` characters.
    """
    if isinstance(value, (dict, list)):
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = str(value)
    else:
        text = str(value)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text) - limit} more chars)"


def log_timing(
    logger: logging.Logger,
    operation: str,
    *,
    level: int = logging.INFO,
) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """Decorator that logs operation duration for sync or async functions."""

    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> R:
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                    logger.log(level, "%s completed in %.2fms", operation, (time.perf_counter() - start) * 1000.0)
                    return result
                except Exception:
                    logger.exception(
                        "%s failed after %.2fms",
                        operation,
                        (time.perf_counter() - start) * 1000.0,
                    )
                    raise

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> R:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                logger.log(level, "%s completed in %.2fms", operation, (time.perf_counter() - start) * 1000.0)
                return result
            except Exception:
                logger.exception(
                    "%s failed after %.2fms",
                    operation,
                    (time.perf_counter() - start) * 1000.0,
                )
                raise

        return wrapper

    return decorator
