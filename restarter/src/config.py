from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the restarter configuration is invalid."""


@dataclass(frozen=True)
class RestarterConfig:
    """Immutable restarter configuration loaded at startup.

    Attributes:
        interval_seconds: Seconds between reconciliation passes.
        namespace:        Namespace to restrict to, or ``None`` for all namespaces.
        registry_timeout_seconds: Per-request timeout for registry and token calls.
        health_port:      Port serving ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level:        Root logging level name.
    """

    interval_seconds: int = 21600
    namespace: str | None = None
    registry_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> RestarterConfig:
    """Load restarter config from the environment.

    Variables (with defaults):
        ``CHECK_INTERVAL``          : seconds between passes (``21600``).
        ``NAMESPACE``               : namespace filter; empty means all namespaces.
        ``REGISTRY_TIMEOUT_SECONDS``: registry request timeout (``30``).
        ``HEALTH_PORT``             : health/metrics port (``8080``).
        ``LOG_LEVEL``               : logging level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = (values.get("NAMESPACE") or "").strip() or None
    return RestarterConfig(
        interval_seconds=env_int(values, "CHECK_INTERVAL", 21600, minimum=1),
        namespace=namespace,
        registry_timeout_seconds=env_int(values, "REGISTRY_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=(values.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
