#Filename: config.py
"""
Relay configuration.
Built once at process start from environment variables, optionally
overridden by CLI flags, then passed by reference to every component.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from structures import (
    DEFAULT_CONNECT_TIMEOUT, DEFAULT_TOTAL_TIMEOUT, DEFAULT_MAX_REDIRECTS,
    MAX_REQUEST_BODY_SIZE, WILDCARD_ORIGIN
)
from proxy_common import IDLE_TIMEOUT, ProxyError

ENV_PREFIX = "PROXY_"
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ProxyError):
    """Raised for missing or malformed configuration values."""


@dataclass(frozen=True)
class Config:
    backend_url: str
    allowed_origins: Tuple[str, ...] = (WILDCARD_ORIGIN,)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    total_timeout: float = DEFAULT_TOTAL_TIMEOUT
    log_destination: Optional[str] = None
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    max_body_size: int = MAX_REQUEST_BODY_SIZE
    idle_timeout: float = IDLE_TIMEOUT
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    def __post_init__(self) -> None:
        parts = urlsplit(self.backend_url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(f"Backend URL must be an absolute http(s) URL: {self.backend_url!r}")
        if parts.query or parts.fragment:
            raise ConfigError("Backend URL must not carry a query or fragment")
        try:
            parts.port
        except ValueError as exc:
            raise ConfigError(f"Backend URL has an invalid port: {self.backend_url!r}") from exc
        # Inbound targets always start with '/'.
        object.__setattr__(self, "backend_url", self.backend_url.rstrip("/"))
        object.__setattr__(self, "allowed_origins", tuple(self.allowed_origins))

        if self.connect_timeout <= 0 or self.total_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        if self.max_body_size < 0:
            raise ConfigError("Maximum body size cannot be negative")
        if not 0 <= self.listen_port <= 65535:
            raise ConfigError(f"Invalid listen port: {self.listen_port}")

    @property
    def backend_origin(self) -> Tuple[str, str, int]:
        """(scheme, host, port) of the backend, default ports filled in."""
        parts = urlsplit(self.backend_url)
        port = parts.port or (443 if parts.scheme == "https" else 80)
        return parts.scheme, (parts.hostname or "").lower(), port

    def backend_target(self, target: str) -> str:
        """The backend URL for an inbound path+query, concatenated verbatim."""
        return f"{self.backend_url}{target}"

    def with_overrides(self, **overrides: object) -> "Config":
        """A copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def parse_origins(raw: str) -> Tuple[str, ...]:
    """Comma separated origin list; blanks are dropped."""
    return tuple(o.strip() for o in raw.split(",") if o.strip())


def _number(env: Mapping[str, str], key: str, cast, default):
    raw = env.get(ENV_PREFIX + key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{key} is not a valid number: {raw!r}") from exc


def load_config(env: Optional[Mapping[str, str]] = None, **overrides: object) -> Config:
    """
    Reads PROXY_* environment variables and applies explicit overrides on top.
    Overrides set to None fall back to the environment/default value.
    """
    env = os.environ if env is None else env

    settings = {
        "backend_url": env.get(ENV_PREFIX + "BACKEND_URL", ""),
        "allowed_origins": parse_origins(env.get(ENV_PREFIX + "ALLOWED_ORIGINS", WILDCARD_ORIGIN)),
        "connect_timeout": _number(env, "CONNECT_TIMEOUT", float, DEFAULT_CONNECT_TIMEOUT),
        "total_timeout": _number(env, "TOTAL_TIMEOUT", float, DEFAULT_TOTAL_TIMEOUT),
        "log_destination": env.get(ENV_PREFIX + "LOG_FILE") or None,
        "verify_tls": env.get(ENV_PREFIX + "VERIFY_TLS", "1").strip().lower() not in FALSE_VALUES,
        "ca_bundle": env.get(ENV_PREFIX + "CA_BUNDLE") or None,
        "listen_host": env.get(ENV_PREFIX + "LISTEN_HOST") or "127.0.0.1",
        "listen_port": _number(env, "LISTEN_PORT", int, 8080),
        "max_body_size": _number(env, "MAX_BODY", int, MAX_REQUEST_BODY_SIZE),
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})

    if not settings["allowed_origins"]:
        settings["allowed_origins"] = (WILDCARD_ORIGIN,)
    return Config(**settings)
