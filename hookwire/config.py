"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
import re
import sys
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from hookwire.errors import ConfigError

SKIP_VERIFICATION = "skip"
DEFAULT_TIMESTAMP_TOLERANCE = 300

_ENV_PLACEHOLDER = re.compile(r"\AENV\[(\w+)\]\Z")


class VerifierKind(str, Enum):
    HMAC = "hmac"
    HMAC_BASE64 = "hmac_base64"
    KV_SIGNATURE = "kv_signature"
    ALWAYS_PASS = "always_pass"
    CUSTOM = "custom"


class ProviderConfig(BaseModel):
    """Identity and policy for one webhook provider. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str
    signing_secret: str | None = None
    timestamp_tolerance_seconds: int | None = None
    rate_limit_requests: int | None = None
    rate_limit_period_seconds: int | None = None
    max_payload_size_bytes: int | None = None
    active: bool = True
    verifier: VerifierKind = VerifierKind.HMAC
    verifier_options: dict[str, str] = Field(default_factory=dict)

    @property
    def rate_limiting_enabled(self) -> bool:
        return bool(self.rate_limit_requests) and bool(self.rate_limit_period_seconds)

    @property
    def payload_limit_enabled(self) -> bool:
        return self.max_payload_size_bytes is not None and self.max_payload_size_bytes > 0


ProviderSnapshot = Mapping[str, ProviderConfig]


def build_snapshot(providers: list[ProviderConfig]) -> ProviderSnapshot:
    """Freeze a provider list into a read-only mapping keyed by name."""
    by_name: dict[str, ProviderConfig] = {}
    for provider in providers:
        if provider.name in by_name:
            raise ConfigError(f"Duplicate provider name: {provider.name}")
        by_name[provider.name] = provider
    return MappingProxyType(by_name)


def resolve_secret(value: str | None) -> str | None:
    """Replace an ``ENV[NAME]`` marker with the environment value.

    An unset variable leaves the marker in place; the verifiers treat an
    unresolved marker as skip mode.
    """
    if not value:
        return value
    match = _ENV_PLACEHOLDER.match(value)
    if match is None:
        return value
    return os.environ.get(match.group(1), value)


def is_skip_secret(value: str | None) -> bool:
    """True when the secret is absent, the skip sentinel, or an unresolved marker."""
    if not value or not value.strip():
        return True
    return value == SKIP_VERIFICATION or value.startswith("ENV[")


class HandlerConfig(BaseModel):
    provider: str
    event_type: str
    target: str  # "package.module:callable"
    priority: int = 100
    run_async: bool = True
    retry_delays: list[float] = Field(default_factory=lambda: [30, 60, 300, 900, 3600])
    max_attempts: int = 5


class EngineConfig(BaseModel):
    production_mode: bool = False
    default_timestamp_tolerance: int = DEFAULT_TIMESTAMP_TOLERANCE
    handler_timeout_seconds: float = 30.0
    worker_count: int = 4
    store: str = "memory"  # memory | sqlite


class ServerConfig(BaseModel):
    bind: str = "0.0.0.0"
    port: int = 8420
    path_prefix: str = "/webhooks"
    # Hard cap on any request body, before per-provider limits apply
    client_max_size: int = Field(default=1024**2, gt=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HOOKWIRE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    providers: list[ProviderConfig] = Field(default_factory=list)
    handlers: list[HandlerConfig] = Field(default_factory=list)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return default_dir("data")

    def provider_snapshot(self) -> ProviderSnapshot:
        """Resolve secrets and freeze the providers for the engine."""
        resolved = [
            p.model_copy(update={"signing_secret": resolve_secret(p.signing_secret)})
            for p in self.providers
        ]
        return build_snapshot(resolved)


def default_dir(kind: str) -> Path:
    """Per-user ``config`` or ``data`` directory, overridable via HOOKWIRE_<KIND>_DIR."""
    env = os.environ.get(f"HOOKWIRE_{kind.upper()}_DIR")
    if env:
        return Path(env)

    if sys.platform == "win32":
        var = "APPDATA" if kind == "config" else "LOCALAPPDATA"
        return Path(os.environ.get(var, Path.home() / "AppData")) / "hookwire"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "hookwire"
    if kind == "config":
        base = os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
    else:
        base = os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")
    return Path(base) / "hookwire"


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config."""
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        config_path = os.environ.get("HOOKWIRE_CONFIG")
    if config_path is None:
        default = default_dir("config") / "config.yaml"
        if default.exists():
            config_path = default

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return Settings(**yaml_data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
