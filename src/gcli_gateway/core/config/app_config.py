from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator, model_validator

from gcli_gateway.core.common.exceptions import ConfigurationError
from gcli_gateway.core.interfaces.model_bases import DomainModel

logger = logging.getLogger(__name__)

DEFAULT_CODE_ASSIST_ENDPOINT = "https://codeassist-pa.clients6.google.com"
DEFAULT_FAKE_STREAM_SUFFIX = "-假流式"
DEFAULT_MODELS = [
    "gemini-2.5-pro-preview-06-05",
    "gemini-2.5-pro",
    "gemini-2.5-pro-preview-05-06",
    "gemini-2.5-flash-preview-09-2025",
    "gemini-2.5-flash-image-preview",
    "gemini-3-pro-preview-11-2025",
]


def _env_to_int(name: str, default: int, env: Mapping[str, str]) -> int:
    """Return an environment variable parsed as an integer."""
    value = env.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer value for %s", name)
        return default


class LogLevel(str, Enum):
    """Log levels for configuration."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class UsageEstimatorName(str, Enum):
    TIKTOKEN = "tiktoken"
    CHARS = "chars"


class CooldownConfig(DomainModel):
    """Backoff schedule applied when a credential enters cooldown."""

    base_seconds: float = Field(default=30.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_seconds: float = Field(default=600.0, gt=0)


class FakeStreamConfig(DomainModel):
    """Synthesized streaming settings."""

    suffix: str = DEFAULT_FAKE_STREAM_SUFFIX
    max_fragment_length: int = Field(default=20, ge=1)
    pacing_delay: float = Field(default=0.05, ge=0.0)
    keepalive_interval: float = Field(default=15.0, gt=0.0)


class AppConfig(DomainModel):
    """Gateway configuration."""

    password: str = "pwd"
    bind_address: str = "0.0.0.0:7878"
    credentials_dir: str = "./credentials"
    state_file: str | None = None
    code_assist_endpoint: str = DEFAULT_CODE_ASSIST_ENDPOINT
    token_url: str = "https://oauth2.googleapis.com/token"
    calls_per_rotation: int = Field(default=1, ge=1)
    max_retries: int = Field(default=3, ge=1)
    request_timeout: float = Field(default=300.0, gt=0)
    refresh_margin_seconds: float = Field(default=300.0, ge=0)
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    disable_threshold: int = Field(default=10, ge=1)
    fake_stream: FakeStreamConfig = Field(default_factory=FakeStreamConfig)
    usage_estimator: UsageEstimatorName = UsageEstimatorName.TIKTOKEN
    max_output_tokens_cap: int = Field(default=65535, ge=1)
    models: list[str] = Field(default_factory=lambda: list(DEFAULT_MODELS))
    onboard_credentials: bool = True
    onboard_poll_interval: float = Field(default=5.0, ge=0.0)
    log_level: LogLevel = LogLevel.INFO
    log_file: str | None = "jellycli.log"

    @field_validator("bind_address")
    @classmethod
    def validate_bind_address(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"bind_address must be host:port, got {v!r}")
        return v

    @field_validator("code_assist_endpoint", "token_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def _default_state_file(self) -> AppConfig:
        if not self.state_file:
            self.state_file = str(Path(self.credentials_dir) / "creds_state.json")
        return self

    @property
    def host(self) -> str:
        return self.bind_address.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.bind_address.rpartition(":")[2])

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
        """Collect overrides from environment variables.

        Returns only the keys that are actually present in the environment.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}

        password = env.get("GATEWAY_PASSWORD") or env.get("PASSWORD")
        if password:
            overrides["password"] = password
        for name, key in (
            ("GATEWAY_BIND_ADDRESS", "bind_address"),
            ("GATEWAY_CREDENTIALS_DIR", "credentials_dir"),
            ("GATEWAY_CODE_ASSIST_ENDPOINT", "code_assist_endpoint"),
            ("GATEWAY_LOG_LEVEL", "log_level"),
        ):
            if env.get(name):
                overrides[key] = env[name].upper() if key == "log_level" else env[name]
        for name, key in (
            ("GATEWAY_CALLS_PER_ROTATION", "calls_per_rotation"),
            ("GATEWAY_MAX_RETRIES", "max_retries"),
        ):
            if name in env:
                overrides[key] = _env_to_int(name, cls.model_fields[key].default, env)
        return overrides


def _merge_dicts(d1: dict[str, Any], d2: dict[str, Any]) -> dict[str, Any]:
    for k, v in d2.items():
        if k in d1 and isinstance(d1[k], dict) and isinstance(v, dict):
            _merge_dicts(d1[k], v)
        else:
            d1[k] = v
    return d1


def _read_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    try:
        with open(path, encoding="utf-8") as f:
            if suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(f) or {}
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration file format: {path.suffix}. "
                    "Use YAML (.yaml/.yml) or JSON (.json).",
                    details={"path": str(path)},
                )
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"Could not parse configuration file {path}: {exc}",
            details={"path": str(path)},
        ) from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping",
            details={"path": str(path)},
        )
    return data


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from file and environment.

    Environment values win over the file, which wins over defaults.

    Args:
        config_path: Optional path to a YAML or JSON configuration file
        environ: Environment mapping; ``os.environ`` (after loading ``.env``)
            when omitted

    Returns:
        AppConfig instance
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    config_data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Configuration file not found: {config_path}")
        else:
            _merge_dicts(config_data, _read_config_file(path))

    _merge_dicts(config_data, AppConfig.from_env(environ))

    try:
        return AppConfig.model_validate(config_data)
    except ValidationError as exc:
        logger.critical(f"Invalid configuration: {exc!s}")
        raise ConfigurationError(
            "Invalid configuration", details={"errors": exc.errors(include_url=False, include_context=False)}
        ) from exc
