"""
Centralized settings for the Chicon runner.

Manifesto:
    Every operational knob the engine needs (concurrency, timeouts, cache
    lifetime, output limits, retry policy) lives in one validated settings
    object. Nothing is hard-coded as "correct": defaults are conservative
    and every value can be changed from a TOML config file or a
    ``CHICON_*`` environment variable.

Resolution order (highest wins):

    1. ``CHICON_*`` environment variables (and ``.env``)
    2. The TOML config file passed to :func:`load_settings`
    3. Field defaults

Example config file (``chicon.toml``)::

    [workspace]
    path = "/var/lib/chicon"
    cache_size_mb = 500

    [container]
    cli = "nerdctl"
    namespace = "chicon"

    [scheduler]
    max_concurrency = 8

Sections are flattened with ``_``: ``[container] cli`` → ``container_cli``.

Tags:
    chicon, configuration, settings, pydantic, toml

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CHICON_"
CONFIG_ENV = "CHICON_CONFIG"
DEFAULT_CONFIG_FILE = "chicon.toml"

# TOML sections whose keys already carry the section name as field prefix
_SECTION_ALIASES = {
    "scheduler": "",
    "logging": "log",
}


class RunnerSettings(BaseSettings):
    """Runner configuration.

    All fields can be set via ``CHICON_*`` environment variables (e.g.
    ``CHICON_MAX_CONCURRENCY=8``).
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Workspace ────────────────────────────────────────────────
    workspace_path: Path = Field(default=Path("workspace"))
    workspace_cache_size_mb: int = Field(default=100, ge=1, description="Checkout cache budget")

    # ── Repository provisioning ──────────────────────────────────
    checkout_ttl_seconds: float = Field(default=300.0, ge=0, description="0 disables the checkout cache")
    clone_depth: int = Field(default=1, ge=0, description="0 = full history")
    clone_timeout_seconds: float = Field(default=600.0, gt=0, description="Wall-clock limit for one git clone")
    git_cli: str = Field(default="git")

    # ── Container sandbox ────────────────────────────────────────
    container_cli: str = Field(default="docker")
    container_namespace: str | None = Field(default=None, description="nerdctl/containerd namespace")
    container_security_opts: list[str] = Field(default_factory=lambda: ["no-new-privileges"])
    container_label_prefix: str = Field(default="chicon")
    repository_mount: str = Field(default="/workspace")
    script_mount: str = Field(default="/tmp-bin")
    result_mount: str = Field(default="/result")
    result_file: str = Field(default="data.toml")
    scratch_mount: str = Field(default="/tmp")
    kill_grace_seconds: float = Field(default=5.0, ge=0)
    output_limit_bytes: int = Field(default=1_048_576, ge=0, description="Per-stream capture cap")
    result_limit_bytes: int = Field(default=1_048_576, ge=1, description="Result artifact read cap")

    # ── Scheduler ────────────────────────────────────────────────
    max_concurrency: int = Field(default=4, ge=1)
    default_timeout_seconds: float = Field(default=300.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts including the first")
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    # ── Registry ─────────────────────────────────────────────────
    registry_url: str = Field(default="http://localhost:8080/api/v1")
    registry_token: str = Field(default="")
    registry_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json | console | auto")

    @field_validator("result_file")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError("result_file must be a plain file name")
        return value

    @field_validator("repository_mount", "script_mount", "result_mount", "scratch_mount")
    @classmethod
    def _absolute_mount(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"mount point must be absolute: {value!r}")
        return value.rstrip("/") or "/"

    # ── Derived properties ───────────────────────────────────────

    @property
    def cache_size_bytes(self) -> int:
        return self.workspace_cache_size_mb * 1_000_000

    @property
    def result_path(self) -> str:
        """In-container path of the result artifact."""
        return f"{self.result_mount}/{self.result_file}"

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "json":
            return True
        if self.log_format == "console":
            return False
        return None


# ── TOML config file ─────────────────────────────────────────────────────


def flatten_config(data: dict[str, Any]) -> dict[str, str]:
    """Flatten a parsed TOML document into ``CHICON_*`` env-var style.

    Nested sections are joined with ``_``::

        [container]
        cli = "nerdctl"   →   CHICON_CONTAINER_CLI=nerdctl
    """
    result: dict[str, str] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            prefix = _SECTION_ALIASES.get(key, key)
            for subkey, subvalue in value.items():
                name = f"{prefix}_{subkey}" if prefix else subkey
                result[f"{ENV_PREFIX}{name}".upper()] = _toml_value(subvalue)
        else:
            result[f"{ENV_PREFIX}{key}".upper()] = _toml_value(value)
    return result


def _toml_value(value: Any) -> str:
    """Convert a TOML value to a string suitable for env vars."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, list):
        return json.dumps(value)
    return str(value)


def find_config_file(requested: str | Path | None = None) -> Path | None:
    """Resolve the config file: explicit path, ``CHICON_CONFIG``, ``./chicon.toml``."""
    if requested:
        return Path(requested)
    if from_env := os.environ.get(CONFIG_ENV):
        return Path(from_env)
    default = Path.cwd() / DEFAULT_CONFIG_FILE
    if default.is_file():
        return default
    return None


def load_settings(config_path: str | Path | None = None) -> RunnerSettings:
    """Build :class:`RunnerSettings` from an optional TOML file plus the environment.

    File values are injected into ``os.environ`` only for keys the
    environment does not already define, for the duration of construction.

    Raises:
        FileNotFoundError: If *config_path* is given but missing.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
        pydantic.ValidationError: If a value fails validation.
    """
    file_env: dict[str, str] = {}
    if config_path is not None:
        data = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        file_env = flatten_config(data)

    injected: list[str] = []
    for key, value in file_env.items():
        if key not in os.environ:
            os.environ[key] = value
            injected.append(key)

    try:
        return RunnerSettings()
    finally:
        for key in injected:
            os.environ.pop(key, None)
