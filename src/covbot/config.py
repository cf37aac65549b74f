"""Runtime configuration: defaults, optional YAML file, environment overrides."""

from __future__ import annotations

import copy
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_NAME = "coverage-bot.yaml"

AiProviderName = Literal["claude", "openai"]

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "coverage": {
        "threshold": 80,
    },
    "ai": {
        "provider": "claude",
        "max_retries": 3,
        "timeout_ms": 300_000,
    },
    "runner": {
        "command_timeout_s": None,
    },
    "scheduler": {
        "enabled": True,
        "poll_interval_ms": 5000,
    },
    "github": {
        "api_url": "https://api.github.com",
        "token": None,
    },
    "paths": {
        "database": "data/coverage.sqlite",
        "workspaces": None,
    },
}

# Environment variable -> (section, key)
_ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "COVERAGE_THRESHOLD": ("coverage", "threshold"),
    "AI_PROVIDER": ("ai", "provider"),
    "AI_MAX_RETRIES": ("ai", "max_retries"),
    "AI_TIMEOUT_MS": ("ai", "timeout_ms"),
    "COMMAND_TIMEOUT_S": ("runner", "command_timeout_s"),
    "ENABLE_JOB_PROCESSOR": ("scheduler", "enabled"),
    "JOB_POLL_INTERVAL_MS": ("scheduler", "poll_interval_ms"),
    "GITHUB_API_URL": ("github", "api_url"),
    "GH_TOKEN": ("github", "token"),
    "GITHUB_TOKEN": ("github", "token"),
    "DATABASE_PATH": ("paths", "database"),
    "WORKSPACE_ROOT": ("paths", "workspaces"),
}


def _default_workspace_root() -> Path:
    return Path(tempfile.gettempdir()) / "coverage-bot"


class Settings(BaseModel):
    """Validated settings consumed by the orchestrator and its collaborators."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    coverage_threshold: float = Field(default=80, ge=0, le=100)
    default_ai_provider: AiProviderName = "claude"
    ai_max_retries: int = Field(default=3, ge=1)
    ai_timeout_ms: int = Field(default=300_000, gt=0)
    command_timeout_s: Optional[float] = Field(default=None, gt=0)
    enable_job_processor: bool = True
    poll_interval_ms: int = Field(default=5000, gt=0)
    github_api_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    database_path: Path = Path("data/coverage.sqlite")
    workspace_root: Path = Field(default_factory=_default_workspace_root)

    @property
    def ai_timeout_s(self) -> float:
        return self.ai_timeout_ms / 1000.0

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0


def _copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    for section, values in overlay.items():
        if isinstance(values, Mapping) and isinstance(base.get(section), dict):
            base[section].update(values)
        else:
            base[section] = values
    return base


def _apply_env(config: Dict[str, Any], environ: Mapping[str, str]) -> None:
    for name, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is None or not value.strip():
            continue
        config.setdefault(section, {})[key] = value.strip()


def _flatten(config: Mapping[str, Any], base_dir: Path | None) -> Dict[str, Any]:
    coverage = config.get("coverage") or {}
    ai = config.get("ai") or {}
    runner = config.get("runner") or {}
    scheduler = config.get("scheduler") or {}
    github = config.get("github") or {}
    paths = config.get("paths") or {}

    flat: Dict[str, Any] = {
        "coverage_threshold": coverage.get("threshold"),
        "default_ai_provider": ai.get("provider"),
        "ai_max_retries": ai.get("max_retries"),
        "ai_timeout_ms": ai.get("timeout_ms"),
        "command_timeout_s": runner.get("command_timeout_s"),
        "enable_job_processor": _as_bool(scheduler.get("enabled")),
        "poll_interval_ms": scheduler.get("poll_interval_ms"),
        "github_api_url": github.get("api_url"),
        "github_token": github.get("token"),
        "database_path": _resolve_path(paths.get("database"), base_dir),
        "workspace_root": _resolve_path(paths.get("workspaces"), base_dir),
    }
    return {key: value for key, value in flat.items() if value is not None}


def _resolve_path(value: Any, base_dir: Path | None) -> Path | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    path = Path(str(value)).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path


def _as_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected a boolean, got {value!r}")


def load_settings(
    config_path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build :class:`Settings` from defaults, ``config_path`` and the environment.

    A missing default config file is not an error; an explicitly requested one
    is.  Environment variables win over the file.
    """

    config = _copy_config_template()
    base_dir: Path | None = None

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        _merge(config, _read_yaml(path))
        base_dir = path.resolve().parent
    elif Path(DEFAULT_CONFIG_NAME).exists():
        path = Path(DEFAULT_CONFIG_NAME)
        _merge(config, _read_yaml(path))
        base_dir = path.resolve().parent

    _apply_env(config, os.environ if environ is None else environ)

    try:
        return Settings(**_flatten(config, base_dir))
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


__all__ = ["DEFAULT_CONFIG_NAME", "DEFAULT_CONFIG_TEMPLATE", "Settings", "load_settings"]
