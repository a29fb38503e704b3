"""Configuration loading with layered overrides.

Priority: CLI args > env vars > workspace config > project config > user config > defaults
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from attoloop.config.schema import (
    AgentConfig,
    LoopConfig,
    NotificationConfig,
    OutputConfig,
    RunConfig,
    StatusWatchConfig,
    StopConfig,
    VerificationConfig,
)
from attoloop.errors import ConfigError

CONFIG_FILENAME = ".attoloop.yaml"
USER_DIR_NAME = ".attoloop"

_SECTIONS: dict[str, type[Any]] = {
    "run": RunConfig,
    "agent": AgentConfig,
    "verification": VerificationConfig,
    "status_watch": StatusWatchConfig,
    "notification": NotificationConfig,
    "output": OutputConfig,
    "stop": StopConfig,
}

# env var -> (section, key, parser)
_ENV_VARS: dict[str, tuple[str, str, Any]] = {
    "ATTOLOOP_MODE": ("run", "mode", str),
    "ATTOLOOP_MAX_ITERATIONS": ("run", "max_iterations", int),
    "ATTOLOOP_DELAY": ("run", "delay_seconds", float),
    "ATTOLOOP_STAGNATION_THRESHOLD": ("run", "stagnation_threshold", int),
    "ATTOLOOP_AGENT_COMMAND": ("agent", "command", str),
    "ATTOLOOP_GRACE_PERIOD_MS": ("agent", "grace_period_ms", int),
    "ATTOLOOP_NOTIFY_URL": ("notification", "url", str),
    "ATTOLOOP_OUTPUT": ("output", "level", str),
}

VALID_MODES = ("incremental", "autonomous")
VALID_OUTPUT_LEVELS = ("quiet", "progress", "verbose")
VALID_DEPTHS = ("quick", "standard", "deep")


def get_user_config_path() -> Path:
    """User-level config (~/.attoloop/config.yaml)."""
    return Path.home() / USER_DIR_NAME / "config.yaml"


def find_project_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* looking for .attoloop.yaml, stopping at a git root."""
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        if (parent / ".git").exists():
            return None
    return None


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file, returning empty dict if not found."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError:
        return {}
    return data if isinstance(data, dict) else {}


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    out: dict[str, Any] = {}
    for name, (section, key, parse) in _ENV_VARS.items():
        value = env.get(name)
        if value is None or value == "":
            continue
        try:
            out.setdefault(section, {})[key] = parse(value)
        except ValueError as exc:
            raise ConfigError(f"{name}={value!r} is not a valid {parse.__name__}", key=name) from exc
    if debug := env.get("ATTOLOOP_DEBUG"):
        out["debug"] = debug.lower() in ("1", "true", "yes")
    return out


def merge_layers(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge raw config dicts section by section; later layers win."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is None:
                continue
            if isinstance(value, dict):
                base = merged.get(key) if isinstance(merged.get(key), dict) else {}
                merged[key] = {**base, **{k: v for k, v in value.items() if v is not None}}
            else:
                merged[key] = value
    return merged


def build_config(raw: dict[str, Any]) -> LoopConfig:
    sections: dict[str, Any] = {}
    for name, model_type in _SECTIONS.items():
        section_raw = raw.get(name, {}) if isinstance(raw.get(name), dict) else {}
        try:
            sections[name] = model_type(**_pick(section_raw, model_type))
        except TypeError as exc:
            raise ConfigError(f"Invalid [{name}] section: {exc}", key=name) from exc
    config = LoopConfig(**sections, debug=bool(raw.get("debug", False)))
    validate_config(config)
    return config


def load_config(
    *,
    workspace: Path | None = None,
    cli_args: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
    user_config: Path | None = None,
) -> LoopConfig:
    """Load configuration from all sources with proper priority."""
    if environ is None:
        load_dotenv()
    layers: list[dict[str, Any]] = [load_yaml_config(user_config or get_user_config_path())]

    project = find_project_config(workspace)
    if project is not None:
        layers.append(load_yaml_config(project))
    if workspace is not None:
        ws_file = workspace / CONFIG_FILENAME
        if ws_file.exists() and ws_file.resolve() != project:
            layers.append(load_yaml_config(ws_file))

    layers.append(env_overrides(environ))
    layers.append(cli_args or {})
    return build_config(merge_layers(*layers))


def validate_config(config: LoopConfig) -> None:
    run = config.run
    if run.mode not in VALID_MODES:
        raise ConfigError(f"run.mode must be one of {VALID_MODES}, got {run.mode!r}", key="run.mode")
    if run.max_iterations is not None and run.max_iterations < 1:
        raise ConfigError("run.max_iterations must be >= 1", key="run.max_iterations")
    if run.delay_seconds < 0:
        raise ConfigError("run.delay_seconds must be >= 0", key="run.delay_seconds")
    if run.stagnation_threshold < 0:
        raise ConfigError("run.stagnation_threshold must be >= 0", key="run.stagnation_threshold")
    if config.agent.grace_period_ms < 0:
        raise ConfigError("agent.grace_period_ms must be >= 0", key="agent.grace_period_ms")
    if not 1 <= config.verification.max_attempts <= 10:
        raise ConfigError("verification.max_attempts must be between 1 and 10", key="verification.max_attempts")
    if config.verification.depth not in VALID_DEPTHS:
        raise ConfigError(f"verification.depth must be one of {VALID_DEPTHS}", key="verification.depth")
    if config.status_watch.debounce_ms < 0:
        raise ConfigError("status_watch.debounce_ms must be >= 0", key="status_watch.debounce_ms")
    if config.output.level not in VALID_OUTPUT_LEVELS:
        raise ConfigError(f"output.level must be one of {VALID_OUTPUT_LEVELS}", key="output.level")
    if len(config.stop.key) != 1:
        raise ConfigError("stop.key must be a single character", key="stop.key")


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
