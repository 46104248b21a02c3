"""Layered YAML configuration validated into immutable settings models."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "ClaudeSettings",
    "CodexSettings",
    "DEFAULT_CONFIG_TEMPLATE",
    "IterationSettings",
    "QwenSettings",
    "Settings",
    "SettingsError",
    "config_sources",
    "deep_merge",
    "global_config_path",
    "load_settings",
    "read_config_file",
]

LOGGER = logging.getLogger(__name__)

CONFIG_DIR_NAME = "planloop"
LOCAL_CONFIG_DIR = ".planloop"
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "claude": {
        "command": "claude",
        "args": [],
        "error_patterns": ["You've hit your limit"],
    },
    "codex": {
        "enabled": True,
        "command": "codex",
        "model": "gpt-5.2-codex",
        "reasoning_effort": "xhigh",
        "timeout_ms": 3600000,
        "sandbox": "read-only",
        "project_doc": None,
        "error_patterns": ["Rate limit reached"],
    },
    "qwen": {
        "enabled": False,
        "command": "qwen",
        "args": [],
        "error_patterns": [],
    },
    "iteration": {
        "max_iterations": 50,
        "delay_ms": 2000,
        "task_retry_count": 1,
    },
    "external_review_tool": "codex",
    "finalize_enabled": False,
    "prompts_dir": None,
    "custom_agents": {},
}


class SettingsError(ValueError):
    """Raised when a configuration file cannot be read or fails validation."""


class _SettingsModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ClaudeSettings(_SettingsModel):
    command: str = "claude"
    args: Union[str, List[str]] = Field(default_factory=list)
    error_patterns: List[str] = Field(default_factory=lambda: ["You've hit your limit"])


class CodexSettings(_SettingsModel):
    enabled: bool = True
    command: str = "codex"
    model: str = "gpt-5.2-codex"
    reasoning_effort: str = "xhigh"
    timeout_ms: int = Field(default=3600000, ge=0)
    sandbox: str = "read-only"
    project_doc: Optional[str] = None
    error_patterns: List[str] = Field(default_factory=lambda: ["Rate limit reached"])


class QwenSettings(_SettingsModel):
    enabled: bool = False
    command: str = "qwen"
    args: Union[str, List[str]] = Field(default_factory=list)
    error_patterns: List[str] = Field(default_factory=list)


class IterationSettings(_SettingsModel):
    max_iterations: int = Field(default=50, ge=1)
    delay_ms: int = Field(default=2000, ge=0)
    task_retry_count: int = Field(default=1, ge=0)


class Settings(_SettingsModel):
    """Fully merged application settings."""

    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    codex: CodexSettings = Field(default_factory=CodexSettings)
    qwen: QwenSettings = Field(default_factory=QwenSettings)
    iteration: IterationSettings = Field(default_factory=IterationSettings)
    external_review_tool: Literal["codex", "none"] = "codex"
    finalize_enabled: bool = False
    prompts_dir: Optional[str] = None
    custom_agents: Dict[str, str] = Field(default_factory=dict)

    @property
    def external_review_enabled(self) -> bool:
        return self.external_review_tool == "codex" and self.codex.enabled


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested mappings merge key by key."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def read_config_file(path: Path) -> Dict[str, Any]:
    """Load one YAML file and return its top-level mapping."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise SettingsError(f"Failed to parse config {path}: {error}") from error
    except OSError as error:
        raise SettingsError(f"Unable to read config {path}: {error}") from error
    if not isinstance(data, dict):
        raise SettingsError(f"Configuration {path} must be a mapping at the top level.")
    return data


def global_config_path(env: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if env is None else env
    base = environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def config_sources(
    explicit: Path | None = None,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> List[Path]:
    """Return existing configuration files, lowest precedence first."""
    candidates = [
        global_config_path(env),
        (cwd or Path.cwd()) / LOCAL_CONFIG_DIR / CONFIG_FILE_NAME,
    ]
    sources = [path for path in candidates if path.is_file()]
    if explicit is not None:
        if not explicit.is_file():
            raise SettingsError(f"Config file not found: {explicit}")
        sources.append(explicit)
    return sources


def load_settings(
    explicit: Path | None = None,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Sequence[Mapping[str, Any]] = (),
) -> Settings:
    """Merge defaults, global, local and explicit config files into :class:`Settings`."""
    data: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)
    for path in config_sources(explicit, cwd=cwd, env=env):
        LOGGER.debug("loading config %s", path)
        data = deep_merge(data, read_config_file(path))
    for override in overrides:
        data = deep_merge(data, override)
    try:
        return Settings.model_validate(data)
    except ValidationError as error:
        first = error.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise SettingsError(f"Invalid configuration at {location}: {first['msg']}") from error
