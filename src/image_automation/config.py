"""Controller configuration.

Defaults live on ``ControllerConfig``; ``load_config`` layers an optional TOML
file and ``IMAGE_AUTOMATION_*`` environment variables on top, and validates the
result with Pydantic. The resulting object is passed explicitly to the
reconciler and git backends.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import GIT_CLI_IMPLEMENTATION, GITPYTHON_IMPLEMENTATION


DEFAULT_MESSAGE_TEMPLATE = "Update from image update automation"
SIGNING_SECRET_KEY = "git.asc"

# Environment variable -> ControllerConfig field
ENV_MAPPING: Dict[str, str] = {
    "IMAGE_AUTOMATION_REMOTE_NAME": "remote_name",
    "IMAGE_AUTOMATION_MESSAGE_TEMPLATE": "default_message_template",
    "IMAGE_AUTOMATION_SIGNING_SECRET_KEY": "signing_secret_key",
    "IMAGE_AUTOMATION_MIN_INTERVAL": "min_interval",
    "IMAGE_AUTOMATION_GIT_TIMEOUT": "git_timeout",
    "IMAGE_AUTOMATION_WORK_DIR": "work_dir",
    "IMAGE_AUTOMATION_GIT_IMPLEMENTATION": "default_git_implementation",
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


class ControllerConfig(BaseModel):
    """Settings shared by every automation run."""

    remote_name: str = Field(
        default="origin",
        description="Name of the single remote cloned from and pushed to",
    )
    default_message_template: str = Field(
        default=DEFAULT_MESSAGE_TEMPLATE,
        description="Commit message template used when the automation gives none",
    )
    signing_secret_key: str = Field(
        default=SIGNING_SECRET_KEY,
        description="Data key holding the armored signing key in the signing secret",
    )
    min_interval: float = Field(
        default=1.0,
        gt=0,
        description="Lower bound in seconds for the requeue interval",
    )
    git_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds allowed for a network git operation where the backend supports it",
    )
    work_dir: str = Field(
        default="",
        description="Parent directory for run working copies (empty = system temp)",
    )
    default_git_implementation: str = Field(
        default=GITPYTHON_IMPLEMENTATION,
        description="Backend used when a source does not name one",
    )

    @field_validator("remote_name")
    @classmethod
    def validate_remote_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("remote_name must not be empty")
        return v

    @field_validator("default_git_implementation")
    @classmethod
    def validate_implementation(cls, v: str) -> str:
        if v not in (GITPYTHON_IMPLEMENTATION, GIT_CLI_IMPLEMENTATION):
            raise ValueError(f"unknown git implementation {v!r}")
        return v

    def work_root(self) -> Optional[Path]:
        if not self.work_dir:
            return None
        return Path(self.work_dir).expanduser()


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Environment variables override file values (types are coerced by Pydantic)."""
    result = config_dict.copy()
    for env_var, key in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        result[key] = value
    return result


def load_config(path: Optional[Path] = None, skip_env: bool = False) -> ControllerConfig:
    """Load controller configuration.

    Order (later sources override earlier):
    1. Built-in defaults
    2. ``[controller]`` table of the TOML file at ``path``, if given
    3. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If the file is unreadable or values fail validation
    """
    config_dict: Dict[str, Any] = {}

    if path is not None:
        data = _load_toml(path)
        section = data.get("controller", {})
        if not isinstance(section, dict):
            raise ConfigError(f"[controller] in {path} must be a table")
        config_dict.update(section)

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return ControllerConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")
