"""Tunable spawner settings, loadable from YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_ENV_VAR = "PKS_SPAWNER_CONFIG"
DEFAULT_CONFIG_RELATIVE = Path(".pks") / "spawner.yaml"

MAX_UP_TIMEOUT = 1800


class TimeoutSettings(BaseModel):
    """Per-command time budgets in seconds."""

    version_check: float = 5
    cli_check: float = 10
    small_exec: float = 10
    exec_default: float = 120
    file_copy: float = 60
    devcontainer_up_legacy: float = 300
    devcontainer_up_bootstrap: float = 600
    image_build: float = 900
    container_stop: int = 10
    docker_api: int = 60

    @field_validator("*")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("devcontainer_up_legacy", "devcontainer_up_bootstrap")
    @classmethod
    def _bounded_up(cls, value: float) -> float:
        if value > MAX_UP_TIMEOUT:
            raise ValueError(f"devcontainer up timeout cannot exceed {MAX_UP_TIMEOUT}s")
        return value


class BootstrapSettings(BaseModel):
    image_name: str = "pks-devcontainer-bootstrap"
    image_tag: str = "latest"
    container_prefix: str = "pks-bootstrap"
    workspaces_root: str = "/workspaces"
    docker_socket: str = "/var/run/docker.sock"
    override_config_path: str = "/tmp/pks-devcontainer-override.json"
    devcontainer_cli_package: str = "@devcontainers/cli"
    base_image: str = "node:20-alpine"
    devcontainer_cli_version: Optional[str] = None

    @field_validator("workspaces_root", "docker_socket", "override_config_path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("container paths must be absolute")
        return value.rstrip("/") or "/"

    @field_validator("image_name", "image_tag", "container_prefix")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("value cannot be empty")
        return value.strip()

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


class SpawnerSettings(BaseModel):
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    copy_image: str = Field("alpine:latest", description="Helper image for legacy copies")
    docker_config_path: str = Field(
        "~/.docker/config.json", description="Host Docker config forwarded by default"
    )


def load_spawner_config(path: Path) -> SpawnerSettings:
    """Load spawner settings from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the settings are invalid
    """
    if not path.exists():
        raise FileNotFoundError(f"Spawner config not found at {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return SpawnerSettings.model_validate(data)


def find_spawner_config(start_path: Path) -> Optional[Path]:
    """Find .pks/spawner.yaml by walking up from start_path."""
    current = start_path.resolve()
    while current != current.parent:
        config_path = current / DEFAULT_CONFIG_RELATIVE
        if config_path.exists():
            return config_path
        current = current.parent
    return None


def resolve_settings(
    explicit: Optional[Path] = None, start_path: Optional[Path] = None
) -> SpawnerSettings:
    """Explicit path, then $PKS_SPAWNER_CONFIG, then a discovered file, then defaults."""
    if explicit is not None:
        return load_spawner_config(explicit)

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return load_spawner_config(Path(env_path).expanduser())

    found = find_spawner_config(start_path or Path.cwd())
    if found is not None:
        return load_spawner_config(found)
    return SpawnerSettings()
