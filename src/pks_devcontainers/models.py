"""Data model for devcontainer spawning.

Options and results are pydantic models so they can be validated on the way in
and dumped as JSON by the CLI on the way out.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .naming import sanitize_project_name


class SpawnStep(IntEnum):
    """Phases of a spawn in execution order."""

    NONE = 0
    DOCKER_CHECK = 1
    DEVCONTAINER_CLI_CHECK = 2
    VOLUME_CREATION = 3
    BOOTSTRAP_IMAGE_CHECK = 4
    BOOTSTRAP_CONTAINER_START = 5
    FILE_COPY_TO_BOOTSTRAP = 6
    DEVCONTAINER_UP = 7
    VSCODE_LAUNCH = 8
    COMPLETED = 9


class VsCodeEdition(str, Enum):
    STABLE = "stable"
    INSIDERS = "insiders"


class SpawnOptions(BaseModel):
    """Immutable input to a single spawn attempt."""

    model_config = ConfigDict(frozen=True)

    project_name: str
    project_path: str
    devcontainer_path: str
    reuse_existing: bool = True
    copy_source_files: bool = True
    launch_vscode: bool = True
    use_bootstrap_container: bool = True
    forward_docker_config: bool = True
    volume_name: Optional[str] = None
    build_args: Dict[str, str] = Field(default_factory=dict)
    build_log_path: Optional[str] = None
    docker_config_path: Optional[str] = None

    @field_validator("project_name")
    @classmethod
    def _sanitizable(cls, value: str) -> str:
        if not sanitize_project_name(value):
            raise ValueError(
                "project name must contain at least one of [a-z0-9-_] after lowercasing"
            )
        return value

    @field_validator("volume_name")
    @classmethod
    def _volume_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class SpawnResult(BaseModel):
    """Accumulates the outcome of one spawn attempt."""

    success: bool = False
    message: str = ""
    container_id: Optional[str] = None
    volume_name: Optional[str] = None
    vscode_uri: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    completed_step: SpawnStep = SpawnStep.NONE
    duration: timedelta = timedelta(0)
    bootstrap_container_id: Optional[str] = None
    devcontainer_cli_output: Optional[str] = None
    devcontainer_cli_stderr: Optional[str] = None
    step_history: List[SpawnStep] = Field(default_factory=list)


class BootstrapContainerConfig(BaseModel):
    project_name: str
    volume_name: str
    workspace_path: str
    image: str
    container_prefix: str = "pks-bootstrap"
    mount_docker_socket: bool = True
    labels: Dict[str, str] = Field(default_factory=dict)


class BootstrapContainerInfo(BaseModel):
    container_id: str
    container_name: str
    started_at: datetime
    volume_name: str
    project_name: str


class BootstrapImageResult(BaseModel):
    success: bool
    image_id: Optional[str] = None
    image_name: Optional[str] = None
    was_built: bool = False
    build_duration: timedelta = timedelta(0)
    message: str = ""


class ExecResult(BaseModel):
    """Outcome of a command run inside a container."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: timedelta = timedelta(0)
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        parts = []
        if self.stdout.strip():
            parts.append("=== STDOUT ===\n" + self.stdout.rstrip())
        if self.stderr.strip():
            parts.append("=== STDERR ===\n" + self.stderr.rstrip())
        return "\n\n".join(parts)

    def formatted_diagnostics(self) -> str:
        lines = [
            f"Exit code: {self.exit_code}",
            f"Duration: {self.duration.total_seconds():.1f}s",
        ]
        if self.error:
            lines.append(f"Error: {self.error}")
        combined = self.combined_output
        if combined:
            lines.append(combined)
        return "\n".join(lines)


class DevcontainerUpResult(BaseModel):
    """The JSON line printed last by ``devcontainer up``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    outcome: str
    container_id: Optional[str] = Field(None, alias="containerId")
    remote_workspace_folder: Optional[str] = Field(None, alias="remoteWorkspaceFolder")
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    @classmethod
    def from_output(cls, output: str) -> "DevcontainerUpResult":
        """Parse the last line that looks like a JSON object.

        Raises ValueError when no such line exists or it does not parse.
        """
        candidates = [
            line.strip() for line in output.splitlines() if line.strip().startswith("{")
        ]
        if not candidates:
            raise ValueError("Could not find JSON output from devcontainer up command")
        try:
            payload: Any = json.loads(candidates[-1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse devcontainer up output: {exc}") from exc
        if not isinstance(payload, dict) or "outcome" not in payload:
            raise ValueError("devcontainer up output has no outcome field")
        return cls.model_validate(payload)


class DockerAvailability(BaseModel):
    available: bool
    running: bool
    version: Optional[str] = None
    message: str = ""


class VsCodeInstallation(BaseModel):
    installed: bool
    executable: Optional[str] = None
    version: Optional[str] = None
    edition: Optional[VsCodeEdition] = None


class ExistingContainer(BaseModel):
    container_id: str
    volume_name: str = ""
    workspace_folder: str = ""
    config_hash: Optional[str] = None
    created: Optional[datetime] = None
    running: bool = False


class ManagedVolume(BaseModel):
    name: str
    project_name: str = "unknown"
    created: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class ManagedContainer(BaseModel):
    container_id: str
    container_name: str = ""
    project_name: str = "unknown"
    volume_name: str = ""
    status: str = ""
    created: Optional[datetime] = None
    workspace_folder: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
