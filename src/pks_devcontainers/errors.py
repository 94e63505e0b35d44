"""Exception types raised below the spawn orchestrator."""

from __future__ import annotations

from typing import Optional


class SpawnError(RuntimeError):
    """Base class for every failure the spawner knows how to report."""


class DockerUnavailableError(SpawnError):
    pass


class CommandTimeoutError(SpawnError):
    """An external command or in-container exec exceeded its time budget."""

    def __init__(self, command: str, timeout: float, output: str = "") -> None:
        super().__init__(f"Command timed out after {timeout:g} seconds: {command}")
        self.command = command
        self.timeout = timeout
        self.output = output


class CommandFailedError(SpawnError):
    """An external command exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        detail = stderr.strip() or "no output"
        super().__init__(f"Command failed with exit code {exit_code}: {detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class BootstrapError(SpawnError):
    pass


class ConfigTransformError(SpawnError):
    pass


class DevcontainerUpError(SpawnError):
    """`devcontainer up` could not produce a usable result.

    Carries whatever the CLI printed so it can be attached to the spawn result.
    """

    def __init__(
        self,
        message: str,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
