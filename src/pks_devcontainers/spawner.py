"""Spawn orchestration: pre-flight checks, provisioning, and rollback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from docker.errors import DockerException

from .bootstrap import BootstrapManager
from .confighash import compute_configuration_hash
from .devcontainer_config import DEVCONTAINER_DIR
from .docker_client import DockerResources
from .errors import CommandTimeoutError, ConfigTransformError, DevcontainerUpError, SpawnError
from .legacy import LegacyWorkflow
from .models import (
    BootstrapContainerInfo,
    DevcontainerUpResult,
    DockerAvailability,
    ExistingContainer,
    ManagedContainer,
    ManagedVolume,
    SpawnOptions,
    SpawnResult,
    SpawnStep,
    VsCodeInstallation,
)
from .naming import (
    LABEL_CONFIG_HASH,
    LABEL_CREATED,
    LABEL_PROJECT,
    LABEL_VOLUME_BACKREF,
    LABEL_WORKSPACE_FOLDER,
    generate_volume_name,
    id_labels,
    local_folder_filter,
    managed_filter,
    volume_labels,
)
from .process import CommandRunner
from .settings import SpawnerSettings
from .vscode import (
    attached_container_uri,
    check_vscode_installation,
    dev_container_uri,
    launch_vscode,
)

logger = logging.getLogger(__name__)

CLI_INSTALL_HINT = "Please install the devcontainer CLI: npm install -g @devcontainers/cli"

ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class StepLog:
    """Append-only record of the phases that have begun."""

    steps: Tuple[SpawnStep, ...] = ()

    @property
    def current(self) -> SpawnStep:
        return self.steps[-1] if self.steps else SpawnStep.NONE

    def advance(self, step: SpawnStep) -> "StepLog":
        if step < self.current:
            raise ValueError(f"Cannot move from {self.current.name} back to {step.name}")
        return StepLog(self.steps + (step,))


@dataclass(frozen=True)
class SpawnState:
    """Everything one spawn attempt has created so far.

    Rollback is derived from this value alone.
    """

    log: StepLog = field(default_factory=StepLog)
    volume_name: Optional[str] = None
    bootstrap: Optional[BootstrapContainerInfo] = None
    bootstrap_torn_down: bool = False
    legacy_workspace: Optional[Path] = None

    @property
    def current_step(self) -> SpawnStep:
        return self.log.current

    def begin(self, step: SpawnStep) -> "SpawnState":
        return replace(self, log=self.log.advance(step))


def _parse_created(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


class DevcontainerSpawner:
    """Provision a volume-backed devcontainer and clean up after failures."""

    def __init__(
        self,
        docker: Optional[DockerResources] = None,
        runner: Optional[CommandRunner] = None,
        settings: Optional[SpawnerSettings] = None,
    ) -> None:
        self.settings = settings or SpawnerSettings()
        self.docker = docker or DockerResources(timeout=self.settings.timeouts.docker_api)
        self.runner = runner or CommandRunner()
        self.bootstrap = BootstrapManager(self.docker, self.settings)
        self.legacy = LegacyWorkflow(self.docker, self.runner, self.settings)

    # -- pre-flight -----------------------------------------------------

    def check_docker_availability(self) -> DockerAvailability:
        try:
            if not self.docker.ping():
                return DockerAvailability(available=False, running=False, message="Docker ping failed")
            version = self.docker.version()
        except Exception as exc:
            # requests and docker-py both surface daemon connection failures here
            logger.debug("Docker availability check failed: %s", exc)
            return DockerAvailability(
                available=False, running=False, message=f"Docker is not available: {exc}"
            )
        return DockerAvailability(
            available=True,
            running=True,
            version=version,
            message=f"Docker is running (version {version})",
        )

    def is_devcontainer_cli_installed(self) -> bool:
        timeout = self.settings.timeouts.cli_check
        try:
            result = self.runner.run("devcontainer", ["--version"], timeout=timeout)
            if result.returncode == 0 and (result.stdout or "").strip():
                logger.debug("devcontainer CLI found: %s", result.stdout.strip())
                return True
        except (OSError, SpawnError) as exc:
            logger.debug("Direct devcontainer CLI check failed: %s", exc)

        try:
            shell = self.runner.run_shell_wrapped("devcontainer", ["--version"], timeout=timeout)
            if shell is not None and shell.returncode == 0 and (shell.stdout or "").strip():
                logger.debug("devcontainer CLI found through shell: %s", shell.stdout.strip())
                return True
        except (OSError, SpawnError) as exc:
            logger.debug("Shell devcontainer CLI check failed: %s", exc)

        try:
            location = self.runner.locate("devcontainer", timeout=timeout)
            if location:
                logger.debug("devcontainer CLI found in PATH: %s", location)
                return True
        except (OSError, SpawnError) as exc:
            logger.debug("PATH check for devcontainer CLI failed: %s", exc)

        return False

    def check_vscode_installation(self) -> VsCodeInstallation:
        return check_vscode_installation(self.runner, timeout=self.settings.timeouts.cli_check)

    # -- discovery ------------------------------------------------------

    def find_existing_container(self, project_path: str) -> Optional[ExistingContainer]:
        """Running container labelled with this project's local folder, if any."""
        try:
            containers = self.docker.list_containers(
                local_folder_filter(project_path), include_stopped=False
            )
        except Exception as exc:
            logger.error("Error finding existing container: %s", exc)
            return None
        if not containers:
            logger.debug("No existing container found for project: %s", project_path)
            return None

        container = containers[0]
        labels = container.get("Labels") or {}
        existing = ExistingContainer(
            container_id=container["Id"],
            volume_name=labels.get(LABEL_VOLUME_BACKREF, ""),
            workspace_folder=labels.get(LABEL_WORKSPACE_FOLDER, ""),
            config_hash=labels.get(LABEL_CONFIG_HASH),
            created=_parse_created(container.get("Created")),
            running=container.get("State") == "running",
        )
        logger.info("Found existing container: %s", existing.container_id[:12])
        return existing

    def list_managed_volumes(self) -> List[ManagedVolume]:
        try:
            volumes = self.docker.list_volumes(managed_filter())
        except Exception as exc:
            logger.error("Error listing managed volumes: %s", exc)
            return []
        managed = []
        for volume in volumes:
            labels = volume.get("Labels") or {}
            managed.append(
                ManagedVolume(
                    name=volume["Name"],
                    project_name=labels.get(LABEL_PROJECT, "unknown"),
                    created=_parse_created(labels.get(LABEL_CREATED)),
                    labels=dict(labels),
                )
            )
        return managed

    def list_managed_containers(self) -> List[ManagedContainer]:
        try:
            containers = self.docker.list_containers(managed_filter(), include_stopped=True)
        except Exception as exc:
            logger.error("Error listing managed containers: %s", exc)
            return []
        managed = []
        for container in containers:
            labels = container.get("Labels") or {}
            names = container.get("Names") or [""]
            managed.append(
                ManagedContainer(
                    container_id=container["Id"],
                    container_name=names[0].lstrip("/"),
                    project_name=labels.get(LABEL_PROJECT, "unknown"),
                    volume_name=labels.get(LABEL_VOLUME_BACKREF, ""),
                    status=container.get("State", ""),
                    created=_parse_created(container.get("Created")),
                    workspace_folder=labels.get(LABEL_WORKSPACE_FOLDER, ""),
                    labels=dict(labels),
                )
            )
        return managed

    def get_container_vscode_uri(self, container_id: str, workspace_folder: str) -> str:
        return attached_container_uri(container_id, workspace_folder)

    def start_container(self, container_id: str) -> bool:
        try:
            self.docker.start_container(container_id)
        except DockerException as exc:
            logger.error("Failed to start container %s: %s", container_id[:12], exc)
            return False
        return True

    # -- rollback -------------------------------------------------------

    def rollback_plan(self, state: SpawnState) -> List[Tuple[str, Callable[[], None]]]:
        """Independent cleanup actions for whatever ``state`` says exists."""
        actions: List[Tuple[str, Callable[[], None]]] = []
        if state.bootstrap is not None and not state.bootstrap_torn_down:
            container_id = state.bootstrap.container_id
            actions.append(
                (f"bootstrap container {container_id[:12]}", lambda: self.bootstrap.teardown(container_id))
            )
        if state.volume_name is not None:
            volume_name = state.volume_name
            actions.append((f"volume {volume_name}", lambda: self.docker.remove_volume(volume_name)))
        if state.legacy_workspace is not None:
            workspace = state.legacy_workspace
            actions.append(
                (f"bootstrap workspace {workspace}", lambda: LegacyWorkflow.remove_workspace(workspace))
            )
        return actions

    def _rollback(self, state: SpawnState, result: SpawnResult) -> SpawnState:
        logger.info(
            "Cleaning up failed spawn (volume: %s, workspace: %s, container: %s)",
            state.volume_name or "none",
            state.legacy_workspace or "none",
            state.bootstrap.container_id[:12] if state.bootstrap else "none",
        )
        for description, action in self.rollback_plan(state):
            try:
                action()
                logger.info("Removed %s", description)
            except Exception as exc:
                logger.warning("Failed to remove %s: %s", description, exc)
                result.warnings.append(f"Failed to remove {description}: {exc}")
        if state.bootstrap is not None:
            state = replace(state, bootstrap_torn_down=True)
        return state

    def _teardown_bootstrap(self, state: SpawnState, result: SpawnResult) -> SpawnState:
        if state.bootstrap is None or state.bootstrap_torn_down:
            return state
        logger.info("Cleaning up bootstrap container...")
        try:
            self.bootstrap.teardown(state.bootstrap.container_id)
        except Exception as exc:
            logger.warning("Failed to stop/remove bootstrap container: %s", exc)
            result.warnings.append(
                f"Failed to remove bootstrap container {state.bootstrap.container_id[:12]}: {exc}"
            )
        return replace(state, bootstrap_torn_down=True)

    # -- helpers --------------------------------------------------------

    def _config_hash(self, options: SpawnOptions, result: SpawnResult) -> Optional[str]:
        try:
            return compute_configuration_hash(Path(options.devcontainer_path)).hash
        except (ConfigTransformError, OSError) as exc:
            result.warnings.append(f"Could not compute configuration hash: {exc}")
            return None

    def _record_cli_output(
        self,
        options: SpawnOptions,
        result: SpawnResult,
        stdout: Optional[str],
        stderr: Optional[str],
    ) -> None:
        result.devcontainer_cli_output = stdout or None
        result.devcontainer_cli_stderr = stderr or None
        if not options.build_log_path:
            return
        path = Path(options.build_log_path).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                f"=== STDOUT ===\n{stdout or ''}\n=== STDERR ===\n{stderr or ''}\n",
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Failed to write build log %s: %s", path, exc)
            result.warnings.append(f"Failed to write build log to {path}: {exc}")

    def _launch_vscode(
        self,
        result: SpawnResult,
        container_id: Optional[str],
        workspace_folder: str,
        legacy_workspace: Optional[Path] = None,
    ) -> None:
        info = self.check_vscode_installation()
        if not info.installed or not info.executable:
            result.warnings.append("VS Code is not installed, skipping launch")
            return
        if legacy_workspace is not None:
            uri = dev_container_uri(str(legacy_workspace), workspace_folder)
        elif container_id:
            uri = attached_container_uri(container_id, workspace_folder)
        else:
            result.warnings.append("No container id reported, skipping VS Code launch")
            return
        result.vscode_uri = uri
        try:
            launch_vscode(self.runner, info.executable, uri)
        except OSError as exc:
            logger.error("Failed to launch VS Code: %s", exc)
            result.warnings.append(f"Failed to launch VS Code: {exc}")

    # -- spawn ----------------------------------------------------------

    def spawn(
        self, options: SpawnOptions, on_progress: Optional[ProgressCallback] = None
    ) -> SpawnResult:
        """Run one spawn attempt. Never raises; failures land in the result."""
        started = time.monotonic()
        result = SpawnResult()
        state = SpawnState()

        def begin(step: SpawnStep, message: str) -> SpawnState:
            logger.info(message)
            if on_progress is not None:
                on_progress(message)
            return state.begin(step)

        workspace_folder = self.bootstrap.workspace_path(options.project_name)

        try:
            state = begin(SpawnStep.DOCKER_CHECK, "Checking Docker availability...")
            docker_check = self.check_docker_availability()
            if not (docker_check.available and docker_check.running):
                result.message = "Docker is not available or not running"
                result.errors.append(docker_check.message)
                return result
            logger.info("Docker is available (version: %s)", docker_check.version)

            state = begin(SpawnStep.DEVCONTAINER_CLI_CHECK, "Checking devcontainer CLI...")
            if not self.is_devcontainer_cli_installed():
                result.message = "devcontainer CLI is not installed"
                result.errors.append(CLI_INSTALL_HINT)
                return result

            config_hash = self._config_hash(options, result)

            if options.reuse_existing:
                existing = self.find_existing_container(options.project_path)
                if existing is not None:
                    state = state.begin(SpawnStep.COMPLETED)
                    result.success = True
                    result.message = "Reusing existing devcontainer"
                    result.container_id = existing.container_id
                    result.volume_name = existing.volume_name or None
                    if config_hash and existing.config_hash and existing.config_hash != config_hash:
                        result.warnings.append(
                            "devcontainer configuration changed since this container was "
                            "created; spawn with --force to rebuild"
                        )
                    if options.launch_vscode:
                        self._launch_vscode(
                            result,
                            existing.container_id,
                            existing.workspace_folder or workspace_folder,
                        )
                    return result

            state = begin(SpawnStep.VOLUME_CREATION, "Creating Docker volume...")
            volume_name = options.volume_name or generate_volume_name(options.project_name)
            labels = volume_labels(
                options.project_name, volume_name, datetime.now(timezone.utc).isoformat()
            )
            if config_hash:
                labels[LABEL_CONFIG_HASH] = config_hash
            self.docker.create_volume(volume_name, labels)
            state = replace(state, volume_name=volume_name)
            result.volume_name = volume_name
            logger.info("Created volume: %s", volume_name)

            up_labels: Dict[str, str] = id_labels(options.project_path, options.project_name, volume_name)
            up_labels[LABEL_WORKSPACE_FOLDER] = workspace_folder
            if config_hash:
                up_labels[LABEL_CONFIG_HASH] = config_hash

            up: DevcontainerUpResult
            if options.use_bootstrap_container:
                state = begin(SpawnStep.BOOTSTRAP_IMAGE_CHECK, "Ensuring bootstrap image...")
                image = self.bootstrap.ensure_image()
                if not image.success:
                    result.message = f"Failed to ensure bootstrap image: {image.message}"
                    result.errors.append(image.message)
                    state = self._rollback(state, result)
                    return result
                if image.was_built:
                    logger.info("Bootstrap image built in %.1fs", image.build_duration.total_seconds())

                state = begin(SpawnStep.BOOTSTRAP_CONTAINER_START, "Starting bootstrap container...")
                info = self.bootstrap.start(
                    self.bootstrap.container_config(options.project_name, volume_name)
                )
                state = replace(state, bootstrap=info)
                result.bootstrap_container_id = info.container_id
                container_id = info.container_id

                state = begin(
                    SpawnStep.FILE_COPY_TO_BOOTSTRAP,
                    "Copying source files to volume via bootstrap container...",
                )
                only = None if options.copy_source_files else [DEVCONTAINER_DIR]
                warning = self.bootstrap.copy_project(
                    container_id, Path(options.project_path), workspace_folder, only=only
                )
                if warning:
                    result.warnings.append(warning)
                override_path, override_warnings = self.bootstrap.prepare_override(
                    container_id,
                    Path(options.devcontainer_path),
                    workspace_folder,
                    options.build_args,
                )
                result.warnings.extend(override_warnings)
                host_config = None
                if options.forward_docker_config:
                    host_config = Path(
                        options.docker_config_path or self.settings.docker_config_path
                    ).expanduser()
                warning = self.bootstrap.forward_docker_config(container_id, host_config)
                if warning:
                    result.warnings.append(warning)

                state = begin(
                    SpawnStep.DEVCONTAINER_UP, "Running devcontainer up in bootstrap container..."
                )
                up, exec_result = self.bootstrap.run_devcontainer_up(
                    container_id, workspace_folder, volume_name, override_path, up_labels
                )
                self._record_cli_output(options, result, exec_result.stdout, exec_result.stderr)
            else:
                state = begin(SpawnStep.BOOTSTRAP_CONTAINER_START, "Creating bootstrap workspace...")
                workspace = self.legacy.create_workspace(
                    options.project_name,
                    volume_name,
                    Path(options.devcontainer_path),
                    options.build_args,
                )
                state = replace(state, legacy_workspace=workspace)

                if options.copy_source_files:
                    state = begin(SpawnStep.FILE_COPY_TO_BOOTSTRAP, "Copying source files to volume...")
                    self.legacy.copy_to_volume(
                        Path(options.project_path),
                        volume_name,
                        self.legacy.project_folder(options.project_name),
                    )

                state = begin(SpawnStep.DEVCONTAINER_UP, "Running devcontainer up...")
                up, completed = self.legacy.devcontainer_up(workspace, up_labels)
                self._record_cli_output(options, result, completed.stdout, completed.stderr)

            if not up.succeeded:
                result.message = f"devcontainer up failed: {up.outcome}"
                result.errors.append(f"devcontainer CLI returned outcome: {up.outcome}")
                if up.message:
                    result.errors.append(up.message)
                state = self._rollback(state, result)
                return result

            logger.info("Container created: %s", up.container_id)
            result.container_id = up.container_id

            if options.launch_vscode:
                state = begin(SpawnStep.VSCODE_LAUNCH, "Launching VS Code...")
                self._launch_vscode(
                    result,
                    up.container_id,
                    up.remote_workspace_folder or workspace_folder,
                    legacy_workspace=state.legacy_workspace,
                )

            state = state.begin(SpawnStep.COMPLETED)
            result.success = True
            result.message = "Devcontainer spawned successfully"
            return result
        except Exception as exc:
            logger.error("Devcontainer spawn failed at step %s: %s", state.current_step.name, exc)
            if isinstance(exc, DevcontainerUpError):
                self._record_cli_output(options, result, exc.stdout, exc.stderr)
            elif isinstance(exc, CommandTimeoutError) and exc.output:
                self._record_cli_output(options, result, exc.output, None)
            state = self._rollback(state, result)
            result.success = False
            result.message = f"Devcontainer spawn failed: {exc}"
            result.errors.append(str(exc))
            return result
        finally:
            state = self._teardown_bootstrap(state, result)
            result.completed_step = state.current_step
            result.step_history = list(state.log.steps)
            result.duration = timedelta(seconds=time.monotonic() - started)
