"""Disposable helper container that runs the devcontainer CLI for the host."""

from __future__ import annotations

import io
import json
import logging
import shlex
import shutil
import tarfile
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import IO, Any, Dict, List, Optional, Tuple

from docker.errors import DockerException
from jinja2 import Environment, FileSystemLoader

from .devcontainer_config import (
    DEVCONTAINER_DIR,
    DEVCONTAINER_FILE,
    build_override_config,
    dumps_config,
    inplace_removal_command,
    merge_build_args,
)
from .docker_client import DockerResources
from .errors import BootstrapError, CommandTimeoutError, DevcontainerUpError
from .models import (
    BootstrapContainerConfig,
    BootstrapContainerInfo,
    BootstrapImageResult,
    DevcontainerUpResult,
    ExecResult,
)
from .naming import (
    LABEL_BOOTSTRAP,
    LABEL_MANAGED,
    LABEL_PROJECT,
    LABEL_VOLUME,
    sanitize_project_name,
    short_id,
)
from .settings import SpawnerSettings

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
DOCKERFILE_TEMPLATE = "bootstrap.Dockerfile.jinja2"

CONTAINER_DOCKER_CONFIG = "/root/.docker/config.json"
HOST_ONLY_DOCKER_KEYS = ("credsStore", "credHelpers")


def render_bootstrap_dockerfile(settings: SpawnerSettings) -> str:
    env = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)), keep_trailing_newline=True)
    template = env.get_template(DOCKERFILE_TEMPLATE)
    boot = settings.bootstrap
    return template.render(
        base_image=boot.base_image,
        cli_package=boot.devcontainer_cli_package,
        cli_version=boot.devcontainer_cli_version,
        workspaces_root=boot.workspaces_root,
    )


def tar_directory(source: Path, only: Optional[List[str]] = None) -> IO[bytes]:
    """Archive the contents of ``source`` (not the directory itself).

    ``only`` restricts the archive to the named top-level entries. The archive
    is spooled to an anonymous temporary file, rewound and handed back open;
    the caller closes it.
    """
    archive = tempfile.TemporaryFile(prefix="pks-copy-", suffix=".tar")
    try:
        with tarfile.open(fileobj=archive, mode="w") as tar:
            for child in sorted(source.iterdir()):
                if only is not None and child.name not in only:
                    continue
                tar.add(str(child), arcname=child.name)
        archive.seek(0)
    except Exception:
        archive.close()
        raise
    return archive


def tar_single_file(name: str, content: bytes, mode: int = 0o644) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        info.mode = mode
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def docker_config_payload(host_path: Optional[Path]) -> Tuple[Dict[str, Any], Optional[str]]:
    """Docker client config to place in the bootstrap container.

    Credential helpers configured on the host do not exist in the container,
    so those keys are dropped. Returns the payload and an optional warning.
    """
    stub: Dict[str, Any] = {"auths": {}}
    if host_path is None or not host_path.is_file():
        return stub, None
    try:
        data = json.loads(host_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        return stub, f"Could not read Docker config {host_path}: {exc}"
    if not isinstance(data, dict):
        return stub, f"Docker config {host_path} is not a JSON object"
    for key in HOST_ONLY_DOCKER_KEYS:
        if data.pop(key, None) is not None:
            logger.info("Dropped host-only '%s' from forwarded Docker config", key)
    return data, None


def build_up_command(
    workspace_folder: str,
    volume_name: str,
    override_path: Optional[str],
    id_labels: Dict[str, str],
    mount_target: str = "/workspaces",
) -> str:
    parts = [
        "devcontainer",
        "up",
        "--workspace-folder",
        workspace_folder,
        "--config",
        f"{workspace_folder}/{DEVCONTAINER_DIR}/{DEVCONTAINER_FILE}",
    ]
    if override_path:
        parts += ["--override-config", override_path]
    parts += [
        "--mount",
        f"type=volume,source={volume_name},target={mount_target},external=true",
    ]
    for key, value in id_labels.items():
        parts += ["--id-label", f"{key}={value}"]
    parts += ["--update-remote-user-uid-default", "off"]
    return " ".join(shlex.quote(p) for p in parts)


class BootstrapManager:
    """Owns the lifecycle of bootstrap containers."""

    def __init__(self, docker: DockerResources, settings: SpawnerSettings) -> None:
        self.docker = docker
        self.settings = settings

    @property
    def workspaces_root(self) -> str:
        return self.settings.bootstrap.workspaces_root

    def workspace_path(self, project_name: str) -> str:
        return str(PurePosixPath(self.workspaces_root) / project_name)

    def ensure_image(self) -> BootstrapImageResult:
        """Use the cached bootstrap image or build it from the bundled Dockerfile."""
        ref = self.settings.bootstrap.image_ref
        started = time.monotonic()
        try:
            image_id = self.docker.find_image(ref)
            if image_id:
                logger.info("Bootstrap image already exists: %s", image_id)
                return BootstrapImageResult(
                    success=True,
                    image_id=image_id,
                    image_name=ref,
                    message="Bootstrap image already exists",
                )

            logger.info("Bootstrap image not found, building %s", ref)
            context = Path(tempfile.gettempdir()) / f"pks-bootstrap-build-{short_id()}"
            context.mkdir(parents=True)
            try:
                (context / "Dockerfile").write_text(
                    render_bootstrap_dockerfile(self.settings), encoding="utf-8"
                )
                image_id = self.docker.build_image(
                    context, ref, timeout=int(self.settings.timeouts.image_build)
                )
            finally:
                try:
                    shutil.rmtree(context)
                except OSError as exc:
                    logger.warning("Failed to remove build context %s: %s", context, exc)
        except (DockerException, OSError) as exc:
            logger.error("Failed to ensure bootstrap image %s: %s", ref, exc)
            return BootstrapImageResult(success=False, image_name=ref, message=str(exc))

        duration = timedelta(seconds=time.monotonic() - started)
        return BootstrapImageResult(
            success=True,
            image_id=image_id,
            image_name=ref,
            was_built=True,
            build_duration=duration,
            message=f"Bootstrap image built successfully in {duration.total_seconds():.1f}s",
        )

    def container_config(self, project_name: str, volume_name: str) -> BootstrapContainerConfig:
        boot = self.settings.bootstrap
        return BootstrapContainerConfig(
            project_name=project_name,
            volume_name=volume_name,
            workspace_path=self.workspace_path(project_name),
            image=boot.image_ref,
            container_prefix=boot.container_prefix,
            mount_docker_socket=True,
            labels={LABEL_MANAGED: "true", LABEL_BOOTSTRAP: "true"},
        )

    def start(self, config: BootstrapContainerConfig) -> BootstrapContainerInfo:
        """Create and start a bootstrap container.

        The volume is mounted at the workspaces root, so the project lives at
        ``config.workspace_path`` inside it.
        """
        name = f"{config.container_prefix}-{sanitize_project_name(config.project_name)}-{short_id()}"
        labels = dict(config.labels)
        labels[LABEL_PROJECT] = config.project_name
        labels[LABEL_VOLUME] = config.volume_name

        volumes = {config.volume_name: {"bind": self.workspaces_root, "mode": "rw"}}
        if config.mount_docker_socket:
            socket_path = self.settings.bootstrap.docker_socket
            volumes[socket_path] = {"bind": socket_path, "mode": "rw"}

        container_id = self.docker.create_container(
            config.image,
            name,
            command=["sleep", "infinity"],
            volumes=volumes,
            labels=labels,
            working_dir=self.workspaces_root,
        )
        try:
            self.docker.start_container(container_id)
        except Exception:
            try:
                self.docker.remove_container(container_id)
            except DockerException as exc:
                logger.warning("Failed to remove unstarted container %s: %s", name, exc)
            raise

        logger.info("Bootstrap container started: %s", container_id[:12])
        return BootstrapContainerInfo(
            container_id=container_id,
            container_name=name,
            started_at=datetime.now(timezone.utc),
            volume_name=config.volume_name,
            project_name=config.project_name,
        )

    def exec(self, container_id: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        return self.docker.exec_run(
            container_id, command, timeout=timeout or self.settings.timeouts.exec_default
        )

    def _mkdir(self, container_id: str, path: str) -> None:
        result = self.exec(
            container_id, f"mkdir -p {shlex.quote(path)}", timeout=self.settings.timeouts.small_exec
        )
        if not result.success:
            raise BootstrapError(
                f"Failed to create directory {path} in bootstrap container: {result.error}"
            )

    def copy_project(
        self, container_id: str, source: Path, dest: str, only: Optional[List[str]] = None
    ) -> Optional[str]:
        """Copy the contents of ``source`` to ``dest`` through the container.

        Returns a warning when the copy could not be verified afterwards.
        """
        self._mkdir(container_id, dest)
        with tar_directory(source, only=only) as archive:
            copied = self.docker.put_archive(container_id, dest, archive)
        if not copied:
            raise BootstrapError(f"Failed to copy {source} into bootstrap container at {dest}")

        verify = self.exec(
            container_id, f"ls -la {shlex.quote(dest)}", timeout=self.settings.timeouts.file_copy
        )
        if not verify.success:
            logger.warning("Could not verify file copy: %s", verify.error)
            return f"Could not verify file copy to {dest}: {verify.error}"
        logger.debug("Copied files to %s:\n%s", dest, verify.stdout)
        return None

    def write_file(self, container_id: str, path: str, content: str) -> None:
        target = PurePosixPath(path)
        self._mkdir(container_id, str(target.parent))
        archive = tar_single_file(target.name, content.encode("utf-8"))
        if not self.docker.put_archive(container_id, str(target.parent), archive):
            raise BootstrapError(f"Failed to write {path} in bootstrap container")

    def forward_docker_config(self, container_id: str, host_path: Optional[Path]) -> Optional[str]:
        payload, warning = docker_config_payload(host_path)
        self.write_file(container_id, CONTAINER_DOCKER_CONFIG, json.dumps(payload, indent=2))
        return warning

    def prepare_override(
        self,
        container_id: str,
        host_devcontainer_dir: Path,
        workspace_folder: str,
        build_args: Dict[str, str],
    ) -> Tuple[Optional[str], List[str]]:
        """Write the override document into the container.

        Returns the override path (None when the degraded in-place edit was used
        instead) and any warnings.
        """
        warnings: List[str] = []
        document = build_override_config(host_devcontainer_dir / DEVCONTAINER_FILE)
        if document is not None:
            merge_build_args(document, build_args)
            path = self.settings.bootstrap.override_config_path
            self.write_file(container_id, path, dumps_config(document))
            logger.debug("Wrote override config to %s", path)
            return path, warnings

        in_container = f"{workspace_folder}/{DEVCONTAINER_DIR}/{DEVCONTAINER_FILE}"
        warnings.append(
            "Could not build override config; removed workspace mount keys from "
            f"{in_container} in place"
        )
        if build_args:
            warnings.append("Build args were not applied because devcontainer.json could not be parsed")
        result = self.exec(
            container_id,
            inplace_removal_command(in_container),
            timeout=self.settings.timeouts.small_exec,
        )
        if not result.success:
            raise BootstrapError(f"Failed to edit {in_container} in place: {result.error}")
        return None, warnings

    def run_devcontainer_up(
        self,
        container_id: str,
        workspace_folder: str,
        volume_name: str,
        override_path: Optional[str],
        id_labels: Dict[str, str],
    ) -> Tuple[DevcontainerUpResult, ExecResult]:
        command = build_up_command(
            workspace_folder, volume_name, override_path, id_labels, self.workspaces_root
        )
        timeout = self.settings.timeouts.devcontainer_up_bootstrap
        result = self.exec(container_id, command, timeout=timeout)
        if result.timed_out:
            raise CommandTimeoutError(command, timeout, output=result.stdout)

        try:
            up = DevcontainerUpResult.from_output(result.stdout)
        except ValueError as exc:
            if not result.success:
                raise DevcontainerUpError(
                    f"devcontainer up failed in bootstrap container: {result.error}",
                    stdout=result.stdout,
                    stderr=result.stderr,
                ) from exc
            raise DevcontainerUpError(str(exc), stdout=result.stdout, stderr=result.stderr) from exc

        logger.info(
            "devcontainer up completed with outcome: %s, containerId: %s",
            up.outcome,
            up.container_id,
        )
        return up, result

    def teardown(self, container_id: str) -> None:
        """Stop then force-remove; only the removal failing is an error."""
        try:
            self.docker.stop_container(container_id, timeout=self.settings.timeouts.container_stop)
        except DockerException as exc:
            logger.debug("Stopping bootstrap container %s failed: %s", container_id[:12], exc)
        self.docker.remove_container(container_id)
        logger.info("Bootstrap container stopped and removed: %s", container_id[:12])
