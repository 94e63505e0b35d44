"""Direct-invocation workflow: host-side ``devcontainer up`` on a temp workspace."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Tuple

from docker.errors import DockerException

from .bootstrap import tar_directory
from .devcontainer_config import (
    DEVCONTAINER_DIR,
    DEVCONTAINER_FILE,
    dumps_config,
    legacy_workspace_document,
    load_devcontainer_json,
    merge_build_args,
)
from .docker_client import DockerResources
from .errors import BootstrapError, DevcontainerUpError
from .models import DevcontainerUpResult
from .naming import short_id
from .process import CommandRunner
from .settings import SpawnerSettings

logger = logging.getLogger(__name__)


class LegacyWorkflow:
    def __init__(
        self, docker: DockerResources, runner: CommandRunner, settings: SpawnerSettings
    ) -> None:
        self.docker = docker
        self.runner = runner
        self.settings = settings

    def project_folder(self, project_name: str) -> str:
        return f"{self.settings.bootstrap.workspaces_root}/{project_name}"

    def copy_to_volume(self, source: Path, volume_name: str, container_path: str) -> None:
        """Fill the volume through a created-but-never-started helper container."""
        image = self.settings.copy_image
        self.docker.ensure_pulled(image)
        name = f"devcontainer-copy-{short_id()}"
        container_id = self.docker.create_container(
            image, name, volumes={volume_name: {"bind": container_path, "mode": "rw"}}
        )
        try:
            with tar_directory(source) as archive:
                copied = self.docker.put_archive(container_id, container_path, archive)
            if not copied:
                raise BootstrapError(f"Failed to copy {source} into volume {volume_name}")
            logger.info("Files copied to volume %s", volume_name)
        finally:
            try:
                self.docker.remove_container(container_id)
            except DockerException as exc:
                logger.warning("Failed to remove temporary container %s: %s", name, exc)

    def create_workspace(
        self,
        project_name: str,
        volume_name: str,
        devcontainer_dir: Path,
        build_args: Dict[str, str],
    ) -> Path:
        """Temp directory holding a volume-aware copy of ``.devcontainer``."""
        workspace = Path(tempfile.gettempdir()) / f"devcontainer-bootstrap-{project_name}-{short_id()}"
        target = workspace / DEVCONTAINER_DIR
        target.mkdir(parents=True)
        try:
            for item in devcontainer_dir.iterdir():
                if item.is_file():
                    shutil.copy2(item, target / item.name)

            original = load_devcontainer_json(target / DEVCONTAINER_FILE)
            document = legacy_workspace_document(
                original, volume_name, project_name, self.settings.bootstrap.workspaces_root
            )
            merge_build_args(document, build_args)
            (target / DEVCONTAINER_FILE).write_text(dumps_config(document), encoding="utf-8")
        except Exception:
            shutil.rmtree(workspace, ignore_errors=True)
            raise
        logger.info("Bootstrap workspace created at: %s", workspace)
        return workspace

    def devcontainer_up(
        self, workspace: Path, id_labels: Dict[str, str]
    ) -> Tuple[DevcontainerUpResult, subprocess.CompletedProcess]:
        args: List[str] = ["up", "--workspace-folder", str(workspace)]
        for key, value in id_labels.items():
            args += ["--id-label", f"{key}={value}"]
        result = self.runner.run(
            "devcontainer",
            args,
            timeout=self.settings.timeouts.devcontainer_up_legacy,
            cwd=str(workspace),
        )
        try:
            up = DevcontainerUpResult.from_output(result.stdout or "")
        except ValueError as exc:
            raise DevcontainerUpError(
                f"devcontainer up failed with exit code {result.returncode}: {exc}",
                stdout=result.stdout,
                stderr=result.stderr,
            ) from exc
        logger.info("devcontainer up completed with outcome: %s", up.outcome)
        return up, result

    @staticmethod
    def remove_workspace(workspace: Path) -> None:
        if workspace.exists():
            shutil.rmtree(workspace)
