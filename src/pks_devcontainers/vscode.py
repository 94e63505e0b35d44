"""VS Code discovery, remote URIs, and launching."""

from __future__ import annotations

import logging

from .errors import SpawnError
from .models import VsCodeEdition, VsCodeInstallation
from .process import CommandRunner

logger = logging.getLogger(__name__)

EDITIONS = (
    ("code", VsCodeEdition.STABLE),
    ("code-insiders", VsCodeEdition.INSIDERS),
)


def hex_encode(value: str) -> str:
    return value.encode("utf-8").hex()


def attached_container_uri(container_id: str, workspace_folder: str) -> str:
    return f"vscode-remote://attached-container+{hex_encode(container_id)}{workspace_folder}"


def dev_container_uri(host_path: str, remote_workspace_folder: str) -> str:
    return f"vscode-remote://dev-container+{hex_encode(host_path)}{remote_workspace_folder}"


def check_vscode_installation(runner: CommandRunner, timeout: float = 10) -> VsCodeInstallation:
    """Probe ``code`` then ``code-insiders`` with ``--version``."""
    for executable, edition in EDITIONS:
        try:
            result = runner.run(executable, ["--version"], timeout=timeout)
        except (OSError, SpawnError) as exc:
            logger.debug("%s --version failed: %s", executable, exc)
            continue
        output = (result.stdout or "").strip()
        if result.returncode != 0 or not output or "not found" in output:
            continue
        return VsCodeInstallation(
            installed=True,
            executable=executable,
            version=output.splitlines()[0].strip(),
            edition=edition,
        )
    return VsCodeInstallation(installed=False)


def launch_vscode(runner: CommandRunner, executable: str, uri: str) -> None:
    """Open VS Code on a remote folder URI without waiting for it."""
    runner.launch_detached(executable, ["--folder-uri", uri])
    logger.info("VS Code launched with URI: %s", uri)
