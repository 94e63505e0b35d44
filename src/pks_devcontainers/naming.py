"""Volume naming, label keys and label filters for managed resources."""

from __future__ import annotations

import re
import uuid
from typing import Dict, List, Optional

LABEL_MANAGED = "pks.managed"
LABEL_BOOTSTRAP = "pks.bootstrap"
LABEL_PROJECT = "devcontainer.project"
LABEL_CREATED = "devcontainer.created"
LABEL_LOCAL_FOLDER = "devcontainer.local_folder"
LABEL_WORKSPACE_FOLDER = "devcontainer.workspace_folder"
LABEL_VOLUME = "devcontainer.volume"
LABEL_CONFIG_HASH = "devcontainer.config_hash"
LABEL_VOLUME_BACKREF = "vsch.local.repository.volume"

VOLUME_PREFIX = "devcontainer"

_INVALID_CHARS = re.compile(r"[^a-z0-9\-_]")
_SEPARATOR_RUNS = re.compile(r"[-_]+")


def short_id() -> str:
    """Random 8-character lowercase hex suffix."""
    return uuid.uuid4().hex[:8]


def sanitize_project_name(project_name: str) -> str:
    s = _INVALID_CHARS.sub("", project_name.lower())
    s = _SEPARATOR_RUNS.sub("-", s)
    return s.strip("-_")


def generate_volume_name(project_name: str) -> str:
    """Build ``devcontainer-<sanitized>-<hex8>`` for a project.

    Raises ValueError when nothing legal is left after sanitizing.
    """
    sanitized = sanitize_project_name(project_name)
    if not sanitized:
        raise ValueError(
            f"Project name {project_name!r} has no characters usable in a volume name"
        )
    return f"{VOLUME_PREFIX}-{sanitized}-{short_id()}"


def volume_labels(project_name: str, volume_name: str, created: str) -> Dict[str, str]:
    return {
        LABEL_PROJECT: project_name,
        LABEL_MANAGED: "true",
        LABEL_CREATED: created,
        LABEL_VOLUME_BACKREF: volume_name,
    }


def id_labels(project_path: str, project_name: str, volume_name: str) -> Dict[str, str]:
    """Labels stamped on the devcontainer so later runs can find it again."""
    return {
        LABEL_LOCAL_FOLDER: project_path,
        LABEL_MANAGED: "true",
        LABEL_PROJECT: project_name,
        LABEL_VOLUME_BACKREF: volume_name,
    }


def label_filter(labels: Dict[str, Optional[str]]) -> List[str]:
    """Render labels as Docker API ``label`` filter entries.

    A ``None`` value matches on key presence only.
    """
    return [key if value is None else f"{key}={value}" for key, value in labels.items()]


def managed_filter() -> List[str]:
    return label_filter({LABEL_MANAGED: "true"})


def local_folder_filter(project_path: str) -> List[str]:
    return label_filter({LABEL_LOCAL_FOLDER: project_path})
