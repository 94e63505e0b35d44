"""devcontainer.json reading and override-document construction.

devcontainer.json is treated as an untyped, ordered JSON tree. Third-party
features put arbitrary nested metadata in it, so every transform here copies
the whole document and touches only the keys it owns.
"""

from __future__ import annotations

import copy
import json
import logging
import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import jstyleson

from .errors import ConfigTransformError

logger = logging.getLogger(__name__)

OVERRIDE_REMOVED_KEYS = ("workspaceMount", "workspaceFolder")

DEVCONTAINER_DIR = ".devcontainer"
DEVCONTAINER_FILE = "devcontainer.json"


def strip_jsonc(text: str) -> str:
    """Turn JSON-with-comments into plain JSON."""
    return jstyleson.dispose(text)


def loads_jsonc(text: str) -> Any:
    return jstyleson.loads(text)


def load_devcontainer_json(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a devcontainer.json file into an ordered dict.

    Raises ConfigTransformError on read failure, undecodable bytes, malformed
    JSON, or a top-level value that is not an object.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigTransformError(f"Cannot read {path}: {exc}") from exc
    try:
        data = loads_jsonc(text)
    except ValueError as exc:
        raise ConfigTransformError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigTransformError(f"{path} must contain a JSON object")
    return data


def override_document(original: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``original`` without the workspace mount keys, order intact."""
    return {
        key: copy.deepcopy(value)
        for key, value in original.items()
        if key not in OVERRIDE_REMOVED_KEYS
    }


def build_override_config(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """Build the override document for a devcontainer.json on disk.

    Returns None when the file cannot be read or parsed; callers fall back to
    editing the original in place.
    """
    try:
        original = load_devcontainer_json(path)
    except ConfigTransformError as exc:
        logger.warning("Could not build override config: %s", exc)
        return None
    return override_document(original)


def merge_build_args(document: Dict[str, Any], build_args: Dict[str, str]) -> Dict[str, Any]:
    """Upsert ``build_args`` into ``document["build"]["args"]``.

    Sibling keys under ``build`` are left alone. Mutates and returns ``document``.
    """
    if not build_args:
        return document
    build = document.get("build")
    if not isinstance(build, dict):
        if build is not None:
            logger.warning("Replacing non-object 'build' value to hold build args")
        build = {}
        document["build"] = build
    args = build.get("args")
    if not isinstance(args, dict):
        args = {}
        build["args"] = args
    for key, value in build_args.items():
        args[key] = value
    return document


def legacy_workspace_document(
    original: Dict[str, Any], volume_name: str, project_name: str, workspaces_root: str = "/workspaces"
) -> Dict[str, Any]:
    """Volume-aware variant of a devcontainer.json for host-side ``devcontainer up``.

    ``workspaceMount`` is handed to ``docker run --mount`` verbatim, which splits
    on commas, so names containing one are rejected.
    """
    folder = f"{workspaces_root}/{project_name}"
    for label, value in (("Volume name", volume_name), ("Workspace folder", folder)):
        if "," in value:
            raise ConfigTransformError(f"{label} {value!r} cannot be used in a mount spec")
    document = copy.deepcopy(original)
    document["workspaceMount"] = f"source={volume_name},target={folder},type=volume"
    document["workspaceFolder"] = folder
    document.setdefault("postCreateCommand", f"sudo chown -R vscode:vscode {shlex.quote(folder)}")
    return document


def dumps_config(document: Dict[str, Any]) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def inplace_removal_command(
    config_path: str, keys: Iterable[str] = OVERRIDE_REMOVED_KEYS
) -> str:
    """Shell command deleting single-line ``"key": ...`` entries from a file.

    Used inside the bootstrap container when no override document could be
    produced. Multi-line values for these keys are not handled.
    """
    alternation = "|".join(keys)
    expression = f'/^[[:space:]]*"({alternation})"[[:space:]]*:/d'
    return f"sed -i -E {shlex.quote(expression)} {shlex.quote(config_path)}"
