"""Stable fingerprint of a project's devcontainer configuration."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .devcontainer_config import DEVCONTAINER_FILE, load_devcontainer_json

logger = logging.getLogger(__name__)


class ConfigurationHash(BaseModel):
    hash: str
    file_hashes: Dict[str, str] = Field(default_factory=dict)
    included_files: List[str] = Field(default_factory=list)


def normalize_json(value: Any) -> str:
    """Minified JSON with object keys sorted at every level."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _referenced_files(config: Dict[str, Any]) -> List[str]:
    files: List[str] = []
    build = config.get("build")
    if isinstance(build, dict) and isinstance(build.get("dockerfile"), str):
        files.append(build["dockerfile"])
    elif isinstance(config.get("dockerFile"), str):
        files.append(config["dockerFile"])
    compose = config.get("dockerComposeFile")
    if isinstance(compose, str):
        files.append(compose)
    elif isinstance(compose, list):
        files.extend(item for item in compose if isinstance(item, str))
    return files


def compute_configuration_hash(devcontainer_dir: Path) -> ConfigurationHash:
    """Hash devcontainer.json, the files it references, and its features.

    Raises ConfigTransformError when devcontainer.json is missing or invalid.
    """
    config = load_devcontainer_json(devcontainer_dir / DEVCONTAINER_FILE)
    normalized = normalize_json(config)

    inputs = [f"{DEVCONTAINER_FILE}:{normalized}"]
    file_hashes = {DEVCONTAINER_FILE: _sha256(normalized)}

    for relative in _referenced_files(config):
        path = devcontainer_dir / relative
        if not path.is_file():
            logger.warning("%s referenced but not found: %s", relative, path)
            continue
        content = path.read_text(encoding="utf-8", errors="replace")
        file_hashes[relative] = _sha256(content)
        inputs.append(f"{relative}:{content}")

    features = config.get("features")
    if isinstance(features, dict):
        for name in sorted(features):
            inputs.append(f"feature:{name}:{normalize_json(features[name])}")

    digest = _sha256("\n".join(inputs))
    logger.debug("Configuration hash %s from %d files", digest[:16], len(file_hashes))
    return ConfigurationHash(
        hash=digest, file_hashes=file_hashes, included_files=list(file_hashes)
    )


def configuration_changed(devcontainer_dir: Path, stored_hash: str) -> bool:
    return compute_configuration_hash(devcontainer_dir).hash != stored_hash
