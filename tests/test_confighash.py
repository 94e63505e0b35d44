"""Tests for the devcontainer configuration fingerprint."""

import json

import pytest

from pks_devcontainers.confighash import (
    compute_configuration_hash,
    configuration_changed,
    normalize_json,
)
from pks_devcontainers.errors import ConfigTransformError


class TestConfigurationHash:
    def test_includes_referenced_dockerfile(self, project):
        result = compute_configuration_hash(project / ".devcontainer")
        assert len(result.hash) == 64
        assert result.included_files == ["devcontainer.json", "Dockerfile"]

    def test_stable_across_key_order_and_formatting(self, project):
        dc = project / ".devcontainer"
        before = compute_configuration_hash(dc).hash
        data = json.loads((dc / "devcontainer.json").read_text(encoding="utf-8"))
        reordered = dict(reversed(list(data.items())))
        (dc / "devcontainer.json").write_text(json.dumps(reordered), encoding="utf-8")
        assert compute_configuration_hash(dc).hash == before

    def test_dockerfile_change_detected(self, project):
        dc = project / ".devcontainer"
        before = compute_configuration_hash(dc).hash
        (dc / "Dockerfile").write_text("FROM python:3.13\n", encoding="utf-8")
        assert configuration_changed(dc, before)
        assert not configuration_changed(dc, compute_configuration_hash(dc).hash)

    def test_missing_referenced_file_skipped(self, tmp_path):
        dc = tmp_path / ".devcontainer"
        dc.mkdir()
        (dc / "devcontainer.json").write_text(
            json.dumps({"dockerComposeFile": ["a.yml", "b.yml"]}), encoding="utf-8"
        )
        (dc / "a.yml").write_text("services: {}\n", encoding="utf-8")
        result = compute_configuration_hash(dc)
        assert result.included_files == ["devcontainer.json", "a.yml"]

    def test_missing_devcontainer_json(self, tmp_path):
        with pytest.raises(ConfigTransformError, match="Cannot read"):
            compute_configuration_hash(tmp_path)


def test_normalize_json_sorts_nested_keys():
    assert normalize_json({"b": {"d": 1, "c": [2]}, "a": None}) == '{"a":null,"b":{"c":[2],"d":1}}'
