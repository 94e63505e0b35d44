import json
import subprocess
from typing import Callable, Dict, List, Optional

import pytest

from pks_devcontainers.models import ExecResult, SpawnOptions
from pks_devcontainers.settings import SpawnerSettings

UP_SUCCESS = json.dumps(
    {
        "outcome": "success",
        "containerId": "c0ffee1234567890",
        "remoteUser": "vscode",
        "remoteWorkspaceFolder": "/workspaces/my-project",
    }
)

DEVCONTAINER_JSON = {
    "name": "My Project",
    "image": "mcr.microsoft.com/devcontainers/python:3.12",
    "workspaceMount": "source=${localWorkspaceFolder},target=/src,type=bind",
    "workspaceFolder": "/src",
    "features": {
        "ghcr.io/devcontainers/features/node:1": {"version": "20", "nodeGypDependencies": True},
        "ghcr.io/devcontainers/features/docker-in-docker:2": {
            "moby": False,
            "installDockerBuildx": True,
            "extra": {"nested": [1, 2.5, None, "x"]},
        },
    },
    "build": {"dockerfile": "Dockerfile", "context": ".."},
    "forwardPorts": [8000, 5432],
}

MUTATIONS = {
    "create_volume",
    "remove_volume",
    "create_container",
    "start_container",
    "stop_container",
    "remove_container",
    "put_archive",
    "build_image",
    "exec_run",
}


class FakeDocker:
    """In-memory stand-in for DockerResources that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.ping_ok = True
        self.version_str = "27.1.1"
        self.images = {"pks-devcontainer-bootstrap:latest": "sha256:boot"}
        self.volumes: Dict[str, Dict[str, str]] = {}
        self.containers: List[dict] = []
        self.archives: List[tuple] = []
        self.streamed: List[bool] = []
        self.failures: Dict[str, Exception] = {}
        self.exec_handler: Optional[Callable[[str], ExecResult]] = None
        self._counter = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures[name]

    def called(self, name) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def mutation_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATIONS]

    def ping(self):
        self._record("ping")
        return self.ping_ok

    def version(self):
        self._record("version")
        return self.version_str

    def create_volume(self, name, labels):
        self._record("create_volume", name, labels)
        self.volumes[name] = labels
        return name

    def remove_volume(self, name):
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    def list_volumes(self, label_filters):
        self._record("list_volumes", label_filters)
        return [
            {"Name": name, "Labels": labels}
            for name, labels in self.volumes.items()
            if _matches(labels, label_filters)
        ]

    def find_image(self, reference):
        self._record("find_image", reference)
        return self.images.get(reference)

    def build_image(self, context_dir, tag, timeout=None):
        self._record("build_image", context_dir, tag)
        self.images[tag] = "sha256:built"
        return "sha256:built"

    def ensure_pulled(self, reference):
        self._record("ensure_pulled", reference)

    def create_container(self, image, name, command=None, volumes=None, labels=None, working_dir=None):
        self._record("create_container", image, name, command, volumes, labels)
        self._counter += 1
        return f"{self._counter:02d}" + "b" * 62

    def start_container(self, container_id):
        self._record("start_container", container_id)

    def stop_container(self, container_id, timeout=10):
        self._record("stop_container", container_id)

    def remove_container(self, container_id):
        self._record("remove_container", container_id)

    def list_containers(self, label_filters, include_stopped=True, status=None):
        self._record("list_containers", label_filters)
        return [
            c
            for c in self.containers
            if _matches(c.get("Labels") or {}, label_filters)
            and (include_stopped or c.get("State") == "running")
        ]

    def put_archive(self, container_id, path, data):
        self._record("put_archive", container_id, path)
        streamed = hasattr(data, "read")
        self.streamed.append(streamed)
        self.archives.append((container_id, path, data.read() if streamed else data))
        return True

    def exec_run(self, container_id, command, timeout=120, workdir=None):
        self._record("exec_run", container_id, command)
        if self.exec_handler is not None:
            return self.exec_handler(command)
        if command.startswith("devcontainer up"):
            return ExecResult(exit_code=0, stdout="[log] building\n" + UP_SUCCESS + "\n")
        return ExecResult(exit_code=0, stdout="ok\n")


def _matches(labels: Dict[str, str], label_filters: List[str]) -> bool:
    for entry in label_filters:
        key, sep, value = entry.partition("=")
        if key not in labels:
            return False
        if sep and labels[key] != value:
            return False
    return True


class FakeRunner:
    """Scripted CommandRunner: unknown programs behave as if not installed."""

    def __init__(self, responses: Optional[Dict[str, subprocess.CompletedProcess]] = None):
        self.responses = dict(responses or {})
        self.calls: List[tuple] = []
        self.launched: List[tuple] = []
        self.located: Dict[str, str] = {}

    def run(self, program, args, timeout=120, cwd=None, env=None):
        self.calls.append((program, list(args), cwd))
        if program not in self.responses:
            raise FileNotFoundError(program)
        response = self.responses[program]
        if isinstance(response, Exception):
            raise response
        return response

    def run_shell_wrapped(self, program, args, timeout=120):
        return None

    def locate(self, program, timeout=120):
        return self.located.get(program)

    def launch_detached(self, program, args):
        self.launched.append((program, list(args)))


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_runner():
    return FakeRunner(
        {
            "devcontainer": completed("0.71.0\n"),
            "code": completed("1.95.3\nabc123\nx64\n"),
        }
    )


@pytest.fixture
def settings():
    return SpawnerSettings()


@pytest.fixture
def project(tmp_path):
    """A project directory with a devcontainer.json and some sources."""
    root = tmp_path / "my-project"
    devcontainer = root / ".devcontainer"
    devcontainer.mkdir(parents=True)
    (devcontainer / "devcontainer.json").write_text(
        json.dumps(DEVCONTAINER_JSON, indent=2), encoding="utf-8"
    )
    (devcontainer / "Dockerfile").write_text("FROM python:3.12\n", encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (root / "README.md").write_text("# my project\n", encoding="utf-8")
    return root


@pytest.fixture
def options(project, tmp_path):
    return SpawnOptions(
        project_name=project.name,
        project_path=str(project),
        devcontainer_path=str(project / ".devcontainer"),
        launch_vscode=False,
        docker_config_path=str(tmp_path / "no-such-docker-config.json"),
    )
