"""Tests for the spawn orchestrator, including rollback behavior."""

import io
import json
import shlex
import tarfile
from pathlib import Path

import pytest
from docker.errors import DockerException
from pydantic import ValidationError

from pks_devcontainers.confighash import compute_configuration_hash
from pks_devcontainers.models import ExecResult, SpawnOptions, SpawnStep
from pks_devcontainers.spawner import CLI_INSTALL_HINT, DevcontainerSpawner, StepLog
from pks_devcontainers.vscode import attached_container_uri

from conftest import UP_SUCCESS, FakeRunner, completed

UP_ERROR = json.dumps({"outcome": "error", "message": "Dockerfile build failed"})


@pytest.fixture
def spawner(fake_docker, fake_runner, settings):
    return DevcontainerSpawner(docker=fake_docker, runner=fake_runner, settings=settings)


def up_handler(stdout, exit_code=0, stderr="", timed_out=False):
    """exec handler that answers `devcontainer up` with the given output."""

    def handler(command):
        if command.startswith("devcontainer up"):
            return ExecResult(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                timed_out=timed_out,
                error=(stderr or f"exit code {exit_code}") if exit_code else None,
            )
        return ExecResult(exit_code=0, stdout="ok\n")

    return handler


def up_command(fake_docker):
    commands = [c[2] for c in fake_docker.called("exec_run") if c[2].startswith("devcontainer up")]
    assert len(commands) == 1
    return shlex.split(commands[0])


def archive_names(data):
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        return tar.getnames()


def assert_monotonic(history):
    assert all(a <= b for a, b in zip(history, history[1:]))


def assert_nothing_left(fake_docker):
    assert fake_docker.volumes == {}
    started = {c[1] for c in fake_docker.called("start_container")}
    removed = {c[1] for c in fake_docker.called("remove_container")}
    assert started <= removed


class TestHappyPath:
    def test_spawns_through_bootstrap(self, spawner, fake_docker, options):
        result = spawner.spawn(options)

        assert result.success, result.errors
        assert result.message == "Devcontainer spawned successfully"
        assert result.container_id == "c0ffee1234567890"
        assert result.completed_step == SpawnStep.COMPLETED
        assert result.step_history == [
            SpawnStep.DOCKER_CHECK,
            SpawnStep.DEVCONTAINER_CLI_CHECK,
            SpawnStep.VOLUME_CREATION,
            SpawnStep.BOOTSTRAP_IMAGE_CHECK,
            SpawnStep.BOOTSTRAP_CONTAINER_START,
            SpawnStep.FILE_COPY_TO_BOOTSTRAP,
            SpawnStep.DEVCONTAINER_UP,
            SpawnStep.COMPLETED,
        ]
        assert result.volume_name in fake_docker.volumes
        assert not fake_docker.called("remove_volume")
        assert fake_docker.called("remove_container") == [
            ("remove_container", result.bootstrap_container_id)
        ]
        assert result.devcontainer_cli_output.startswith("[log] building")

    def test_volume_labels_carry_config_hash(self, spawner, fake_docker, options, project):
        result = spawner.spawn(options)
        labels = fake_docker.volumes[result.volume_name]
        expected = compute_configuration_hash(project / ".devcontainer").hash
        assert labels["devcontainer.config_hash"] == expected
        assert labels["pks.managed"] == "true"
        assert labels["vsch.local.repository.volume"] == result.volume_name

    def test_up_command_identifies_project(self, spawner, fake_docker, options):
        result = spawner.spawn(options)
        argv = up_command(fake_docker)
        id_labels = [argv[i + 1] for i, a in enumerate(argv) if a == "--id-label"]
        assert f"devcontainer.local_folder={options.project_path}" in id_labels
        assert f"vsch.local.repository.volume={result.volume_name}" in id_labels
        assert argv[argv.index("--override-config") + 1] == "/tmp/pks-devcontainer-override.json"

    def test_explicit_volume_name(self, spawner, fake_docker, options):
        result = spawner.spawn(options.model_copy(update={"volume_name": "custom-vol"}))
        assert result.volume_name == "custom-vol"
        assert fake_docker.called("create_volume")[0][1] == "custom-vol"

    def test_progress_messages(self, spawner, options):
        messages = []
        spawner.spawn(options, on_progress=messages.append)
        assert messages[0] == "Checking Docker availability..."
        assert "Running devcontainer up in bootstrap container..." in messages

    def test_no_copy_source_copies_only_devcontainer(self, spawner, fake_docker, options):
        spawner.spawn(options.model_copy(update={"copy_source_files": False}))
        _, path, data = fake_docker.archives[0]
        assert path == "/workspaces/my-project"
        assert all(name.startswith(".devcontainer") for name in archive_names(data))

    def test_bootstrap_removal_failure_is_a_warning(self, spawner, fake_docker, options):
        fake_docker.failures["remove_container"] = DockerException("busy")
        result = spawner.spawn(options)
        assert result.success
        assert any("Failed to remove bootstrap container" in w for w in result.warnings)


class TestVsCodeLaunch:
    def test_launches_attached_container_uri(self, spawner, fake_runner, options):
        result = spawner.spawn(options.model_copy(update={"launch_vscode": True}))
        expected = attached_container_uri("c0ffee1234567890", "/workspaces/my-project")
        assert result.vscode_uri == expected
        assert fake_runner.launched == [("code", ["--folder-uri", expected])]
        assert SpawnStep.VSCODE_LAUNCH in result.step_history

    def test_missing_vscode_is_a_warning(self, fake_docker, settings, options):
        runner = FakeRunner({"devcontainer": completed("0.71.0\n")})
        spawner = DevcontainerSpawner(docker=fake_docker, runner=runner, settings=settings)
        result = spawner.spawn(options.model_copy(update={"launch_vscode": True}))
        assert result.success
        assert "VS Code is not installed, skipping launch" in result.warnings
        assert runner.launched == []

    def test_launch_os_error_is_a_warning(self, spawner, fake_runner, options, mocker):
        mocker.patch.object(fake_runner, "launch_detached", side_effect=OSError("no display"))
        result = spawner.spawn(options.model_copy(update={"launch_vscode": True}))
        assert result.success
        assert result.completed_step == SpawnStep.COMPLETED
        assert "Failed to launch VS Code: no display" in result.warnings

    def test_unexpected_launch_failure_rolls_back(self, spawner, fake_docker, fake_runner, options, mocker):
        mocker.patch.object(fake_runner, "launch_detached", side_effect=RuntimeError("launcher crashed"))
        result = spawner.spawn(options.model_copy(update={"launch_vscode": True}))

        assert not result.success
        assert result.completed_step == SpawnStep.VSCODE_LAUNCH
        assert result.step_history[-1] == SpawnStep.VSCODE_LAUNCH
        assert_monotonic(result.step_history)
        assert_nothing_left(fake_docker)
        assert "launcher crashed" in result.message


class TestReuse:
    @pytest.fixture
    def existing(self, fake_docker, options):
        fake_docker.containers.append(
            {
                "Id": "e" * 64,
                "State": "running",
                "Created": 1767225600,
                "Labels": {
                    "devcontainer.local_folder": options.project_path,
                    "vsch.local.repository.volume": "devcontainer-my-project-0123abcd",
                    "devcontainer.workspace_folder": "/workspaces/my-project",
                    "devcontainer.config_hash": "stale",
                },
            }
        )

    def test_reuses_without_creating_anything(self, spawner, fake_docker, options, existing):
        result = spawner.spawn(options)
        assert result.success
        assert result.message == "Reusing existing devcontainer"
        assert result.container_id == "e" * 64
        assert result.volume_name == "devcontainer-my-project-0123abcd"
        assert result.completed_step == SpawnStep.COMPLETED
        assert fake_docker.mutation_calls() == []

    def test_changed_configuration_warns(self, spawner, options, existing):
        result = spawner.spawn(options)
        assert any("configuration changed" in w for w in result.warnings)

    def test_reuse_launches_vscode(self, spawner, fake_runner, options, existing):
        result = spawner.spawn(options.model_copy(update={"launch_vscode": True}))
        assert result.vscode_uri == attached_container_uri("e" * 64, "/workspaces/my-project")
        assert len(fake_runner.launched) == 1

    def test_force_ignores_existing(self, spawner, fake_docker, options, existing):
        result = spawner.spawn(options.model_copy(update={"reuse_existing": False}))
        assert result.container_id == "c0ffee1234567890"
        assert fake_docker.called("create_volume")

    def test_stopped_container_not_reused(self, spawner, fake_docker, options, existing):
        fake_docker.containers[0]["State"] = "exited"
        result = spawner.spawn(options)
        assert result.message == "Devcontainer spawned successfully"


class TestPreflightFailures:
    def test_docker_unavailable(self, spawner, fake_docker, options):
        fake_docker.failures["ping"] = DockerException("connection refused")
        result = spawner.spawn(options)
        assert not result.success
        assert result.message == "Docker is not available or not running"
        assert "connection refused" in result.errors[0]
        assert result.completed_step == SpawnStep.DOCKER_CHECK
        assert fake_docker.mutation_calls() == []

    def test_cli_missing(self, fake_docker, settings, options):
        spawner = DevcontainerSpawner(docker=fake_docker, runner=FakeRunner(), settings=settings)
        result = spawner.spawn(options)
        assert not result.success
        assert result.message == "devcontainer CLI is not installed"
        assert result.errors == [CLI_INSTALL_HINT]
        assert result.completed_step == SpawnStep.DEVCONTAINER_CLI_CHECK
        assert fake_docker.mutation_calls() == []

    def test_cli_found_on_path(self, fake_docker, settings):
        runner = FakeRunner({"devcontainer": completed("", returncode=127)})
        runner.located["devcontainer"] = "/usr/local/bin/devcontainer"
        spawner = DevcontainerSpawner(docker=fake_docker, runner=runner, settings=settings)
        assert spawner.is_devcontainer_cli_installed()

    def test_undecodable_config_falls_back_to_inplace_edit(self, spawner, fake_docker, options):
        (Path(options.devcontainer_path) / "devcontainer.json").write_bytes(b'{"name": "\xff"}')
        result = spawner.spawn(options)

        assert result.success, result.errors
        assert any("Could not compute configuration hash" in w for w in result.warnings)
        sed = [c[2] for c in fake_docker.called("exec_run") if c[2].startswith("sed -i -E ")]
        assert len(sed) == 1
        assert "--override-config" not in up_command(fake_docker)


class TestUpFailures:
    def test_error_outcome_rolls_back(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler(UP_ERROR, exit_code=1, stderr="E: build")
        result = spawner.spawn(options)

        assert not result.success
        assert result.message == "devcontainer up failed: error"
        assert "devcontainer CLI returned outcome: error" in result.errors
        assert "Dockerfile build failed" in result.errors
        assert result.completed_step == SpawnStep.DEVCONTAINER_UP
        assert fake_docker.called("remove_volume") == [("remove_volume", result.volume_name)]
        assert result.devcontainer_cli_output == UP_ERROR
        assert result.devcontainer_cli_stderr == "E: build"
        assert_nothing_left(fake_docker)

    def test_unparseable_output(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler("npm ERR! not found", exit_code=127, stderr="sh: devcontainer")
        result = spawner.spawn(options)
        assert result.message.startswith("Devcontainer spawn failed: devcontainer up failed in bootstrap container")
        assert result.devcontainer_cli_output == "npm ERR! not found"
        assert_nothing_left(fake_docker)

    def test_timeout(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler("still building", exit_code=-1, timed_out=True)
        result = spawner.spawn(options)
        assert result.message.startswith("Devcontainer spawn failed: Command timed out after 600 seconds")
        assert result.devcontainer_cli_output == "still building"
        assert_nothing_left(fake_docker)

    def test_rollback_removes_container_before_volume(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler(UP_ERROR)
        spawner.spawn(options)
        names = [c[0] for c in fake_docker.calls]
        assert names.index("remove_container") < names.index("remove_volume")

    def test_container_removal_failure_still_removes_volume(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler(UP_ERROR)
        fake_docker.failures["remove_container"] = DockerException("busy")
        result = spawner.spawn(options)
        assert fake_docker.volumes == {}
        assert any("bootstrap container" in w for w in result.warnings)
        assert len(fake_docker.called("remove_container")) == 1

    def test_volume_removal_failure_still_removes_container(self, spawner, fake_docker, options):
        fake_docker.exec_handler = up_handler(UP_ERROR)
        fake_docker.failures["remove_volume"] = DockerException("in use")
        result = spawner.spawn(options)
        assert len(fake_docker.called("remove_container")) == 1
        assert any(w.startswith(f"Failed to remove volume {result.volume_name}") for w in result.warnings)


class TestInjectedFailures:
    @pytest.mark.parametrize(
        "method, step",
        [
            ("create_volume", SpawnStep.VOLUME_CREATION),
            ("find_image", SpawnStep.BOOTSTRAP_IMAGE_CHECK),
            ("create_container", SpawnStep.BOOTSTRAP_CONTAINER_START),
            ("start_container", SpawnStep.BOOTSTRAP_CONTAINER_START),
            ("put_archive", SpawnStep.FILE_COPY_TO_BOOTSTRAP),
        ],
    )
    def test_failure_reports_step_and_cleans_up(self, spawner, fake_docker, options, method, step):
        fake_docker.failures[method] = DockerException(f"{method} exploded")
        result = spawner.spawn(options)

        assert not result.success
        assert result.completed_step == step
        assert result.step_history[-1] == step
        assert_monotonic(result.step_history)
        assert_nothing_left(fake_docker)
        assert any(f"{method} exploded" in e for e in result.errors)

    def test_image_failure_message(self, spawner, fake_docker, options):
        fake_docker.failures["find_image"] = DockerException("registry down")
        result = spawner.spawn(options)
        assert result.message == "Failed to ensure bootstrap image: registry down"
        assert not fake_docker.called("create_container")


class TestBuildLog:
    def test_writes_cli_output(self, spawner, options, tmp_path):
        log = tmp_path / "logs" / "build.log"
        result = spawner.spawn(options.model_copy(update={"build_log_path": str(log)}))
        assert result.success
        text = log.read_text(encoding="utf-8")
        assert text.startswith("=== STDOUT ===\n[log] building")
        assert "=== STDERR ===" in text

    def test_unwritable_log_is_a_warning(self, spawner, options, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        result = spawner.spawn(options.model_copy(update={"build_log_path": str(blocker / "build.log")}))
        assert result.success
        assert any("Failed to write build log" in w for w in result.warnings)


class TestDockerConfigForwarding:
    def _forwarded(self, fake_docker):
        for _, path, data in fake_docker.archives:
            if path == "/root/.docker":
                with tarfile.open(fileobj=io.BytesIO(data)) as tar:
                    return json.loads(tar.extractfile("config.json").read())
        raise AssertionError("docker config was not written")

    def test_strips_host_credential_store(self, spawner, fake_docker, options, tmp_path):
        host = tmp_path / "docker.json"
        host.write_text(json.dumps({"auths": {"ghcr.io": {}}, "credsStore": "osxkeychain"}), encoding="utf-8")
        spawner.spawn(options.model_copy(update={"docker_config_path": str(host)}))
        assert self._forwarded(fake_docker) == {"auths": {"ghcr.io": {}}}

    def test_disabled_forwarding_writes_stub(self, spawner, fake_docker, options, tmp_path):
        host = tmp_path / "docker.json"
        host.write_text(json.dumps({"auths": {"ghcr.io": {}}}), encoding="utf-8")
        spawner.spawn(
            options.model_copy(update={"docker_config_path": str(host), "forward_docker_config": False})
        )
        assert self._forwarded(fake_docker) == {"auths": {}}


class TestLegacyPath:
    @pytest.fixture
    def legacy(self, fake_docker, settings, options, mocker, tmp_path):
        temp = tmp_path / "tmp"
        temp.mkdir()
        mocker.patch("pks_devcontainers.legacy.tempfile.gettempdir", return_value=str(temp))
        runner = FakeRunner({"devcontainer": completed(UP_SUCCESS + "\n")})
        spawner = DevcontainerSpawner(docker=fake_docker, runner=runner, settings=settings)
        return spawner, runner, temp, options.model_copy(update={"use_bootstrap_container": False})

    def test_host_side_up(self, legacy, fake_docker):
        spawner, runner, temp, options = legacy
        result = spawner.spawn(options)

        assert result.success, result.errors
        assert result.step_history == [
            SpawnStep.DOCKER_CHECK,
            SpawnStep.DEVCONTAINER_CLI_CHECK,
            SpawnStep.VOLUME_CREATION,
            SpawnStep.BOOTSTRAP_CONTAINER_START,
            SpawnStep.FILE_COPY_TO_BOOTSTRAP,
            SpawnStep.DEVCONTAINER_UP,
            SpawnStep.COMPLETED,
        ]
        workspaces = list(temp.glob("devcontainer-bootstrap-my-project-*"))
        assert len(workspaces) == 1
        document = json.loads((workspaces[0] / ".devcontainer" / "devcontainer.json").read_text(encoding="utf-8"))
        assert document["workspaceMount"] == f"source={result.volume_name},target=/workspaces/my-project,type=volume"

        program, args, cwd = runner.calls[-1]
        assert program == "devcontainer"
        assert args[:3] == ["up", "--workspace-folder", str(workspaces[0])]
        assert cwd == str(workspaces[0])

        assert fake_docker.called("ensure_pulled") == [("ensure_pulled", "alpine:latest")]
        assert fake_docker.archives[0][1] == "/workspaces/my-project"
        assert not fake_docker.called("exec_run")

    def test_failure_removes_workspace_and_volume(self, legacy, fake_docker):
        spawner, runner, temp, options = legacy
        runner.responses["devcontainer"] = completed("not json", returncode=1, stderr="boom")
        runner.located["devcontainer"] = "/usr/bin/devcontainer"
        result = spawner.spawn(options)

        assert not result.success
        assert result.completed_step == SpawnStep.DEVCONTAINER_UP
        assert result.devcontainer_cli_output == "not json"
        assert result.devcontainer_cli_stderr == "boom"
        assert list(temp.iterdir()) == []
        assert_nothing_left(fake_docker)

    @pytest.mark.parametrize(
        "content",
        [b'{"name": "caf\xe9"}', b"{ broken"],
        ids=["undecodable", "malformed"],
    )
    def test_workspace_failure_stops_at_bootstrap_step(self, legacy, fake_docker, content):
        spawner, runner, temp, options = legacy
        (Path(options.devcontainer_path) / "devcontainer.json").write_bytes(content)
        result = spawner.spawn(options)

        assert not result.success
        assert result.completed_step == SpawnStep.BOOTSTRAP_CONTAINER_START
        assert_monotonic(result.step_history)
        assert any("Could not compute configuration hash" in w for w in result.warnings)
        assert list(temp.iterdir()) == []
        assert_nothing_left(fake_docker)
        assert not fake_docker.called("put_archive")

    @pytest.mark.parametrize(
        "method, removed", [("ensure_pulled", 0), ("create_container", 0), ("put_archive", 1)]
    )
    def test_copy_failure_stops_at_file_copy(self, legacy, fake_docker, method, removed):
        spawner, runner, temp, options = legacy
        fake_docker.failures[method] = DockerException(f"{method} exploded")
        result = spawner.spawn(options)

        assert not result.success
        assert result.completed_step == SpawnStep.FILE_COPY_TO_BOOTSTRAP
        assert result.step_history[-1] == SpawnStep.FILE_COPY_TO_BOOTSTRAP
        assert_monotonic(result.step_history)
        assert any(f"{method} exploded" in e for e in result.errors)
        assert list(temp.iterdir()) == []
        assert_nothing_left(fake_docker)
        assert len(fake_docker.called("remove_container")) == removed
        assert not [c for c in runner.calls if c[0] == "devcontainer" and c[1][:1] == ["up"]]

    def test_streams_archive_into_volume(self, legacy, fake_docker):
        spawner, runner, temp, options = legacy
        assert spawner.spawn(options).success
        assert fake_docker.streamed == [True]


class TestDiscovery:
    def test_list_managed_volumes(self, spawner, fake_docker):
        fake_docker.volumes["devcontainer-a-0123abcd"] = {
            "pks.managed": "true",
            "devcontainer.project": "a",
            "devcontainer.created": "2026-01-01T00:00:00+00:00",
        }
        fake_docker.volumes["unrelated"] = {}
        volumes = spawner.list_managed_volumes()
        assert [v.name for v in volumes] == ["devcontainer-a-0123abcd"]
        assert volumes[0].project_name == "a"
        assert volumes[0].created.year == 2026

    def test_list_managed_containers(self, spawner, fake_docker):
        fake_docker.containers.append(
            {
                "Id": "f" * 64,
                "Names": ["/pks-bootstrap-a-0123abcd"],
                "State": "exited",
                "Labels": {"pks.managed": "true", "devcontainer.project": "a"},
            }
        )
        containers = spawner.list_managed_containers()
        assert containers[0].container_name == "pks-bootstrap-a-0123abcd"
        assert containers[0].status == "exited"

    def test_listing_failure_returns_empty(self, spawner, fake_docker):
        fake_docker.failures["list_volumes"] = DockerException("down")
        assert spawner.list_managed_volumes() == []

    def test_start_container(self, spawner, fake_docker):
        assert spawner.start_container("abc")
        fake_docker.failures["start_container"] = DockerException("no such container")
        assert not spawner.start_container("abc")


class TestModels:
    def test_unsanitizable_project_name_rejected(self, project):
        with pytest.raises(ValidationError):
            SpawnOptions(project_name="!!!", project_path=str(project), devcontainer_path=str(project))

    def test_blank_volume_name_means_generated(self, project):
        opts = SpawnOptions(
            project_name="p", project_path=str(project), devcontainer_path=str(project), volume_name="  "
        )
        assert opts.volume_name is None

    def test_step_log_never_goes_backwards(self):
        log = StepLog().advance(SpawnStep.DOCKER_CHECK).advance(SpawnStep.VOLUME_CREATION)
        with pytest.raises(ValueError):
            log.advance(SpawnStep.DEVCONTAINER_CLI_CHECK)
        assert log.current == SpawnStep.VOLUME_CREATION
