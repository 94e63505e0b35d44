"""Thin capability surface over the Docker Engine API (docker-py)."""

from __future__ import annotations

import logging
import socket
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Tuple, Union

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag
from docker.utils.socket import STDERR, frames_iter

from .errors import DockerUnavailableError
from .models import ExecResult

logger = logging.getLogger(__name__)

DEFAULT_EXEC_TIMEOUT = 120.0


def drain_multiplexed(
    stream: Any,
    cancel: Optional[threading.Event] = None,
    stdout: Optional[bytearray] = None,
    stderr: Optional[bytearray] = None,
) -> Tuple[bytes, bytes]:
    """Split a raw attached exec stream into stdout and stderr.

    Frames are decoded by docker-py. Reading stops at EOF or once ``cancel`` is
    set; bytes read so far stay in the supplied buffers.
    """
    cancel = cancel or threading.Event()
    out = stdout if stdout is not None else bytearray()
    err = stderr if stderr is not None else bytearray()
    if cancel.is_set():
        return bytes(out), bytes(err)

    for stream_type, payload in frames_iter(stream, tty=False):
        if stream_type == STDERR:
            err += payload
        else:
            out += payload
        if cancel.is_set():
            break
    return bytes(out), bytes(err)


def _interrupt(stream: Any) -> None:
    # Unblocks a reader thread parked in recv(); SocketIO wraps the real socket.
    raw = getattr(stream, "_sock", stream)
    try:
        if hasattr(raw, "shutdown"):
            raw.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("exec stream shutdown failed: %s", exc)
    try:
        stream.close()
    except OSError as exc:
        logger.debug("exec stream close failed: %s", exc)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class DockerResources:
    """The subset of the Engine API the spawner needs.

    The docker-py client is created lazily so that an unreachable daemon shows
    up as a failed ping rather than a constructor error.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        timeout: int = 60,
    ) -> None:
        self._client = client
        self._timeout = timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self._timeout)
            except DockerException as exc:
                raise DockerUnavailableError(f"Docker is not available: {exc}") from exc
        return self._client

    # -- system ---------------------------------------------------------

    def ping(self) -> bool:
        return bool(self.client.ping())

    def version(self) -> str:
        return str(self.client.version().get("Version", "unknown"))

    # -- volumes --------------------------------------------------------

    def create_volume(self, name: str, labels: Dict[str, str]) -> str:
        volume = self.client.volumes.create(name=name, labels=labels)
        return volume.name

    def remove_volume(self, name: str) -> None:
        self.client.api.remove_volume(name, force=True)

    def list_volumes(self, label_filters: List[str]) -> List[Dict[str, Any]]:
        volumes = self.client.volumes.list(filters={"label": label_filters})
        return [volume.attrs for volume in volumes]

    # -- images ---------------------------------------------------------

    def find_image(self, reference: str) -> Optional[str]:
        images = self.client.images.list(filters={"reference": reference})
        return images[0].id if images else None

    def build_image(self, context_dir: Path, tag: str, timeout: Optional[int] = None) -> str:
        image, logs = self.client.images.build(
            path=str(context_dir), tag=tag, rm=True, forcerm=True, timeout=timeout
        )
        for chunk in logs:
            if isinstance(chunk, dict) and "stream" in chunk:
                line = str(chunk["stream"]).strip()
                if line:
                    logger.debug("  %s", line)
        return image.id

    def ensure_pulled(self, reference: str) -> None:
        try:
            self.client.images.get(reference)
        except ImageNotFound:
            logger.info("Pulling %s", reference)
            repository, tag = parse_repository_tag(reference)
            self.client.images.pull(repository, tag=tag or "latest")

    # -- containers -----------------------------------------------------

    def create_container(
        self,
        image: str,
        name: str,
        command: Optional[List[str]] = None,
        volumes: Optional[Dict[str, Dict[str, str]]] = None,
        labels: Optional[Dict[str, str]] = None,
        working_dir: Optional[str] = None,
    ) -> str:
        container = self.client.containers.create(
            image,
            command=command,
            name=name,
            labels=labels or {},
            volumes=volumes or {},
            working_dir=working_dir,
            detach=True,
        )
        return container.id

    def start_container(self, container_id: str) -> None:
        self.client.api.start(container_id)

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self.client.api.stop(container_id, timeout=timeout)

    def remove_container(self, container_id: str) -> None:
        self.client.api.remove_container(container_id, force=True)

    def list_containers(
        self,
        label_filters: List[str],
        include_stopped: bool = True,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"label": label_filters}
        if status:
            filters["status"] = status
        return self.client.api.containers(all=include_stopped, filters=filters)

    def container_exists(self, container_id: str) -> bool:
        try:
            self.client.api.inspect_container(container_id)
        except NotFound:
            return False
        return True

    def put_archive(self, container_id: str, path: str, data: Union[bytes, IO[bytes]]) -> bool:
        return bool(self.client.api.put_archive(container_id, path, data))

    # -- exec -----------------------------------------------------------

    def exec_run(
        self,
        container_id: str,
        command: str,
        timeout: float = DEFAULT_EXEC_TIMEOUT,
        workdir: Optional[str] = None,
    ) -> ExecResult:
        """Run ``/bin/sh -c command`` in a container and collect its output.

        A command that outruns ``timeout`` is abandoned: the stream is closed and
        the result carries exit code -1 with whatever output arrived in time.
        """
        started = time.monotonic()
        logger.debug("exec in %s: %s", container_id[:12], command)
        try:
            created = self.client.api.exec_create(
                container_id,
                ["/bin/sh", "-c", command],
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                workdir=workdir,
            )
            exec_id = created["Id"]
            stream = self.client.api.exec_start(exec_id, tty=False, socket=True)
        except DockerException as exc:
            logger.error("Error executing command in container %s: %s", container_id[:12], exc)
            return ExecResult(
                exit_code=-1,
                error=f"Execution failed: {exc}",
                duration=timedelta(seconds=time.monotonic() - started),
            )

        cancel = threading.Event()
        out, err = bytearray(), bytearray()
        failure: List[BaseException] = []

        def _pump() -> None:
            try:
                drain_multiplexed(stream, cancel, out, err)
            except (OSError, ValueError) as exc:
                if not cancel.is_set():
                    failure.append(exc)

        reader = threading.Thread(target=_pump, name=f"exec-{exec_id[:12]}", daemon=True)
        reader.start()
        reader.join(timeout)

        if reader.is_alive():
            cancel.set()
            _interrupt(stream)
            reader.join(1.0)
            logger.warning("Command execution timed out after %g seconds", timeout)
            return ExecResult(
                exit_code=-1,
                stdout=_decode(bytes(out)),
                stderr=_decode(bytes(err)),
                timed_out=True,
                error=f"Command timed out after {timeout:g} seconds",
                duration=timedelta(seconds=time.monotonic() - started),
            )

        _interrupt(stream)
        duration = timedelta(seconds=time.monotonic() - started)
        if failure:
            return ExecResult(
                exit_code=-1,
                stdout=_decode(bytes(out)),
                stderr=_decode(bytes(err)),
                error=f"Execution failed: {failure[0]}",
                duration=duration,
            )

        try:
            exit_code = self.client.api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as exc:
            return ExecResult(
                exit_code=-1,
                stdout=_decode(bytes(out)),
                stderr=_decode(bytes(err)),
                error=f"Execution failed: {exc}",
                duration=duration,
            )

        result = ExecResult(
            exit_code=-1 if exit_code is None else int(exit_code),
            stdout=_decode(bytes(out)),
            stderr=_decode(bytes(err)),
            duration=duration,
        )
        if not result.success:
            result.error = result.stderr.strip() or f"exit code {result.exit_code}"
        logger.debug("exec finished with exit code %s", result.exit_code)
        return result
