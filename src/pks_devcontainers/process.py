"""External process invocation with per-platform command shaping."""

from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import CommandFailedError, CommandTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0

VSCODE_EXECUTABLES = ("code", "code-insiders")


class PosixInvoker:
    """Executables are run directly and located with ``which``."""

    name = "posix"
    locator = "which"

    def build(self, program: str, args: List[str]) -> List[str]:
        return [program, *args]

    def shell_wrapped(self, program: str, args: List[str]) -> Optional[List[str]]:
        return None

    def detached_kwargs(self) -> Dict[str, Any]:
        return {"start_new_session": True}


class WindowsInvoker:
    """Shapes commands for cmd.exe PATH resolution.

    VS Code launchers are batch files that only resolve through cmd.exe, while
    the devcontainer CLI ships a ``.cmd`` shim that must be named explicitly.
    """

    name = "windows"
    locator = "where"

    def build(self, program: str, args: List[str]) -> List[str]:
        lowered = program.lower()
        if lowered in VSCODE_EXECUTABLES:
            return ["cmd.exe", "/c", program, *args]
        if lowered == "devcontainer":
            return [f"{program}.cmd", *args]
        return [program, *args]

    def shell_wrapped(self, program: str, args: List[str]) -> Optional[List[str]]:
        return ["cmd.exe", "/c", program, *args]

    def detached_kwargs(self) -> Dict[str, Any]:
        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(
            subprocess, "DETACHED_PROCESS", 0
        )
        return {"creationflags": flags}


def select_invoker(platform: Optional[str] = None):
    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsInvoker()
    return PosixInvoker()


@dataclass
class CommandRunner:
    """Thin wrapper to allow mocking in tests."""

    invoker: Any = field(default_factory=select_invoker)

    def run(
        self,
        program: str,
        args: List[str],
        timeout: float = DEFAULT_TIMEOUT,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        return self.run_argv(self.invoker.build(program, args), timeout, cwd, env)

    def run_argv(
        self,
        argv: List[str],
        timeout: float = DEFAULT_TIMEOUT,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        logger.debug("$ %s (cwd=%s)", " ".join(argv), cwd or ".")
        try:
            # subprocess.run kills the child before re-raising TimeoutExpired
            return subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                check=False,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            raise CommandTimeoutError(" ".join(argv), timeout, output=partial) from exc

    def run_checked(
        self,
        program: str,
        args: List[str],
        timeout: float = DEFAULT_TIMEOUT,
        cwd: Optional[str] = None,
    ) -> str:
        """Run a command and return its trimmed stdout, raising on non-zero exit."""
        result = self.run(program, args, timeout=timeout, cwd=cwd)
        if result.returncode != 0:
            raise CommandFailedError(
                " ".join([program, *args]), result.returncode, result.stderr or ""
            )
        return (result.stdout or "").strip()

    def run_shell_wrapped(
        self, program: str, args: List[str], timeout: float = DEFAULT_TIMEOUT
    ) -> Optional[subprocess.CompletedProcess]:
        """Run through the platform shell; returns None where no shell form exists."""
        argv = self.invoker.shell_wrapped(program, args)
        if argv is None:
            return None
        return self.run_argv(argv, timeout)

    def locate(self, program: str, timeout: float = DEFAULT_TIMEOUT) -> Optional[str]:
        result = self.run_argv([self.invoker.locator, program], timeout)
        if result.returncode != 0:
            return None
        lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return lines[0] if lines else None

    def launch_detached(self, program: str, args: List[str]) -> None:
        """Start a GUI program without waiting for it."""
        argv = self.invoker.build(program, args)
        logger.debug("launching %s", " ".join(argv))
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **self.invoker.detached_kwargs(),
        )
