"""CLI for spawning and inspecting volume-backed devcontainers."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .devcontainer_config import DEVCONTAINER_DIR, DEVCONTAINER_FILE
from .models import SpawnOptions, SpawnResult
from .settings import SpawnerSettings, resolve_settings
from .spawner import DevcontainerSpawner

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def _error(message: str) -> None:
    print(f"[spawn] ERROR: {message}", file=sys.stderr)


def _parse_build_args(values: Optional[List[str]]) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"Invalid --build-arg '{item}', expected KEY=VALUE")
        parsed[key.strip()] = value
    return parsed


def _load_settings(args: argparse.Namespace, start: Optional[Path] = None) -> SpawnerSettings:
    explicit = Path(args.config).expanduser() if getattr(args, "config", None) else None
    try:
        return resolve_settings(explicit, start_path=start)
    except (FileNotFoundError, ValidationError) as exc:
        raise SystemExit(f"Invalid spawner config: {exc}")


def _print_result(result: SpawnResult, project_name: str, launch_vscode: bool) -> None:
    print()
    if result.success:
        print(f"[spawn] {result.message}")
        if result.container_id:
            print(f"  Container ID: {result.container_id[:12]}")
        if result.volume_name:
            print(f"  Volume Name:  {result.volume_name}")
        print(f"  Workspace:    /workspaces/{project_name}")
        if result.vscode_uri:
            print(f"  VS Code URI:  {result.vscode_uri}")
        elif not launch_vscode:
            print("  Connect manually with the VS Code Dev Containers extension")
    else:
        _error("Failed to spawn devcontainer")
        print(f"  {result.message}", file=sys.stderr)
        print(f"  Failed during: {result.completed_step.name}", file=sys.stderr)
        for err in result.errors:
            print(f"  - {err}", file=sys.stderr)

    for warning in result.warnings:
        print(f"[spawn] WARNING: {warning}")

    if not result.success and (result.devcontainer_cli_output or result.devcontainer_cli_stderr):
        print("\n[spawn] devcontainer CLI output:", file=sys.stderr)
        if result.devcontainer_cli_output:
            print(f"STDOUT:\n{result.devcontainer_cli_output}", file=sys.stderr)
        if result.devcontainer_cli_stderr:
            print(f"STDERR:\n{result.devcontainer_cli_stderr}", file=sys.stderr)


def cmd_spawn(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose)
    project_path = Path(args.project_path or ".").expanduser().resolve()
    if not project_path.is_dir():
        _error(f"Project path does not exist: {project_path}")
        return 1

    devcontainer_path = project_path / DEVCONTAINER_DIR
    if not (devcontainer_path / DEVCONTAINER_FILE).is_file():
        _error(f"No {DEVCONTAINER_FILE} found in {devcontainer_path}")
        return 1

    settings = _load_settings(args, start=project_path)
    try:
        options = SpawnOptions(
            project_name=project_path.name,
            project_path=str(project_path),
            devcontainer_path=str(devcontainer_path),
            volume_name=args.volume_name,
            copy_source_files=not args.no_copy_source,
            launch_vscode=not args.no_launch_vscode,
            reuse_existing=not args.force,
            use_bootstrap_container=not args.no_bootstrap,
            forward_docker_config=args.forward_docker_config,
            docker_config_path=args.docker_config_path,
            build_args=_parse_build_args(args.build_arg),
            build_log_path=args.build_log,
        )
    except ValidationError as exc:
        _error(str(exc))
        return 1

    if args.format == "text":
        print(f"[spawn] Project: {options.project_name}")
        print(f"[spawn] Path: {options.project_path}")

    def _progress(message: str) -> None:
        if args.format == "text":
            print(f"[spawn] {message}")

    spawner = DevcontainerSpawner(settings=settings)
    result = spawner.spawn(options, on_progress=_progress)

    if args.format == "json":
        print(result.model_dump_json(indent=2))
    else:
        _print_result(result, options.project_name, options.launch_vscode)
    return 0 if result.success else 1


def cmd_volumes(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose)
    spawner = DevcontainerSpawner(settings=_load_settings(args))
    volumes = spawner.list_managed_volumes()
    if args.format == "json":
        print(json.dumps([v.model_dump(mode="json") for v in volumes], indent=2))
        return 0
    if not volumes:
        print("No managed volumes found.")
        return 0
    print(f"{'NAME':<48} {'PROJECT':<24} CREATED")
    for volume in volumes:
        created = volume.created.isoformat(timespec="seconds") if volume.created else "-"
        print(f"{volume.name:<48} {volume.project_name:<24} {created}")
    return 0


def cmd_containers(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose)
    spawner = DevcontainerSpawner(settings=_load_settings(args))
    containers = spawner.list_managed_containers()
    if args.format == "json":
        print(json.dumps([c.model_dump(mode="json") for c in containers], indent=2))
        return 0
    if not containers:
        print("No managed containers found.")
        return 0
    print(f"{'ID':<14} {'NAME':<40} {'PROJECT':<24} {'STATUS':<10} VOLUME")
    for c in containers:
        print(
            f"{c.container_id[:12]:<14} {c.container_name:<40} {c.project_name:<24} "
            f"{c.status:<10} {c.volume_name or '-'}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Volume-backed devcontainer tooling")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to a spawner settings YAML file")
    common.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase log verbosity"
    )

    spawn = subparsers.add_parser(
        "spawn", parents=[common], help="Spawn a devcontainer in a Docker volume"
    )
    spawn.add_argument(
        "project_path", nargs="?", help="Project directory (defaults to current directory)"
    )
    spawn.add_argument("--volume-name", help="Custom volume name for the devcontainer")
    spawn.add_argument(
        "--no-launch-vscode", action="store_true", help="Don't launch VS Code afterwards"
    )
    spawn.add_argument(
        "--no-copy-source",
        action="store_true",
        help="Only copy the .devcontainer configuration, not the sources",
    )
    spawn.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Run devcontainer up on the host instead of in a bootstrap container",
    )
    spawn.add_argument(
        "--force", action="store_true", help="Create a new container even if one exists"
    )
    spawn.add_argument(
        "--forward-docker-config",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Forward host Docker credentials into the bootstrap container",
    )
    spawn.add_argument(
        "--docker-config-path", help="Docker config.json to forward (default ~/.docker/config.json)"
    )
    spawn.add_argument(
        "--build-arg", action="append", metavar="KEY=VALUE", help="Extra build.args entry"
    )
    spawn.add_argument("--build-log", help="Write devcontainer CLI output to this file")
    spawn.add_argument("--format", choices=("text", "json"), default="text")
    spawn.set_defaults(func=cmd_spawn)

    volumes = subparsers.add_parser(
        "volumes", parents=[common], help="List managed devcontainer volumes"
    )
    volumes.add_argument("--format", choices=("table", "json"), default="table")
    volumes.set_defaults(func=cmd_volumes)

    containers = subparsers.add_parser(
        "containers", parents=[common], help="List managed devcontainer containers"
    )
    containers.add_argument("--format", choices=("table", "json"), default="table")
    containers.set_defaults(func=cmd_containers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    result = args.func(args)
    # Commands may return an exit code; treat None as success
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    raise SystemExit(main())
