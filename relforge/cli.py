"""Command line interface for the release orchestrator."""
from __future__ import annotations

from argparse import REMAINDER, ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable
import sys

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner

from .build import BuildType
from .config_loader import ReleaseConfig
from .console import Console
from .devshell import install_commands, provision
from .errors import ReleaseError
from .pipeline import ReleasePipeline
from .platforms import FeatureSet, HostOS, detect_host, merge_profile, profile_for


def _make_runner(dry_run: bool) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner()


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="relforge", description="Reproducible build and release orchestrator")
    parser.add_argument("--root", default=".", help="Source tree to build (default: current directory)")
    parser.add_argument("--config", help="Configuration file (default: <root>/relforge.toml)")
    parser.add_argument(
        "--log-level",
        choices=sorted(Console.LEVELS, key=Console.LEVELS.__getitem__),
        default="info",
        help="Console verbosity",
    )
    parser.add_argument("--verbose", action="store_true", help="Shortcut for --log-level debug")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Run the CI gate: debug build, tests and derived outputs")

    build_parser = subparsers.add_parser("build", help="Build the binary and install derived artifacts")
    build_parser.add_argument("--debug", action="store_true", help="Build with the debug profile")
    build_parser.add_argument("--prefix", help="Install prefix (default from configuration)")
    build_parser.add_argument("--archive", help="Also write a reproducible archive of the install prefix")
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")

    run_parser = subparsers.add_parser("run", help="Build and run the binary")
    run_parser.add_argument("arguments", nargs=REMAINDER, help="Arguments passed to the binary")

    subparsers.add_parser("sources", help="List the filtered source tree")
    subparsers.add_parser("lock", help="Summarize the pinned dependency lock")

    profile_parser = subparsers.add_parser("profile", help="Show the platform profile and feature set")
    profile_parser.add_argument("--host", choices=[host.value for host in HostOS], help="Host OS to describe")

    devshell_parser = subparsers.add_parser("devshell", help="Report on the developer environment")
    devshell_parser.add_argument("--strict", action="store_true", help="Fail when a required tool is missing")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    level = "debug" if args.verbose else args.log_level
    console = Console(level, dry_run=getattr(args, "dry_run", False))
    workspace = Path(args.root).resolve()

    try:
        config = ReleaseConfig.load(workspace, path=Path(args.config) if args.config else None)
        if args.command == "check":
            return _handle_check(config, console)
        if args.command == "build":
            return _handle_build(args, config, console, workspace)
        if args.command == "run":
            return _handle_run(args, config, console)
        if args.command == "sources":
            return _handle_sources(config, console)
        if args.command == "lock":
            return _handle_lock(config, console)
        if args.command == "profile":
            return _handle_profile(args, config)
        if args.command == "devshell":
            return _handle_devshell(args, config)
    except ReleaseError as exc:
        console.exception(exc)
        return 1
    raise ValueError(f"Unknown command: {args.command}")


def _handle_check(config: ReleaseConfig, console: Console) -> int:
    pipeline = ReleasePipeline(config, command_runner=SubprocessCommandRunner(), console=console)
    result = pipeline.verify()
    if result.passed:
        return 0
    if result.error is not None:
        console.exception(result.error)
    else:
        console.error(result.reason)
    return 1


def _handle_build(args: Namespace, config: ReleaseConfig, console: Console, workspace: Path) -> int:
    runner = _make_runner(args.dry_run)
    pipeline = ReleasePipeline(config, command_runner=runner, console=console)
    prefix = Path(args.prefix).resolve() if args.prefix else None
    archive = Path(args.archive).resolve() if args.archive else None
    result = pipeline.build(
        build_type=BuildType.DEBUG if args.debug else BuildType.RELEASE,
        prefix=prefix,
        archive=archive,
        dry_run=args.dry_run,
    )
    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace)
        return 0
    print(f"{result.artifact.name}: {result.installed_binary}")
    for item in result.derived:
        print(f"  {item.kind.value}: {result.prefix / item.install_path}")
    if result.archive is not None:
        print(f"  archive: {result.archive}")
    return 0


def _handle_run(args: Namespace, config: ReleaseConfig, console: Console) -> int:
    arguments = list(args.arguments)
    if arguments and arguments[0] == "--":
        arguments = arguments[1:]
    pipeline = ReleasePipeline(config, command_runner=SubprocessCommandRunner(), console=console)
    return pipeline.run(arguments)


def _handle_sources(config: ReleaseConfig, console: Console) -> int:
    pipeline = ReleasePipeline(config, command_runner=SubprocessCommandRunner(), console=console)
    tree = pipeline.sources()
    for path in tree.paths:
        print(path)
    print(f"# {len(tree)} files, sha256 {tree.digest()}")
    return 0


def _handle_lock(config: ReleaseConfig, console: Console) -> int:
    pipeline = ReleasePipeline(config, command_runner=SubprocessCommandRunner(), console=console)
    lock = pipeline.lock()
    for package in lock:
        origin = package.source or "local"
        checksum = package.checksum[:12] if package.checksum else "-"
        print(f"{package.key}\t{origin}\t{checksum}")
    print(f"# {len(lock)} packages ({len(lock.external)} external), lock sha256 {lock.digest}")
    return 0


def _handle_profile(args: Namespace, config: ReleaseConfig) -> int:
    host = HostOS(args.host) if args.host else detect_host()
    profile = merge_profile(profile_for(host), config.platforms.get(host.value))
    features = FeatureSet.resolve(config.package.features, profile)
    mapping = profile.to_mapping()
    for key, value in mapping.items():
        if isinstance(value, list):
            value = ", ".join(value) or "-"
        print(f"{key}: {value}")
    print(f"features: {features.render() or '-'}")
    print(f"default_features: {'on' if config.package.default_features else 'off'}")
    return 0


def _handle_devshell(args: Namespace, config: ReleaseConfig) -> int:
    tools = provision(config.devshell)
    missing_required = False
    for tool in tools:
        marker = "ok" if tool.available else "missing"
        if not tool.available and tool.required:
            missing_required = True
        print(f"[{marker:>7}] {tool.command:<20} {tool.purpose}")
    print("To provision:")
    for command in install_commands(config.devshell):
        print(f"  {command}")
    if args.strict and missing_required:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
