"""Command line interface for the build and release pipelines."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from pprint import pprint
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import logging
import sys

from .artifacts import locate
from .command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from .config_loader import FIELD_NAMES, ResolvedConfig, resolve
from .environment import EnvironmentSource, FileSource
from .errors import ValidationError
from .executor import PipedExecutor, PostProcessor
from .pipeline import (
    BUILD_REQUIRED,
    EXIT_CONFIG_ERROR,
    RELEASE_REQUIRED,
    StepFactory,
    StepOrchestrator,
    build_chain,
    merge_chain,
    release_chain,
)
from .signing import SigningSetup
from .steps import BUILD_ACTIONS, CommandBuilder

logger = logging.getLogger(__name__)

FORMATTER = "xcbeautify"

_SIGNING_REQUIRED = ("certificate", "certificate_password", "profiles", "temp_dir")

_BUILD_DEFAULTS: Mapping[str, Any] = {
    "configuration": "Debug",
    "build_path": ".build",
    "disable_formatter": False,
}
_RELEASE_DEFAULTS: Mapping[str, Any] = {
    "configuration": "Release",
    "build_path": ".build",
    "platform": "iOS",
    "disable_formatter": False,
}
_MERGE_DEFAULTS: Mapping[str, Any] = {"build_path": ".build"}


def _flatten_arg_groups(groups: Iterable[Iterable[str]]) -> List[str]:
    flattened: List[str] = []
    for group in groups:
        for value in group:
            if value:
                flattened.append(value)
    return flattened


def _explicit_options(args: Namespace) -> Dict[str, Any]:
    explicit: Dict[str, Any] = {}
    for name in FIELD_NAMES:
        if not hasattr(args, name):
            continue
        value = getattr(args, name)
        if isinstance(value, list) and value and isinstance(value[0], list):
            value = _flatten_arg_groups(value)
        explicit[name] = value
    return explicit


def _resolve(args: Namespace, *, defaults: Mapping[str, Any], required: Sequence[str]) -> ResolvedConfig:
    sources: List[Any] = [EnvironmentSource()]
    if args.config_file:
        sources.append(FileSource(Path(args.config_file)))
    config = resolve(_explicit_options(args), sources, defaults, required=required)
    if args.show_config:
        print("Resolved configuration:")
        pprint(config.to_mapping())
    return config


def _add_common_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("--config-file", help="TOML, JSON or YAML file with fallback settings")
    parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")
    parser.add_argument("--show-config", action="store_true", help="Display the resolved configuration first")
    parser.add_argument(
        "--no-formatter",
        dest="disable_formatter",
        action="store_true",
        default=None,
        help=f"Do not pipe build output through {FORMATTER}",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")


def _add_release_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("--auth-key-path", dest="auth_key_path", help="App Store Connect API key directory or .p8 file")
    parser.add_argument("--auth-key-id", dest="auth_key_id", help="App Store Connect API key ID")
    parser.add_argument("--auth-key-issuer-id", dest="auth_key_issuer", help="App Store Connect API issuer ID")
    parser.add_argument("-b", "--build-path", dest="build_path", help="Build products path (default: .build)")
    parser.add_argument("-c", "--config", dest="configuration", help="Build configuration (default: Release)")
    parser.add_argument("-e", "--export-options-plist", dest="export_options_plist", help="Path to export options plist")
    parser.add_argument("-p", "--project", dest="project", help="Xcode project path")
    parser.add_argument("--platform", dest="platform", help="Platform (default: iOS, options: iOS, macOS, tvOS, visionOS)")
    parser.add_argument("-s", "--scheme", dest="scheme", help="Scheme name")
    parser.add_argument(
        "--extra-archive-args",
        dest="archive_args",
        action="append",
        nargs="+",
        default=[],
        metavar="ARG",
        help="Additional arguments appended to the archive command",
    )
    parser.add_argument(
        "--extra-export-args",
        dest="export_args",
        action="append",
        nargs="+",
        default=[],
        metavar="ARG",
        help="Additional arguments appended to the export command",
    )


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="xcpipeline", description="Xcode build and release pipelines")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build or test a project or Swift package")
    build_parser.add_argument(
        "-a",
        "--action",
        dest="action",
        help=f"Action to perform ({', '.join(kind.value for kind in BUILD_ACTIONS)})",
    )
    build_parser.add_argument("-b", "--build-path", dest="build_path", help="Build products path (default: .build)")
    build_parser.add_argument("-c", "--config", dest="configuration", help="Build configuration (default: Debug)")
    build_parser.add_argument("-d", "--destination", dest="destination", help="Destination device specifier")
    build_parser.add_argument("-p", "--project", dest="project", help="Xcode project path")
    build_parser.add_argument("-s", "--scheme", dest="scheme", help="Scheme name")
    build_parser.add_argument("-t", "--test-plan", dest="test_plan", help="Test plan used by the test action")
    build_parser.add_argument(
        "--test-products-path",
        dest="test_products_path",
        help="Prebuilt .xctestproducts used by test-without-building",
    )
    build_parser.add_argument(
        "--extra-args",
        dest="xcode_args",
        action="append",
        nargs="+",
        default=[],
        metavar="ARG",
        help="Additional arguments appended to the xcodebuild command",
    )
    _add_common_arguments(build_parser)

    archive_parser = subparsers.add_parser("archive", help="Archive a project and export the archive")
    _add_release_arguments(archive_parser)
    _add_common_arguments(archive_parser)

    upload_parser = subparsers.add_parser("upload", help="Archive, export and upload to TestFlight")
    _add_release_arguments(upload_parser)
    upload_parser.add_argument(
        "--extra-upload-args",
        dest="upload_args",
        action="append",
        nargs="+",
        default=[],
        metavar="ARG",
        help="Additional arguments appended to the upload command",
    )
    _add_common_arguments(upload_parser)

    merge_parser = subparsers.add_parser("merge-plists", help="Merge property lists into one output file")
    merge_parser.add_argument("output", help="Output property list")
    merge_parser.add_argument("inputs", nargs="*", help="Two or more input property lists")
    merge_parser.add_argument("-b", "--build-path", dest="build_path", help="Directory for the merge log (default: .build)")
    _add_common_arguments(merge_parser)

    signing_parser = subparsers.add_parser("setup-signing", help="Install a distribution certificate and profiles")
    signing_parser.add_argument("--certificate", dest="certificate", help="Base64-encoded distribution certificate")
    signing_parser.add_argument("--password", dest="certificate_password", help="Password for the certificate")
    signing_parser.add_argument("--profiles", dest="profiles", nargs="+", help="Base64-encoded provisioning profiles")
    signing_parser.add_argument("--temp-dir", dest="temp_dir", help="Directory for temporary files")
    signing_parser.add_argument("--profiles-dir", help="Install location for provisioning profiles")
    _add_common_arguments(signing_parser)

    return parser.parse_args(list(argv))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
    )


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path, secrets: Sequence[str] = ()) -> None:
    for line in runner.iter_formatted(workspace=workspace, secrets=secrets):
        print(line)


def _dry_run_locator(root: Path, extension: str) -> Path:
    return root / f"*{extension}"


def _make_orchestrator(args: Namespace, config: ResolvedConfig, runner: CommandRunner) -> StepOrchestrator:
    formatter = None if config.disable_formatter else PostProcessor.discover(FORMATTER)
    return StepOrchestrator(
        PipedExecutor(runner, dry_run=args.dry_run),
        post_processors=[formatter] if formatter else [],
        disable_formatter=config.disable_formatter,
    )


def _make_runner(args: Namespace) -> CommandRunner:
    if args.dry_run:
        return RecordingCommandRunner()
    return SubprocessCommandRunner()


def _execute(args: Namespace, config: ResolvedConfig, factories: List[StepFactory], workspace: Path) -> int:
    runner = _make_runner(args)
    run = _make_orchestrator(args, config, runner).run(factories)
    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace)
    return run.exit_status


def _handle_build(args: Namespace, workspace: Path) -> int:
    config = _resolve(args, defaults=_BUILD_DEFAULTS, required=BUILD_REQUIRED)
    return _execute(args, config, build_chain(CommandBuilder(config)), workspace)


def _handle_release(args: Namespace, workspace: Path, *, upload: bool) -> int:
    config = _resolve(args, defaults=_RELEASE_DEFAULTS, required=RELEASE_REQUIRED)
    locator = _dry_run_locator if args.dry_run else locate
    factories = release_chain(CommandBuilder(config), upload=upload, locator=locator)
    return _execute(args, config, factories, workspace)


def _handle_archive(args: Namespace, workspace: Path) -> int:
    return _handle_release(args, workspace, upload=False)


def _handle_upload(args: Namespace, workspace: Path) -> int:
    return _handle_release(args, workspace, upload=True)


def _handle_merge(args: Namespace, workspace: Path) -> int:
    config = _resolve(args, defaults=_MERGE_DEFAULTS, required=())
    inputs = [Path(value) for value in args.inputs]
    factories = merge_chain(CommandBuilder(config), output=Path(args.output), inputs=inputs)
    if not args.dry_run:
        for path in inputs:
            if not path.is_file():
                raise ValidationError(f"Input file '{path}' does not exist")
    return _execute(args, config, factories, workspace)


def _handle_setup_signing(args: Namespace, workspace: Path) -> int:
    config = _resolve(args, defaults={}, required=_SIGNING_REQUIRED)
    setup = SigningSetup(
        config,
        profiles_dir=Path(args.profiles_dir) if args.profiles_dir else None,
        dry_run=args.dry_run,
    )
    runner = _make_runner(args)
    run = setup.execute(_make_orchestrator(args, config, runner))
    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace, secrets=setup.masked_values)
    return run.exit_status


_HANDLERS: Dict[str, Callable[[Namespace, Path], int]] = {
    "build": _handle_build,
    "archive": _handle_archive,
    "upload": _handle_upload,
    "merge-plists": _handle_merge,
    "setup-signing": _handle_setup_signing,
}


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    _configure_logging(args.verbose)
    workspace = Path.cwd()

    handler = _HANDLERS.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    try:
        return handler(args, workspace)
    except ValidationError as exc:
        logger.error("Error: %s", exc)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
