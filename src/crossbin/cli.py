"""
Command-line interface for crossbin.

This module provides the `crossbin` CLI tool for building statically linked
binaries for any supported Linux target.
"""

import argparse
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from crossbin import __version__
from crossbin.build import (
    Artifact,
    ArtifactVerifier,
    BuildOrchestrator,
    BuildRequest,
    CrossEnvironmentBuilder,
    StaticLinkPlan,
)
from crossbin.cli_utils import ErrorFormatter, PathValidator, TargetResolver, split_list
from crossbin.config import ARCH_SPECS, ProjectConfigParser, TargetTriple
from crossbin.errors import ConfigurationError, CrossbinError
from crossbin.logging_utils import setup_logging
from crossbin.packages import Lockfile


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    project_dir: Path
    targets: List[str] = field(default_factory=list)
    package: Optional[str] = None
    profile: Optional[str] = None
    output_dir: Optional[Path] = None
    features: List[str] = field(default_factory=list)
    default_features: bool = False
    jobs: Optional[int] = None
    verbose: bool = False
    log_file: Optional[Path] = None


@dataclass
class FetchArgs:
    """Arguments for the fetch command."""

    project_dir: Path
    verbose: bool = False
    log_file: Optional[Path] = None


@dataclass
class VerifyArgs:
    """Arguments for the verify command."""

    file: Path
    target: str
    allow_dynamic: bool = False
    verbose: bool = False


@dataclass
class EnvArgs:
    """Arguments for the env command."""

    project_dir: Path
    target: str
    verbose: bool = False


def build_command(args: BuildArgs) -> None:
    """Build static binaries for one or more targets.

    Examples:
        crossbin build -t linux/arm64 -p proxy-bin
        crossbin build -t linux/amd64,linux/arm64 -p proxy-bin -o dist
        crossbin build -t arm64-linux-musl -F tls --verbose
    """
    print(f"crossbin v{__version__}")
    print()

    try:
        config = ProjectConfigParser.load(args.project_dir)
        targets = TargetResolver.parse_targets(args.targets)
        if not targets:
            raise ConfigurationError("No target given. Pass at least one --target")

        package = args.package or config.package
        features = tuple(split_list(args.features)) if args.features else config.features
        # -o is relative to the working directory, output_dir in crossbin.ini to the project
        output_dir = args.output_dir.resolve() if args.output_dir else config.output_dir
        multiple = len(targets) > 1
        requests = [
            BuildRequest(
                target=target,
                package_name=package or "",
                profile=args.profile or config.profile,
                output_dir=TargetResolver.output_dir_for(output_dir, target, multiple),
                features=features,
                default_features=args.default_features or config.default_features,
            )
            for target in targets
        ]

        for request in requests:
            print(f"Building {request.package_name or '?'} for {request.target}...")

        start_time = time.time()
        orchestrator = BuildOrchestrator(config, verbose=args.verbose)
        results = orchestrator.build_all(requests, max_workers=args.jobs)
        build_time = time.time() - start_time

        print()
        exit_code = 0
        for result in results:
            if result.success:
                ErrorFormatter.print_success(f"{result.target}: {result.output_path}")
            else:
                ErrorFormatter.print_error(
                    ErrorFormatter.format_failure(result.stage, result.error)
                )
                if args.verbose:
                    print(str(result.error))
                if exit_code == 0:
                    exit_code = result.exit_code

        print()
        print(f"Build time: {build_time:.2f}s")
        sys.exit(exit_code)

    except CrossbinError as e:
        ErrorFormatter.handle_crossbin_error(e, "preflight", args.verbose)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def fetch_command(args: FetchArgs) -> None:
    """Fetch and vendor the project's locked dependencies without building."""
    try:
        config = ProjectConfigParser.load(args.project_dir)
        lockfile = Lockfile.load(config.lockfile_path, config.registry_mirror)
        orchestrator = BuildOrchestrator(config, verbose=args.verbose)
        orchestrator.declare_cache_regions()

        print(f"Fetching {len(lockfile)} locked dependencies...")
        graph = orchestrator.fetcher.fetch(lockfile)
        ErrorFormatter.print_success(f"Dependencies vendored in {graph.vendor_dir}")
        sys.exit(0)

    except CrossbinError as e:
        ErrorFormatter.handle_crossbin_error(e, "fetch", args.verbose)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def verify_command(args: VerifyArgs) -> None:
    """Check a binary was built for a target and is statically linked."""
    try:
        target = TargetTriple.parse(args.target)
        verifier = ArtifactVerifier(require_static=not args.allow_dynamic)
        metadata = verifier.verify(Artifact(path=args.file, target=target, profile=""), target)
        ErrorFormatter.print_success(
            f"{args.file}: {metadata.arch}, ELF{metadata.elf_class}, "
            + ("static" if metadata.is_static else f"dynamic ({metadata.interpreter})")
        )
        sys.exit(0)

    except CrossbinError as e:
        ErrorFormatter.handle_crossbin_error(e, "verify", args.verbose)
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def env_command(args: EnvArgs) -> None:
    """Print the build environment for a target as shell exports."""
    try:
        config = ProjectConfigParser.load(args.project_dir)
        target = TargetTriple.parse(args.target)
        orchestrator = BuildOrchestrator(config)
        toolchain = orchestrator.resolver.resolve(orchestrator.build_platform, target)
        plan = StaticLinkPlan.from_config(config.libraries)
        environment = CrossEnvironmentBuilder(config.linker).compose(toolchain, plan)

        print(f"# {target} ({'cross' if toolchain.is_cross else 'native'} build)")
        print(environment.format_exports())
        sys.exit(0)

    except CrossbinError as e:
        ErrorFormatter.handle_crossbin_error(e, "environment", args.verbose)
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def targets_command() -> None:
    """List the supported target architectures."""
    print(f"{'ARCH':<10} {'PLATFORM':<16} TRIPLE")
    for name in sorted(ARCH_SPECS):
        target = TargetTriple(arch=name)
        print(f"{name:<10} {target.docker_platform:<16} {target.llvm_triple}")
    sys.exit(0)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output and tracebacks",
    )


def _add_project_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "project_dir",
        nargs="?",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )


def main() -> None:
    """crossbin - reproducible static binary builds."""
    parser = argparse.ArgumentParser(
        prog="crossbin",
        description="crossbin - reproducible cross-platform static binary builds",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"crossbin {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Build command
    build_parser = subparsers.add_parser(
        "build",
        help="Build static binaries for one or more targets",
    )
    _add_project_dir(build_parser)
    build_parser.add_argument(
        "-t",
        "--target",
        dest="targets",
        action="append",
        default=[],
        help="Target triple or platform (repeatable, or comma-separated)",
    )
    build_parser.add_argument(
        "-p",
        "--package",
        default=None,
        help="Binary to build (default: package from crossbin.ini)",
    )
    build_parser.add_argument(
        "-P",
        "--profile",
        default=None,
        help="Build profile (default: profile from crossbin.ini, or release)",
    )
    build_parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Output directory, relative to the current directory "
        + "(default: output_dir from crossbin.ini, relative to the project, or output/)",
    )
    build_parser.add_argument(
        "-F",
        "--feature",
        dest="features",
        action="append",
        default=[],
        help="Feature toggle to enable (repeatable or comma-separated)",
    )
    build_parser.add_argument(
        "--default-features",
        action="store_true",
        help="Keep the package's default features enabled",
    )
    build_parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Number of targets built in parallel (default: all)",
    )
    build_parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file",
    )
    _add_common_options(build_parser)

    # Fetch command
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Fetch and vendor locked dependencies",
    )
    _add_project_dir(fetch_parser)
    fetch_parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file",
    )
    _add_common_options(fetch_parser)

    # Verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Check a binary matches a target",
    )
    verify_parser.add_argument("file", type=Path, help="Binary to verify")
    verify_parser.add_argument(
        "-t",
        "--target",
        required=True,
        help="Expected target triple or platform",
    )
    verify_parser.add_argument(
        "--allow-dynamic",
        action="store_true",
        help="Accept dynamically linked binaries",
    )
    _add_common_options(verify_parser)

    # Env command
    env_parser = subparsers.add_parser(
        "env",
        help="Print the build environment for a target",
    )
    _add_project_dir(env_parser)
    env_parser.add_argument(
        "-t",
        "--target",
        required=True,
        help="Target triple or platform",
    )
    _add_common_options(env_parser)

    # Targets command
    subparsers.add_parser(
        "targets",
        help="List supported target architectures",
    )

    parsed_args = parser.parse_args()

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    if hasattr(parsed_args, "project_dir"):
        PathValidator.validate_project_dir(parsed_args.project_dir)

    setup_logging(
        verbose=getattr(parsed_args, "verbose", False),
        log_file=getattr(parsed_args, "log_file", None),
    )

    if parsed_args.command == "build":
        build_args = BuildArgs(
            project_dir=parsed_args.project_dir,
            targets=parsed_args.targets,
            package=parsed_args.package,
            profile=parsed_args.profile,
            output_dir=parsed_args.output_dir,
            features=parsed_args.features,
            default_features=parsed_args.default_features,
            jobs=parsed_args.jobs,
            verbose=parsed_args.verbose,
            log_file=parsed_args.log_file,
        )
        build_command(build_args)
    elif parsed_args.command == "fetch":
        fetch_args = FetchArgs(
            project_dir=parsed_args.project_dir,
            verbose=parsed_args.verbose,
            log_file=parsed_args.log_file,
        )
        fetch_command(fetch_args)
    elif parsed_args.command == "verify":
        verify_args = VerifyArgs(
            file=parsed_args.file,
            target=parsed_args.target,
            allow_dynamic=parsed_args.allow_dynamic,
            verbose=parsed_args.verbose,
        )
        verify_command(verify_args)
    elif parsed_args.command == "env":
        env_args = EnvArgs(
            project_dir=parsed_args.project_dir,
            target=parsed_args.target,
            verbose=parsed_args.verbose,
        )
        env_command(env_args)
    elif parsed_args.command == "targets":
        targets_command()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
