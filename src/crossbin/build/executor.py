"""Build Executor.

This module runs the toolchain for one target and returns the produced
artifact.

Design:
    - Wraps ``cargo build`` in a subprocess with a fully composed environment
    - Builds offline against the vendored dependency tree
    - Holds the compiler-object and package-manager cache regions for the
      whole invocation
    - Polls a cancel event while the child runs and kills the whole process
      tree on cancellation
    - Compile failures are reported once with the captured output, never retried
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil

from ..config.target_triple import TargetTriple
from ..errors import BuildCancelledError, CompileError, ConfigurationError
from ..packages.cache import Cache, CacheManager
from ..packages.dependency_fetcher import DependencyGraph
from ..packages.toolchain import ToolchainSpec
from .environment import BuildEnvironment

logger = logging.getLogger(__name__)


class ToolNotFoundError(ConfigurationError):
    """Raised when a required build tool is not on PATH."""

    pass


@dataclass(frozen=True)
class BuildRequest:
    """What to build for one target."""

    target: TargetTriple
    package_name: str
    profile: str = "release"
    output_dir: Optional[Path] = None
    features: Tuple[str, ...] = ()
    default_features: bool = False


@dataclass(frozen=True)
class Artifact:
    """A produced binary. Each pipeline stage hands on a new value."""

    path: Path
    target: TargetTriple
    profile: str


# Cargo's output directory for the built-in profiles
_PROFILE_DIRS = {"dev": "debug", "test": "debug", "release": "release", "bench": "release"}

_LINK_FAILURE = re.compile(
    r"error: linking with|undefined reference to|ld(?:\.lld)?: error|mold: error|"
    + r"cannot find -l|collect2: error|could not find native static library",
)

# Host variables passed through to the build
_HOST_PASSTHROUGH = ("PATH", "HOME", "RUSTUP_HOME", "RUSTUP_TOOLCHAIN", "TMPDIR")


def profile_dir_name(profile: str) -> str:
    """Directory Cargo writes a profile's output to (``dev`` -> ``debug``)."""
    return _PROFILE_DIRS.get(profile, profile)


class BuildExecutor:
    """Executes cargo builds for resolved toolchains.

    Example usage:
        executor = BuildExecutor(project_dir, cache, manager)
        executor.preflight(toolchain)
        artifact = executor.execute(request, toolchain, env, graph)
    """

    CARGO = "cargo"
    SCCACHE = "sccache"

    def __init__(
        self,
        project_dir: Path,
        cache: Cache,
        cache_manager: CacheManager,
        show_output: bool = False,
        poll_interval: float = 0.1,
    ):
        """Initialize build executor.

        Args:
            project_dir: Directory containing Cargo.toml
            cache: Cache layout (build directories and regions)
            cache_manager: Shared cache manager
            show_output: Whether to echo toolchain output while it runs
            poll_interval: Seconds between cancellation checks
        """
        self.project_dir = Path(project_dir)
        self.cache = cache
        self.cache_manager = cache_manager
        self.show_output = show_output
        self.poll_interval = poll_interval

    def preflight(self, toolchain: ToolchainSpec) -> None:
        """Check the build tools exist.

        Raises:
            ToolNotFoundError: If cargo or the compiler driver is missing
        """
        for tool in (self.CARGO, toolchain.compiler_path):
            if shutil.which(tool) is None:
                raise ToolNotFoundError(
                    f"Required tool '{tool}' not found on PATH (target {toolchain.target})"
                )

    def target_dir(self, target: TargetTriple) -> Path:
        return self.cache.get_build_dir(str(target))

    def artifact_path(self, request: BuildRequest) -> Path:
        return (
            self.target_dir(request.target)
            / request.target.llvm_triple
            / profile_dir_name(request.profile)
            / request.package_name
        )

    def build_command(
        self, request: BuildRequest, graph: Optional[DependencyGraph] = None
    ) -> List[str]:
        cmd = [
            self.CARGO,
            "build",
            "--frozen",
            "--offline",
            "--bin",
            request.package_name,
            "--profile",
            request.profile,
            "--target",
            request.target.llvm_triple,
        ]
        if not request.default_features:
            cmd.append("--no-default-features")
        if request.features:
            cmd.extend(["--features", ",".join(request.features)])
        if graph is not None:
            cmd.extend(graph.source_replacement_args())
        return cmd

    def execute(
        self,
        request: BuildRequest,
        toolchain: ToolchainSpec,
        environment: BuildEnvironment,
        graph: Optional[DependencyGraph] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Artifact:
        """Build the requested binary.

        Args:
            request: What to build
            toolchain: Resolved toolchain for request.target
            environment: Composed build environment
            graph: Vendored dependencies to build against
            cancel_event: Set to abort the build

        Returns:
            Artifact pointing at the produced binary

        Raises:
            CompileError: If the build fails or produces no binary
            BuildCancelledError: If cancelled while running
        """
        target_dir = self.target_dir(request.target)
        target_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(request, graph)

        with self.cache_manager.acquire(self.cache.compiler_object_region()) as objects, \
                self.cache_manager.acquire(self.cache.package_manager_region()) as cargo_home:
            env = self._child_env(environment, target_dir, objects.path, cargo_home.path)
            logger.info(f"Building {request.package_name} for {request.target}")
            logger.debug(f"Command: {' '.join(cmd)}")
            returncode, output = self._run(cmd, env, cancel_event)

        if returncode != 0:
            stage = "link" if _LINK_FAILURE.search(output) else "compile"
            raise CompileError(
                f"{stage.capitalize()} failed for {request.target} "
                + f"(exit code {returncode})\n{_tail(output)}",
                stage=stage,
                returncode=returncode,
            )

        path = self.artifact_path(request)
        if not path.is_file():
            raise CompileError(
                f"Build succeeded but {path} was not produced",
                stage="output",
                returncode=returncode,
            )
        return Artifact(path=path, target=request.target, profile=request.profile)

    def _child_env(
        self,
        environment: BuildEnvironment,
        target_dir: Path,
        objects_dir: Path,
        cargo_home: Path,
    ) -> Dict[str, str]:
        env = {key: os.environ[key] for key in _HOST_PASSTHROUGH if key in os.environ}
        env.update(environment)
        env["CARGO_TARGET_DIR"] = str(target_dir)
        env["CARGO_NET_OFFLINE"] = "true"
        env["CARGO_BUILD_INCREMENTAL"] = "false"
        env["CARGO_HOME"] = str(cargo_home)
        env["SCCACHE_DIR"] = str(objects_dir)
        if shutil.which(self.SCCACHE) is not None:
            env["RUSTC_WRAPPER"] = self.SCCACHE
        return env

    def _run(
        self,
        cmd: List[str],
        env: Dict[str, str],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[int, str]:
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.project_dir),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"Failed to start {cmd[0]}: {e}") from e

        lines: List[str] = []

        def _pump() -> None:
            for line in proc.stdout:
                lines.append(line)
                if self.show_output:
                    print(line, end="")

        reader = threading.Thread(target=_pump, daemon=True)
        reader.start()

        try:
            while proc.poll() is None:
                if cancel_event is not None and cancel_event.is_set():
                    self._kill_process_tree(proc)
                    raise BuildCancelledError("Build cancelled")
                time.sleep(self.poll_interval)
        except KeyboardInterrupt as ke:
            self._kill_process_tree(proc)
            raise BuildCancelledError("Build interrupted") from ke
        finally:
            reader.join(timeout=5)
            if reader.is_alive():
                # A surviving grandchild still holds the write end open
                logger.warning(f"Output of {cmd[0]} still open after exit; not waiting for it")
            else:
                proc.stdout.close()

        return proc.returncode, "".join(lines)

    @staticmethod
    def _kill_process_tree(proc: subprocess.Popen) -> None:
        """Terminate the child and all its descendants, children first."""
        try:
            root = psutil.Process(proc.pid)
            processes = root.children(recursive=True)
            processes.reverse()
            processes.append(root)
        except psutil.NoSuchProcess:
            return

        for process in processes:
            try:
                process.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(processes, timeout=3)
        for process in alive:
            try:
                process.kill()
            except psutil.NoSuchProcess:
                pass
        logger.warning(f"Terminated build process tree ({len(processes)} processes)")


def _tail(output: str, lines: int = 40) -> str:
    return "\n".join(output.rstrip().splitlines()[-lines:])
