"""
Build orchestration for crossbin projects.

This module drives one build pipeline per target triple:
- Preflight (toolchain, cache regions, link plan, features, tools)
- Dependency fetch into the shared dependency cache
- Build environment composition
- Toolchain invocation
- Artifact verification
- Atomic staging into the output directory

Pipelines for different targets run in parallel and share only the cache
regions. A failure stops the failing pipeline and is returned as a
BuildResult naming the stage; the other pipelines are unaffected.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar

from ..config.ini_parser import ProjectConfig
from ..config.target_triple import TargetTriple
from ..errors import BuildCancelledError, ConfigurationError, CrossbinError
from ..interrupt_utils import cancel_on_interrupt, handle_keyboard_interrupt_properly
from ..packages.cache import Cache, CacheManager, SharingMode
from ..packages.dependency_fetcher import DependencyFetcher
from ..packages.downloader import PackageDownloader
from ..packages.lockfile import Lockfile
from ..packages.platform_utils import PlatformDetector
from ..packages.toolchain import ToolchainResolver
from .environment import CrossEnvironmentBuilder
from .executor import BuildExecutor, BuildRequest
from .linkage import StaticLinkPlan
from .stager import OutputStager
from .verifier import ArtifactMetadata, ArtifactVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGES = ("preflight", "fetch", "environment", "build", "verify", "stage")

DEFAULT_OUTPUT_DIR = "output"


@dataclass
class BuildResult:
    """Result of one target's build pipeline."""

    success: bool
    target: TargetTriple
    output_path: Optional[Path]
    build_time: float
    message: str
    stage: Optional[str] = None
    error: Optional[Exception] = None
    exit_code: int = 0
    metadata: Optional[ArtifactMetadata] = None


class BuildOrchestrator:
    """
    Orchestrates static binary builds for one project.

    Example usage:
        config = ProjectConfigParser.load(Path("."))
        orchestrator = BuildOrchestrator(config)
        result = orchestrator.build(
            BuildRequest(target=TargetTriple.parse("linux/arm64"), package_name="proxy-bin")
        )
        if result.success:
            print(f"Binary: {result.output_path}")
    """

    def __init__(
        self,
        project_config: ProjectConfig,
        cache: Optional[Cache] = None,
        cache_manager: Optional[CacheManager] = None,
        resolver: Optional[ToolchainResolver] = None,
        fetcher: Optional[DependencyFetcher] = None,
        executor: Optional[BuildExecutor] = None,
        verifier: Optional[ArtifactVerifier] = None,
        stager: Optional[OutputStager] = None,
        build_platform: Optional[TargetTriple] = None,
        verbose: bool = False,
    ):
        """
        Initialize build orchestrator.

        Components that are not passed in are created from the project
        configuration. The cache manager must be shared by every pipeline
        of one invocation, so parallel builds go through one orchestrator.

        Args:
            project_config: Parsed project configuration
            cache: Cache layout (optional)
            cache_manager: Shared cache manager (optional)
            resolver: Toolchain resolver (optional)
            fetcher: Dependency fetcher (optional)
            executor: Build executor (optional)
            verifier: Artifact verifier (optional)
            stager: Output stager (optional)
            build_platform: Platform crossbin runs on (detected if omitted)
            verbose: Echo toolchain output
        """
        self.config = project_config
        self.cache = cache or Cache(project_config.project_dir, project_config.cache_root)
        self.cache_manager = cache_manager or CacheManager(self.cache)
        self.resolver = resolver or ToolchainResolver()
        self.fetcher = fetcher or DependencyFetcher(
            self.cache_manager,
            self.cache.dependency_fetch_region(),
            downloader=PackageDownloader(),
            max_retries=project_config.fetch_retries,
        )
        self.executor = executor or BuildExecutor(
            project_config.project_dir, self.cache, self.cache_manager, show_output=verbose
        )
        self.verifier = verifier or ArtifactVerifier()
        self.stager = stager or OutputStager()
        self._build_platform = build_platform
        self.verbose = verbose

    @property
    def build_platform(self) -> TargetTriple:
        if self._build_platform is None:
            self._build_platform = PlatformDetector.detect_build_platform()
        return self._build_platform

    def declare_cache_regions(self) -> None:
        """Declare configured overrides, then the regions the stages require.

        Raises:
            CacheConfigurationError: If an override disagrees with a stage
        """
        for name, mode in sorted(self.config.cache_sharing.items()):
            self.cache_manager.declare(self.cache.region(name, SharingMode.parse(mode)))
        self.cache_manager.declare_all(self.cache.standard_regions())

    def resolve_output_dir(self, request: BuildRequest) -> Path:
        output_dir = request.output_dir or self.config.output_dir or Path(DEFAULT_OUTPUT_DIR)
        return self.config.project_dir / output_dir

    def build(
        self, request: BuildRequest, cancel_event: Optional[threading.Event] = None
    ) -> BuildResult:
        """
        Run the full pipeline for one target.

        Args:
            request: What to build
            cancel_event: Set to cancel the pipeline

        Returns:
            BuildResult; on failure it names the stage and carries the error
        """
        start_time = time.time()
        stage = STAGES[0]
        target = request.target

        def run(name: str, fn: Callable[..., T], *args, **kwargs) -> T:
            nonlocal stage
            stage = name
            if cancel_event is not None and cancel_event.is_set():
                raise BuildCancelledError(f"Cancelled before {name}")
            logger.debug(f"[{target}] {name}")
            return fn(*args, **kwargs)

        try:
            toolchain, env_builder, plan, lockfile, request = run(
                "preflight", self._preflight, request
            )
            graph = run("fetch", self.fetcher.fetch, lockfile)
            environment = run("environment", env_builder.compose, toolchain, plan)
            artifact = run(
                "build",
                self.executor.execute,
                request,
                toolchain,
                environment,
                graph,
                cancel_event,
            )
            metadata = run("verify", self.verifier.verify, artifact, target)
            output_path = run(
                "stage",
                self.stager.stage,
                artifact,
                self.resolve_output_dir(request),
                request.package_name,
            )

            build_time = time.time() - start_time
            return BuildResult(
                success=True,
                target=target,
                output_path=output_path,
                build_time=build_time,
                message=f"Built {request.package_name} for {target} in {build_time:.2f}s",
                metadata=metadata,
            )

        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)
        except CrossbinError as e:
            logger.debug(f"[{target}] {stage} failed", exc_info=True)
            return self._failure(target, stage, e, e.exit_code, start_time)
        except Exception as e:
            logger.exception(f"[{target}] unexpected error during {stage}")
            return self._failure(target, stage, e, 1, start_time)

    def build_all(
        self,
        requests: Sequence[BuildRequest],
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[BuildResult]:
        """
        Run one pipeline per request in parallel.

        Args:
            requests: Build requests, normally one per target triple
            max_workers: Thread pool size (defaults to one per request)
            cancel_event: Set to cancel every pipeline

        Returns:
            BuildResults in request order

        Raises:
            ConfigurationError: If two requests would stage to the same path
        """
        destinations = {}
        for request in requests:
            dest = self.resolve_output_dir(request) / request.package_name
            if dest in destinations:
                raise ConfigurationError(
                    f"Targets {destinations[dest]} and {request.target} "
                    + f"would both be staged to {dest}"
                )
            destinations[dest] = request.target

        if not requests:
            return []

        if cancel_event is None:
            cancel_event = threading.Event()
        workers = max_workers or len(requests)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crossbin") as pool:
            futures = [pool.submit(self.build, request, cancel_event) for request in requests]
            try:
                return [future.result() for future in futures]
            except KeyboardInterrupt as ke:
                cancel_on_interrupt(cancel_event, ke)

    def _preflight(self, request: BuildRequest):
        if not request.package_name:
            raise ConfigurationError("No package to build. Pass --package or set package in crossbin.ini")

        toolchain = self.resolver.resolve(self.build_platform, request.target)
        features = self.config.validate_features(request.features)
        self.declare_cache_regions()

        env_builder = CrossEnvironmentBuilder(self.config.linker)
        plan = StaticLinkPlan.from_config(self.config.libraries)
        plan.validate()

        lockfile = Lockfile.load(self.config.lockfile_path, self.config.registry_mirror)
        self.executor.preflight(toolchain)

        if features != request.features:
            request = replace(request, features=features)
        return toolchain, env_builder, plan, lockfile, request

    @staticmethod
    def _failure(
        target: TargetTriple, stage: str, error: Exception, exit_code: int, start_time: float
    ) -> BuildResult:
        return BuildResult(
            success=False,
            target=target,
            output_path=None,
            build_time=time.time() - start_time,
            message=f"{type(error).__name__}: {error}",
            stage=stage,
            error=error,
            exit_code=exit_code,
        )
