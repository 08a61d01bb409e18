"""Unit tests for build orchestration.

The pipeline runs for real (lockfile parsing, fetching, environment
composition, ELF verification, staging); only the HTTP session and the
cargo subprocess are faked.
"""

import threading
from contextlib import contextmanager
from unittest.mock import Mock, patch

import pytest

from crossbin.build import BuildOrchestrator, BuildRequest, BuildResult
from crossbin.cli_utils import TargetResolver
from crossbin.config import ProjectConfig, TargetTriple
from crossbin.config.ini_parser import LibraryConfig
from crossbin.errors import ConfigurationError
from crossbin.packages import Cache, CacheManager, DependencyFetcher, PackageDownloader

HOST = TargetTriple.parse("linux/amd64")
ARM64 = TargetTriple.parse("linux/arm64")
RISCV64 = TargetTriple.parse("linux/riscv64")


def which_without_sccache(tool):
    return None if tool == "sccache" else f"/usr/bin/{tool}"


@contextmanager
def toolchain_installed(cargo):
    with patch("crossbin.build.executor.subprocess.Popen", cargo), \
            patch("crossbin.build.executor.shutil.which", side_effect=which_without_sccache):
        yield cargo


@pytest.fixture
def project_dir(tmp_path, crate_set):
    path = tmp_path / "project"
    path.mkdir()
    crate_set.write_lockfile(path)
    return path


@pytest.fixture
def make_orchestrator(project_dir, cache_dir, crate_set, session_for):
    """Factory: orchestrator for the test project with a fake registry."""

    def factory(session=None, **config_values):
        config = ProjectConfig(
            project_dir=project_dir, package="proxy-bin", cache_root=cache_dir, **config_values
        )
        cache = Cache(project_dir, cache_dir)
        manager = CacheManager(cache)
        fetcher = DependencyFetcher(
            manager,
            cache.dependency_fetch_region(),
            downloader=PackageDownloader(session=session or session_for(crate_set)),
            sleep=lambda seconds: None,
            show_progress=False,
        )
        return BuildOrchestrator(
            config,
            cache=cache,
            cache_manager=manager,
            fetcher=fetcher,
            build_platform=HOST,
        )

    return factory


def request_for(target, **kwargs):
    return BuildRequest(target=target, package_name="proxy-bin", **kwargs)


class TestBuild:
    """Test cases for a single pipeline."""

    def test_end_to_end_from_warm_cache(
        self, make_orchestrator, project_dir, cache_dir, crate_set, session_for, fake_cargo
    ):
        crate_set.populate_cache(cache_dir / "dependency-fetch" / "crates")
        session = session_for(crate_set)
        orchestrator = make_orchestrator(session=session)

        with toolchain_installed(fake_cargo()) as cargo:
            result = orchestrator.build(request_for(ARM64))

        assert isinstance(result, BuildResult)
        assert result.success, result.message
        assert result.exit_code == 0
        assert session.get.call_count == 0
        output_dir = project_dir / "output"
        assert [p.name for p in output_dir.iterdir()] == ["proxy-bin"]
        assert result.output_path == output_dir / "proxy-bin"
        assert result.metadata.arch == "arm64"
        assert result.metadata.is_static
        assert "--offline" in cargo.calls[0]["cmd"]

    def test_absolute_output_dir_used_as_is(
        self, make_orchestrator, tmp_path, cache_dir, crate_set, session_for, fake_cargo
    ):
        crate_set.populate_cache(cache_dir / "dependency-fetch" / "crates")
        orchestrator = make_orchestrator(session=session_for(crate_set))
        dist = tmp_path / "dist"

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(ARM64, output_dir=dist))

        assert result.success, result.message
        assert result.output_path == dist / "proxy-bin"

    def test_cold_cache_fetches_every_crate(
        self, make_orchestrator, cache_dir, crate_set, session_for, fake_cargo
    ):
        session = session_for(crate_set)
        orchestrator = make_orchestrator(session=session)

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(ARM64))

        assert result.success, result.message
        assert session.get.call_count == 3
        vendor = cache_dir / "dependency-fetch" / "vendor"
        assert sorted(p.name for p in vendor.iterdir()) == [
            "cfg-if-1.0.0",
            "libc-0.2.150",
            "log-0.4.20",
        ]

    def test_static_library_environment_reaches_cargo(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator(
            libraries=[LibraryConfig("zlib"), LibraryConfig("openssl", depends=("zlib",))]
        )

        with toolchain_installed(fake_cargo()) as cargo:
            result = orchestrator.build(request_for(ARM64))

        assert result.success, result.message
        env = cargo.calls[0]["env"]
        assert env["OPENSSL_STATIC"] == "1"
        assert env["LIBZ_SYS_STATIC"] == "1"
        assert env["PKG_CONFIG_ALL_STATIC"] == "1"

    def test_features_are_normalized(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator(available_features=("metrics", "tls"))

        with toolchain_installed(fake_cargo()) as cargo:
            result = orchestrator.build(request_for(ARM64, features=("tls", "metrics", "tls")))

        assert result.success, result.message
        cmd = cargo.calls[0]["cmd"]
        assert cmd[cmd.index("--features") + 1] == "metrics,tls"

    def test_unknown_feature_fails_preflight(self, make_orchestrator, cache_dir, fake_cargo):
        orchestrator = make_orchestrator(available_features=("tls",))

        with toolchain_installed(fake_cargo()) as cargo:
            result = orchestrator.build(request_for(ARM64, features=("bogus",)))

        assert not result.success
        assert result.stage == "preflight"
        assert result.exit_code == 2
        assert "bogus" in str(result.error)
        assert cargo.calls == []
        assert not cache_dir.exists()

    def test_unsupported_lockfile_source_fails_preflight(
        self, make_orchestrator, project_dir, cache_dir, fake_cargo
    ):
        (project_dir / "Cargo.lock").write_text(
            "version = 3\n\n[[package]]\nname = \"forked\"\nversion = \"0.1.0\"\n"
            + 'source = "git+https://example.com/forked.git#abc123"\n'
        )
        orchestrator = make_orchestrator()

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(ARM64))

        assert result.stage == "preflight"
        assert result.exit_code == 2
        assert "git source" in str(result.error)
        assert not cache_dir.exists()

    def test_conflicting_cache_sharing_fails_preflight(self, make_orchestrator, cache_dir, fake_cargo):
        orchestrator = make_orchestrator(cache_sharing={"dependency-fetch": "exclusive"})

        with toolchain_installed(fake_cargo()) as cargo:
            result = orchestrator.build(request_for(ARM64))

        assert result.stage == "preflight"
        assert result.exit_code == 2
        assert "dependency-fetch" in str(result.error)
        assert cargo.calls == []
        assert not cache_dir.exists()

    def test_inconsistent_link_plan_fails_preflight(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator(libraries=[LibraryConfig("openssl")])

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(ARM64))

        assert result.stage == "preflight"
        assert result.exit_code == 2
        assert "zlib" in str(result.error)

    def test_unsupported_target_fails_preflight(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator()

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(TargetTriple(arch="mips64")))

        assert result.stage == "preflight"
        assert result.exit_code == 2

    def test_missing_package_name(self, make_orchestrator):
        result = make_orchestrator().build(BuildRequest(target=ARM64, package_name=""))

        assert result.stage == "preflight"
        assert result.exit_code == 2

    def test_cancelled_before_start(self, make_orchestrator, fake_cargo):
        cancel_event = threading.Event()
        cancel_event.set()

        with toolchain_installed(fake_cargo()) as cargo:
            result = make_orchestrator().build(request_for(ARM64), cancel_event)

        assert not result.success
        assert result.exit_code == 130
        assert cargo.calls == []

    def test_compile_failure(self, make_orchestrator, project_dir, fake_cargo):
        cargo = fake_cargo(returncode=101, output="error[E0308]: mismatched types\n")

        with toolchain_installed(cargo):
            result = make_orchestrator().build(request_for(ARM64))

        assert result.stage == "build"
        assert result.exit_code == 5
        assert "mismatched types" in str(result.error)
        assert not (project_dir / "output").exists()

    def test_dynamic_artifact_fails_verification(self, make_orchestrator, project_dir, fake_cargo):
        cargo = fake_cargo(interpreter="/lib/ld-musl-aarch64.so.1")

        with toolchain_installed(cargo):
            result = make_orchestrator().build(request_for(ARM64))

        assert result.stage == "verify"
        assert result.exit_code == 6
        assert not (project_dir / "output").exists()

    def test_unexpected_error(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator()
        orchestrator.verifier = Mock()
        orchestrator.verifier.verify.side_effect = RuntimeError("boom")

        with toolchain_installed(fake_cargo()):
            result = orchestrator.build(request_for(ARM64))

        assert result.stage == "verify"
        assert result.exit_code == 1
        assert "RuntimeError" in result.message

    def test_keyboard_interrupt_propagates(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator()
        orchestrator.executor = Mock()
        orchestrator.executor.execute.side_effect = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            orchestrator.build(request_for(ARM64))


class TestBuildAll:
    """Test cases for parallel pipelines."""

    def test_parallel_targets(self, make_orchestrator, project_dir, crate_set, session_for, fake_cargo):
        session = session_for(crate_set)
        orchestrator = make_orchestrator(session=session)
        requests = [
            request_for(target, output_dir=TargetResolver.output_dir_for(None, target, True))
            for target in (ARM64, RISCV64)
        ]

        with toolchain_installed(fake_cargo()):
            results = orchestrator.build_all(requests)

        assert [r.success for r in results] == [True, True], [r.message for r in results]
        assert [r.target for r in results] == [ARM64, RISCV64]
        assert results[0].output_path != results[1].output_path
        assert results[0].metadata.arch == "arm64"
        assert results[1].metadata.arch == "riscv64"
        assert (project_dir / "output" / str(ARM64) / "proxy-bin").is_file()
        assert (project_dir / "output" / str(RISCV64) / "proxy-bin").is_file()
        # Both pipelines share one fetch
        assert session.get.call_count == 3

    def test_failure_isolated_to_one_target(self, make_orchestrator, fake_cargo):
        orchestrator = make_orchestrator()
        requests = [
            request_for(ARM64, output_dir=TargetResolver.output_dir_for(None, ARM64, True)),
            request_for(
                TargetTriple(arch="mips64"),
                output_dir=TargetResolver.output_dir_for(None, TargetTriple(arch="mips64"), True),
            ),
        ]

        with toolchain_installed(fake_cargo()):
            results = orchestrator.build_all(requests)

        assert results[0].success, results[0].message
        assert not results[1].success
        assert results[1].stage == "preflight"

    def test_duplicate_destinations_rejected(self, make_orchestrator):
        with pytest.raises(ConfigurationError, match="would both be staged"):
            make_orchestrator().build_all([request_for(ARM64), request_for(RISCV64)])

    def test_no_requests(self, make_orchestrator):
        assert make_orchestrator().build_all([]) == []
