"""Toolchain resolution for native and cross builds.

This module maps a (build platform, target triple) pair to the concrete
compiler, linker, sysroot and pkg-config invocation used for the build.

Cross toolchains follow the triple-prefixed wrapper convention: the host
clang is wrapped as ``<llvm-triple>-clang`` and target libraries live under
a root keyed by the triple (``/<llvm-triple>``), so pkg-config lookups
resolve target libraries, never host ones.
"""

from dataclasses import dataclass
from pathlib import Path

from ..config.target_triple import ARCH_SPECS, TargetTriple
from ..errors import ConfigurationError


class UnsupportedTargetError(ConfigurationError):
    """Raised when no wrapping strategy exists for a target triple."""

    pass


@dataclass(frozen=True)
class ToolchainSpec:
    """Concrete tool selection for one build. Never mutated after creation."""

    target: TargetTriple
    compiler_path: str
    linker_path: str
    sysroot_path: Path
    pkg_config: str
    is_cross: bool

    @property
    def cxx_compiler_path(self) -> str:
        return f"{self.compiler_path}++"


class ToolchainResolver:
    """Resolves ToolchainSpecs for target triples.

    Resolution is pure: it never inspects the filesystem, so parallel
    pipelines can call it independently and always get equal results.
    """

    # Host tools assumed present in the base environment
    HOST_COMPILER = "clang"
    HOST_PKG_CONFIG = "pkg-config"

    SUPPORTED_OS = ("linux",)
    SUPPORTED_ABIS = ("musl", "gnu")

    def resolve(self, build_platform: TargetTriple, target: TargetTriple) -> ToolchainSpec:
        """Resolve the toolchain for a target.

        Args:
            build_platform: Platform the orchestrator runs on
            target: Platform the binary is built for

        Returns:
            ToolchainSpec for a native build when the platforms match,
            otherwise a cross build

        Raises:
            UnsupportedTargetError: If the target cannot be built
        """
        self._check_supported(target)

        if build_platform.same_platform(target):
            return ToolchainSpec(
                target=target,
                compiler_path=self.HOST_COMPILER,
                linker_path=self.HOST_COMPILER,
                sysroot_path=Path("/"),
                pkg_config=self.HOST_PKG_CONFIG,
                is_cross=False,
            )

        triple = target.llvm_triple
        wrapper = f"{triple}-{self.HOST_COMPILER}"
        return ToolchainSpec(
            target=target,
            compiler_path=wrapper,
            linker_path=wrapper,
            sysroot_path=Path("/") / triple,
            pkg_config=f"{triple}-{self.HOST_PKG_CONFIG}",
            is_cross=True,
        )

    def _check_supported(self, target: TargetTriple) -> None:
        catalog = ARCH_SPECS.get(target.arch)
        if catalog is not None and target.float_abi != catalog.abi_suffix:
            raise UnsupportedTargetError(
                f"No toolchain for float ABI '{target.float_abi or 'none'}' on "
                + f"{target.arch} ({target.llvm_triple}). "
                + f"Supported: {catalog.abi_suffix or 'none'}"
            )
        if target.arch_spec is None:
            raise UnsupportedTargetError(
                f"No toolchain for architecture '{target.arch}' ({target}). "
                + f"Supported: {', '.join(self.supported_architectures())}"
            )
        if target.os not in self.SUPPORTED_OS:
            raise UnsupportedTargetError(
                f"No toolchain for operating system '{target.os}' ({target})"
            )
        if target.abi not in self.SUPPORTED_ABIS:
            raise UnsupportedTargetError(
                f"No static toolchain for ABI '{target.abi}' ({target}). "
                + f"Supported: {', '.join(self.SUPPORTED_ABIS)}"
            )

    @staticmethod
    def supported_architectures() -> list[str]:
        return sorted(ARCH_SPECS)
