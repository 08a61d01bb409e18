"""Cross Environment Builder.

This module composes the environment variables a build runs with from the
resolved toolchain and the static link plan.

Design:
    - Library and pkg-config lookups point at the target root only; host
      default locations are never prepended
    - Every static library gets its force-static marker and catalog variables
    - Exactly one linker is chosen per build and passed through RUSTFLAGS and
      the per-target Cargo/cc variables
    - The result is an immutable mapping; callers copy it to extend it
"""

from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List

from ..errors import ConfigurationError
from ..packages.toolchain import ToolchainSpec
from .linkage import LinkMode, StaticLinkPlan


class UnsupportedLinkerError(ConfigurationError):
    """Raised for a linker flavor the toolchain drivers cannot select."""

    pass


SUPPORTED_LINKERS = ("mold", "lld", "bfd", "gold")


class BuildEnvironment(Mapping):
    """Read-only map of environment variables for one build."""

    def __init__(self, variables: Dict[str, str]):
        self._variables = MappingProxyType(dict(variables))

    def __getitem__(self, key: str) -> str:
        return self._variables[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def __repr__(self) -> str:
        return f"BuildEnvironment({dict(self._variables)!r})"

    def to_dict(self) -> Dict[str, str]:
        return dict(self._variables)

    def format_exports(self) -> str:
        """Render as shell ``export`` lines, sorted by name."""
        lines = []
        for key in sorted(self._variables):
            value = self._variables[key].replace("'", "'\\''")
            lines.append(f"export {key}='{value}'")
        return "\n".join(lines)


class CrossEnvironmentBuilder:
    """Builds BuildEnvironments from a toolchain and a link plan.

    Example:
        builder = CrossEnvironmentBuilder(linker="mold")
        env = builder.compose(toolchain, plan)
        env["RUSTFLAGS"]
        # '-C linker=aarch64-unknown-linux-musl-clang -C link-arg=-fuse-ld=mold ...'
    """

    def __init__(self, linker: str = "mold"):
        """Initialize environment builder.

        Args:
            linker: Linker flavor passed to the compiler driver via -fuse-ld

        Raises:
            UnsupportedLinkerError: If the flavor is not supported
        """
        linker = linker.strip().lower()
        if linker not in SUPPORTED_LINKERS:
            raise UnsupportedLinkerError(
                f"Unsupported linker '{linker}'. "
                + f"Supported: {', '.join(SUPPORTED_LINKERS)}"
            )
        self.linker = linker

    def compose(self, toolchain: ToolchainSpec, plan: StaticLinkPlan) -> BuildEnvironment:
        """Compose the environment for one build.

        Args:
            toolchain: Resolved toolchain
            plan: Link plan for the project's native libraries

        Returns:
            Immutable BuildEnvironment

        Raises:
            ConflictingLinkagePlanError: If the plan gives one library two modes
            StaticLinkageError: If a static library has a dynamic or missing dependency
        """
        directives = plan.validate()
        root = toolchain.sysroot_path
        env: Dict[str, str] = {}

        lib_dirs = self.library_dirs(root, plan)
        pkgconfig_dirs = self.pkgconfig_dirs(root, plan)

        for directive in directives.values():
            if directive.link_mode is not LinkMode.STATIC:
                continue
            spec = directive.spec
            env[spec.static_env] = "1"
            for key, value in spec.extra_env:
                env[key] = value
            if spec.prefix_env:
                env[spec.prefix_env] = str(root / "usr")

        if plan.has_static:
            env["PKG_CONFIG_ALL_STATIC"] = "1"
        env["PKG_CONFIG"] = toolchain.pkg_config
        env["PKG_CONFIG_PATH"] = ":".join(str(p) for p in pkgconfig_dirs)
        if toolchain.is_cross:
            env["PKG_CONFIG_SYSROOT_DIR"] = str(root)
            env["PKG_CONFIG_LIBDIR"] = env["PKG_CONFIG_PATH"]
            env["PKG_CONFIG_ALLOW_CROSS"] = "1"

        env["RUSTFLAGS"] = " ".join(self.rustflags(toolchain, lib_dirs))

        target = toolchain.target
        env[f"CC_{target.env_key}"] = toolchain.compiler_path
        env[f"CXX_{target.env_key}"] = toolchain.cxx_compiler_path
        env[f"CARGO_TARGET_{target.env_key.upper()}_LINKER"] = toolchain.linker_path

        return BuildEnvironment(env)

    def rustflags(self, toolchain: ToolchainSpec, lib_dirs: List[Path]) -> List[str]:
        flags = [
            "-C", f"linker={toolchain.linker_path}",
            "-C", f"link-arg=-fuse-ld={self.linker}",
        ]
        for lib_dir in lib_dirs:
            flags.extend(["-L", f"native={lib_dir}"])
        flags.extend(["-C", "target-feature=+crt-static"])
        return flags

    @staticmethod
    def library_dirs(root: Path, plan: StaticLinkPlan) -> List[Path]:
        """Library search order: directive overrides, then the target root."""
        dirs: List[Path] = []
        for directive in plan:
            if directive.search_path_override is not None:
                dirs.append(directive.search_path_override)
        dirs.extend([root / "usr" / "lib", root / "lib"])
        return _unique(dirs)

    @staticmethod
    def pkgconfig_dirs(root: Path, plan: StaticLinkPlan) -> List[Path]:
        dirs: List[Path] = []
        for directive in plan:
            if directive.search_path_override is not None:
                dirs.append(directive.search_path_override / "pkgconfig")
        dirs.extend([root / "usr" / "lib" / "pkgconfig", root / "usr" / "share" / "pkgconfig"])
        return _unique(dirs)


def _unique(paths: List[Path]) -> List[Path]:
    result: List[Path] = []
    for path in paths:
        if path not in result:
            result.append(path)
    return result
