"""Configuration parsing modules for crossbin."""

from .ini_parser import (
    LibraryConfig,
    ProjectConfig,
    ProjectConfigError,
    ProjectConfigParser,
)
from .target_triple import (
    ARCH_SPECS,
    ArchSpec,
    InvalidTargetError,
    TargetTriple,
    get_arch_spec,
    normalize_arch,
)

__all__ = [
    "ProjectConfig",
    "ProjectConfigParser",
    "ProjectConfigError",
    "LibraryConfig",
    "TargetTriple",
    "InvalidTargetError",
    "ArchSpec",
    "ARCH_SPECS",
    "get_arch_spec",
    "normalize_arch",
]
