"""Static linkage plans.

This module turns the ``[library:<name>]`` sections of crossbin.ini into a
StaticLinkPlan and checks it is consistent before anything is built.

Design:
    - One LinkageDirective per native library, STATIC or DYNAMIC
    - A built-in catalog knows the force-static variables of common ``*-sys``
      crates and their native dependencies
    - Transitive native dependencies must be declared in the plan explicitly
    - Contradictory or incomplete plans fail at startup, never mid-build
"""

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..config.ini_parser import LibraryConfig
from ..errors import ConfigurationError


class ConflictingLinkagePlanError(ConfigurationError):
    """Raised when one library is given two different link modes."""

    pass


class StaticLinkageError(ConfigurationError):
    """Raised when a static library depends on a dynamic or undeclared one."""

    pass


class LinkMode(enum.Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class NativeLibrarySpec:
    """How a native library is forced static and located.

    Attributes:
        name: Library name as used in crossbin.ini
        static_env: Variable that makes the ``*-sys`` crate link statically
        extra_env: Additional variables set when the library is static
        prefix_env: Variable receiving ``<target root>/usr``
        depends: Native libraries this one links against
    """

    name: str
    static_env: str
    extra_env: Tuple[Tuple[str, str], ...] = ()
    prefix_env: Optional[str] = None
    depends: Tuple[str, ...] = ()


NATIVE_LIBRARIES: Dict[str, NativeLibrarySpec] = {
    "zlib": NativeLibrarySpec("zlib", "LIBZ_SYS_STATIC"),
    "openssl": NativeLibrarySpec(
        "openssl",
        "OPENSSL_STATIC",
        extra_env=(("OPENSSL_NO_VENDOR", "1"),),
        prefix_env="OPENSSL_DIR",
        depends=("zlib",),
    ),
    "libssh2": NativeLibrarySpec("libssh2", "LIBSSH2_STATIC", depends=("openssl", "zlib")),
    "libgit2": NativeLibrarySpec(
        "libgit2", "LIBGIT2_STATIC", depends=("libssh2", "openssl", "zlib")
    ),
    "zstd": NativeLibrarySpec("zstd", "ZSTD_SYS_USE_PKG_CONFIG"),
}


def get_library_spec(name: str) -> NativeLibrarySpec:
    """Catalog entry for a library; unknown libraries get ``<NAME>_STATIC``."""
    spec = NATIVE_LIBRARIES.get(name.lower())
    if spec is not None:
        return spec
    env_name = "".join(c if c.isalnum() else "_" for c in name.upper())
    return NativeLibrarySpec(name, f"{env_name}_STATIC")


@dataclass(frozen=True)
class LinkageDirective:
    """Instruction for how one native library is linked."""

    library_name: str
    link_mode: LinkMode = LinkMode.STATIC
    search_path_override: Optional[Path] = None
    depends: Tuple[str, ...] = ()

    @property
    def spec(self) -> NativeLibrarySpec:
        return get_library_spec(self.library_name)

    @property
    def all_depends(self) -> Tuple[str, ...]:
        """Catalog dependencies followed by configured ones, without repeats."""
        seen: List[str] = []
        for dep in self.spec.depends + self.depends:
            if dep not in seen:
                seen.append(dep)
        return tuple(seen)


@dataclass(frozen=True)
class StaticLinkPlan:
    """The full set of linkage directives for one build.

    Directives keep their configuration order, which is also the order their
    search paths are emitted in.
    """

    directives: Tuple[LinkageDirective, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, libraries: Iterable[LibraryConfig]) -> "StaticLinkPlan":
        """Build a plan from ``[library:<name>]`` sections."""
        directives = []
        for library in libraries:
            directives.append(
                LinkageDirective(
                    library_name=library.name,
                    link_mode=LinkMode(library.link),
                    search_path_override=library.search_path,
                    depends=tuple(library.depends),
                )
            )
        return cls(directives=tuple(directives))

    def __iter__(self):
        return iter(self.directives)

    def __len__(self) -> int:
        return len(self.directives)

    @property
    def has_static(self) -> bool:
        return any(d.link_mode is LinkMode.STATIC for d in self.directives)

    def validate(self) -> Dict[str, LinkageDirective]:
        """Check the plan is consistent.

        Returns:
            The directives keyed by library name, duplicates merged

        Raises:
            ConflictingLinkagePlanError: If a library has two link modes
            StaticLinkageError: If a static library depends, directly or
                transitively, on a dynamic or undeclared library
        """
        by_name: Dict[str, LinkageDirective] = {}
        for directive in self.directives:
            key = directive.library_name.lower()
            existing = by_name.get(key)
            if existing is None:
                by_name[key] = directive
            elif existing.link_mode is not directive.link_mode:
                raise ConflictingLinkagePlanError(
                    f"Library '{directive.library_name}' is requested both "
                    + f"{existing.link_mode.value} and {directive.link_mode.value}"
                )

        for directive in by_name.values():
            if directive.link_mode is LinkMode.STATIC:
                self._check_static_closure(directive, by_name)
        return by_name

    @staticmethod
    def _check_static_closure(
        root: LinkageDirective, by_name: Dict[str, LinkageDirective]
    ) -> None:
        chain = [root.library_name]
        pending = [(dep, chain) for dep in root.all_depends]
        visited = set()
        while pending:
            dep, path = pending.pop(0)
            key = dep.lower()
            if key in visited:
                continue
            visited.add(key)
            via = " -> ".join(path + [dep])
            directive = by_name.get(key)
            if directive is None:
                raise StaticLinkageError(
                    f"Static library '{root.library_name}' needs '{dep}' ({via}), "
                    + f"which is not declared. Add a [library:{dep}] section."
                )
            if directive.link_mode is LinkMode.DYNAMIC:
                raise StaticLinkageError(
                    f"Static library '{root.library_name}' depends on dynamic "
                    + f"library '{dep}' ({via})"
                )
            pending.extend((sub, path + [dep]) for sub in directive.all_depends)
