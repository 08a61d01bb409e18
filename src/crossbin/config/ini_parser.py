"""
crossbin.ini configuration parser.

This module parses the optional per-project ``crossbin.ini`` file that holds
build defaults, the enumerated feature toggles and the native libraries the
binary links against.
"""

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import ConfigurationError

CONFIG_FILENAME = "crossbin.ini"

DEFAULT_REGISTRY_MIRROR = "https://static.crates.io/crates/{name}/{name}-{version}.crate"


class ProjectConfigError(ConfigurationError):
    """Exception raised for crossbin.ini configuration errors."""

    pass


@dataclass(frozen=True)
class LibraryConfig:
    """A ``[library:<name>]`` section."""

    name: str
    link: str = "static"
    depends: Tuple[str, ...] = ()
    search_path: Optional[Path] = None


@dataclass
class ProjectConfig:
    """Build settings for one project.

    Every field has a default so a project without a crossbin.ini still builds
    with values supplied on the command line.
    """

    project_dir: Path
    package: Optional[str] = None
    profile: str = "release"
    output_dir: Optional[Path] = None
    lockfile: Path = Path("Cargo.lock")
    linker: str = "mold"
    default_features: bool = False
    available_features: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    registry_mirror: str = DEFAULT_REGISTRY_MIRROR
    fetch_retries: int = 3
    libraries: List[LibraryConfig] = field(default_factory=list)
    cache_root: Optional[Path] = None
    cache_sharing: Dict[str, str] = field(default_factory=dict)

    @property
    def lockfile_path(self) -> Path:
        return self.project_dir / self.lockfile

    def validate_features(self, requested: Tuple[str, ...]) -> Tuple[str, ...]:
        """Check requested feature toggles against the enumerated set.

        Args:
            requested: Feature names requested for a build

        Returns:
            The requested features, sorted and de-duplicated

        Raises:
            ProjectConfigError: If a feature is not listed in available_features
        """
        unknown = sorted(set(requested) - set(self.available_features))
        if unknown:
            available = ", ".join(self.available_features) or "none"
            raise ProjectConfigError(
                f"Unknown feature toggle(s): {', '.join(unknown)}. "
                + f"Available features: {available}"
            )
        return tuple(sorted(set(requested)))


def _split_list(value: str) -> Tuple[str, ...]:
    items = []
    for line in value.split("\n"):
        for item in line.split(","):
            item = item.strip()
            if item:
                items.append(item)
    return tuple(items)


class ProjectConfigParser:
    """
    Parser for crossbin.ini files.

    Example crossbin.ini:
        [crossbin]
        package = proxy-bin
        profile = release-lto
        available_features = tls

        [library:openssl]
        link = static
        depends = zlib

    Usage:
        config = ProjectConfigParser.load(Path("."))
        print(config.package, config.libraries)
    """

    MAIN_SECTION = "crossbin"
    LIBRARY_PREFIX = "library:"
    CACHE_SECTION = "cache"

    def __init__(self, ini_path: Path):
        """
        Initialize the parser with a crossbin.ini file.

        Args:
            ini_path: Path to the crossbin.ini file

        Raises:
            ProjectConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = ini_path

        if not ini_path.exists():
            raise ProjectConfigError(f"Configuration file not found: {ini_path}")

        self.config = configparser.ConfigParser(
            allow_no_value=True, interpolation=configparser.ExtendedInterpolation()
        )

        try:
            self.config.read(ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise ProjectConfigError(f"Failed to parse {ini_path}: {e}") from e

    @classmethod
    def load(cls, project_dir: Path) -> ProjectConfig:
        """Load the project's crossbin.ini, or defaults when there is none."""
        project_dir = Path(project_dir).resolve()
        ini_path = project_dir / CONFIG_FILENAME
        if not ini_path.exists():
            return ProjectConfig(project_dir=project_dir)
        return cls(ini_path).to_project_config(project_dir)

    def get_libraries(self) -> List[LibraryConfig]:
        """
        Get all ``[library:<name>]`` sections in file order.

        Raises:
            ProjectConfigError: If a library section has an invalid link mode
        """
        libraries = []
        for section in self.config.sections():
            if not section.startswith(self.LIBRARY_PREFIX):
                continue
            name = section.split(":", 1)[1].strip()
            values = self.config[section]
            link = (values.get("link") or "static").strip().lower()
            if link not in ("static", "dynamic"):
                raise ProjectConfigError(
                    f"Library '{name}' has invalid link mode '{link}' "
                    + "(expected 'static' or 'dynamic')"
                )
            search_path = (values.get("search_path") or "").strip()
            libraries.append(
                LibraryConfig(
                    name=name,
                    link=link,
                    depends=_split_list(values.get("depends") or ""),
                    search_path=Path(search_path) if search_path else None,
                )
            )
        return libraries

    def get_cache_sharing(self) -> Dict[str, str]:
        """
        Get region sharing-mode overrides from the [cache] section.

        Example:
            For ``sharing.dependency-fetch = locked`` returns
            ``{'dependency-fetch': 'locked'}``
        """
        if self.CACHE_SECTION not in self.config:
            return {}
        overrides = {}
        for key, value in self.config[self.CACHE_SECTION].items():
            if key.startswith("sharing."):
                overrides[key.split(".", 1)[1]] = (value or "").strip().lower()
        return overrides

    def to_project_config(self, project_dir: Path) -> ProjectConfig:
        """
        Build a ProjectConfig from the parsed file.

        Raises:
            ProjectConfigError: If a value has the wrong type
        """
        config = ProjectConfig(project_dir=project_dir)
        if self.MAIN_SECTION in self.config:
            main = self.config[self.MAIN_SECTION]
            try:
                config.package = (main.get("package") or "").strip() or None
                config.profile = (main.get("profile") or config.profile).strip()
                output_dir = (main.get("output_dir") or "").strip()
                config.output_dir = Path(output_dir) if output_dir else None
                config.lockfile = Path((main.get("lockfile") or "Cargo.lock").strip())
                config.linker = (main.get("linker") or config.linker).strip()
                config.default_features = main.getboolean("default_features", fallback=False)
                config.available_features = _split_list(main.get("available_features") or "")
                config.features = _split_list(main.get("features") or "")
                config.registry_mirror = (
                    main.get("registry_mirror") or DEFAULT_REGISTRY_MIRROR
                ).strip()
                config.fetch_retries = main.getint("fetch_retries", fallback=3)
            except ValueError as e:
                raise ProjectConfigError(f"Invalid value in {self.ini_path}: {e}") from e

        if self.CACHE_SECTION in self.config:
            root = (self.config[self.CACHE_SECTION].get("root") or "").strip()
            config.cache_root = Path(root) if root else None
        config.cache_sharing = self.get_cache_sharing()
        config.libraries = self.get_libraries()

        config.validate_features(config.features)
        return config
