"""Build Platform Detection Utilities.

This module detects the platform crossbin itself runs on (the build
platform) so the toolchain resolver can decide between a native and a
cross toolchain.

Supported build platforms:
    - Linux: amd64, arm64, arm, 386, riscv64, ppc64le, s390x
"""

import os
import platform
from typing import Optional

from ..config.target_triple import TargetTriple, normalize_arch
from ..errors import ConfigurationError


class PlatformError(ConfigurationError):
    """Raised when platform detection fails or platform is unsupported."""

    pass


# Overrides auto-detection, e.g. BUILDPLATFORM=linux/amd64 as set by BuildKit
BUILD_PLATFORM_ENV = "CROSSBIN_BUILD_PLATFORM"


class PlatformDetector:
    """Detects the current platform for toolchain selection."""

    @staticmethod
    def detect_libc() -> str:
        """Detect the host C library.

        Returns:
            'musl' or 'gnu'
        """
        libc, _version = platform.libc_ver()
        if libc == "glibc":
            return "gnu"
        return "musl"

    @staticmethod
    def detect_build_platform(override: Optional[str] = None) -> TargetTriple:
        """Detect the build platform as a TargetTriple.

        Args:
            override: Explicit platform string; falls back to the
                CROSSBIN_BUILD_PLATFORM environment variable

        Returns:
            TargetTriple describing the host

        Raises:
            PlatformError: If the host operating system is unsupported
        """
        override = override or os.environ.get(BUILD_PLATFORM_ENV)
        if override:
            return TargetTriple.parse(override)

        system = platform.system().lower()
        machine = platform.machine().lower()

        if system != "linux":
            raise PlatformError(
                f"Unsupported build platform: {system} {machine}. "
                + "Static musl builds require a Linux build host."
            )

        return TargetTriple(
            arch=normalize_arch(machine),
            os="linux",
            abi=PlatformDetector.detect_libc(),
        )
