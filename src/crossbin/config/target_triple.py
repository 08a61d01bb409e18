"""
Target triples and the supported architecture catalog.

A TargetTriple identifies a compilation target as {arch, vendor, os, abi}.
Several spellings are accepted and normalized to one canonical value so a
triple can be used as a cache and toolchain lookup key:

    aarch64-unknown-linux-musl       LLVM / Rust triple
    armv7-unknown-linux-musleabihf   LLVM triple with float-ABI suffix
    arm64-linux-musl                 short form
    linux/arm64, linux/arm/v7        Docker platform strings

Architectures are stored under their Docker-style names (amd64, arm64, arm,
386, riscv64, ppc64le, s390x); `llvm_triple` gives the compiler-facing form.
The float ABI is part of the target: ``armv7-unknown-linux-musleabi`` (soft
float) and ``armv7-unknown-linux-musleabihf`` are different triples, and the
LLVM spelling ``arm-...-eabi[hf]`` means ARMv6.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import ConfigurationError


class InvalidTargetError(ConfigurationError):
    """Raised when a target triple string cannot be parsed."""

    pass


# Float ABI bits of e_flags
EF_ARM_ABI_FLOAT_HARD = 0x400
EF_RISCV_FLOAT_ABI = 0x6
EF_RISCV_FLOAT_ABI_DOUBLE = 0x4


@dataclass(frozen=True)
class ArchSpec:
    """Architecture facts used for toolchain selection and ELF verification."""

    name: str
    llvm_arch: str
    elf_machine: str  # pyelftools e_machine name
    elf_class: int  # 32 or 64
    little_endian: bool = True
    abi_suffix: str = ""  # float ABI appended to the ABI in LLVM triples
    docker_variant: str = ""
    elf_flags_mask: int = 0  # e_flags bits that must equal elf_flags
    elf_flags: int = 0


ARCH_SPECS: Dict[str, ArchSpec] = {
    "amd64": ArchSpec("amd64", "x86_64", "EM_X86_64", 64),
    "arm64": ArchSpec("arm64", "aarch64", "EM_AARCH64", 64),
    "arm": ArchSpec(
        "arm",
        "armv7",
        "EM_ARM",
        32,
        abi_suffix="eabihf",
        docker_variant="v7",
        elf_flags_mask=EF_ARM_ABI_FLOAT_HARD,
        elf_flags=EF_ARM_ABI_FLOAT_HARD,
    ),
    "386": ArchSpec("386", "i686", "EM_386", 32),
    "riscv64": ArchSpec(
        "riscv64",
        "riscv64gc",
        "EM_RISCV",
        64,
        elf_flags_mask=EF_RISCV_FLOAT_ABI,
        elf_flags=EF_RISCV_FLOAT_ABI_DOUBLE,
    ),
    "ppc64le": ArchSpec("ppc64le", "powerpc64le", "EM_PPC64", 64),
    "s390x": ArchSpec("s390x", "s390x", "EM_S390", 64, little_endian=False),
}

ARCH_ALIASES = {
    "x86_64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "armv8": "arm64",
    "armv7": "arm",
    "armv7l": "arm",
    "armhf": "arm",
    "i386": "386",
    "i486": "386",
    "i586": "386",
    "i686": "386",
    "x86": "386",
    "riscv64gc": "riscv64",
    "powerpc64le": "ppc64le",
}

KNOWN_VENDORS = {"unknown", "pc", "apple", "alpine", "none", "w64"}

_ABI_SUFFIXES = ("eabihf", "eabi")
_TOKEN = re.compile(r"^[a-z0-9_.]+$")


def normalize_arch(arch: str) -> str:
    """Map an architecture alias to its canonical name."""
    arch = arch.strip().lower()
    return ARCH_ALIASES.get(arch, arch)


def get_arch_spec(arch: str) -> Optional[ArchSpec]:
    """Get the catalog entry for an architecture, or None if unsupported."""
    return ARCH_SPECS.get(normalize_arch(arch))


@dataclass(frozen=True)
class TargetTriple:
    """A normalized compilation target.

    `os` may be given with its ABI attached (``os="linux-musl"``); it is split
    into the two fields on construction. An ARM float ABI suffix (``eabi``,
    ``eabihf``) is kept apart from the ABI in `float_abi`; when none is given
    the catalog default of the architecture applies.
    """

    arch: str
    vendor: str = "unknown"
    os: str = "linux"
    abi: str = ""
    float_abi: str = ""

    def __post_init__(self) -> None:
        arch = normalize_arch(self.arch)
        os_name = self.os.strip().lower()
        abi = self.abi.strip().lower()
        float_abi = self.float_abi.strip().lower()
        if "-" in os_name and not abi:
            os_name, abi = os_name.split("-", 1)
        for suffix in _ABI_SUFFIXES:
            if abi.endswith(suffix) and abi != suffix:
                abi = abi[: -len(suffix)]
                float_abi = suffix
                break
        if not float_abi and arch in ARCH_SPECS:
            float_abi = ARCH_SPECS[arch].abi_suffix
        if not abi and os_name == "linux":
            abi = "musl"
        vendor = self.vendor.strip().lower() or "unknown"

        for field_name, value in (("arch", arch), ("vendor", vendor), ("os", os_name)):
            if not value or not _TOKEN.match(value):
                raise InvalidTargetError(
                    f"Invalid {field_name} {value!r} in target triple"
                )

        object.__setattr__(self, "arch", arch)
        object.__setattr__(self, "vendor", vendor)
        object.__setattr__(self, "os", os_name)
        object.__setattr__(self, "abi", abi)
        object.__setattr__(self, "float_abi", float_abi)

    @classmethod
    def parse(cls, value: str) -> "TargetTriple":
        """Parse any supported triple spelling.

        Raises:
            InvalidTargetError: If the string is not a recognizable triple
        """
        text = value.strip().lower()
        if not text:
            raise InvalidTargetError("Empty target triple")

        if "/" in text:
            return cls._parse_platform(text)

        parts = text.split("-")
        if len(parts) == 4:
            arch, vendor, os_name, abi = parts
        elif len(parts) == 3:
            if parts[1] in KNOWN_VENDORS:
                arch, vendor, os_name = parts
                abi = ""
            else:
                arch, os_name, abi = parts
                vendor = "unknown"
        elif len(parts) == 2:
            arch, os_name = parts
            vendor, abi = "unknown", ""
        else:
            raise InvalidTargetError(
                f"Cannot parse target triple {value!r}. "
                + "Expected e.g. 'aarch64-unknown-linux-musl', 'arm64-linux-musl' or 'linux/arm64'"
            )
        if arch == "arm" and abi.endswith(_ABI_SUFFIXES):
            # LLVM "arm-...-eabi[hf]" is ARMv6; ARMv7 is spelled "armv7"
            arch = "armv6"
        return cls(arch=arch, vendor=vendor, os=os_name, abi=abi)

    @classmethod
    def _parse_platform(cls, text: str) -> "TargetTriple":
        parts = text.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise InvalidTargetError(f"Cannot parse platform string {text!r}")
        os_name, arch = parts[0], parts[1]
        if len(parts) == 3:
            variant = parts[2]
            if arch == "arm" and variant != "v7":
                arch = f"arm{variant}"
            elif arch == "arm64" and variant != "v8":
                raise InvalidTargetError(f"Unsupported arm64 variant {variant!r}")
        return cls(arch=arch, os=os_name)

    def same_platform(self, other: "TargetTriple") -> bool:
        """True when both triples run the same binaries (vendor is ignored)."""
        return (self.arch, self.os, self.abi, self.float_abi) == (
            other.arch,
            other.os,
            other.abi,
            other.float_abi,
        )

    @property
    def arch_spec(self) -> Optional[ArchSpec]:
        """Catalog entry, or None when the arch or its float ABI is not cataloged."""
        spec = ARCH_SPECS.get(self.arch)
        if spec is None or spec.abi_suffix != self.float_abi:
            return None
        return spec

    @property
    def llvm_triple(self) -> str:
        """Compiler-facing triple, e.g. ``aarch64-unknown-linux-musl``."""
        catalog = ARCH_SPECS.get(self.arch)
        arch = catalog.llvm_arch if catalog else self.arch
        parts = [arch, self.vendor, self.os]
        if self.abi:
            parts.append(f"{self.abi}{self.float_abi}")
        return "-".join(parts)

    @property
    def env_key(self) -> str:
        """LLVM triple in the form Cargo and cc-rs use for variable names."""
        return self.llvm_triple.replace("-", "_").replace(".", "_")

    @property
    def docker_platform(self) -> str:
        spec = self.arch_spec
        if spec and spec.docker_variant:
            return f"{self.os}/{self.arch}/{spec.docker_variant}"
        return f"{self.os}/{self.arch}"

    def __str__(self) -> str:
        catalog = ARCH_SPECS.get(self.arch)
        default_float_abi = catalog.abi_suffix if catalog else ""
        arch, abi = self.arch, self.abi
        if self.abi and self.float_abi != default_float_abi:
            # Spell the arch so the string parses back to the same triple
            arch = catalog.llvm_arch if catalog else self.arch
            abi = f"{self.abi}{self.float_abi}"
        parts = [arch, self.vendor, self.os]
        if abi:
            parts.append(abi)
        return "-".join(parts)
