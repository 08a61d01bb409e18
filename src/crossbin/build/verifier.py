"""Artifact verification.

Reads the ELF header of a produced binary with pyelftools and checks it was
really built for the requested target: machine, word size and byte order
must match the architecture catalog, as must the float ABI bits of e_flags.
By default the binary must also not need a dynamic loader or shared
libraries.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSegment
from elftools.elf.elffile import ELFFile

from ..config.target_triple import ARCH_SPECS, TargetTriple
from ..errors import VerificationError
from .executor import Artifact

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"


class InvalidArtifactError(VerificationError):
    """Raised when an artifact is missing or not an ELF executable."""

    pass


class ArchitectureMismatchError(VerificationError):
    """Raised when an artifact was built for another architecture."""

    pass


class DynamicLinkageError(VerificationError):
    """Raised when a binary expected to be static links dynamically."""

    pass


@dataclass(frozen=True)
class ArtifactMetadata:
    """What the ELF header says about a binary."""

    arch: str
    elf_machine: str
    elf_class: int
    little_endian: bool
    is_static: bool
    interpreter: Optional[str] = None
    needed: Tuple[str, ...] = ()
    e_flags: int = 0


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _arch_for_machine(machine: str, elf_class: int, little_endian: bool) -> str:
    for spec in ARCH_SPECS.values():
        if (spec.elf_machine, spec.elf_class, spec.little_endian) == (
            machine,
            elf_class,
            little_endian,
        ):
            return spec.name
    return machine


class ArtifactVerifier:
    """Checks produced binaries against their target."""

    def __init__(self, require_static: bool = True):
        self.require_static = require_static

    def inspect(self, path: Path) -> ArtifactMetadata:
        """Read ELF metadata from a file.

        Raises:
            InvalidArtifactError: If the file is missing or not ELF
        """
        path = Path(path)
        if not path.is_file():
            raise InvalidArtifactError(f"Artifact not found: {path}")

        try:
            with open(path, "rb") as f:
                if f.read(4) != ELF_MAGIC:
                    raise InvalidArtifactError(f"{path} is not an ELF file")
                f.seek(0)
                elf = ELFFile(f)
                machine = elf.header["e_machine"]
                elf_class = elf.elfclass
                little_endian = elf.little_endian
                e_flags = elf.header["e_flags"]

                interpreter = None
                needed = []
                for segment in elf.iter_segments():
                    if segment["p_type"] == "PT_INTERP":
                        interpreter = _text(segment.get_interp_name())
                    elif isinstance(segment, DynamicSegment):
                        for tag in segment.iter_tags():
                            if tag.entry.d_tag == "DT_NEEDED":
                                needed.append(_text(tag.needed))
        except InvalidArtifactError:
            raise
        except ELFError as e:
            raise InvalidArtifactError(f"Failed to parse ELF file {path}: {e}") from e
        except Exception as e:
            # pyelftools surfaces truncated headers as construct errors
            raise InvalidArtifactError(f"Failed to read {path}: {e}") from e

        return ArtifactMetadata(
            arch=_arch_for_machine(machine, elf_class, little_endian),
            elf_machine=machine,
            elf_class=elf_class,
            little_endian=little_endian,
            is_static=interpreter is None and not needed,
            interpreter=interpreter,
            needed=tuple(needed),
            e_flags=e_flags,
        )

    def verify(self, artifact: Artifact, target: TargetTriple) -> ArtifactMetadata:
        """Verify an artifact was built for a target.

        Args:
            artifact: Produced binary
            target: Target it was requested for

        Returns:
            ArtifactMetadata; ``arch`` equals ``target.arch``

        Raises:
            InvalidArtifactError: If the artifact is not an ELF file
            ArchitectureMismatchError: If machine, class or byte order differ,
                or the float ABI flags do not match
            DynamicLinkageError: If static linkage is required but not met
        """
        expected = target.arch_spec
        if expected is None:
            raise ArchitectureMismatchError(f"No architecture catalog entry for {target}")

        metadata = self.inspect(artifact.path)
        found = (metadata.elf_machine, metadata.elf_class, metadata.little_endian)
        wanted = (expected.elf_machine, expected.elf_class, expected.little_endian)
        if found != wanted:
            raise ArchitectureMismatchError(
                f"{artifact.path.name} is {metadata.arch} "
                + f"({metadata.elf_machine}, ELF{metadata.elf_class}, "
                + f"{'little' if metadata.little_endian else 'big'}-endian), "
                + f"expected {expected.name} ({expected.elf_machine}, "
                + f"ELF{expected.elf_class}, "
                + f"{'little' if expected.little_endian else 'big'}-endian)"
            )
        if metadata.e_flags & expected.elf_flags_mask != expected.elf_flags:
            raise ArchitectureMismatchError(
                f"{artifact.path.name} has float ABI flags "
                + f"{metadata.e_flags & expected.elf_flags_mask:#x}, expected "
                + f"{expected.elf_flags:#x} for {target.llvm_triple}"
            )

        if self.require_static and not metadata.is_static:
            details = []
            if metadata.interpreter:
                details.append(f"interpreter {metadata.interpreter}")
            if metadata.needed:
                details.append(f"needs {', '.join(metadata.needed)}")
            raise DynamicLinkageError(
                f"{artifact.path.name} is dynamically linked ({'; '.join(details)})"
            )

        logger.info(f"Verified {artifact.path.name}: {metadata.arch}, static={metadata.is_static}")
        return metadata
