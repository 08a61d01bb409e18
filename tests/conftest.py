"""Shared fixtures for the crossbin test suite.

Provides builders for minimal ELF executables, crate archives and Cargo.lock
files, plus fakes for the HTTP session and the cargo subprocess, so no test
needs a real toolchain or network access.
"""

import hashlib
import io
import struct
import tarfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from crossbin.config import TargetTriple

ELF_MACHINES = {
    "EM_386": 3,
    "EM_PPC64": 21,
    "EM_S390": 22,
    "EM_ARM": 40,
    "EM_X86_64": 62,
    "EM_AARCH64": 183,
    "EM_RISCV": 243,
}

PT_INTERP = 3
SHT_STRTAB = 3


def build_elf(machine="EM_AARCH64", elf_class=64, little_endian=True, interpreter=None, e_flags=0):
    """Build the bytes of a minimal ELF executable.

    The file has an ELF header, an optional PT_INTERP program header and a
    section table holding only the null section and ``.shstrtab``.
    """
    order = "<" if little_endian else ">"
    is64 = elf_class == 64
    addr = "Q" if is64 else "I"
    ehsize, phentsize, shentsize = (64, 56, 64) if is64 else (52, 32, 40)

    phnum = 1 if interpreter else 0
    phoff = ehsize if phnum else 0
    interp_bytes = interpreter.encode() + b"\0" if interpreter else b""
    interp_off = ehsize + phnum * phentsize
    shstrtab = b"\0.shstrtab\0"
    shstrtab_off = interp_off + len(interp_bytes)
    shoff = shstrtab_off + len(shstrtab)
    shoff += (8 - shoff % 8) % 8

    ident = b"\x7fELF" + bytes([2 if is64 else 1, 1 if little_endian else 2, 1, 0]) + bytes(8)
    header = ident + struct.pack(
        f"{order}HHI{addr}{addr}{addr}IHHHHHH",
        2,  # ET_EXEC
        ELF_MACHINES[machine],
        1,
        0x400000,
        phoff,
        shoff,
        e_flags,
        ehsize,
        phentsize,
        phnum,
        shentsize,
        2,
        1,
    )

    phdrs = b""
    if interpreter:
        size = len(interp_bytes)
        if is64:
            phdrs = struct.pack(
                f"{order}IIQQQQQQ", PT_INTERP, 4, interp_off, 0, 0, size, size, 1
            )
        else:
            phdrs = struct.pack(
                f"{order}IIIIIIII", PT_INTERP, interp_off, 0, 0, size, size, 4, 1
            )

    body = header + phdrs + interp_bytes + shstrtab
    body += bytes(shoff - len(body))

    if is64:
        null_section = bytes(shentsize)
        strtab_section = struct.pack(
            f"{order}IIQQQQIIQQ", 1, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0
        )
    else:
        null_section = bytes(shentsize)
        strtab_section = struct.pack(
            f"{order}IIIIIIIIII", 1, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0
        )
    return body + null_section + strtab_section


def write_elf_for(path: Path, target: TargetTriple, interpreter=None) -> Path:
    """Write an ELF file matching a target's architecture."""
    spec = target.arch_spec
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(
        build_elf(
            spec.elf_machine,
            spec.elf_class,
            spec.little_endian,
            interpreter,
            e_flags=spec.elf_flags,
        )
    )
    return path


def build_crate(name: str, version: str) -> bytes:
    """Build a ``.crate`` archive (a gzipped tarball with one top-level dir)."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        files = {
            "Cargo.toml": f'[package]\nname = "{name}"\nversion = "{version}"\n',
            "src/lib.rs": "pub fn hello() {}\n",
        }
        for rel_path, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(f"{name}-{version}/{rel_path}")
            info.size = len(data)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class CrateSet:
    """A set of fake registry crates and the Cargo.lock that locks them."""

    def __init__(self, crates):
        self.archives = {}
        for name, version in crates:
            self.archives[(name, version)] = build_crate(name, version)

    def checksum(self, name, version):
        return hashlib.sha256(self.archives[(name, version)]).hexdigest()

    def url(self, name, version):
        return f"https://static.crates.io/crates/{name}/{name}-{version}.crate"

    def lockfile_text(self, root_package="proxy-bin"):
        lines = ["version = 3", ""]
        lines += ["[[package]]", f'name = "{root_package}"', 'version = "0.1.0"']
        deps = ", ".join(f'"{name}"' for name, _ in sorted(self.archives))
        lines += [f"dependencies = [{deps}]", ""]
        for name, version in sorted(self.archives):
            lines += [
                "[[package]]",
                f'name = "{name}"',
                f'version = "{version}"',
                'source = "registry+https://github.com/rust-lang/crates.io-index"',
                f'checksum = "{self.checksum(name, version)}"',
                "",
            ]
        return "\n".join(lines)

    def write_lockfile(self, project_dir: Path) -> Path:
        path = project_dir / "Cargo.lock"
        path.write_text(self.lockfile_text())
        return path

    def populate_cache(self, crates_dir: Path) -> None:
        """Place every archive in a dependency cache as if already fetched."""
        crates_dir.mkdir(parents=True, exist_ok=True)
        for (name, version), data in self.archives.items():
            (crates_dir / f"{name}-{version}.crate").write_bytes(data)

    def response_for(self, url):
        for (name, version), data in self.archives.items():
            if url == self.url(name, version):
                return make_response(data)
        raise AssertionError(f"unexpected URL {url}")


def make_response(data: bytes, status_code: int = 200):
    """Mock a streaming requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.headers = {"content-length": str(len(data))}
    response.iter_content = Mock(return_value=[data])
    response.raise_for_status = Mock()
    return response


def make_session(crate_set: CrateSet):
    """Mock requests.Session serving a CrateSet."""
    session = Mock()
    session.get = Mock(side_effect=lambda url, **kwargs: crate_set.response_for(url))
    return session


class FakeCargo:
    """Stands in for subprocess.Popen running ``cargo build``.

    On success it writes an ELF file for the ``--target`` architecture at the
    path Cargo would use, so the real verifier and stager can run on it.
    """

    def __init__(self, returncode=0, output="   Compiling proxy-bin v0.1.0\n", write_artifact=True,
                 interpreter=None, finishes=True):
        self.returncode_value = returncode
        self.output = output
        self.write_artifact = write_artifact
        self.interpreter = interpreter
        self.finishes = finishes
        self.calls = []
        self.processes = []

    def __call__(self, cmd, cwd=None, env=None, **kwargs):
        self.calls.append({"cmd": cmd, "cwd": cwd, "env": env})
        if self.write_artifact and self.returncode_value == 0:
            llvm_triple = cmd[cmd.index("--target") + 1]
            profile = cmd[cmd.index("--profile") + 1]
            package = cmd[cmd.index("--bin") + 1]
            profile_dir = "debug" if profile == "dev" else profile
            path = Path(env["CARGO_TARGET_DIR"]) / llvm_triple / profile_dir / package
            write_elf_for(path, TargetTriple.parse(llvm_triple), self.interpreter)
        process = _FakeProcess(self.returncode_value, self.output, self.finishes)
        self.processes.append(process)
        return process


class _FakeProcess:
    def __init__(self, returncode, output, finishes):
        self._returncode = returncode
        self.returncode = None
        self.stdout = io.StringIO(output)
        self.pid = 424242
        self._finishes = finishes

    def poll(self):
        if self._finishes:
            self.returncode = self._returncode
        return self.returncode


@pytest.fixture
def crate_set():
    """Three locked registry crates."""
    return CrateSet([("libc", "0.2.150"), ("cfg-if", "1.0.0"), ("log", "0.4.20")])


@pytest.fixture
def cache_dir(tmp_path, monkeypatch):
    """Isolated cache root; CROSSBIN_CACHE_DIR must not leak in from the host."""
    monkeypatch.delenv("CROSSBIN_CACHE_DIR", raising=False)
    return tmp_path / "cache"


@pytest.fixture
def elf_bytes():
    """Factory: ``elf_bytes(machine, elf_class, little_endian, interpreter, e_flags)``."""
    return build_elf


@pytest.fixture
def write_elf():
    """Factory: ``write_elf(path, target, interpreter=None)``."""
    return write_elf_for


@pytest.fixture
def session_for():
    """Factory: mock HTTP session serving a CrateSet."""
    return make_session


@pytest.fixture
def response_with():
    """Factory: mock streaming response with the given body."""
    return make_response


@pytest.fixture
def fake_cargo():
    """Factory for FakeCargo subprocess stand-ins."""
    return FakeCargo
