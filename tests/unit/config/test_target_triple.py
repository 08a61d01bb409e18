"""Unit tests for target triple parsing."""

import pytest

from crossbin.config import ARCH_SPECS, InvalidTargetError, TargetTriple
from crossbin.errors import ConfigurationError


class TestTargetTripleParse:
    """Test the accepted triple spellings."""

    def test_llvm_triple(self):
        triple = TargetTriple.parse("aarch64-unknown-linux-musl")
        assert triple == TargetTriple(arch="arm64", vendor="unknown", os="linux", abi="musl")
        assert str(triple) == "arm64-unknown-linux-musl"

    def test_float_abi_suffix_is_split_from_abi(self):
        triple = TargetTriple.parse("armv7-unknown-linux-musleabihf")
        assert triple.arch == "arm"
        assert (triple.abi, triple.float_abi) == ("musl", "eabihf")
        assert triple.llvm_triple == "armv7-unknown-linux-musleabihf"
        assert triple.arch_spec is ARCH_SPECS["arm"]

    def test_soft_float_is_a_different_target(self):
        soft = TargetTriple.parse("armv7-unknown-linux-musleabi")
        hard = TargetTriple.parse("armv7-unknown-linux-musleabihf")
        assert soft != hard
        assert not soft.same_platform(hard)
        assert soft.float_abi == "eabi"
        assert soft.llvm_triple == "armv7-unknown-linux-musleabi"
        assert soft.arch_spec is None

    @pytest.mark.parametrize(
        "value", ["arm-unknown-linux-musleabi", "arm-unknown-linux-musleabihf", "arm-unknown-linux-gnueabi"]
    )
    def test_bare_arm_with_float_abi_is_armv6(self, value):
        triple = TargetTriple.parse(value)
        assert triple.arch == "armv6"
        assert triple.llvm_triple == value.replace("arm-", "armv6-", 1)
        assert triple.arch_spec is None

    @pytest.mark.parametrize(
        "value",
        ["armv7-unknown-linux-musleabi", "arm-unknown-linux-gnueabihf", "armv7-unknown-linux-gnueabihf"],
    )
    def test_str_parses_back_to_same_triple(self, value):
        triple = TargetTriple.parse(value)
        assert TargetTriple.parse(str(triple)) == triple

    def test_default_float_abi_for_docker_arm(self):
        assert TargetTriple.parse("linux/arm/v7") == TargetTriple.parse("armv7-unknown-linux-musleabihf")

    def test_short_form(self):
        triple = TargetTriple.parse("arm64-linux-musl")
        assert triple.vendor == "unknown"
        assert triple.llvm_triple == "aarch64-unknown-linux-musl"

    def test_os_with_attached_abi(self):
        triple = TargetTriple(arch="arm64", os="linux-musl")
        assert (triple.os, triple.abi) == ("linux", "musl")

    def test_three_part_with_vendor(self):
        triple = TargetTriple.parse("x86_64-unknown-linux")
        assert triple.arch == "amd64"
        assert triple.abi == "musl"

    def test_docker_platform(self):
        assert TargetTriple.parse("linux/arm64") == TargetTriple.parse("aarch64-unknown-linux-musl")
        assert TargetTriple.parse("linux/arm/v7").arch == "arm"
        assert TargetTriple.parse("linux/amd64").docker_platform == "linux/amd64"
        assert TargetTriple.parse("linux/arm/v7").docker_platform == "linux/arm/v7"

    def test_gnu_abi_kept(self):
        assert TargetTriple.parse("x86_64-unknown-linux-gnu").abi == "gnu"

    def test_aliases_normalize(self):
        assert TargetTriple.parse("i686-unknown-linux-musl").arch == "386"
        assert TargetTriple.parse("riscv64gc-unknown-linux-musl").arch == "riscv64"
        assert TargetTriple.parse("powerpc64le-unknown-linux-musl").arch == "ppc64le"

    def test_env_key(self):
        assert TargetTriple.parse("linux/arm64").env_key == "aarch64_unknown_linux_musl"

    def test_hashable_and_equal(self):
        a = TargetTriple.parse("linux/arm64")
        b = TargetTriple.parse("arm64-linux-musl")
        assert {a, b} == {a}

    @pytest.mark.parametrize("value", ["", "arm64", "a-b-c-d-e", "linux/", "linux/arm64/v7", "arm 64-linux"])
    def test_invalid(self, value):
        with pytest.raises(InvalidTargetError):
            TargetTriple.parse(value)

    def test_invalid_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            TargetTriple.parse("???")


class TestSamePlatform:
    def test_vendor_ignored(self):
        a = TargetTriple.parse("x86_64-unknown-linux-musl")
        b = TargetTriple.parse("x86_64-alpine-linux-musl")
        assert a.same_platform(b)

    def test_abi_matters(self):
        a = TargetTriple.parse("x86_64-unknown-linux-musl")
        b = TargetTriple.parse("x86_64-unknown-linux-gnu")
        assert not a.same_platform(b)


def test_every_catalog_entry_round_trips_through_llvm_triple():
    for name in ARCH_SPECS:
        triple = TargetTriple(arch=name)
        assert TargetTriple.parse(triple.llvm_triple) == triple
