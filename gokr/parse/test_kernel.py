import struct

import pytest

from gokr.core.arch import Arch
from gokr.helpers.exceptions import NonBugError
from gokr.parse.kernel import kernel_goarch, validate_target_arch_matches_kernel


def x86_header(xlf0: bool) -> bytes:
    hdr = bytearray(1024)
    struct.pack_into("<H", hdr, 0x1FE, 0xAA55)
    hdr[0x236] = 1 if xlf0 else 0
    return bytes(hdr)


def test_kernel_goarch():
    arm64 = bytearray(1024)
    struct.pack_into("<I", arm64, 0x38, 0x644D5241)
    assert kernel_goarch(bytes(arm64)) == "arm64"

    arm = bytearray(1024)
    struct.pack_into("<I", arm, 0x24, 0x016F2818)
    assert kernel_goarch(bytes(arm)) == "arm"

    assert kernel_goarch(x86_header(True)) == "amd64"
    assert kernel_goarch(x86_header(False)) == "386"
    assert kernel_goarch(bytes(1024)) == ""
    assert kernel_goarch(b"") == ""


def test_validate(kernel_dir):
    validate_target_arch_matches_kernel(kernel_dir, "github.com/gokrazy/kernel")
    with pytest.raises(NonBugError, match='target architecture "amd64"'):
        validate_target_arch_matches_kernel(kernel_dir, "github.com/gokrazy/kernel", Arch.amd64)

    (kernel_dir / "vmlinuz").write_bytes(bytes(1024))
    with pytest.raises(NonBugError, match="not detected"):
        validate_target_arch_matches_kernel(kernel_dir, "github.com/gokrazy/kernel")
