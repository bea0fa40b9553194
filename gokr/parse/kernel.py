# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from pathlib import Path
import struct

from gokr.core.arch import Arch
from gokr.helpers.exceptions import NonBugError

# Constants from the file(1) command's magic (Magdir/linux)
ARM32_MAGIC = 0x016F2818
ARM32_MAGIC_OFFSET = 0x24
ARM64_MAGIC = 0x644D5241
ARM64_MAGIC_OFFSET = 0x38
X86_MAGIC = 0xAA55
X86_MAGIC_OFFSET = 0x1FE
# XLF0 in arch/x86/boot/header.S
X86_XLOADFLAGS_OFFSET = 0x236


def kernel_goarch(hdr: bytes) -> str:
    """
    Detect the architecture of a Linux kernel image.

    :param hdr: the first bytes of the image (1 KiB is plenty)
    :returns: GOARCH of the kernel, "" if not detected
    """

    def u32(offset: int) -> int | None:
        if len(hdr) < offset + 4:
            return None
        return struct.unpack_from("<I", hdr, offset)[0]

    if u32(ARM64_MAGIC_OFFSET) == ARM64_MAGIC:
        return "arm64"
    if u32(ARM32_MAGIC_OFFSET) == ARM32_MAGIC:
        return "arm"
    if len(hdr) >= X86_XLOADFLAGS_OFFSET + 2:
        if struct.unpack_from("<H", hdr, X86_MAGIC_OFFSET)[0] == X86_MAGIC:
            if hdr[X86_XLOADFLAGS_OFFSET] & 1:
                return "amd64"
            return "386"
    return ""


def validate_target_arch_matches_kernel(kernel_dir: Path, kernel_package: str,
                                        target: Arch | None = None) -> None:
    """
    Refuse to build userland binaries for a different architecture than the
    kernel's, which would result in an unbootable appliance.
    """
    if target is None:
        target = Arch.target()
    kernel_path = kernel_dir / "vmlinuz"
    with open(kernel_path, "rb") as handle:
        hdr = handle.read(1 << 10)
    kernel_arch = kernel_goarch(hdr)
    if not kernel_arch:
        raise NonBugError(f"kernel {kernel_package} architecture in {kernel_path} not detected")
    if kernel_arch != str(target):
        raise NonBugError(f'target architecture "{target}" (GOARCH) doesn\'t match the'
                          f' {kernel_package} kernel type "{kernel_arch}"')
