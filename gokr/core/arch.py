# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import enum
import os


class Arch(enum.Enum):
    """Target architectures, named like GOARCH."""

    arm64 = "arm64"
    amd64 = "amd64"
    arm = "arm"
    i386 = "386"

    def __str__(self) -> str:
        return self.value

    @staticmethod
    def from_str(arch: str) -> Arch:
        try:
            return Arch(arch)
        except ValueError:
            raise ValueError(
                f"Invalid architecture: '{arch}',"
                " expected one of:"
                f" {', '.join(sorted(str(a) for a in Arch))}"
            )

    @staticmethod
    def target() -> Arch:
        """Architecture the image is built for, from $GOARCH. Defaults to arm64
        (Raspberry Pi 3 and newer)."""
        return Arch.from_str(os.environ.get("GOARCH") or "arm64")

    @staticmethod
    def target_os() -> str:
        return os.environ.get("GOOS") or "linux"

    def kernel(self) -> str:
        match self:
            case Arch.amd64 | Arch.i386:
                return "x86"
            case _:
                return self.value
