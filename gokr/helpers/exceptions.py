# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later


class NonBugError(Exception):
    """Exception which originates from a problem not caused by gokr's code. This
    could for example be raised if the target device is mounted, or if the
    configuration asks for something impossible."""
    pass


class BuildFailedError(Exception):
    """Exception to be raised when the Go toolchain fails to produce a usable
    binary (compiler error, missing package, output that is not an ELF
    executable)."""
    pass
