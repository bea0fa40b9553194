# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from functools import lru_cache
from pathlib import Path

from gokr.helpers.exceptions import NonBugError

try:
    # Python >= 3.11
    from tomllib import load, TOMLDecodeError  # novermin
except ImportError:
    # Python < 3.11
    from tomli import load, TOMLDecodeError  # type:ignore[import-not-found,no-redef,assignment]


@lru_cache
def load_toml_file(path: Path) -> dict:
    """Read a toml file into a dict and show the path on error."""
    with open(path, mode="rb") as f:
        try:
            return load(f)
        except TOMLDecodeError as e:
            raise NonBugError(f"{path}: {e}")
