# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Global runtime context"""

import datetime
from pathlib import Path
from typing import overload, Literal

import gokr.config
from .config import Config


class Context:
    details_to_stdout: bool = False
    verbose: bool = False
    log: Path

    # Host configuration directory (~/.config/gokrazy)
    config_dir: Path
    # Directory containing the instance directories (~/gokrazy)
    parent_dir: Path

    # Baked into the init program (RFC 3339), compared against after an update
    build_time: datetime.datetime
    build_timestamp: str = ""

    config: Config
    # As read from config.json, without command line overrides (SBOM input)
    file_config: Config

    def __init__(self, config: Config) -> None:
        self.log = Path(gokr.config.defaults["log"])
        self.config_dir = Path(gokr.config.defaults["config_dir"])
        self.parent_dir = Path(gokr.config.defaults["parent_dir"])
        self.config = config
        self.file_config = config
        self.build_time = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        self.build_timestamp = self.build_time.strftime("%Y-%m-%dT%H:%M:%SZ")

    def host_dir(self, hostname: str) -> Path:
        return self.config_dir / "hosts" / hostname

    def instance_dir(self) -> Path:
        if self.config.meta.path is not None:
            return self.config.meta.path.parent
        return self.parent_dir / (self.config.meta.instance or str(gokr.config.defaults["instance"]))


__context: Context


@overload
def get_context(allow_failure: Literal[False] = ...) -> Context: ...


@overload
def get_context(allow_failure: Literal[True] = ...) -> Context | None: ...


def get_context(allow_failure: bool = False) -> Context | None:
    """Get immutable global runtime context."""
    global __context

    # We must defer this to first call to avoid
    # circular imports.
    if "__context" not in globals():
        if allow_failure:
            return None
        raise RuntimeError("Context not loaded yet")
    return __context


def set_context(context: Context) -> None:
    """Set global runtime context."""
    global __context

    if "__context" in globals():
        raise RuntimeError("Context already loaded")

    __context = context
