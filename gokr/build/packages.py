# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Per-package settings taken from the instance configuration, and the
summary of where they came from."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime
from pathlib import Path

from gokr.build import gotool
from gokr.build.sbom import FoundBin
from gokr.core.config import Config
from gokr.helpers import logging
from gokr.helpers.exceptions import BuildFailedError
from gokr.parse import elf
from gokr.rootfs.fileinfo import FileInfo


@dataclass
class ConfigFile:
    kind: str
    path: Path | None = None
    last_modified: datetime.datetime | None = None


class ConfigFiles:
    """Collects, per package, what the configuration makes us do with it
    ("be started with command-line flags", ...) for the build summary."""

    def __init__(self) -> None:
        self.files: dict[str, list[ConfigFile]] = {}

    def add(self, pkg: str, kind: str, path: Path | None = None,
            last_modified: datetime.datetime | None = None) -> None:
        self.files.setdefault(pkg, []).append(ConfigFile(kind, path, last_modified))

    def get(self, pkg: str) -> list[ConfigFile]:
        return self.files.get(pkg, [])

    def __len__(self) -> int:
        return len(self.files)

    def summary(self, pkgs: list[str], now: datetime.datetime | None = None) -> list[str]:
        """:returns: lines describing the configured packages"""
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        lines = []
        for pkg in pkgs:
            lines.append(f"  {pkg}")
            for cf in self.get(pkg):
                lines.append(f"    will {cf.kind}")
                if cf.path is not None:
                    lines.append(f"      from {cf.path}")
                if cf.last_modified is not None:
                    ago = now - cf.last_modified
                    ago = datetime.timedelta(seconds=round(ago.total_seconds()))
                    lines.append(f"      last modified: {cf.last_modified.isoformat()} ({ago} ago)")
            lines.append("")
        return lines

    def log_summary(self, title: str, pkgs: list[str]) -> None:
        logging.info(title + "\n")
        for line in self.summary(pkgs):
            logging.info(line)


@dataclass
class PackageSettings:
    """Everything the build and the init program need to know per package."""

    flags: dict[str, list[str]] = field(default_factory=dict)
    env: dict[str, list[str]] = field(default_factory=dict)
    build_flags: dict[str, list[str]] = field(default_factory=dict)
    build_tags: dict[str, list[str]] = field(default_factory=dict)
    build_env: dict[str, list[str]] = field(default_factory=dict)
    dont_start: set[str] = field(default_factory=set)
    wait_for_clock: set[str] = field(default_factory=set)
    basenames: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_config(cfg: Config, files: ConfigFiles) -> PackageSettings:
        ret = PackageSettings()
        path = cfg.meta.path
        modified = cfg.meta.last_modified
        for pkg, pc in cfg.package_config.items():
            if pc.command_line_flags:
                ret.flags[pkg] = list(pc.command_line_flags)
                files.add(pkg, "be started with command-line flags", path, modified)
            if pc.go_build_flags:
                ret.build_flags[pkg] = list(pc.go_build_flags)
                files.add(pkg, "be compiled with build flags", path, modified)
            if pc.go_build_environment:
                ret.build_env[pkg] = list(pc.go_build_environment)
                files.add(pkg, "be compiled with build environment variables", path, modified)
            if pc.go_build_tags:
                ret.build_tags[pkg] = list(pc.go_build_tags)
                files.add(pkg, "be compiled with build tags", path, modified)
            if pc.environment:
                ret.env[pkg] = list(pc.environment)
                files.add(pkg, "be started with environment variables", path, modified)
            if pc.dont_start:
                ret.dont_start.add(pkg)
                files.add(pkg, "not be started at boot", path, modified)
            if pc.wait_for_clock:
                ret.wait_for_clock.add(pkg)
                files.add(pkg, "wait for clock synchronization before start", path, modified)
            if pc.basename:
                ret.basenames[pkg] = pc.basename
                files.add(pkg, "be installed with the basename set to " + pc.basename)
        return ret


def elf_or_fail(path: Path) -> None:
    """:raises BuildFailedError: path is missing or not an ELF binary"""
    if not path.exists() or not elf.is_elf(path):
        raise BuildFailedError(f"{path} is not an ELF binary, did the build succeed?")


def find_bins(cfg: Config, build_env: gotool.BuildEnv,
              bindir: Path) -> tuple[FileInfo, list[FoundBin]]:
    """
    Arrange the compiled binaries in a new root file system tree: gokrazy
    system packages (and a custom init) below /gokrazy, user packages below
    /user.

    :returns: (root tree, binaries for the SBOM)
    """
    root = FileInfo("")
    found: list[FoundBin] = []

    def add(parent: FileInfo, pkg: gotool.Pkg) -> None:
        path = bindir / pkg.basename()
        elf_or_fail(path)
        parent.add(FileInfo(pkg.basename(), from_host=path))
        found.append(FoundBin(f"/{parent.filename}/{pkg.basename()}", path))

    gokrazy = root.add(FileInfo("gokrazy"))
    for pkg in build_env.main_packages(cfg.gokrazy_packages_or_default()):
        add(gokrazy, pkg)

    if init_pkg := cfg.init_package():
        for pkg in build_env.main_packages([init_pkg]):
            if pkg.basename() != "init":
                logging.error(f"Error: --init-pkg={init_pkg} produced unexpected binary name:"
                              f" got {pkg.basename()}, want init")
                continue
            add(gokrazy, pkg)

    user = root.add(FileInfo("user"))
    for pkg in build_env.main_packages(cfg.packages):
        add(user, pkg)
    return root, found
