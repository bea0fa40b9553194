# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Software bill of materials of an image, stored as /etc/gokrazy/sbom.json.

Binaries are identified by their build info (enough to reproduce a binary
built from a released module) and their build ID (which changes with any
change to local sources).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import hashlib
import json
import os
from pathlib import Path
from typing import Any

from gokr.build.gotool import init_deps
from gokr.core.config import Config
from gokr.helpers.exceptions import BuildFailedError
from gokr.parse import elf
from gokr.rootfs.fileinfo import FileInfo


@dataclass
class FoundBin:
    # Absolute path on the image, e.g. /gokrazy/init
    gokrazy_path: str
    host_path: Path


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def marshal(obj: Any) -> bytes:
    """JSON with 4 space indentation and a trailing newline, escaping like
    Go's encoding/json."""
    ret = json.dumps(obj, indent=4, ensure_ascii=False)
    for c, esc in (("&", "\\u0026"), ("<", "\\u003c"), (">", "\\u003e"),
                   ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        ret = ret.replace(c, esc)
    return (ret + "\n").encode()


def go_package(b: FoundBin) -> dict[str, str]:
    """:raises BuildFailedError: the binary is not a Go ELF executable"""
    ef = elf.read(b.host_path)
    try:
        info = elf.build_info(ef)
    except ValueError as e:
        raise BuildFailedError(f"{b.host_path}: {e}") from e
    return {"path": b.gokrazy_path, "BuildID": elf.build_id(ef), "BuildInfo": info}


def extra_file_hashes(trees: list[FileInfo]) -> list[dict[str, str]]:
    """Hash every file copied from the host. Literal contents are part of the
    config, which is hashed already."""
    ret = []
    queue = list(trees)
    while queue:
        fi = queue.pop(0)
        queue += fi.dirents
        if fi.from_host is None:
            continue
        with open(fi.from_host, "rb") as handle:
            ret.append({"path": os.fspath(fi.from_host), "hash": sha256_hex(handle.read())})
    return ret


def generate(
    cfg: Config,
    found_bins: list[FoundBin],
    extra_files: dict[str, list[FileInfo]],
    packages: list[str],
) -> tuple[bytes, dict]:
    """
    :param cfg: the configuration as loaded from the file, without command
                line overrides
    :param packages: all packages whose extra files are included
    :returns: (sbom.json contents, SBOM with hash)
    """
    cfg_path = cfg.meta.path
    result: dict[str, Any] = {
        "config_hash": {
            "path": os.fspath(cfg_path) if cfg_path is not None else "",
            "hash": sha256_hex(cfg.format_for_file().encode()),
        },
    }

    with ThreadPoolExecutor(max_workers=os.cpu_count() or 1) as executor:
        go_packages = list(executor.map(go_package, found_bins))

    hashes = []
    for pkg in packages:
        hashes += extra_file_hashes(extra_files.get(pkg.split("@")[0], []))

    # Same order of keys as the Go struct, empty lists as null
    result["extra_file_hashes"] = sorted(hashes, key=lambda h: h["path"]) or None
    result["go_packages"] = sorted(go_packages, key=lambda p: p["path"]) or None

    with_hash = {"sbom_hash": sha256_hex(marshal(result)), "sbom": result}
    return marshal(with_hash), with_hash


def system_packages(cfg: Config) -> list[str]:
    """gokrazy packages, init dependencies, kernel, firmware and EEPROM."""
    pkgs = cfg.gokrazy_packages_or_default()
    pkgs += init_deps(cfg.init_package())
    pkgs.append(cfg.kernel_package_or_default())
    if fw := cfg.firmware_package_or_default():
        pkgs.append(fw)
    if e := cfg.eeprom_package_or_default():
        pkgs.append(e)
    return pkgs
