# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Skeleton of the root file system and the contents of /etc."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
import shutil
import zipfile

from gokr.core.config import MountDevice
from gokr.helpers import logging
from gokr.rootfs.extrafiles import add_to_file_info
from gokr.rootfs.fileinfo import FileInfo
import gokr.config

HOSTS = "127.0.0.1 localhost\n::1 localhost\n"


def skeleton(root: FileInfo, mount_devices: list[MountDevice]) -> None:
    """Add the top-level directories, /var and the mount points below /mnt."""
    for name in gokr.config.root_skeleton_dirs:
        root.add(FileInfo(name))
    root.add(FileInfo("var", symlink_dest="/perm/var"))

    mnt = root.must_find("mnt")
    for md in mount_devices:
        if not md.target.startswith("/mnt/"):
            continue
        rest = md.target.removeprefix("/mnt/").rstrip("/")
        if not rest or "/" in rest or mnt.find(rest) is not None:
            continue
        mnt.add(FileInfo(rest))


def add_kernel_modules(root: FileInfo, kernel_dir: Path) -> None:
    """Include lib/modules of the kernel package, if present."""
    modules_dir = kernel_dir / "lib" / "modules"
    if not modules_dir.is_dir():
        return
    logging.info(f"Including loadable kernel modules from:\n{modules_dir}")
    modules = FileInfo("modules")
    add_to_file_info(modules, modules_dir)
    root.must_find("lib").add(modules)


def host_localtime(tmpdir: Path, goroot: Path | None = None,
                   localtime: Path = Path("/etc/localtime")) -> Path | None:
    """
    Time zone file for /etc/localtime: the host's, else zone "Factory" from the
    Go toolchain's copy of zoneinfo.zip.

    :returns: path of the file, None if neither is available
    """
    if localtime.exists():
        return localtime
    if goroot is None:
        return None
    # Some Go installations (e.g. Debian's) come without lib/time/zoneinfo.zip
    zoneinfo = goroot / "lib" / "time" / "zoneinfo.zip"
    if not zoneinfo.exists():
        return None
    with zipfile.ZipFile(zoneinfo) as z:
        if "Factory" not in z.namelist():
            return None
        ret = tmpdir / "Factory"
        with z.open("Factory") as src, open(ret, "wb") as dst:
            shutil.copyfileobj(src, dst)
    return ret


@dataclass
class EtcContents:
    hostname: str
    ca_bundle: str
    http_port: str
    https_port: str
    sbom: bytes
    mount_devices: list[MountDevice]
    password: str = ""
    no_password: bool = False
    cert_pem: str = ""
    key_pem: str = ""
    localtime: Path | None = None


def mountdevices_json(mount_devices: list[MountDevice]) -> str:
    return json.dumps([{
        "Source": md.source,
        "Type": md.type,
        "Target": md.target,
        "Options": md.options,
    } for md in mount_devices])


def populate(root: FileInfo, c: EtcContents) -> None:
    """Fill /etc, which must already exist in root."""
    etc = root.must_find("etc")
    if c.localtime is not None:
        etc.add(FileInfo("localtime", from_host=os.fspath(c.localtime)))
    etc.add(FileInfo("resolv.conf", symlink_dest="/tmp/resolv.conf"))
    etc.add(FileInfo("hosts", from_literal=HOSTS))
    etc.add(FileInfo("hostname", from_literal=c.hostname))

    ssl = etc.add(FileInfo("ssl"))
    ssl.add(FileInfo("ca-bundle.pem", from_literal=c.ca_bundle))
    if c.cert_pem and c.key_pem:
        ssl.add(FileInfo("gokrazy-web.pem", from_literal=c.cert_pem))
        ssl.add(FileInfo("gokrazy-web.key.pem", from_literal=c.key_pem))

    if not c.no_password:
        etc.add(FileInfo("gokr-pw.txt", mode=0o400, from_literal=c.password))
    etc.add(FileInfo("http-port.txt", from_literal=c.http_port))
    etc.add(FileInfo("https-port.txt", from_literal=c.https_port))

    etc_gokrazy = etc.add(FileInfo("gokrazy"))
    etc_gokrazy.add(FileInfo("sbom.json", from_literal=c.sbom))
    etc_gokrazy.add(FileInfo("mountdevices.json", from_literal=mountdevices_json(c.mount_devices)))
