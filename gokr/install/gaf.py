# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""gaf (gokrazy archive format): the build artifacts in an uncompressed zip,
so that they can be accessed directly and unpacked cheaply."""

import os
from pathlib import Path
import tempfile
import zipfile

from gokr.helpers import logging
from gokr.install._install import Installer

MEMBERS = ["boot.img", "mbr.img", "root.img", "sbom.json"]


def write_archive(source_dir: Path, target: Path | str) -> None:
    """Store all files of source_dir (not recursing) in a new zip at target."""
    with zipfile.ZipFile(target, "w", zipfile.ZIP_STORED) as zf:
        for name in sorted(os.listdir(source_dir)):
            path = source_dir / name
            if path.is_dir():
                continue
            zf.write(path, arcname=name)


def overwrite_gaf(installer: Installer, sbom: bytes, target: Path | str) -> None:
    """
    Write boot, MBR and root images plus the SBOM into the gaf at target.

    :param sbom: marshaled SBOM of the configuration as read from the file
    """
    logging.info(f"Creating gaf archive {target}")
    with tempfile.TemporaryDirectory(prefix="gokrazy") as tmpdir:
        d = Path(tmpdir)
        installer.write_boot_file(d / "boot.img", d / "mbr.img")
        installer.write_root_file(d / "root.img")
        (d / "sbom.json").write_bytes(sbom)
        write_archive(d, target)
