# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import datetime
import os
from pathlib import Path
import shutil
import tempfile
from typing import BinaryIO

from gokr.boot.write import write_boot
from gokr.core.config import Config
from gokr.core.devices import RootFile
from gokr.disk import blockdevice, mbr
from gokr.disk.partition import Pack, partition_path
from gokr.helpers import logging, mount
from gokr.helpers.exceptions import NonBugError
from gokr.rootfs.fileinfo import FileInfo, write_root
import gokr.config


@dataclass
class BootSources:
    """Package directories the boot partition is composed from."""

    kernel_dir: Path
    firmware_dir: Path | None = None
    eeprom_dir: Path | None = None


@dataclass
class Artifacts:
    """Partition images for a network update or a gaf archive."""

    boot: Path
    root: Path
    mbr: Path


class Installer:
    """
    Writes the partition table, the boot and root file systems to their
    destination: a device, an image file, single partitions or temporary
    files for a network update.

    :param root_device_files: files from the kernel package written at
                              device specific offsets
    """

    def __init__(
        self,
        pack: Pack,
        cfg: Config,
        sources: BootSources,
        root: FileInfo,
        build_time: datetime.datetime,
        root_device_files: list[RootFile] | None = None,
    ) -> None:
        self.pack = pack
        self.cfg = cfg
        self.sources = sources
        self.root = root
        self.build_time = build_time
        self.root_device_files = root_device_files or []

    def boot(self, f: BinaryIO, mbr_sink: BinaryIO | None = None) -> int:
        return write_boot(
            f,
            self.pack,
            self.cfg,
            self.sources.kernel_dir,
            self.sources.firmware_dir,
            self.sources.eeprom_dir,
            mbr_sink=mbr_sink,
            build_time=self.build_time,
        )

    def write_boot_file(self, path: Path | str, mbr_path: Path | str | None = None) -> int:
        """Boot file system into a file of its own, plus the MBR boot code
        into mbr_path."""
        with open(path, "w+b") as f:
            if mbr_path is None:
                return self.boot(f)
            with open(mbr_path, "w+b") as mbr_sink:
                return self.boot(f, mbr_sink)

    def write_root_file(self, path: Path | str) -> int:
        with open(path, "wb") as f:
            return write_root(f, self.root, self.build_time)

    def write_root_device_files(self, f: BinaryIO) -> None:
        for root_file in self.root_device_files:
            f.seek(root_file.offset)
            with open(self.sources.kernel_dir / root_file.name, "rb") as source:
                shutil.copyfileobj(source, f)

    def write_partitions(self, f: BinaryIO) -> tuple[int, int]:
        """
        Write boot file system, MBR boot code, root file system and root
        device files to the partitioned f.

        :returns: (boot size, root size) in bytes
        """
        offset = self.pack.first_partition_offset * gokr.config.sector_size
        f.seek(offset)
        boot_size = self.boot(f)
        f.seek(0)
        mbr.write_mbr(f, f, self.pack.partuuid, self.pack.first_partition_offset, offset=offset)

        f.seek(offset + gokr.config.boot_size)
        root_size = write_root(f, self.root, self.build_time)

        self.write_root_device_files(f)
        f.flush()
        return boot_size, root_size

    def overwrite_device(self, dev: str, sudo: str = "auto") -> None:
        """Partition the block device dev and write all file systems to it."""
        try:
            mount.verify_not_mounted(dev)
        except RuntimeError as e:
            raise NonBugError(str(e)) from e
        parttable = "GPT + Hybrid MBR" if self.pack.use_gpt else "no GPT, only MBR"
        logging.info(f"partitioning {dev} ({parttable})")

        f = blockdevice.open_and_partition(self.pack, dev, sudo)
        try:
            self.write_partitions(f)
        finally:
            f.close()

        logging.info("If your applications need to store persistent data, unplug and re-plug"
                     " the SD card, then create a file system using e.g.:")
        logging.info("")
        logging.info(f"\tmkfs.ext4 {self.perm_partition(dev)}")
        logging.info("")

    def perm_partition(self, dev: str) -> str:
        if self.pack.modify_cmdline_root():
            return f"/dev/disk/by-partuuid/{self.pack.perm_uuid()}"
        return partition_path(os.path.realpath(dev), 4)

    def overwrite_file(self, path: str, target_storage_bytes: int) -> tuple[int, int]:
        """
        Create a full disk image at path.

        :returns: (boot size, root size) in bytes
        """
        validate_target_storage_bytes(self.pack, target_storage_bytes)
        with open(path, "w+b") as f:
            f.truncate(target_storage_bytes)
            self.pack.partition(f, target_storage_bytes)
            sizes = self.write_partitions(f)

        perm_offset = self.pack.perm_start() * gokr.config.sector_size
        logging.info("If your applications need to store persistent data, create a file"
                     " system using e.g.:")
        logging.info(f"\t/sbin/mkfs.ext4 -F -E offset={perm_offset} {path}"
                     f" {self.pack.perm_size_kb(target_storage_bytes)}")
        logging.info("")
        return sizes

    def overwrite_partitions(self, boot: str | None = None, root: str | None = None,
                             mbr_path: str | None = None) -> tuple[int, int]:
        """
        Write the boot and/or root file system to existing partitions (or
        files). Without mbr_path, the MBR boot code goes into a temporary
        file.

        :returns: (boot size, root size) in bytes, 0 for what was skipped
        """
        boot_size = root_size = 0
        if root is not None:
            root_size = self.write_root_file(root)
        if boot is not None:
            if mbr_path is not None:
                boot_size = self.write_boot_file(boot, mbr_path)
            else:
                with tempfile.TemporaryDirectory(prefix="gokr-packer") as tmpdir:
                    boot_size = self.write_boot_file(boot, Path(tmpdir) / "mbr.img")
        return boot_size, root_size

    @contextmanager
    def temporary_artifacts(self) -> Iterator[Artifacts]:
        """Boot, root and MBR images in a temporary directory, removed when
        the context is left."""
        with tempfile.TemporaryDirectory(prefix="gokr-packer") as tmpdir:
            artifacts = Artifacts(
                boot=Path(tmpdir) / "boot.img",
                root=Path(tmpdir) / "root.img",
                mbr=Path(tmpdir) / "mbr.img",
            )
            self.write_root_file(artifacts.root)
            self.write_boot_file(artifacts.boot, artifacts.mbr)
            yield artifacts


def validate_target_storage_bytes(pack: Pack, target_storage_bytes: int) -> None:
    """:raises NonBugError: unset, not sector aligned or too small"""
    if target_storage_bytes == 0:
        raise NonBugError("--target-storage-bytes is required when writing a disk image"
                          " (e.g. --target-storage-bytes=1258299392)")
    if target_storage_bytes % gokr.config.sector_size != 0:
        raise NonBugError(f"--target-storage-bytes must be a multiple of"
                          f" {gokr.config.sector_size} (sector size), use e.g."
                          f" {target_storage_bytes - target_storage_bytes % gokr.config.sector_size}")
    if target_storage_bytes < pack.min_storage_size():
        raise NonBugError(f"--target-storage-bytes must be at least {pack.min_storage_size()}"
                          " (for boot + 2 root file systems + 100 MB /perm)")
