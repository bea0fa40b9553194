# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Partition tables of a gokrazy disk.

Layout (512 byte sectors), starting at the device specific first partition
offset (8192 by default):

1. boot (FAT32, 100 MiB)
2. root A (SquashFS, 500 MiB)
3. root B (SquashFS, 500 MiB)
4. perm (ext4, remaining space minus the backup GPT)

New installations get a hybrid MBR plus primary and backup GPT. Devices whose
bootloader lives in the sectors the GPT would occupy get an MBR only.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import struct
from typing import TYPE_CHECKING, BinaryIO
import uuid
import zlib

import gokr.config
from gokr.core import dps
from gokr.core.arch import Arch

if TYPE_CHECKING:
    from gokr.boot.eeprom import Installed

MB = gokr.config.MB
SECTOR = gokr.config.sector_size

BOOT_SECTORS = gokr.config.boot_size // SECTOR
ROOT_SECTORS = gokr.config.root_size // SECTOR

ACTIVE = 0x80
INACTIVE = 0x00
# Results in using the LBA values instead
INVALID_CHS = b"\xfe\xff\xff"

FAT = 0x0C
LINUX = 0x83
# SquashFS does not have a dedicated type
SQUASHFS = LINUX
GPT_PROTECTIVE = 0xEE

SIGNATURE = 0xAA55

GUID_PREFIX = "60c24cc1-f3f9-427a-8199"

GPT_HEADER_SIZE = 92
GPT_ENTRIES = 128
GPT_ENTRY_SIZE = 128
GPT_FIRST_USABLE = 34


def fnv1a32(data: bytes) -> int:
    h = 0x811C9DC5
    for b in data:
        h ^= b
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def must_parse_guid(guid: str) -> bytes:
    """Encode a GUID string the way EFI stores it on disk: the first three
    fields little endian, the rest as is."""
    return uuid.UUID(guid).bytes_le


def partition_name(name: str) -> bytes:
    """UTF-16LE partition name, padded to 72 bytes."""
    encoded = name.encode("utf-16-le")
    if len(encoded) > 72:
        raise ValueError(
            f"Cannot use {name} as partition name, has {len(encoded) // 2}"
            " UTF-16 code units, maximum size is 36"
        )
    return encoded.ljust(72, b"\x00")


def mbr_entry(status: int, ptype: int, start: int, size: int) -> bytes:
    return struct.pack("<B3sB3sII", status, INVALID_CHS, ptype, INVALID_CHS, start, size)


def partition_path(dev: str, number: int) -> str:
    """Device node of a partition, e.g. /dev/mmcblk0 -> /dev/mmcblk0p1."""
    if re.search(r"(mmcblk|loop|nvme\d+n)\d+$", dev):
        return f"{dev}p{number}"
    if re.search(r"/r?disk\d+$", dev):
        return f"{dev}s{number}"
    return f"{dev}{number}"


@dataclass
class Pack:
    partuuid: int
    first_partition_offset: int = gokr.config.default_boot_partition_start_lba
    use_partuuid: bool = True
    use_gpt_partuuid: bool = True
    use_gpt: bool = True
    # set when updating a target which reports its installed EEPROM
    existing_eeprom: Installed | None = None

    @staticmethod
    def for_host(
        hostname: str,
        first_partition_offset: int = gokr.config.default_boot_partition_start_lba,
    ) -> Pack:
        return Pack(
            partuuid=fnv1a32(hostname.encode()),
            first_partition_offset=first_partition_offset,
        )

    def modify_cmdline_root(self) -> bool:
        """True if the kernel's cmdline.txt needs root= rewritten. This is the
        case on most installations."""
        return self.use_partuuid or self.use_gpt_partuuid

    def gpt_partuuid(self, partition: int) -> str:
        """All gokrazy GPT partition GUIDs share the prefix and carry the
        hostname hash plus the partition number in the node field."""
        return f"{GUID_PREFIX}-{self.partuuid:08x}00{partition:02x}"

    def root(self) -> str:
        if self.use_gpt_partuuid:
            return f"PARTUUID={self.gpt_partuuid(1)}/PARTNROFF=1"
        if self.use_partuuid:
            return f"PARTUUID={self.partuuid:08x}-02"
        return ""

    def perm_uuid(self) -> str:
        if self.use_gpt_partuuid:
            return self.gpt_partuuid(4)
        if self.use_partuuid:
            return f"{self.partuuid:08x}-04"
        return ""

    # Sector offsets of the partitions

    def boot_start(self) -> int:
        return self.first_partition_offset

    def root_start(self, slot: int = 0) -> int:
        return self.first_partition_offset + BOOT_SECTORS + slot * ROOT_SECTORS

    def perm_start(self) -> int:
        return self.first_partition_offset + BOOT_SECTORS + 2 * ROOT_SECTORS

    def perm_size(self, devsize: int) -> int:
        """Size of the perm partition in sectors. The last 33 sectors remain
        unused for the backup GPT."""
        perm_start = self.perm_start()
        size = devsize // SECTOR - perm_start
        last_addressable = devsize // SECTOR - 1
        last_lba = last_addressable - 33
        if perm_start + size >= last_lba:
            size -= perm_start + size - last_lba
        return size

    def perm_size_kb(self, devsize: int) -> int:
        return self.perm_size(devsize) * SECTOR // 1024

    def min_storage_size(self) -> int:
        """Smallest accepted --target-storage-bytes. The first partition
        offset is added as a plain number, which gives 1258299392 for the
        default offset."""
        return gokr.config.min_storage_size + self.first_partition_offset

    def hybrid_mbr(self) -> bytes:
        """Hybrid MBR: the GPT protective partition makes the Linux kernel
        recognize the disk as GPT, the FAT32 partition keeps the Raspberry Pi
        bootloader working."""
        return (
            bytes(446)
            + mbr_entry(ACTIVE, FAT, self.boot_start(), BOOT_SECTORS)
            + mbr_entry(INACTIVE, GPT_PROTECTIVE, 1, self.first_partition_offset - 1)
            + bytes(16)
            + bytes(16)
            + struct.pack("<H", SIGNATURE)
        )

    def mbr_only(self, devsize: int) -> bytes:
        """MBR-only partition table, for devices whose bootloader clobbers the
        sectors the GPT occupies (e.g. Odroid HC2)."""
        return (
            bytes(446)
            + mbr_entry(ACTIVE, FAT, self.boot_start(), BOOT_SECTORS)
            + mbr_entry(INACTIVE, SQUASHFS, self.root_start(0), ROOT_SECTORS)
            + mbr_entry(INACTIVE, SQUASHFS, self.root_start(1), ROOT_SECTORS)
            + mbr_entry(INACTIVE, LINUX, self.perm_start(), devsize // SECTOR - self.perm_start())
            + struct.pack("<H", SIGNATURE)
        )

    def write_partition_table(self, f: BinaryIO) -> None:
        f.write(self.hybrid_mbr())

    def write_mbr_partition_table(self, f: BinaryIO, devsize: int) -> None:
        f.write(self.mbr_only(devsize))

    def gpt_entries(self, devsize: int) -> bytes:
        root_type = dps.root_type(str(Arch.target()))
        ranges = [
            (self.boot_start(), BOOT_SECTORS),
            (self.root_start(0), ROOT_SECTORS),
            (self.root_start(1), ROOT_SECTORS),
            (self.perm_start(), self.perm_size(devsize)),
        ]
        types = [dps.boot["esp"][1], root_type, dps.directory["generic"][1], dps.directory["generic"][1]]
        names = ["Microsoft basic data", "Linux filesystem", "Linux filesystem", "Linux filesystem"]

        out = b""
        for i, ((first, size), ptype, name) in enumerate(zip(ranges, types, names)):
            out += must_parse_guid(ptype)
            out += must_parse_guid(self.gpt_partuuid(i + 1))
            out += struct.pack("<QQQ", first, first + size - 1, 0)
            out += partition_name(name)
        return out.ljust(GPT_ENTRIES * GPT_ENTRY_SIZE, b"\x00")

    def gpt_header(self, devsize: int, entries: bytes, primary: bool) -> bytes:
        last_addressable = devsize // SECTOR - 1
        current_lba = 1
        backup_lba = last_addressable
        entries_start = 2
        if not primary:
            current_lba = backup_lba
            entries_start = backup_lba - 32
            backup_lba = 1

        def pack(crc: int) -> bytes:
            return struct.pack(
                "<8sIIIIQQQQ16sQIII",
                b"EFI PART",
                0x00010000,  # revision 1.0
                GPT_HEADER_SIZE,
                crc,
                0,
                current_lba,
                backup_lba,
                GPT_FIRST_USABLE,
                last_addressable - 33,
                must_parse_guid(self.gpt_partuuid(0)),
                entries_start,
                GPT_ENTRIES,
                GPT_ENTRY_SIZE,
                zlib.crc32(entries),
            )

        return pack(zlib.crc32(pack(0)))

    def gpt(self, devsize: int, primary: bool) -> bytes:
        """Primary GPT (header sector followed by the entries, LBA 1-33) or
        backup GPT (entries followed by the header sector, last 33 LBAs)."""
        entries = self.gpt_entries(devsize)
        header = self.gpt_header(devsize, entries, primary)
        header += bytes(SECTOR - len(header))
        if primary:
            return header + entries
        return entries + header

    def write_gpt(self, f: BinaryIO, devsize: int, primary: bool) -> None:
        f.write(self.gpt(devsize, primary))

    def partition(self, f: BinaryIO, devsize: int) -> None:
        """Write the partition table(s) to f, positioned at the start of the
        device."""
        if not self.use_gpt:
            self.write_mbr_partition_table(f, devsize)
            return

        self.write_partition_table(f)
        self.write_gpt(f, devsize, primary=True)

        last_addressable = devsize // SECTOR - 1
        f.seek((last_addressable - 32) * SECTOR)
        self.write_gpt(f, devsize, primary=False)
