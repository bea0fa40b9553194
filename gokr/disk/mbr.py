# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import struct
from typing import BinaryIO

from gokr.helpers import logging
from gokr.disk import fat
import gokr.config

BOOT_CODE_SIZE = 446
VMLINUZ_LBA_OFFSET = 218
CMDLINE_LBA_OFFSET = 222
PARTUUID_OFFSET = 440


def configure(vmlinuz_lba: int, cmdline_lba: int, partuuid: int,
              template: bytes = bytes(BOOT_CODE_SIZE)) -> bytes:
    """
    Fill in the boot code area of the MBR.

    :param template: 446 bytes of boot code, the locations read by the boot
                     program are overwritten
    :returns: 446 bytes to be written at the start of the disk
    """
    if len(template) != BOOT_CODE_SIZE:
        raise ValueError(f"MBR boot code must be {BOOT_CODE_SIZE} bytes, got {len(template)}")
    ret = bytearray(template)
    struct.pack_into("<I", ret, VMLINUZ_LBA_OFFSET, vmlinuz_lba)
    struct.pack_into("<I", ret, CMDLINE_LBA_OFFSET, cmdline_lba)
    struct.pack_into("<I", ret, PARTUUID_OFFSET, partuuid)
    return bytes(ret)


def write_mbr(f: BinaryIO, fw: BinaryIO, partuuid: int,
              first_partition_offset: int = gokr.config.default_boot_partition_start_lba,
              offset: int = 0) -> tuple[int, int]:
    """
    Locate /vmlinuz and /cmdline.txt in the boot file system and write the
    boot code pointing at them.

    :param f: readable file containing the FAT32 boot file system
    :param fw: seekable sink for the MBR, written from its start
    :param offset: byte offset of the boot file system within f
    :returns: (vmlinuz LBA, cmdline.txt LBA)
    """
    rd = fat.Reader(f, offset)
    vmlinuz_offset, _ = rd.extents("/vmlinuz")
    cmdline_offset, _ = rd.extents("/cmdline.txt")

    vmlinuz_lba = vmlinuz_offset // 512 + first_partition_offset
    cmdline_lba = cmdline_offset // 512 + first_partition_offset

    logging.info("MBR summary:\n"
                 f"  LBAs: vmlinuz={vmlinuz_lba} cmdline.txt={cmdline_lba}\n"
                 f"  PARTUUID: {partuuid:08x}")
    fw.seek(0)
    fw.write(configure(vmlinuz_lba, cmdline_lba, partuuid))
    return vmlinuz_lba, cmdline_lba
