# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Composer of the FAT32 boot partition: firmware, kernel, device trees,
cmdline.txt, config.txt, EEPROM update files and the systemd-boot loader."""

from __future__ import annotations

import datetime
import glob
import hashlib
import os
from pathlib import Path
from typing import BinaryIO

from gokr.boot import eeprom
from gokr.core.arch import Arch
from gokr.core.config import Config
from gokr.disk import fat, mbr
from gokr.disk.partition import Pack
from gokr.helpers import logging
from gokr.helpers.cli import human_bytes, interactively
from gokr.helpers.exceptions import NonBugError
import gokr.config

SYSTEMD_BOOT_X64 = "systemd-bootx64.efi"


def mtime_of(path: Path | str) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(os.stat(path).st_mtime)


def glob_files(package_dir: Path, patterns: list[str]) -> dict[str, Path]:
    """
    :returns: destination path in the boot file system -> host path. Files
              below a subdirectory of the package (overlays/) keep it.
    """
    ret: dict[str, Path] = {}
    for pattern in patterns:
        for m in sorted(glob.glob(os.path.join(glob.escape(str(package_dir)), pattern))):
            ret["/" + os.path.relpath(m, package_dir)] = Path(m)
    return ret


def cmdline(pack: Pack, kernel_cmdline: str, serial_console: str,
            extra_args: list[str]) -> str:
    """
    Kernel command line as written to /cmdline.txt, including the padding
    which the on-device updater uses to add parameters in place.

    :param serial_console: "UART0" stands for "serial0,115200", "disabled"
                           and "off" leave the serial console out
    """
    ret = "console=tty1 "
    if serial_console not in ("disabled", "off"):
        if serial_console == "UART0":
            ret += "console=serial0,115200 "
        else:
            ret += f"console={serial_console} "
    ret += kernel_cmdline.strip()
    for arg in extra_args:
        ret += " " + arg

    if pack.modify_cmdline_root():
        root = "root=" + pack.root()
        ret = ret.replace("root=/dev/mmcblk0p2", root)
        ret = ret.replace("root=/dev/sda2", root)
    else:
        logging.info("(not using PARTUUID= in cmdline.txt yet)")

    return ret + " " * gokr.config.cmdline_pad


def config_txt(src: str, serial_console: str, extra_lines: list[str]) -> str:
    """Raspberry Pi firmware config.txt with the UART enabled unless the
    serial console is "off"."""
    ret = src
    if serial_console != "off":
        ret = ret.replace("enable_uart=0", "enable_uart=1")
    for line in extra_lines:
        if ret and not ret.endswith("\n"):
            ret += "\n"
        ret += line + "\n"
    return ret


def shorten_sha256(digest: str) -> str:
    return digest[:10]


def last_match(eeprom_dir: Path, pattern: str) -> Path:
    """The match that sorts last, for pieeprom-*.bin the most recent one
    (the file names carry the date in yyyy-mm-dd format).

    :raises NonBugError: nothing matches pattern
    """
    matches = sorted(glob.glob(os.path.join(glob.escape(str(eeprom_dir)), pattern)))
    if not matches:
        raise NonBugError(f"invalid -eeprom_package: no files matching {pattern}")
    return Path(matches[-1])


def sig_contents(digest: str, build_time: datetime.datetime) -> bytes:
    return f"{digest}\nts: {int(build_time.timestamp())}\n".encode()


def write_eeprom(fw: fat.Writer, eeprom_dir: Path, extra_eeprom: list[str],
                 existing: eeprom.Installed | None,
                 build_time: datetime.datetime) -> None:
    """
    Add the EEPROM update files, see
    https://www.raspberrypi.com/documentation/computers/raspberry-pi.html#bootloader_update_stable

    :param existing: signatures installed on the target. When both match the
                     new files, recovery.bin is stored as RECOVERY.000 so that
                     the bootloader does not flash the same EEPROM again.
    """
    pieeprom_path = last_match(eeprom_dir, "pieeprom-*.bin")
    recovery_path = last_match(eeprom_dir, "recovery.bin")
    vl805_path = last_match(eeprom_dir, "vl805-*.bin")

    with open(pieeprom_path, "rb") as handle:
        pieeprom = handle.read()
    if extra_eeprom:
        try:
            pieeprom = eeprom.apply_extra_eeprom(pieeprom, extra_eeprom)
        except ValueError as e:
            raise NonBugError(f"BootloaderExtraEEPROM: {pieeprom_path}: {e}") from e
    with open(vl805_path, "rb") as handle:
        vl805 = handle.read()
    pieeprom_sha = hashlib.sha256(pieeprom).hexdigest()
    vl805_sha = hashlib.sha256(vl805).hexdigest()

    recovery_target = "/recovery.bin"
    if (existing is not None and existing.pieeprom_sha256 == pieeprom_sha
            and existing.vl805_sha256 == vl805_sha):
        recovery_target = "/RECOVERY.000"

    logging.info("EEPROM update summary:")

    mtime = mtime_of(pieeprom_path)
    fw.file("/pieeprom.upd", mtime).write(pieeprom)
    fw.file("/pieeprom.sig", mtime).write(sig_contents(pieeprom_sha, build_time))
    logging.info(f"  pieeprom.upd (sig {shorten_sha256(pieeprom_sha)})")

    with open(recovery_path, "rb") as handle:
        fw.file(recovery_target, mtime_of(recovery_path)).write(handle.read())
    # No signature required for recovery.bin itself
    logging.info(f"  {recovery_target.lstrip('/')}")

    mtime = mtime_of(vl805_path)
    fw.file("/vl805.bin", mtime).write(vl805)
    fw.file("/vl805.sig", mtime).write(sig_contents(vl805_sha, build_time))
    logging.info(f"  vl805.bin (sig {shorten_sha256(vl805_sha)})")


def find_systemd_boot(name: str) -> Path | None:
    """:returns: the first EFI binary found in systemd_boot_dirs, None if
                 there is none"""
    for d in gokr.config.systemd_boot_dirs:
        if not d:
            continue
        path = Path(d) / name
        if path.exists():
            return path
    return None


def write_systemd_boot(fw: fat.Writer, arch: Arch | None = None) -> None:
    """Add the systemd-boot UEFI loaders to the boot file system. PCs
    (amd64) boot through UEFI only, Raspberry Pis boot without it.

    :param arch: target architecture, defaults to $GOARCH
    :raises NonBugError: the x64 loader of an amd64 image is missing
    """
    if arch is None:
        arch = Arch.target()
    searched = ", ".join(d for d in gokr.config.systemd_boot_dirs if d)
    for dest, name in gokr.config.systemd_boot_files.items():
        src = find_systemd_boot(name)
        if src is None:
            msg = f"systemd-boot EFI binary {name} not found (searched: {searched})"
            if arch == Arch.amd64 and name == SYSTEMD_BOOT_X64:
                raise NonBugError(f"{msg}, install systemd-boot or set GOKR_SYSTEMD_BOOT_DIR")
            logging.warning(f"WARNING: {msg}, the image will not contain {dest}")
            continue
        with open(src, "rb") as handle:
            fw.file(dest, mtime_of(src)).write(handle.read())


def write_boot(
    f: BinaryIO,
    pack: Pack,
    cfg: Config,
    kernel_dir: Path,
    firmware_dir: Path | None = None,
    eeprom_dir: Path | None = None,
    mbr_sink: BinaryIO | None = None,
    build_time: datetime.datetime | None = None,
) -> int:
    """
    Create the boot file system.

    :param f: sink positioned at the start of the boot partition. Must be
              readable and seekable when mbr_sink is given.
    :param firmware_dir: directory of the firmware package, None if disabled
    :param eeprom_dir: directory of the EEPROM package, None if disabled
    :param mbr_sink: where the MBR boot code is written to
    :returns: size of the boot file system in bytes
    """
    if build_time is None:
        build_time = datetime.datetime.now(datetime.timezone.utc)
    mtime = build_time.astimezone().replace(tzinfo=None)
    serial = cfg.serial_console_or_default()

    logging.info("Creating boot file system")
    done = interactively("creating boot file system")
    start = f.tell()

    files: dict[str, Path] = {}
    if firmware_dir is not None:
        files.update(glob_files(firmware_dir, gokr.config.firmware_globs))
    logging.info(f"Kernel directory: {kernel_dir}")
    for dest, src in glob_files(kernel_dir, gokr.config.kernel_globs).items():
        if dest in files:
            logging.verbose(f"{dest}: kernel package overrides {files[dest]}")
        files[dest] = src

    fw = fat.Writer(f, mtime=mtime, hidden_sectors=pack.first_partition_offset)
    for dest, src in files.items():
        with open(src, "rb") as handle:
            fw.file(dest, mtime_of(src)).write(handle.read())

    if eeprom_dir is not None:
        write_eeprom(fw, eeprom_dir, cfg.bootloader_extra_eeprom, pack.existing_eeprom, build_time)

    with open(kernel_dir / "cmdline.txt") as handle:
        padded = cmdline(pack, handle.read(), serial, cfg.kernel_extra_args)
    fw.file("/cmdline.txt").write(padded.encode())
    if pack.use_gpt_partuuid:
        # systemd-boot entry as per https://systemd.io/BOOT_LOADER_SPECIFICATION/
        entry = "title gokrazy\nlinux /vmlinuz\noptions " + padded
        fw.file("/loader/entries/gokrazy.conf").write(entry.encode())

    with open(kernel_dir / "config.txt") as handle:
        config = config_txt(handle.read(), serial, cfg.bootloader_extra_lines)
    fw.file("/config.txt").write(config.encode())

    if pack.use_gpt_partuuid:
        write_systemd_boot(fw)

    size = fw.flush()
    f.flush()
    done(f", {human_bytes(size)}")

    if mbr_sink is not None:
        mbr.write_mbr(f, mbr_sink, pack.partuuid, pack.first_partition_offset, offset=start)
    return size
