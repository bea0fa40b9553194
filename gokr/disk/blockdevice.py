# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Partitioning of block devices, with privilege elevation.

When the user lacks permission to write the device, gokr re-executes itself
via sudo with GOKR_PACKER_FD=1. The child partitions the device and passes
the open file descriptor back to the parent over a unix socket, so that the
parent can write the file systems without running as root.
"""

import errno
import fcntl
import os
from pathlib import Path
import socket
import struct
import subprocess
import sys
from typing import BinaryIO

from gokr.helpers import logging
from gokr.helpers.exceptions import NonBugError
from gokr.disk.partition import Pack

PACKER_FD_ENV = "GOKR_PACKER_FD"

# linux/fs.h
BLKRRPART = 0x125F
BLKGETSIZE64 = 0x80081272


def device_size(f: BinaryIO) -> int:
    """:returns: size of the block device in bytes, 0 if f is no device"""
    buf = bytearray(8)
    try:
        fcntl.ioctl(f.fileno(), BLKGETSIZE64, buf)
    except OSError as e:
        if e.errno in (errno.ENOTTY, errno.EINVAL):
            return 0
        raise
    return struct.unpack("<Q", buf)[0]


def reread_partitions(f: BinaryIO) -> None:
    """Ask the kernel to re-read the partition table. Failures are logged
    only, e.g. when the device is an image file."""
    f.flush()
    try:
        fcntl.ioctl(f.fileno(), BLKRRPART)
    except OSError as e:
        logging.warning(f"WARNING: re-reading partition table failed: {e}")


def partition_device(pack: Pack, f: BinaryIO, path: str | Path) -> None:
    devsize = device_size(f)
    logging.info(f"device holds {devsize} bytes")
    if devsize == 0:
        raise NonBugError(f"path {path} does not seem to be a device")

    pack.partition(f, devsize)
    reread_partitions(f)


def sudo_child_env() -> dict[str, str]:
    return {
        PACKER_FD_ENV: "1",
        # for instance config detection
        "HOME": os.environ.get("HOME", ""),
        "GOKRAZY_PARENT_DIR": os.environ.get("GOKRAZY_PARENT_DIR", ""),
    }


def sudo_command(argv: list[str] | None = None) -> list[str]:
    """Command line re-executing the running gokr-packer via sudo."""
    if argv is None:
        argv = sys.argv
    # Use absolute paths because $PATH might not be the same when using sudo
    return ["sudo", "--preserve-env", sys.executable, os.path.abspath(argv[0]), *argv[1:]]


def sudo_partition(pack: Pack, path: str | Path) -> BinaryIO | None:
    """
    Partition path as root.

    In the child process (GOKR_PACKER_FD set), partition the device and send
    its file descriptor to the parent; returns None. In the parent process,
    start the child via sudo and return the received file.
    """
    fd = os.environ.get(PACKER_FD_ENV)
    if fd is not None:
        conn = socket.socket(fileno=int(fd))
        f = open(path, "w+b")
        partition_device(pack, f, path)
        socket.send_fds(conn, [b"\x00"], [f.fileno()])
        f.close()
        conn.close()
        return None

    parent, child = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    cmd = sudo_command()
    logging.debug("% " + " ".join(cmd))
    # sudo closes all file descriptors but stdin, stdout and stderr, so the
    # child's stdout is the socket
    proc = subprocess.Popen(cmd, env=sudo_child_env(), stdout=child, stderr=sys.stderr)
    child.close()
    try:
        _, fds, _, _ = socket.recv_fds(parent, 1, 1)
    finally:
        parent.close()
    ret = proc.wait()
    if ret != 0 or len(fds) != 1:
        for received in fds:
            os.close(received)
        raise NonBugError(f"partitioning {path} as root failed (exit status {ret})")
    return os.fdopen(fds[0], "r+b")


def open_and_partition(pack: Pack, path: str | Path, sudo: str = "auto") -> BinaryIO:
    """
    Open the block device at path, write the partition table and return the
    open device.

    :param sudo: "always" partitions via sudo, "auto" falls back to sudo when
                 permission is denied, "never" does not elevate
    """
    if sudo == "always":
        ret = sudo_partition(pack, path)
        assert ret is not None
        return ret

    try:
        f = open(path, "w+b")
    except PermissionError:
        if sudo != "auto":
            raise
        logging.info(f"Using sudo to gain permission to format {path}")
        logging.info(f"If you prefer, cancel and use: sudo setfacl -m u:${{USER}}:rw {path}")
        ret = sudo_partition(pack, path)
        assert ret is not None
        return ret
    except OSError as e:
        if e.errno == errno.EROFS:
            logging.info(f"{path} read-only; check if you have a physical write-protect"
                         " switch on your SD card?")
        raise

    try:
        partition_device(pack, f, path)
    except BaseException:
        f.close()
        raise
    return f
