# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""FAT32 file system writer and a reader for locating file extents.

The writer keeps the file contents in memory, lays out all clusters
contiguously on flush() and writes the volume front to back, so the sink does
not need to be seekable. Only the clusters in use are written: the declared
volume size is the full boot partition, the remainder is free space.
"""

from __future__ import annotations

import datetime
import io
import math
import posixpath
import struct
from typing import BinaryIO

SECTOR_SIZE = 512
SECTORS_PER_CLUSTER = 1
CLUSTER_SIZE = SECTOR_SIZE * SECTORS_PER_CLUSTER
RESERVED_SECTORS = 32
FAT_COUNT = 2
MEDIA_DESCRIPTOR = 0xF8
ROOT_CLUSTER = 2
FSINFO_SECTOR = 1
BACKUP_BOOT_SECTOR = 6
DIRENT_SIZE = 32

ATTR_READ_ONLY = 0x01
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LFN = 0x0F

END_OF_CHAIN = 0x0FFFFFFF
# 100 MiB, the size of the boot partition
DEFAULT_TOTAL_SECTORS = 100 * 1024 * 1024 // SECTOR_SIZE

SHORT_NAME_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_$~!#%&-{}()@'^`")
LFN_CHARS_PER_ENTRY = 13


def compute_fat_sectors(total_sectors: int) -> int:
    fat_sectors = 1
    while True:
        data_sectors = total_sectors - RESERVED_SECTORS - FAT_COUNT * fat_sectors
        cluster_count = data_sectors // SECTORS_PER_CLUSTER
        needed_bytes = (cluster_count + 2) * 4
        new_fat_sectors = (needed_bytes + SECTOR_SIZE - 1) // SECTOR_SIZE
        if new_fat_sectors <= fat_sectors:
            return fat_sectors
        fat_sectors = new_fat_sectors


def fat_time(t: datetime.datetime) -> tuple[int, int]:
    """FAT (date, time) pair, 2 second resolution. Dates before 1980 are
    clamped."""
    if t.year < 1980:
        return (1 << 5) | 1, 0
    date = ((t.year - 1980) << 9) | (t.month << 5) | t.day
    time = (t.hour << 11) | (t.minute << 5) | (t.second // 2)
    return date, time


def is_short_name(name: str) -> bool:
    base, _, ext = name.partition(".")
    if "." in ext:
        return False
    if not (1 <= len(base) <= 8 and len(ext) <= 3):
        return False
    return all(c in SHORT_NAME_CHARS for c in base + ext)


def short_name_83(name: str) -> bytes:
    base, _, ext = name.partition(".")
    return (base.ljust(8) + ext.ljust(3)).encode("ascii")


def short_name_alias(name: str, taken: set[bytes]) -> bytes:
    """Generate a unique 8.3 alias (NAME~1.EXT) for a long file name."""
    upper = name.upper().lstrip(".")
    if "." in upper:
        base, ext = upper.rsplit(".", 1)
    else:
        base, ext = upper, ""
    base = "".join(c for c in base if c in SHORT_NAME_CHARS) or "_"
    ext = "".join(c for c in ext if c in SHORT_NAME_CHARS)[:3]
    for n in range(1, 1000000):
        tail = f"~{n}"
        candidate = (base[: 8 - len(tail)] + tail).ljust(8) + ext.ljust(3)
        encoded = candidate.encode("ascii")
        if encoded not in taken:
            return encoded
    raise ValueError(f"no free short name for {name}")


def lfn_checksum(short: bytes) -> int:
    s = 0
    for c in short:
        s = (((s & 1) << 7) + (s >> 1) + c) & 0xFF
    return s


def lfn_entries(name: str, short: bytes) -> bytes:
    """VFAT long file name entries for name, in on-disk order (last part
    first)."""
    units = name.encode("utf-16-le")
    chars = [units[i : i + 2] for i in range(0, len(units), 2)]
    count = math.ceil(len(chars) / LFN_CHARS_PER_ENTRY)
    padded = chars + [b"\x00\x00"]
    padded += [b"\xff\xff"] * (count * LFN_CHARS_PER_ENTRY - len(padded))
    checksum = lfn_checksum(short)

    out = b""
    for i in reversed(range(count)):
        part = b"".join(padded[i * LFN_CHARS_PER_ENTRY : (i + 1) * LFN_CHARS_PER_ENTRY])
        ordinal = i + 1
        if i == count - 1:
            ordinal |= 0x40
        out += struct.pack(
            "<B10sBBB12sH4s", ordinal, part[:10], ATTR_LFN, 0, checksum, part[10:22], 0, part[22:]
        )
    return out


def dirent(short: bytes, attr: int, cluster: int, size: int, mtime: datetime.datetime) -> bytes:
    date, time = fat_time(mtime)
    return struct.pack(
        "<11sBBBHHHHHHHI",
        short,
        attr,
        0,
        0,
        time,
        date,
        date,
        cluster >> 16,
        time,
        date,
        cluster & 0xFFFF,
        size,
    )


class Node:
    def __init__(self, name: str, mtime: datetime.datetime, is_dir: bool) -> None:
        self.name = name
        self.mtime = mtime
        self.is_dir = is_dir
        self.children: dict[str, Node] = {}
        self.data = io.BytesIO()
        self.cluster = 0
        self.clusters = 0
        self.short = b""

    def size(self) -> int:
        return len(self.data.getbuffer())


class Writer:
    """FAT32 file system writer.

    :param sink: where the volume is written to, front to back
    :param total_sectors: declared size of the volume
    :param hidden_sectors: sectors preceding the volume on the disk
    :param mtime: default timestamp of files and directories
    """

    def __init__(
        self,
        sink: BinaryIO,
        total_sectors: int = DEFAULT_TOTAL_SECTORS,
        hidden_sectors: int = 0,
        mtime: datetime.datetime | None = None,
    ) -> None:
        self.sink = sink
        self.total_sectors = total_sectors
        self.hidden_sectors = hidden_sectors
        self.mtime = mtime or datetime.datetime.now()
        self.root = Node("", self.mtime, is_dir=True)
        self.fat_sectors = compute_fat_sectors(total_sectors)
        self.data_start = RESERVED_SECTORS + FAT_COUNT * self.fat_sectors
        self.cluster_count = (total_sectors - self.data_start) // SECTORS_PER_CLUSTER
        self.flushed = False

    def _dir(self, path: str, mtime: datetime.datetime) -> Node:
        """Return the directory at path, creating missing components."""
        node = self.root
        for part in [p for p in path.split("/") if p]:
            child = self._lookup(node, part)
            if child is None:
                child = Node(part, mtime, is_dir=True)
                node.children[part.lower()] = child
            elif not child.is_dir:
                raise NotADirectoryError(path)
            node = child
        return node

    @staticmethod
    def _lookup(node: Node, name: str) -> Node | None:
        # FAT names are case insensitive
        return node.children.get(name.lower())

    def mkdir(self, path: str, mtime: datetime.datetime | None = None) -> None:
        parent, name = posixpath.split(path.rstrip("/"))
        node = self._dir(parent, mtime or self.mtime)
        if self._lookup(node, name) is not None:
            raise FileExistsError(path)
        node.children[name.lower()] = Node(name, mtime or self.mtime, is_dir=True)

    def file(self, path: str, mtime: datetime.datetime | None = None) -> io.BytesIO:
        """Create the file at path, parent directories are created as needed.

        :returns: buffer to write the file contents to, read on flush()
        :raises FileExistsError: path was already created
        """
        parent, name = posixpath.split(path)
        if not name:
            raise ValueError(f"invalid file name: {path}")
        node = self._dir(parent, mtime or self.mtime)
        if self._lookup(node, name) is not None:
            raise FileExistsError(path)
        child = Node(name, mtime or self.mtime, is_dir=False)
        node.children[name.lower()] = child
        return child.data

    def _assign_short_names(self, node: Node) -> None:
        taken: set[bytes] = set()
        for child in node.children.values():
            if is_short_name(child.name):
                child.short = short_name_83(child.name)
                taken.add(child.short)
        for child in node.children.values():
            if not child.short:
                child.short = short_name_alias(child.name, taken)
                taken.add(child.short)
            if child.is_dir:
                self._assign_short_names(child)

    def _dir_entries_size(self, node: Node) -> int:
        count = 0 if node is self.root else 2
        for child in node.children.values():
            count += 1
            if not is_short_name(child.name):
                count += math.ceil(len(child.name.encode("utf-16-le")) / 2 / LFN_CHARS_PER_ENTRY)
        return count * DIRENT_SIZE

    def _layout(self) -> list[Node]:
        """Assign contiguous clusters in pre-order, directories before their
        contents."""
        order: list[Node] = []
        next_cluster = ROOT_CLUSTER

        def visit(node: Node) -> None:
            nonlocal next_cluster
            if node.is_dir:
                size = self._dir_entries_size(node)
                node.clusters = max(1, math.ceil(size / CLUSTER_SIZE))
            else:
                node.clusters = math.ceil(node.size() / CLUSTER_SIZE)
            if node.clusters:
                node.cluster = next_cluster
                next_cluster += node.clusters
                order.append(node)
            if node.is_dir:
                for child in node.children.values():
                    visit(child)

        visit(self.root)
        if next_cluster - ROOT_CLUSTER > self.cluster_count:
            raise OSError(
                f"boot file system full: {(next_cluster - ROOT_CLUSTER) * CLUSTER_SIZE} bytes"
                f" do not fit into {self.cluster_count * CLUSTER_SIZE} bytes"
            )
        return order

    def _dir_data(self, node: Node, parent: Node | None) -> bytes:
        out = b""
        if parent is not None:
            out += dirent(b".          ", ATTR_DIRECTORY, node.cluster, 0, node.mtime)
            parent_cluster = 0 if parent is self.root else parent.cluster
            out += dirent(b"..         ", ATTR_DIRECTORY, parent_cluster, 0, parent.mtime)
        for child in node.children.values():
            if not is_short_name(child.name):
                out += lfn_entries(child.name, child.short)
            if child.is_dir:
                out += dirent(child.short, ATTR_DIRECTORY, child.cluster, 0, child.mtime)
            else:
                out += dirent(child.short, ATTR_ARCHIVE, child.cluster, child.size(), child.mtime)
        return out

    def boot_sector(self) -> bytes:
        volume_id = int(self.mtime.timestamp()) & 0xFFFFFFFF
        sector = struct.pack(
            "<3s8sHBHBHHBHHHIIIHHIHH12sBBBI11s8s",
            b"\xeb\x58\x90",
            b"gokrazy ",
            SECTOR_SIZE,
            SECTORS_PER_CLUSTER,
            RESERVED_SECTORS,
            FAT_COUNT,
            0,  # root entries, FAT12/16 only
            0,  # use the 32 bit total
            MEDIA_DESCRIPTOR,
            0,  # FAT12/16 only
            32,  # sectors per track
            64,  # heads
            self.hidden_sectors,
            self.total_sectors,
            self.fat_sectors,
            0,
            0,
            ROOT_CLUSTER,
            FSINFO_SECTOR,
            BACKUP_BOOT_SECTOR,
            bytes(12),
            0x80,
            0,
            0x29,
            volume_id,
            b"GOKRAZY    ",
            b"FAT32   ",
        )
        return sector.ljust(510, b"\x00") + b"\x55\xaa"

    def fsinfo_sector(self, used_clusters: int, next_free: int) -> bytes:
        sector = bytearray(SECTOR_SIZE)
        struct.pack_into("<I", sector, 0, 0x41615252)
        struct.pack_into("<III", sector, 484, 0x61417272, self.cluster_count - used_clusters, next_free)
        struct.pack_into("<I", sector, 508, 0xAA550000)
        return bytes(sector)

    def fat(self, order: list[Node]) -> bytes:
        table = bytearray(self.fat_sectors * SECTOR_SIZE)
        struct.pack_into("<II", table, 0, 0x0FFFFFF8, 0x0FFFFFFF)
        for node in order:
            for c in range(node.cluster, node.cluster + node.clusters - 1):
                struct.pack_into("<I", table, c * 4, c + 1)
            struct.pack_into("<I", table, (node.cluster + node.clusters - 1) * 4, END_OF_CHAIN)
        return bytes(table)

    def flush(self) -> int:
        """Write the file system to the sink.

        :returns: number of bytes written
        """
        if self.flushed:
            raise RuntimeError("fat.Writer: flush() called twice")
        self.flushed = True

        self._assign_short_names(self.root)
        order = self._layout()
        used = sum(n.clusters for n in order)

        boot = self.boot_sector()
        fsinfo = self.fsinfo_sector(used, ROOT_CLUSTER + used)
        reserved = bytearray(RESERVED_SECTORS * SECTOR_SIZE)
        reserved[0:SECTOR_SIZE] = boot
        reserved[FSINFO_SECTOR * SECTOR_SIZE : (FSINFO_SECTOR + 1) * SECTOR_SIZE] = fsinfo
        backup = BACKUP_BOOT_SECTOR * SECTOR_SIZE
        reserved[backup : backup + SECTOR_SIZE] = boot
        reserved[backup + SECTOR_SIZE : backup + 2 * SECTOR_SIZE] = fsinfo

        written = 0
        written += self.sink.write(bytes(reserved))
        table = self.fat(order)
        for _ in range(FAT_COUNT):
            written += self.sink.write(table)

        parents = self._parents()
        for node in order:
            if node.is_dir:
                data = self._dir_data(node, parents.get(id(node)))
            else:
                data = node.data.getvalue()
            written += self.sink.write(data.ljust(node.clusters * CLUSTER_SIZE, b"\x00"))
        return written

    def _parents(self) -> dict[int, Node]:
        parents: dict[int, Node] = {}

        def visit(node: Node) -> None:
            for child in node.children.values():
                parents[id(child)] = node
                if child.is_dir:
                    visit(child)

        visit(self.root)
        return parents


class Reader:
    """Minimal FAT32 reader.

    :param f: seekable file containing the volume
    :param offset: byte offset of the volume within f
    """

    def __init__(self, f: BinaryIO, offset: int = 0) -> None:
        self.f = f
        self.offset = offset
        boot = self._read(0, SECTOR_SIZE)
        if boot[510:512] != b"\x55\xaa":
            raise ValueError("not a FAT file system: boot sector signature missing")
        (
            self.sector_size,
            self.sectors_per_cluster,
            self.reserved_sectors,
            self.fat_count,
        ) = struct.unpack_from("<HBHB", boot, 11)
        (self.fat_sectors,) = struct.unpack_from("<I", boot, 36)
        (self.root_cluster,) = struct.unpack_from("<I", boot, 44)
        if self.fat_sectors == 0 or boot[82:87] != b"FAT32":
            raise ValueError("not a FAT32 file system")
        self.cluster_size = self.sector_size * self.sectors_per_cluster
        self.data_start = (self.reserved_sectors + self.fat_count * self.fat_sectors) * self.sector_size
        self.fat = self._read(self.reserved_sectors * self.sector_size, self.fat_sectors * self.sector_size)

    def _read(self, offset: int, length: int) -> bytes:
        self.f.seek(self.offset + offset)
        return self.f.read(length)

    def cluster_offset(self, cluster: int) -> int:
        return self.data_start + (cluster - 2) * self.cluster_size

    def chain(self, cluster: int) -> list[int]:
        clusters = []
        while 2 <= cluster < 0x0FFFFFF8:
            clusters.append(cluster)
            (cluster,) = struct.unpack_from("<I", self.fat, cluster * 4)
            cluster &= 0x0FFFFFFF
        return clusters

    def read_chain(self, cluster: int, size: int | None = None) -> bytes:
        data = b"".join(self._read(self.cluster_offset(c), self.cluster_size) for c in self.chain(cluster))
        return data if size is None else data[:size]

    def listdir(self, cluster: int) -> list[tuple[str, int, int, int]]:
        """Directory entries as (name, attr, first cluster, size), long names
        where present."""
        data = self.read_chain(cluster)
        entries = []
        lfn_parts: dict[int, bytes] = {}
        for i in range(0, len(data), DIRENT_SIZE):
            ent = data[i : i + DIRENT_SIZE]
            if ent[0] == 0x00:
                break
            if ent[0] == 0xE5:
                lfn_parts = {}
                continue
            attr = ent[11]
            if attr == ATTR_LFN:
                ordinal = ent[0] & 0x1F
                lfn_parts[ordinal] = ent[1:11] + ent[14:26] + ent[28:32]
                continue
            if lfn_parts:
                raw = b"".join(lfn_parts[k] for k in sorted(lfn_parts))
                name = raw.decode("utf-16-le").split("\x00")[0]
                lfn_parts = {}
            else:
                base = ent[0:8].decode("ascii").rstrip()
                ext = ent[8:11].decode("ascii").rstrip()
                name = f"{base}.{ext}" if ext else base
            hi, lo = struct.unpack_from("<H", ent, 20)[0], struct.unpack_from("<H", ent, 26)[0]
            (size,) = struct.unpack_from("<I", ent, 28)
            entries.append((name, attr, (hi << 16) | lo, size))
        return entries

    def _find(self, path: str) -> tuple[int, int, int]:
        cluster, attr, size = self.root_cluster, ATTR_DIRECTORY, 0
        for part in [p for p in path.split("/") if p]:
            if not attr & ATTR_DIRECTORY:
                raise NotADirectoryError(path)
            for name, ent_attr, ent_cluster, ent_size in self.listdir(cluster):
                if name.lower() == part.lower():
                    cluster, attr, size = ent_cluster, ent_attr, ent_size
                    break
            else:
                raise FileNotFoundError(path)
        return cluster, attr, size

    def extents(self, path: str) -> tuple[int, int]:
        """Byte offset of the first cluster of path, relative to the start of
        the volume, and its length.

        :raises FileNotFoundError: no such file
        """
        cluster, _, size = self._find(path)
        return self.cluster_offset(cluster), size

    def read_file(self, path: str) -> bytes:
        cluster, attr, size = self._find(path)
        if attr & ATTR_DIRECTORY:
            raise IsADirectoryError(path)
        if size == 0:
            return b""
        return self.read_chain(cluster, size)
