# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Extra files for the root file system: ExtraFilePaths/ExtraFileContents of
the package config, and the extrafiles directories or tar archives shipped
next to the packages."""

from __future__ import annotations

from collections.abc import Callable
import datetime
import os
from pathlib import Path
import posixpath
import tarfile

from gokr.build.packages import ConfigFiles
from gokr.core.arch import Arch
from gokr.core.config import Config
from gokr.helpers import logging
from gokr.helpers.exceptions import NonBugError
from gokr.rootfs.fileinfo import FileInfo, get_duplication, mkdirp

EXTRA_FILES_KIND = "include extra files in the root file system"


def _mtime(st: os.stat_result) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone.utc)


def add_to_file_info(parent: FileInfo, path: Path) -> datetime.datetime | None:
    """
    Add the contents of the host directory path below parent, merging into
    existing directories.

    :returns: latest modification time of the added entries, None if path
              does not exist or is empty
    :raises FileExistsError: a file is already present in parent
    """
    try:
        entries = sorted(os.scandir(path), key=lambda e: e.name)
    except FileNotFoundError:
        return None

    latest = None
    for entry in entries:
        # Symlinks are followed
        st = os.stat(entry.path)
        modified = _mtime(st)
        if latest is None or latest < modified:
            latest = modified

        is_dir = entry.is_dir()
        fi = parent.find(entry.name)
        if fi is None:
            fi = parent.add(FileInfo(entry.name, mode=st.st_mode & 0o7777))
        elif not is_dir or not fi.is_dir():
            raise FileExistsError(f"file already exists in filesystem: {entry.path}")

        if is_dir:
            sub = add_to_file_info(fi, Path(entry.path))
            if sub is not None and latest < sub:
                latest = sub
        else:
            fi.from_host = entry.path
    return latest


class ArchiveExtraction:
    """Reads tar archives into a FileInfo tree. Archives may list entries
    before (or without) their parent directories."""

    def __init__(self, root: FileInfo) -> None:
        self.dirs: dict[str, FileInfo] = {".": root}

    def mkdirp(self, path: str) -> FileInfo:
        parent = self.dirs["."]
        if path in (".", "", "/"):
            return parent
        parts = path.strip("/").split("/")
        for idx, part in enumerate(parts):
            sub = "/".join(parts[: idx + 1])
            if sub not in self.dirs:
                self.dirs[sub] = parent.add(FileInfo(part))
            parent = self.dirs[sub]
        return parent

    def extract_archive(self, path: Path) -> datetime.datetime | None:
        """:returns: latest modification time, None if path does not exist"""
        if not path.exists():
            return None
        latest = None
        with tarfile.open(path) as tar:
            for member in tar:
                # Directories are e.g. "usr/lib/", files "usr/lib/libfoo.so"
                filename = posixpath.normpath(member.name.rstrip("/"))
                modified = datetime.datetime.fromtimestamp(member.mtime, datetime.timezone.utc)
                if latest is None or latest < modified:
                    latest = modified

                dirname = posixpath.dirname(filename) or "."
                parent = self.mkdirp(dirname)
                if member.isdir():
                    if filename not in self.dirs:
                        fi = parent.add(FileInfo(posixpath.basename(filename), mode=member.mode))
                        self.dirs[filename] = fi
                    continue

                fi = FileInfo(posixpath.basename(filename), mode=member.mode)
                if member.issym():
                    fi.symlink_dest = member.linkname
                else:
                    handle = tar.extractfile(member)
                    fi.from_literal = handle.read() if handle is not None else b""
                parent.add(fi)
        return latest


def find_extra_files_in_dir(path: Path, arch: Arch | None = None) -> Path:
    """
    Probe for an extrafiles tar archive (possibly with an architecture
    suffix like _amd64) or the directory itself.

    :raises FileNotFoundError: none of the candidates exist
    """
    if arch is None:
        arch = Arch.target()
    candidates = [Path(f"{path}_{arch}.tar"), Path(f"{path}.tar"), Path(path)]
    for p in candidates:
        if p.exists():
            return p
    raise FileNotFoundError(f"no such file or directory: {candidates[-1]}"
                            f" (also tried {candidates[0].name}, {candidates[1].name})")


def add_extra_files_from_dir(pkg: str, path: Path, fi: FileInfo, files: ConfigFiles,
                             arch: Arch | None = None) -> None:
    """Add <path>_<goarch>.tar, else <path>.tar, else the directory <path>
    below fi. Nothing found is not an error."""
    if arch is None:
        arch = Arch.target()
    ae = ArchiveExtraction(fi)

    effective = Path(f"{path}_{arch}.tar")
    latest = ae.extract_archive(effective)
    if not fi.dirents:
        effective = Path(f"{path}.tar")
        latest = ae.extract_archive(effective)
    if not fi.dirents:
        effective = Path(path)
        latest = add_to_file_info(fi, effective)
        if not fi.dirents:
            return

    files.add(pkg, EXTRA_FILES_KIND, effective, latest)


def find_extra_files(
    cfg: Config,
    build_packages: list[str],
    package_dir: Callable[[str], Path],
    files: ConfigFiles,
    instance_dir: Path | None = None,
    arch: Arch | None = None,
) -> dict[str, list[FileInfo]]:
    """
    Collect the extra files of all packages, one tree per source.

    :param build_packages: user packages followed by the gokrazy system
                           packages
    :param package_dir: returns the source directory of a package
    :param instance_dir: relative ExtraFilePaths and extrafiles/<pkg> are
                         looked up here, defaults to the current directory
    :returns: package -> list of trees
    """
    if instance_dir is None:
        instance_dir = Path.cwd()
    ret: dict[str, list[FileInfo]] = {}

    for pkg, pc in cfg.package_config.items():
        trees = []
        for dest, host_path in pc.extra_file_paths.items():
            root = FileInfo("")
            path = instance_dir / host_path
            if path.is_file():
                path = path.resolve()
                mkdirp(root, posixpath.dirname(dest)).add(
                    FileInfo(posixpath.basename(dest), from_host=path)
                )
                files.add(pkg, EXTRA_FILES_KIND, path, _mtime(path.stat()))
            else:
                try:
                    find_extra_files_in_dir(path, arch)
                except FileNotFoundError as e:
                    raise NonBugError(f"ExtraFilePaths of {pkg}: {e}")
                add_extra_files_from_dir(pkg, path, mkdirp(root, dest), files, arch)
            trees.append(root)

        for dest, contents in pc.extra_file_contents.items():
            root = FileInfo("")
            mkdirp(root, posixpath.dirname(dest)).add(
                FileInfo(posixpath.basename(dest), from_literal=contents)
            )
            files.add(pkg, EXTRA_FILES_KIND)
            trees.append(root)
        ret[pkg] = trees

    for pkg in build_packages:
        if not cfg.package_config:
            root = FileInfo("")
            add_extra_files_from_dir(pkg, instance_dir / "extrafiles" / pkg, root, files, arch)
            ret.setdefault(pkg, []).append(root)

        root = FileInfo("")
        add_extra_files_from_dir(pkg, package_dir(pkg) / "_gokrazy" / "extrafiles", root, files, arch)
        ret.setdefault(pkg, []).append(root)

    return ret


def check_perm(extra_files: dict[str, list[FileInfo]]) -> None:
    """:raises NonBugError: extra files would end up in /perm"""
    for trees in extra_files.values():
        for tree in trees:
            if tree.find("perm") is not None:
                raise NonBugError("invalid ExtraFilePaths or ExtraFileContents: cannot write"
                                  " extra files to user-controlled /perm partition")


def combine_extra_files(root: FileInfo, extra_files: dict[str, list[FileInfo]]) -> None:
    """
    Add the extra files to the root file system, after making sure that no
    path is provided twice.

    :raises NonBugError: duplicate files
    """
    dups = get_duplication(root, FileInfo(""))
    if dups:
        raise NonBugError("root file system contains duplicate files: your config contains"
                          f" multiple packages that install {dups}")

    for pkg1, trees in extra_files.items():
        for fs1 in trees:
            dups = get_duplication(root, fs1)
            if dups:
                raise NonBugError(f"extra files of package {pkg1} collides with root file system: {dups}")

            for pkg2, trees2 in extra_files.items():
                if pkg1 == pkg2:
                    continue
                for fs2 in trees2:
                    dups = get_duplication(fs1, fs2)
                    if dups:
                        raise NonBugError(f"extra files of package {pkg1} collides with package {pkg2}: {dups}")

            try:
                root.combine(fs1)
            except FileExistsError as e:
                raise NonBugError(f"failed to add extra files from package {pkg1}: {e}")
    logging.debug(f"root file system: {len(root.path_list())} files")
