# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from pathlib import Path


def mounted_partitions(dev: str, source: Path = Path("/proc/self/mountinfo")) -> list[tuple[str, str]]:
    """Parse mountinfo for mounts whose source starts with dev.

    :param source: can be changed for testcases
    :returns: list of (mount source, mount point)
    """
    ret: list[tuple[str, str]] = []
    if not source.exists():
        # platform does not have /proc/self/mountinfo, skip verifying
        return ret
    with source.open() as handle:
        for line in handle:
            words = line.split()
            # optional fields are terminated by a single "-"
            if "-" not in words[6:]:
                continue
            sep = words.index("-", 6)
            if len(words) < sep + 3:
                continue
            if words[sep + 2].startswith(dev):
                ret.append((words[sep + 2], words[4]))
    return ret


def verify_not_mounted(dev: str, source: Path = Path("/proc/self/mountinfo")) -> None:
    """Raise RuntimeError if any partition of dev is mounted."""
    for partition, mountpoint in mounted_partitions(dev, source):
        raise RuntimeError(f"partition {partition} is mounted on {mountpoint}")
