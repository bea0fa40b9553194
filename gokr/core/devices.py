# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

from dataclasses import dataclass, field

import gokr.config
from gokr.helpers.exceptions import NonBugError
from gokr.helpers.toml import load_toml_file


@dataclass(frozen=True)
class RootFile:
    """File from the kernel package, written at a byte offset of the device."""

    name: str
    offset: int


@dataclass(frozen=True)
class DeviceConfig:
    slug: str
    boot_partition_start_lba: int = gokr.config.default_boot_partition_start_lba
    mbr_only_without_gpt: bool = False
    root_device_files: list[RootFile] = field(default_factory=list)


def table() -> dict:
    return load_toml_file(gokr.config.data_dir / "devices.toml")


def get(slug: str) -> DeviceConfig:
    """Look up the device configuration for --device-type.

    :param slug: device slug, empty for the default (Raspberry Pi, PC)
    :returns: DeviceConfig
    :raises NonBugError: unknown slug
    """
    if not slug:
        return DeviceConfig(slug="")

    devices = table()
    if slug not in devices:
        raise NonBugError(
            f'unknown device slug "{slug}" (known: {", ".join(sorted(devices.keys()))})'
        )

    entry = devices[slug]
    if "alias_of" in entry:
        entry = devices[entry["alias_of"]]

    return DeviceConfig(
        slug=slug,
        boot_partition_start_lba=entry.get("boot_partition_start_lba")
        or gokr.config.default_boot_partition_start_lba,
        mbr_only_without_gpt=entry.get("mbr_only_without_gpt", False),
        root_device_files=[
            RootFile(name=f["name"], offset=f["offset"]) for f in entry.get("root_device_files", [])
        ],
    )
