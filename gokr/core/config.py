# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Instance configuration (config.json of a gokrazy instance).

The attribute names are snake_case; the JSON keys are the PascalCase names
used by gokrazy, see ``json_keys`` of each section. Unset values are left out
when writing, like Go's ``omitempty``.
"""

from __future__ import annotations

from copy import deepcopy
import datetime
import enum
import inspect
import json
from pathlib import Path
from typing import Any, ClassVar

import gokr.config


class SudoMode(enum.Enum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"

    def __str__(self) -> str:
        return self.value

    @staticmethod
    def choices() -> list[str]:
        return [e.value for e in SudoMode]


class OutputType(enum.Enum):
    FULL = "full"
    GAF = "gaf"

    def __str__(self) -> str:
        return self.value

    @staticmethod
    def choices() -> list[str]:
        return [e.value for e in OutputType]


def _snake_to_pascal(key: str) -> str:
    return "".join(part.capitalize() for part in key.split("_"))


class Section:
    """Base class: class-level annotated attributes are the defaults."""

    # Attributes whose JSON key is not the plain PascalCase conversion
    json_keys: ClassVar[dict[str, str]] = {}
    # Attributes written to JSON even when empty
    always_written: ClassVar[list[str]] = []
    # Attributes holding nested sections, and lists/dicts of them
    nested: ClassVar[dict[str, type[Section]]] = {}

    def __init__(self) -> None:
        # Make sure we aren't modifying the class defaults
        for key in self.keys():
            setattr(self, key, deepcopy(getattr(type(self), key)))

    @classmethod
    def keys(cls) -> list[str]:
        keys: list[str] = []
        for klass in reversed(cls.__mro__):
            if klass is object or klass is Section:
                continue
            for key, annotation in inspect.get_annotations(klass).items():
                if str(annotation).startswith("ClassVar") or key in keys:
                    continue
                keys.append(key)
        return keys

    @classmethod
    def json_key(cls, key: str) -> str:
        return cls.json_keys.get(key, _snake_to_pascal(key))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any:
        ret = cls()
        for key in cls.keys():
            json_key = cls.json_key(key)
            if json_key not in data or data[json_key] is None:
                continue
            value = data[json_key]
            if key in cls.nested:
                section = cls.nested[key]
                default = getattr(cls, key)
                if isinstance(default, list):
                    value = [section.from_dict(v) for v in value]
                elif isinstance(default, dict):
                    value = {k: section.from_dict(v) for k, v in value.items()}
                else:
                    value = section.from_dict(value)
            setattr(ret, key, value)
        return ret

    def to_dict(self) -> dict[str, Any]:
        ret: dict[str, Any] = {}
        for key in self.keys():
            value = getattr(self, key)
            if isinstance(value, Section):
                value = value.to_dict()
            elif isinstance(value, list):
                value = [v.to_dict() if isinstance(v, Section) else v for v in value]
            elif isinstance(value, dict):
                value = {k: v.to_dict() if isinstance(v, Section) else v for k, v in value.items()}
            if value in ("", 0, False, None, [], {}) and key not in self.always_written:
                continue
            ret[self.json_key(key)] = value
        return ret

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_dict()})"


class MountDevice(Section):
    source: str = ""
    type: str = ""
    target: str = ""
    options: str = ""


class UpdateConfig(Section):
    json_keys: ClassVar[dict[str, str]] = {
        "http_port": "HTTPPort",
        "https_port": "HTTPSPort",
        "http_password": "HTTPPassword",
        "cert_pem": "CertPEM",
        "key_pem": "KeyPEM",
        "use_tls": "UseTLS",
    }

    # overrides Config.hostname
    hostname: str = ""
    http_port: str = ""
    https_port: str = ""
    http_password: str = ""
    cert_pem: str = ""
    key_pem: str = ""
    # "", "self-signed" or "<cert path>,<key path>"
    use_tls: str = ""
    no_password: bool = False

    def port(self, schema: str) -> str:
        if schema == "https":
            return self.https_port or gokr.config.https_port_default
        return self.http_port or gokr.config.http_port_default


class PackageConfig(Section):
    json_keys: ClassVar[dict[str, str]] = {
        "go_build_flags": "GoBuildFlags",
        "go_build_tags": "GoBuildTags",
        "go_build_environment": "GoBuildEnvironment",
    }

    # Passed to "go build" as extra arguments
    go_build_flags: list[str] = []
    # Added to the default build tags
    go_build_tags: list[str] = []
    go_build_environment: list[str] = []
    # key=value pairs, like os.Environ()
    environment: list[str] = []
    command_line_flags: list[str] = []
    dont_start: bool = False
    wait_for_clock: bool = False
    basename: str = ""
    # Root file system destination -> path on the host
    extra_file_paths: dict[str, str] = {}
    # Root file system destination -> file contents
    extra_file_contents: dict[str, str] = {}


class InternalCompatibilityFlags(Section):
    """Only exist so that the entire gokr-packer flag surface keeps working,
    not meant to be set in config.json."""

    json_keys: ClassVar[dict[str, str]] = {
        "overwrite_mbr": "OverwriteMBR",
    }

    overwrite: str = ""
    overwrite_boot: str = ""
    overwrite_mbr: str = ""
    overwrite_root: str = ""
    target_storage_bytes: int = 0
    init_pkg: str = ""
    overwrite_init: str = ""
    testboot: bool = False
    sudo: str = ""
    update: str = ""
    insecure: bool = False
    output_type: str = ""
    output_path: str = ""
    # environment variables starting with GO
    env: list[str] = []


class Meta:
    instance: str = ""
    path: Path | None = None
    last_modified: datetime.datetime | None = None


class Config(Section):
    json_keys: ClassVar[dict[str, str]] = {
        "eeprom_package": "EEPROMPackage",
        "bootloader_extra_eeprom": "BootloaderExtraEEPROM",
    }
    always_written: ClassVar[list[str]] = ["packages", "hostname", "internal_compatibility_flags"]
    nested: ClassVar[dict[str, type[Section]]] = {
        "update": UpdateConfig,
        "package_config": PackageConfig,
        "mount_devices": MountDevice,
        "internal_compatibility_flags": InternalCompatibilityFlags,
    }

    hostname: str = ""
    device_type: str = ""
    update: UpdateConfig = UpdateConfig()
    environment: list[str] = []
    packages: list[str] = []
    # If set, all package config is taken from here and no longer from the
    # file system, except for extrafiles/
    package_config: dict[str, PackageConfig] = {}
    serial_console: str = ""
    # None means: use the default
    gokrazy_packages: list[str] | None = None
    kernel_package: str | None = None
    firmware_package: str | None = None
    eeprom_package: str | None = None
    kernel_extra_args: list[str] = []
    bootloader_extra_lines: list[str] = []
    bootloader_extra_eeprom: list[str] = []
    mount_devices: list[MountDevice] = []
    internal_compatibility_flags: InternalCompatibilityFlags = InternalCompatibilityFlags()

    def __init__(self) -> None:
        super().__init__()
        self.meta = Meta()

    def gokrazy_packages_or_default(self) -> list[str]:
        if self.gokrazy_packages is None:
            return list(gokr.config.gokrazy_packages_default)
        return list(self.gokrazy_packages)

    def kernel_package_or_default(self) -> str:
        if self.kernel_package is None:
            return gokr.config.kernel_package_default
        return self.kernel_package

    def firmware_package_or_default(self) -> str:
        if self.firmware_package is None:
            return gokr.config.firmware_package_default
        return self.firmware_package

    def eeprom_package_or_default(self) -> str:
        if self.eeprom_package is None:
            return gokr.config.eeprom_package_default
        return self.eeprom_package

    def serial_console_or_default(self) -> str:
        return self.serial_console or gokr.config.serial_console_default

    def init_package(self) -> str:
        return self.internal_compatibility_flags.init_pkg

    def update_hostname(self) -> str:
        return self.update.hostname or self.hostname

    def format_for_file(self) -> str:
        """Canonical JSON representation, also the input of the SBOM config
        hash."""
        return json.dumps(self.to_dict(), indent=2) + "\n"
