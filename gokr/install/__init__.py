# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from gokr.install._install import (
    Artifacts as Artifacts,
    BootSources as BootSources,
    Installer as Installer,
    validate_target_storage_bytes as validate_target_storage_bytes,
)
from gokr.install.gaf import (
    overwrite_gaf as overwrite_gaf,
)
