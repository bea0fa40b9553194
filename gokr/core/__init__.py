# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from gokr.core.arch import Arch
from gokr.core.config import Config

__all__ = ["Arch", "Config"]
