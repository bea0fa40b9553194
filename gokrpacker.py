#!/usr/bin/env python3
# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Convenience wrapper for running gokr-packer from the git repository. This
script is not part of the python packaging, so don't add more logic here!"""

import sys
import gokr

if __name__ == "__main__":
    sys.exit(gokr.main())
