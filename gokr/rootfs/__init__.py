# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
