# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import secrets
import string

charset = string.ascii_lowercase + string.ascii_uppercase + string.digits


def random_password(n: int = 20) -> str:
    return "".join(secrets.choice(charset) for _ in range(n))
