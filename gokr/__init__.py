# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import sys
import os
import traceback
from pathlib import Path

from gokr.helpers.exceptions import BuildFailedError, NonBugError

# gokr version
__version__ = "0.1.0"

# Python version check
# === CHECKLIST FOR UPGRADING THE REQUIRED PYTHON VERSION ===
# * gokr/__init__.py (you are here)
# * pyproject.toml
# * when upgrading to python 3.11: gokr/helpers/toml.py and remove this line
version = sys.version_info
if version < (3, 10):
    print("You need at least Python 3.10 to run gokr-packer")
    print("(You are running it with Python " + str(version.major) + "." + str(version.minor) + ")")
    sys.exit()

from . import config  # noqa: E402
from . import parse  # noqa: E402
from .core.context import get_context  # noqa: E402
from .disk.blockdevice import PACKER_FD_ENV  # noqa: E402
from .helpers import frontend  # noqa: E402
from .helpers import logging  # noqa: E402
import gokr.parse.arguments  # noqa: E402


def print_log_hint() -> None:
    context = get_context(allow_failure=True)
    if context and context.details_to_stdout:
        return
    log = context.log if context else Path(config.defaults["log"])
    # Hints about the log file (print to stdout only)
    log_hint = f"See {log} for details."
    if not os.path.exists(log):
        log_hint = (
            "Use '--details-to-stdout' to get more output, e.g."
            " 'gokr-packer --details-to-stdout --overwrite=/dev/sdx'."
        )
    print()
    print(log_hint)


def main(argv: list[str] | None = None) -> int:
    # Wrap everything to display nice error messages
    args = None
    try:
        # Parse arguments, set up logging
        args = parse.arguments.arguments(argv)
        context = get_context()

        # Child process started via sudo: only partition the device
        if os.environ.get(PACKER_FD_ENV) is not None:
            frontend.partition(context.config)
            return 0

        frontend.packer(sbom_only=args.sbom)

    except KeyboardInterrupt:
        print("\nCaught KeyboardInterrupt, exiting …")
        sys.exit(130)  # SIGINT(2) + 128

    except NonBugError as exception:
        logging.error(f"ERROR: {exception}")
        return 1

    except BuildFailedError as exception:
        logging.error(f"ERROR: {exception}")
        print_log_hint()
        return 1

    except Exception as e:
        # Dump log to stdout when args (and therefore logging) init failed
        if args is None:
            import logging as pylogging

            pylogging.getLogger().setLevel(logging.DEBUG)

        logging.info("ERROR: " + str(e))
        logging.debug(traceback.format_exc())

        print_log_hint()
        print()
        print("Before you report this error, ensure that gokr-packer is up to date.")
        print("Source code: https://github.com/gokrazy/tools")
        return 1

    return 0
