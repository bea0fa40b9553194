# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import logging
import os
from pathlib import Path
import sys
from typing import Any, Final, TextIO

logfd: TextIO

DEBUG: Final[int] = logging.DEBUG
VERBOSE: Final[int] = 5

# Markers highlighted on the terminal (first occurrence per line)
HIGHLIGHT = [
    ("WARNING:", "YELLOW"),
    ("ERROR:", "RED"),
    ("Build complete!", "GREEN"),
]

# Flags whose values end up in the web interface URL
SECRET_FLAGS = ("--password", "--update")


class log_handler(logging.StreamHandler):
    """Write the progress of gokr-packer to stdout, and everything that
    happened (including the go toolchain output) to the log file."""

    def __init__(self, details_to_stdout: bool = False, quiet: bool = False) -> None:
        super().__init__(sys.stdout)
        self.details_to_stdout = details_to_stdout
        self.quiet = quiet

        # Deferred: gokr.config imports half of the package
        import gokr.config

        self.styles = gokr.config.styles

    def colorize(self, msg: str) -> str:
        for marker, color in HIGHLIGHT:
            msg = msg.replace(marker, f"{self.styles[color]}{marker}{self.styles['END']}", 1)
        return msg

    def to_terminal(self, record: logging.LogRecord) -> bool:
        if self.details_to_stdout:
            return True
        return not self.quiet and record.levelno >= logging.INFO

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if self.to_terminal(record):
                self.stream.write(self.colorize(msg) + self.terminator)
                self.flush()
            if not self.details_to_stdout:
                # The sudo child process logs into the same file
                logfd.write(f"({os.getpid():06d}) {msg}\n")
                logfd.flush()
        except (KeyboardInterrupt, SystemExit):
            raise
        except BaseException:
            self.handleError(record)


def add_verbose_log_level() -> None:
    """Add the log level "verbose" below "debug", used for the commands run
    and for each file added to the root file system."""
    setattr(logging, "VERBOSE", VERBOSE)
    logging.addLevelName(VERBOSE, "VERBOSE")


def init(logfile: Path, verbose: bool, details_to_stdout: bool = False, quiet: bool = False) -> None:
    """Log to stdout and to the log file.

    :param logfile: appended to, a blank line separates runs
    :param verbose: include VERBOSE messages
    :param details_to_stdout: write everything to stdout, no log file
    :param quiet: only write to the log file, stdout may not be a terminal
                  (partitioning child process)
    """
    global logfd

    if "logfd" in globals() and logfd not in (sys.stdout, sys.stderr):
        logfd.close()

    if details_to_stdout:
        logfd = sys.stdout
    else:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        logfd = open(logfile, "a+")
        logfd.write("\n\n")

    add_verbose_log_level()
    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(VERBOSE if verbose else logging.DEBUG)

    handler = log_handler(details_to_stdout=details_to_stdout, quiet=quiet)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", datefmt="%H:%M:%S"))
    root_logger.addHandler(handler)

    logging.debug(f"$ gokr-packer {' '.join(redact_argv(sys.argv)[1:])}")


def redact_argv(argv: list[str]) -> list[str]:
    """Hide the values of flags which may carry the HTTP password."""
    ret = list(argv)
    for i, arg in enumerate(ret):
        for flag in SECRET_FLAGS:
            if arg.startswith(flag + "="):
                ret[i] = flag + "=[REDACTED]"
            elif arg == flag and i + 1 < len(ret) and not ret[i + 1].startswith("-"):
                ret[i + 1] = "[REDACTED]"
    return ret


# Wrappers, so that callers do not need the (undefined) logging.verbose()


def error(msg: object, *args: str, **kwargs: Any) -> None:
    logging.error(msg, *args, **kwargs)


def warning(msg: object, *args: str, **kwargs: Any) -> None:
    logging.warning(msg, *args, **kwargs)


def info(msg: object, *args: str, **kwargs: Any) -> None:
    logging.info(msg, *args, **kwargs)


def debug(msg: object, *args: str, **kwargs: Any) -> None:
    logging.debug(msg, *args, **kwargs)


def verbose(msg: object, *args: str, **kwargs: Any) -> None:
    logging.log(VERBOSE, msg, *args, **kwargs)
