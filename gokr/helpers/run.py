# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
import os
from pathlib import Path
import subprocess
from collections.abc import Mapping, Sequence

from gokr.helpers import logging

PathString = str | Path


def user(
    cmd: Sequence[PathString],
    working_dir: Path | None = None,
    output: str = "log",
    output_return: bool = False,
    check: bool = True,
    env: Mapping[str, str] | None = None,
) -> str | int:
    """
    Run a command on the host system as user.

    :param working_dir: run the command in this directory
    :param output: "log" captures stdout and stderr into the log file,
                   "stdout" passes them through to the terminal
    :param output_return: return stdout as string instead of the exit code
    :param check: raise RuntimeError when the command fails
    :param env: full environment of the command, defaults to os.environ
    :returns: the exit code, or stdout with output_return
    """
    cmd_parts = [os.fspath(c) for c in cmd]
    # Readable log message (without all the escaping)
    msg = "% "
    if working_dir is not None:
        msg += f"cd {os.fspath(working_dir)}; "
    msg += " ".join(cmd_parts)
    logging.verbose(msg)

    capture = output_return or output == "log"
    try:
        proc = subprocess.run(
            cmd_parts,
            cwd=working_dir,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if output == "log" else None,
            text=True,
        )
    except FileNotFoundError as e:
        raise RuntimeError(f"Command not found: {cmd_parts[0]} ({e})") from e

    if output == "log":
        if proc.stdout and not output_return:
            logging.debug(proc.stdout.rstrip())
        if proc.stderr:
            logging.debug(proc.stderr.rstrip())

    if check and proc.returncode != 0:
        detail = ""
        if output == "log" and proc.stderr:
            detail = ":\n" + proc.stderr.rstrip()
        raise RuntimeError(f"Command failed (exit code {proc.returncode}): {msg}{detail}")

    if output_return:
        return proc.stdout or ""
    return proc.returncode


def user_output(
    cmd: Sequence[PathString],
    working_dir: Path | None = None,
    check: bool = True,
    env: Mapping[str, str] | None = None,
) -> str:
    ret = user(cmd, working_dir, "log", output_return=True, check=check, env=env)
    if not isinstance(ret, str):
        raise TypeError("Expected str output, got " + str(ret))

    return ret
