# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Generator of the init program (/gokrazy/init), which starts and
supervises all other binaries of the image."""

from __future__ import annotations

import json
import os
from pathlib import Path
import shutil
import tempfile

from gokr.build import gotool
from gokr.helpers import logging
from gokr.helpers.exceptions import BuildFailedError
from gokr.parse import elf
from gokr.rootfs.fileinfo import FileInfo
import gokr.config

INIT_PATH = "/gokrazy/init"

HEADER = """\
package main

import (
\t"fmt"
\t"log"
\t"os"
\t"os/exec"

\t"github.com/gokrazy/gokrazy"
)

// buildTimestamp can be overridden by specifying e.g.
// -ldflags "-X main.buildTimestamp=foo" when building.
var buildTimestamp = {build_timestamp}

func main() {{
\tlog.SetFlags(log.LstdFlags | log.Lshortfile)

\tfmt.Printf("gokrazy build timestamp %s\\n", buildTimestamp)
\tif err := gokrazy.Boot(buildTimestamp); err != nil {{
\t\tlog.Fatal(err)
\t}}
\tif host, err := os.Hostname(); err == nil {{
\t\tfmt.Printf("hostname %q\\n", host)
\t}}
\tif model := gokrazy.Model(); model != "" {{
\t\tfmt.Printf("gokrazy device model %s\\n", model)
\t}}

\tvar services []*gokrazy.Service
"""

FOOTER = """\
\tif err := gokrazy.SuperviseServices(services); err != nil {
\t\tlog.Fatal(err)
\t}
\tselect {}
}
"""


def go_string(s: str) -> str:
    """Go string literal for s."""
    return json.dumps(s, ensure_ascii=False)


def go_string_slice(items: list[str]) -> str:
    return "[]string{" + ", ".join(go_string(i) for i in items) + "}"


def flatten_files(prefix: str, root: FileInfo) -> list[str]:
    """:returns: image paths of all host files (the compiled binaries)"""
    ret = []
    for ent in root.dirents:
        if ent.from_host is not None:
            ret.append(os.path.join(prefix, root.filename, ent.filename))
        elif ent.is_dir():
            ret += flatten_files(os.path.join(prefix, root.filename), ent)
    return ret


def key_by_basename(basenames: dict[str, str], m: dict) -> dict:
    """Re-key a package -> value mapping by the name of the package's binary."""
    return {gotool.Pkg("main", pkg, override=basenames.get(pkg, "")).basename(): v
            for pkg, v in m.items()}


class InitGenerator:
    """
    :param root: file tree holding the compiled binaries
    :param flags: package -> command line flags
    :param env: package -> additional environment variables
    :param dont_start: packages which are not started at boot
    :param wait_for_clock: packages started once the clock is synchronized
    :param basenames: package -> binary name override
    :param build_timestamp: compared against after an update
    """

    def __init__(
        self,
        root: FileInfo,
        flags: dict[str, list[str]],
        env: dict[str, list[str]],
        dont_start: set[str],
        wait_for_clock: set[str],
        basenames: dict[str, str],
        build_timestamp: str,
    ) -> None:
        self.root = root
        self.flags = key_by_basename(basenames, flags)
        self.env = key_by_basename(basenames, env)
        self.dont_start = set(key_by_basename(basenames, {p: True for p in dont_start}))
        self.wait_for_clock = set(key_by_basename(basenames, {p: True for p in wait_for_clock}))
        self.build_timestamp = build_timestamp

    def service(self, path: str) -> str:
        name = os.path.basename(path)
        if self.flags.get(name):
            command = f"{go_string(path)}, {go_string_slice(self.flags[name])}..."
        else:
            command = go_string(path)

        if name in self.dont_start:
            constructor = "NewStoppedService"
        elif name in self.wait_for_clock:
            constructor = "NewWaitForClockService"
        else:
            constructor = "NewService"

        lines = ["\t{", f"\t\tcmd := exec.Command({command})"]
        env = self.env.get(name, [])
        if env:
            lines.append("\t\tcmd.Env = append(os.Environ(),")
            lines += [f"\t\t\t{go_string(e)}," for e in env]
            lines.append("\t\t)")
        else:
            lines.append("\t\tcmd.Env = append(os.Environ())")
        lines += [
            "",
            f"\t\tsvc := gokrazy.{constructor}(cmd)",
            "",
            "\t\tservices = append(services, svc)",
            "\t}",
        ]
        return "\n".join(lines) + "\n"

    def generate(self) -> str:
        """:returns: gofmt-formatted Go source of the init program"""
        ret = HEADER.format(build_timestamp=go_string(self.build_timestamp))
        for path in flatten_files("/", self.root):
            if path == INIT_PATH:
                continue
            ret += self.service(path)
        return ret + FOOTER

    def dump(self, path: Path) -> None:
        logging.info(f"Writing init source to {path}")
        with open(path, "w") as handle:
            handle.write(self.generate())

    def build(self, build_env: gotool.BuildEnv) -> Path:
        """
        Compile the init program in the build directory of the gokrazy
        package.

        :returns: temporary directory containing the "init" binary, to be
                  removed by the caller
        :raises BuildFailedError: compiling failed or produced no ELF binary
        """
        bdir = build_env.build_dir(gokr.config.init_package_default)
        tmpdir = Path(tempfile.mkdtemp(prefix="gokr-packer"))
        try:
            init_go = tmpdir / "init.go"
            init_go.write_text(self.generate())
            out = tmpdir / "init"
            gotool.go(["build", "-mod=mod", "-o", str(out),
                       "-tags=" + ",".join(gokr.config.default_build_tags), str(init_go)], bdir)
            init_go.unlink()
            if not out.exists() or not elf.is_elf(out):
                raise BuildFailedError(f"{out} is not an ELF binary")
        except BaseException:
            shutil.rmtree(tmpdir, ignore_errors=True)
            raise
        return tmpdir
