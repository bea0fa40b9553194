# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Wrapper around the Go toolchain: locating build directories, resolving
main packages and compiling them for the target."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import json
import os
from pathlib import Path
import re

from gokr.core.arch import Arch
from gokr.helpers import logging
from gokr.helpers.exceptions import BuildFailedError
import gokr.config
import gokr.helpers.cli
import gokr.helpers.run


def env(extra: list[str] | None = None) -> dict[str, str]:
    """
    Environment for all go tool invocations: the host environment with
    GOARCH/GOOS set for the target, GOBIN cleared and cgo disabled unless
    explicitly enabled.

    :param extra: additional KEY=value entries, e.g. GoBuildEnvironment
    """
    ret = dict(os.environ)
    ret.setdefault("CGO_ENABLED", "0")
    ret["GOARCH"] = str(Arch.target())
    ret["GOOS"] = Arch.target_os()
    ret["GOBIN"] = ""
    for e in extra or []:
        key, _, value = e.partition("=")
        ret[key] = value
    return ret


def filter_go_env(e: dict[str, str]) -> list[str]:
    """:returns: the variables relevant for the build target, for display"""
    return [f"{k}={v}" for k, v in sorted(e.items())
            if k in ("GOARCH", "GOOS", "GOARM", "GOAMD64", "CGO_ENABLED")]


def init_deps(init_pkg: str) -> list[str]:
    if init_pkg:
        return [init_pkg]
    return [gokr.config.init_package_default]


def go(args: list[str], build_dir: Path, go_env: dict[str, str] | None = None) -> str:
    """
    Run the go tool in build_dir.

    :returns: stdout
    :raises BuildFailedError: the go tool failed or is not installed
    """
    try:
        return gokr.helpers.run.user_output(["go"] + args, working_dir=build_dir,
                                            env=go_env if go_env is not None else env())
    except RuntimeError as e:
        raise BuildFailedError(str(e)) from e


def goroot() -> Path | None:
    try:
        ret = gokr.helpers.run.user_output(["go", "env", "GOROOT"], env=env()).strip()
    except RuntimeError as e:
        logging.debug(f"go env GOROOT: {e}")
        return None
    return Path(ret) if ret else None


MAJOR_VERSION_RE = re.compile(r"^v[0-9]+$")


@dataclass
class Pkg:
    name: str
    import_path: str
    target: str = ""
    # Basename override from the package config
    override: str = ""

    def basename(self) -> str:
        """Name of the binary: the configured basename, else the install
        target's basename, else the last element of the import path (skipping
        a major version suffix like /v2)."""
        if self.override:
            return self.override
        if self.target:
            return os.path.basename(self.target)
        parts = self.import_path.split("/")
        if len(parts) > 1 and MAJOR_VERSION_RE.match(parts[-1]):
            return parts[-2]
        return parts[-1]


def rewrite_go_mod(text: str, module_path: str, wd: Path) -> str:
    """
    Adapt the instance's go.mod for use in a build directory: set a synthetic
    module path and make relative replace directives absolute.
    """
    out = []
    has_module = False
    in_replace = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("module "):
            out.append(f"module {module_path}")
            has_module = True
            continue
        if stripped.startswith("replace ("):
            in_replace = True
        elif in_replace and stripped == ")":
            in_replace = False
        elif (in_replace or stripped.startswith("replace ")) and "=>" in stripped:
            left, right = line.split("=>", 1)
            fields = right.split()
            if fields and (fields[0].startswith("./") or fields[0].startswith("../")):
                fields[0] = os.path.normpath(wd / fields[0])
                line = f"{left}=> {' '.join(fields)}"
        out.append(line)
    if not has_module:
        out.insert(0, f"module {module_path}")
    return "\n".join(out) + "\n"


def build_dir(import_path: str, root: Path | None = None) -> Path:
    """
    Directory in which import_path is built. The first go.mod found when
    going from builddir/<import path> up to builddir/ wins, which allows for
    per-package, per-module, per-org or a single build directory. Without any
    go.mod, a per-package build directory is bootstrapped from the go.mod and
    go.sum in root.

    :param root: instance directory containing builddir/, defaults to the
                 current directory
    """
    if root is None:
        root = Path.cwd()
    import_path = import_path.removesuffix("/...")
    ret = root / "builddir" / import_path
    parts = Path("builddir", import_path).parts
    for idx in range(len(parts), 0, -1):
        d = root.joinpath(*parts[:idx])
        if (d / "go.mod").exists():
            return d

    ret.mkdir(parents=True, exist_ok=True)
    module_path = "gokrazy/build/" + root.resolve().name
    root_go_mod = root / "go.mod"
    text = root_go_mod.read_text() if root_go_mod.exists() else ""
    (ret / "go.mod").write_text(rewrite_go_mod(text, module_path, root.resolve()))
    root_go_sum = root / "go.sum"
    (ret / "go.sum").write_text(root_go_sum.read_text() if root_go_sum.exists() else "")
    return ret


def decode_json_stream(data: str) -> list[dict]:
    """Decode the concatenated JSON objects printed by go list -json."""
    decoder = json.JSONDecoder()
    ret = []
    pos = 0
    data = data.strip()
    while pos < len(data):
        obj, end = decoder.raw_decode(data, pos)
        ret.append(obj)
        pos = end
        while pos < len(data) and data[pos].isspace():
            pos += 1
    return ret


class BuildEnv:
    """
    :param root: instance directory (containing builddir/)
    :param basenames: package -> binary name override
    """

    def __init__(self, root: Path | None = None, basenames: dict[str, str] | None = None) -> None:
        self.root = root if root is not None else Path.cwd()
        self.basenames = basenames or {}
        self.workers = os.cpu_count() or 1

    def build_dir(self, pkg: str) -> Path:
        return build_dir(pkg, self.root)

    def get_incomplete(self, bdir: Path, incomplete: list[str]) -> None:
        logging.info(f"getting incomplete packages {incomplete}")
        go(["get"] + incomplete, bdir)

    def get_pkg(self, bdir: Path, pkg: str) -> None:
        """Run "go get" for the package if it is incomplete (most likely just
        not present in go.mod)."""
        try:
            output = go(["list", "-mod=mod", "-e", "-f",
                         "{{ .ImportPath }} {{ if .Incomplete }}error{{ else }}ok{{ end }}", pkg], bdir)
        except BuildFailedError:
            # Treat any error as incomplete
            self.get_incomplete(bdir, [pkg])
            return
        if not output.strip():
            # The pattern matches no packages, e.g. example.com/foo/cmd/...
            # without example.com/foo in go.mod
            self.get_incomplete(bdir, [pkg])
            return
        incomplete = [line.removesuffix(" error") for line in output.splitlines()
                      if line.endswith(" error")]
        if incomplete:
            self.get_incomplete(bdir, incomplete)

    def main_package(self, pkg: str) -> list[Pkg]:
        bdir = self.build_dir(pkg)
        output = go(["list", "-tags", "gokrazy", "-json", pkg], bdir)
        ret = []
        for p in decode_json_stream(output):
            if p.get("Name") != "main":
                continue
            import_path = p.get("ImportPath", "")
            ret.append(Pkg(p["Name"], import_path, p.get("Target", ""),
                           self.basenames.get(import_path, "")))
        return ret

    def main_packages(self, pkgs: list[str]) -> list[Pkg]:
        """
        Resolve package patterns (handling "...") to main packages.

        :returns: main packages, sorted by basename
        """
        ret: list[Pkg] = []
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            for result in executor.map(self.main_package, pkgs):
                ret += result
        return sorted(ret, key=lambda p: p.basename())

    def package_dir(self, pkg: str) -> Path:
        """:returns: source directory of pkg"""
        bdir = self.build_dir(pkg)
        output = go(["list", "-mod=mod", "-tags", "gokrazy", "-f", "{{ .Dir }}", pkg], bdir)
        return Path(output.strip())

    def package_dirs(self, pkgs: list[str]) -> list[Path]:
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            return list(executor.map(self.package_dir, pkgs))

    def build_one(self, bindir: Path, bdir: Path, pkg: Pkg, build_flags: list[str],
                  build_tags: list[str], build_env: list[str]) -> Path:
        out = bindir / pkg.basename()
        tags = gokr.config.default_build_tags + build_tags
        args = ["build", "-mod=mod", "-o", str(out), "-tags=" + ",".join(tags)]
        args += build_flags
        args.append(pkg.import_path)
        go(args, bdir, env(build_env))
        return out

    def build(
        self,
        bindir: Path,
        packages: list[str],
        build_flags: dict[str, list[str]] | None = None,
        build_tags: dict[str, list[str]] | None = None,
        build_env: dict[str, list[str]] | None = None,
        no_build_packages: list[str] | None = None,
    ) -> list[Path]:
        """
        Compile all main packages matching packages into bindir, in parallel.
        The no_build_packages (kernel, firmware, ...) are only fetched.

        :returns: paths of the compiled binaries
        :raises BuildFailedError: the go tool failed
        """
        build_flags = build_flags or {}
        build_tags = build_tags or {}
        build_env = build_env or {}
        done = gokr.helpers.cli.interactively("building (go compiler)")

        for pkg in no_build_packages or []:
            self.get_pkg(self.build_dir(pkg), pkg)

        jobs = []
        for pattern in packages:
            bdir = self.build_dir(pattern)
            self.get_pkg(bdir, pattern)
            for pkg in self.main_packages([pattern]):
                jobs.append((bdir, pkg))

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [
                executor.submit(
                    self.build_one,
                    bindir,
                    bdir,
                    pkg,
                    build_flags.get(pkg.import_path, []),
                    build_tags.get(pkg.import_path, []),
                    build_env.get(pkg.import_path, []),
                )
                for bdir, pkg in jobs
            ]
            ret = [f.result() for f in futures]
        done("")
        return ret
