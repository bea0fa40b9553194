# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
from collections.abc import Callable
import sys
import threading
import time
from typing import BinaryIO

import gokr.config


def human_bytes(n: int) -> str:
    """Format a byte count in SI units, e.g. 82854982 -> "83 MB"."""
    if n < 10:
        return f"{n} B"
    sizes = ["B", "kB", "MB", "GB", "TB", "PB", "EB"]
    e = 0
    val = float(n)
    while val >= 1000 and e < len(sizes) - 1:
        val /= 1000
        e += 1
    if val < 10:
        return f"{val:.1f} {sizes[e]}"
    return f"{val:.0f} {sizes[e]}"


def interactively(status: str) -> Callable[[str], None]:
    """Print a status while a step runs; the returned function finishes the
    line with the elapsed time. Does nothing when not on a terminal."""
    if not gokr.config.is_interactive:
        return lambda fragment: None
    status = "[" + status + "]"
    sys.stdout.write(status)
    sys.stdout.flush()
    start = time.monotonic()

    def done(fragment: str = "") -> None:
        elapsed = time.monotonic() - start
        sys.stdout.write(f"\r[done] in {elapsed:.2f}s{fragment}" + " " * len(status) + "\n")
        sys.stdout.flush()

    return done


class ProgressReporter:
    """Report the progress of a transfer once per second, until stopped.

    Wrap the stream being copied with reader() so that the bytes read are
    counted.
    """

    def __init__(self, out=None, interval: float = 1.0) -> None:
        self.out = out or sys.stdout
        self.interval = interval
        self.status = ""
        self.total = 0
        self.transferred = 0
        self.start = time.monotonic()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def set_status(self, status: str, total: int = 0) -> None:
        with self._lock:
            self.status = status
            self.total = total
            self.transferred = 0
            self.start = time.monotonic()

    def add(self, n: int) -> None:
        with self._lock:
            self.transferred += n

    def reset(self) -> int:
        """:returns: bytes transferred since the last set_status()/reset()"""
        with self._lock:
            ret = self.transferred
            self.transferred = 0
            return ret

    def line(self) -> str:
        with self._lock:
            elapsed = max(time.monotonic() - self.start, 0.001)
            rate = human_bytes(int(self.transferred / elapsed))
            if self.total:
                return (f"\r{self.status}: {human_bytes(self.transferred)} of"
                        f" {human_bytes(self.total)} ({rate}/s)")
            return f"\r{self.status}: {human_bytes(self.transferred)} ({rate}/s)"

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self.status:
                self.out.write(self.line())
                self.out.flush()

    def start_reporting(self) -> None:
        if self._thread is not None or not gokr.config.is_interactive:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop reporting, so that it does not interfere with log output."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def reader(self, f: BinaryIO) -> "CountingReader":
        return CountingReader(f, self)


class CountingReader:
    def __init__(self, f: BinaryIO, progress: ProgressReporter) -> None:
        self.f = f
        self.progress = progress

    def read(self, n: int = -1) -> bytes:
        data = self.f.read(n)
        self.progress.add(len(data))
        return data
