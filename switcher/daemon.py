from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import sys
import time
from pathlib import Path
from typing import IO, Callable, TypeVar

# How long the foreground parent waits for the background instance to come up.
MAX_CHILD_WAIT = 10.0

T = TypeVar("T")


class PidFileLocked(RuntimeError):
    pass


class PidFile:
    def __init__(self, path: Path):
        self.logger = logging.getLogger("switcher.daemon")
        self.path = path
        self._fh: IO[str] | None = None

    def acquire(self) -> PidFile:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # "a+" so every opener shares the inode the lock is attached to.
        fh = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.close()
            raise PidFileLocked(f"{self.path} is locked by another instance") from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh
        return self

    def release(self) -> None:
        if self._fh is None:
            return
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.path)
        self._fh.close()
        self._fh = None


def detach(log_file: Path) -> int:
    # Returns the first child's PID in the caller and 0 in the detached grandchild.
    sys.stdout.flush()
    sys.stderr.flush()
    child = os.fork()
    if child > 0:
        os.waitpid(child, 0)
        return child

    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    os.chdir("/")
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(os.devnull, "rb", 0) as f:
        os.dup2(f.fileno(), sys.stdin.fileno())
    with open(log_file, "ab", 0) as f:
        os.dup2(f.fileno(), sys.stdout.fileno())
        os.dup2(f.fileno(), sys.stderr.fileno())
    return 0


def wait_for_file(path: Path, timeout: float, op: Callable[[Path], T], poll: float = 0.01) -> T:
    deadline = time.monotonic() + timeout
    while True:
        try:
            return op(path)
        except FileNotFoundError:
            if time.monotonic() >= deadline:
                raise TimeoutError(f"{path} was not created on time") from None
            time.sleep(poll)


def read_pid(path: Path) -> int:
    # A file without its trailing newline is still being written.
    text = path.read_text(encoding="utf-8")
    if not text.endswith("\n"):
        raise FileNotFoundError(f"{path} is not fully written yet")
    return int(text.strip())
