from __future__ import annotations

import os
import socket
import time
from pathlib import Path
from typing import Callable

from switcher.config import SwitcherConfig

ROOT = Path(__file__).resolve().parents[1]


def write_cmdline(proc_root: Path, pid: int, cmdline: str) -> None:
    d = proc_root / str(pid)
    d.mkdir(parents=True, exist_ok=True)
    (d / "cmdline").write_bytes(cmdline.encode("utf-8") + b"\x00")


def bind_socket(path: Path, listen: bool = True) -> socket.socket:
    """Creates a socket file at `path`; without `listen`, connecting to it fails."""
    path.parent.mkdir(parents=True, exist_ok=True)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(path))
    if listen:
        sock.listen(16)
    return sock


def make_config(
    root: Path,
    *,
    agents_dirs: tuple[Path, ...],
    proc_dir: Path,
    uid: int | None = None,
    home: Path | None = None,
) -> SwitcherConfig:
    return SwitcherConfig(
        socket_path=root / "switcher.sock",
        agents_dirs=agents_dirs,
        proc_dir=proc_dir,
        uid=os.getuid() if uid is None else uid,
        home=home,
    )


def wait_until(cond: Callable[[], bool], timeout: float = 10.0, poll: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(poll)
    return cond()
