from __future__ import annotations

import logging
from pathlib import Path

from common.config import ConfigError
from switcher.config import DEFAULT_PROC_DIR, SwitcherConfig

SESSION_PROCESS_MARKER = "sshd"
TERMINAL_MARKER = "@pts/"


class ProcessInspector:
    """Answers identity questions about a PID from a procfs-like tree.

    A process that cannot be read (gone, not ours, hidden) is neither a session
    process nor attached to a terminal. Callers race against sshd exiting, so a
    missing PID is an ordinary answer and never an error.
    """

    def __init__(self, proc_root: Path):
        self.logger = logging.getLogger("switcher.process")
        self.proc_root = proc_root

    def _cmdline_path(self, pid: int) -> Path:
        return self.proc_root / str(pid) / "cmdline"

    def read_cmdline(self, pid: int) -> str | None:
        if pid <= 0:
            return None
        try:
            raw = self._cmdline_path(pid).read_bytes()
        except OSError as exc:
            self.logger.debug("Cannot read command line of PID %d: %s", pid, exc)
            return None
        return raw.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()

    def is_session_process(self, pid: int) -> bool:
        cmdline = self.read_cmdline(pid)
        return cmdline is not None and SESSION_PROCESS_MARKER in cmdline

    def has_attached_terminal(self, pid: int) -> bool:
        # sshd retitles session processes as "sshd: user@pts/N".
        cmdline = self.read_cmdline(pid)
        return cmdline is not None and TERMINAL_MARKER in cmdline


class ProcfsInspector(ProcessInspector):
    def __init__(self) -> None:
        super().__init__(DEFAULT_PROC_DIR)


class DirectoryInspector(ProcessInspector):
    """Reads `<root>/<pid>/cmdline` files laid out by tests instead of real processes."""

    def __init__(self, root: Path):
        if not root.is_dir():
            raise ConfigError(f"process fixture directory does not exist: {root}")
        super().__init__(root)


def make_inspector(config: SwitcherConfig) -> ProcessInspector:
    if config.proc_dir == DEFAULT_PROC_DIR:
        return ProcfsInspector()
    return DirectoryInspector(config.proc_dir)
