from __future__ import annotations

import logging
import os
import socket
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from switcher.config import SwitcherConfig
from switcher.process import ProcessInspector

SESSION_DIR_PREFIX = "ssh-"
AGENT_SOCKET_PREFIX = "agent."
# OpenSSH >= 10.1 places sockets directly under ~/.ssh/agent with this infix.
HOME_SOCKET_INFIX = ".sshd."


class AgentNotFoundError(LookupError):
    pass


class Outcome(str, Enum):
    NOT_A_DIRECTORY = "not-a-directory"
    WRONG_NAME_PREFIX = "wrong-name-prefix"
    STAT_FAILED = "stat-failed"
    WRONG_OWNER = "wrong-owner"
    NO_CANDIDATE_FOUND = "no-candidate-found"
    NOT_A_SOCKET_FILE = "not-a-socket-file"
    INVALID_EMBEDDED_PID = "invalid-embedded-pid"
    NOT_A_SESSION_PROCESS = "not-a-session-process"
    NO_TERMINAL_ATTACHED = "no-terminal-attached"
    CONNECT_FAILED = "connect-failed"
    ACCEPTED = "accepted"


@dataclass(slots=True)
class Verdict:
    outcome: Outcome
    path: Path
    sock: socket.socket | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED


def _sorted_entries(path: Path) -> list[os.DirEntry[str]]:
    with os.scandir(path) as it:
        entries = list(it)
    entries.sort(key=lambda e: e.name)
    return entries


def _connect(path: Path) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(str(path))
    except OSError:
        sock.close()
        raise
    return sock


def embedded_pid(name: str) -> int | None:
    if not name.startswith(AGENT_SOCKET_PREFIX):
        return None
    digits = name[len(AGENT_SOCKET_PREFIX):]
    if not digits.isdigit():
        return None
    return int(digits)


class SocketResolver:
    def __init__(self, config: SwitcherConfig, inspector: ProcessInspector):
        self.logger = logging.getLogger("switcher.find")
        self.agents_dirs = config.agents_dirs
        self.home = config.home
        self.uid = config.uid
        self.inspector = inspector

    def _reject(self, outcome: Outcome, path: Path, reason: str) -> Verdict:
        self.logger.info("Ignoring %s: %s", path, reason)
        return Verdict(outcome, path)

    def _accept(self, path: Path, sock: socket.socket) -> Verdict:
        self.logger.info("Successfully opened SSH agent at %s", path)
        return Verdict(Outcome.ACCEPTED, path, sock=sock)

    def _open(self, path: Path) -> Verdict:
        try:
            sock = _connect(path)
        except OSError as exc:
            # The owning sshd may have exited since the directory was listed.
            return self._reject(Outcome.CONNECT_FAILED, path, f"open failed: {exc}")
        return self._accept(path, sock)

    def _check_socket_type(self, path: Path) -> Verdict | None:
        try:
            st = os.stat(path)
        except OSError as exc:
            return self._reject(Outcome.STAT_FAILED, path, f"stat failed: {exc}")
        if not stat.S_ISSOCK(st.st_mode):
            return self._reject(Outcome.NOT_A_SOCKET_FILE, path, "not a socket")
        return None

    def check_candidate(self, path: Path) -> Verdict:
        name = path.name
        if not name.startswith(AGENT_SOCKET_PREFIX):
            return self._reject(
                Outcome.WRONG_NAME_PREFIX, path, f"does not start with '{AGENT_SOCKET_PREFIX}'"
            )

        rejected = self._check_socket_type(path)
        if rejected is not None:
            return rejected

        pid = embedded_pid(name)
        if pid is None:
            return self._reject(Outcome.INVALID_EMBEDDED_PID, path, f"invalid socket path: {path}")
        if not self.inspector.is_session_process(pid):
            return self._reject(Outcome.NOT_A_SESSION_PROCESS, path, "not owned by sshd process")
        if not self.inspector.has_attached_terminal(pid):
            return self._reject(
                Outcome.NO_TERMINAL_ATTACHED, path, "owning sshd process does not have a PTS attached"
            )
        return self._open(path)

    def check_session_dir(self, path: Path) -> Verdict:
        try:
            entries = _sorted_entries(path)
        except OSError as exc:
            return self._reject(Outcome.NO_CANDIDATE_FOUND, path, f"no socket in directory: {exc}")
        for entry in entries:
            verdict = self.check_candidate(path / entry.name)
            if verdict.accepted:
                return verdict
        return self._reject(Outcome.NO_CANDIDATE_FOUND, path, "no socket in directory")

    def check_root_entry(self, entry: os.DirEntry[str]) -> Verdict:
        path = Path(entry.path)
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError as exc:
            return self._reject(Outcome.STAT_FAILED, path, f"stat failed: {exc}")
        if not is_dir:
            return self._reject(Outcome.NOT_A_DIRECTORY, path, "not a directory")
        if not entry.name.startswith(SESSION_DIR_PREFIX):
            return self._reject(
                Outcome.WRONG_NAME_PREFIX, path, f"does not start with '{SESSION_DIR_PREFIX}'"
            )
        try:
            st = os.stat(path)
        except OSError as exc:
            return self._reject(Outcome.STAT_FAILED, path, f"stat failed: {exc}")
        # Ownership is compared explicitly instead of relying on access checks.
        if st.st_uid != self.uid:
            return self._reject(
                Outcome.WRONG_OWNER, path, f"owner {st.st_uid} is not current user {self.uid}"
            )
        return self.check_session_dir(path)

    def _scan_home_dir(self, root: Path) -> Verdict | None:
        try:
            entries = _sorted_entries(root)
        except OSError as exc:
            self.logger.info("Skipping agents directory %s: %s", root, exc)
            return None
        for entry in entries:
            path = Path(entry.path)
            if HOME_SOCKET_INFIX not in entry.name:
                self.logger.debug("Ignoring %s: does not contain '%s'", path, HOME_SOCKET_INFIX)
                continue
            if self._check_socket_type(path) is not None:
                continue
            verdict = self._open(path)
            if verdict.accepted:
                return verdict
        return None

    def _scan_shared_dir(self, root: Path) -> Verdict | None:
        try:
            entries = _sorted_entries(root)
        except OSError as exc:
            self.logger.info("Skipping agents directory %s: %s", root, exc)
            return None
        for entry in entries:
            verdict = self.check_root_entry(entry)
            if verdict.accepted:
                return verdict
        self.logger.debug("No socket in directory %s", root)
        return None

    def _is_under_home(self, root: Path) -> bool:
        return self.home is not None and root.is_relative_to(self.home)

    def resolve(self) -> tuple[socket.socket, Path]:
        for root in self.agents_dirs:
            if self._is_under_home(root):
                self.logger.debug("Looking for an agent socket in %s with HOME naming scheme", root)
                verdict = self._scan_home_dir(root)
                if verdict is not None and verdict.sock is not None:
                    return verdict.sock, verdict.path

            self.logger.debug("Looking for an agent socket in %s subdirs", root)
            verdict = self._scan_shared_dir(root)
            if verdict is not None and verdict.sock is not None:
                return verdict.sock, verdict.path
        raise AgentNotFoundError("agent not found")
