from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from common.config import ConfigError, load_yaml, reject_unknown_keys

APP_NAME = "ssh-agent-switcher"
PROC_DIR_ENV = "PROCESS_OVERRIDE_PROC_DIR"
DEFAULT_PROC_DIR = Path("/proc")
# First descriptor passed by systemd socket activation.
SD_LISTEN_FDS_START = 3

_YAML_KEYS = {"socket_path", "agents_dirs", "log_file", "pid_file", "log_level", "daemon"}


@dataclass(frozen=True, slots=True)
class SwitcherConfig:
    socket_path: Path
    agents_dirs: tuple[Path, ...]
    proc_dir: Path
    uid: int
    home: Path | None = None
    log_file: Path | None = None
    pid_file: Path | None = None
    daemon: bool = False
    log_level: str = "info"
    listen_fd: int | None = None


def _required_env(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "")
    if not value:
        raise ConfigError(f"{name} is not set; cannot compute default")
    return value


def default_socket_path(env: Mapping[str, str]) -> Path:
    return Path(f"/tmp/ssh-agent.{_required_env(env, 'USER')}")


def default_agents_dirs(env: Mapping[str, str]) -> tuple[Path, ...]:
    # OpenSSH 10.1 moved agent sockets from /tmp into the home directory.
    home = _required_env(env, "HOME")
    return (Path(home) / ".ssh" / "agent", Path("/tmp"))


def _state_dir(env: Mapping[str, str]) -> Path:
    xdg = env.get("XDG_STATE_HOME", "")
    if xdg:
        return Path(xdg)
    return Path(_required_env(env, "HOME")) / ".local" / "state"


def default_log_file(env: Mapping[str, str]) -> Path:
    return _state_dir(env) / f"{APP_NAME}.log"


def default_pid_file(env: Mapping[str, str]) -> Path:
    runtime = env.get("XDG_RUNTIME_DIR", "")
    if runtime:
        return Path(runtime) / f"{APP_NAME}.pid"
    # XDG_RUNTIME_DIR is commonly unset on BSDs.
    return _state_dir(env) / f"{APP_NAME}.pid"


def parse_agents_dirs(value: Any) -> tuple[Path, ...]:
    if isinstance(value, str):
        parts = value.split(":")
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        raise ConfigError("agents_dirs must be a colon-separated string or a list")
    dirs = tuple(Path(p) for p in parts if p)
    if not dirs:
        raise ConfigError("agents_dirs must name at least one directory")
    return dirs


def proc_dir_from_env(env: Mapping[str, str]) -> Path:
    override = env.get(PROC_DIR_ENV, "")
    return Path(override) if override else DEFAULT_PROC_DIR


def listen_fd_from_env(env: Mapping[str, str]) -> int | None:
    count = env.get("LISTEN_FDS", "")
    if not count:
        return None
    try:
        n = int(count)
    except ValueError:
        raise ConfigError(f"LISTEN_FDS is not a number: {count!r}") from None
    pid = env.get("LISTEN_PID", "")
    # LISTEN_PID is only checked when present.
    if n < 1 or (pid and pid != str(os.getpid())):
        return None
    return SD_LISTEN_FDS_START


def build_config(args: argparse.Namespace, env: Mapping[str, str] | None = None) -> SwitcherConfig:
    """Merges defaults, the optional YAML file and command line flags, in that order."""
    if env is None:
        env = os.environ

    file_cfg: dict[str, Any] = {}
    if getattr(args, "config", None):
        file_cfg = load_yaml(args.config)
        reject_unknown_keys(file_cfg, _YAML_KEYS, where=args.config)

    def pick(name: str) -> Any:
        value = getattr(args, name, None)
        if value is not None:
            return value
        return file_cfg.get(name)

    socket_path = pick("socket_path")
    agents_dirs = pick("agents_dirs")
    log_file = pick("log_file")
    pid_file = pick("pid_file")
    daemon = bool(getattr(args, "daemon", False) or file_cfg.get("daemon", False))

    home = env.get("HOME", "")
    return SwitcherConfig(
        socket_path=Path(socket_path) if socket_path else default_socket_path(env),
        agents_dirs=parse_agents_dirs(agents_dirs) if agents_dirs else default_agents_dirs(env),
        proc_dir=proc_dir_from_env(env),
        uid=os.getuid(),
        home=Path(home) if home else None,
        log_file=Path(log_file) if log_file else (default_log_file(env) if daemon else None),
        pid_file=Path(pid_file) if pid_file else (default_pid_file(env) if daemon else None),
        daemon=daemon,
        log_level=str(pick("log_level") or "info"),
        listen_fd=listen_fd_from_env(env),
    )
