from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from common.config import ConfigError
from common.log import setup_logging
from switcher.config import APP_NAME, SwitcherConfig, build_config
from switcher.daemon import MAX_CHILD_WAIT, PidFile, PidFileLocked, detach, read_pid, wait_for_file
from switcher.listener import AlreadyRunningError, ListenerError, SwitcherApp
from switcher.process import make_inspector

logger = logging.getLogger("switcher.main")


def _install_signal_handlers(app: SwitcherApp) -> None:
    loop = asyncio.get_running_loop()

    # Survive the exit of the shell that started us.
    signal.signal(signal.SIGHUP, signal.SIG_IGN)

    async def _shutdown() -> None:
        await app.shutdown(reason="signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


async def _amain(config: SwitcherConfig) -> None:
    app = SwitcherApp(config, make_inspector(config))
    _install_signal_handlers(app)
    await app.serve()


def run(config: SwitcherConfig) -> int:
    """Serves until a termination signal; returns the process exit code."""
    try:
        asyncio.run(_amain(config))
    except AlreadyRunningError as exc:
        logger.info("Already running: %s", exc)
        return 0
    except (ListenerError, ConfigError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


def _daemon_parent(config: SwitcherConfig) -> int:
    assert config.log_file is not None and config.pid_file is not None
    logger.info("Log file: %s", config.log_file)
    logger.info("PID file: %s", config.pid_file)
    try:
        pid = wait_for_file(config.pid_file, MAX_CHILD_WAIT, read_pid)
        logger.info("PID is: %d", pid)
        wait_for_file(config.socket_path, MAX_CHILD_WAIT, Path.stat)
    except TimeoutError as exc:
        logger.error("Daemon failed to start on time: %s", exc)
        return 1
    return 0


def _daemon_child(config: SwitcherConfig) -> int:
    assert config.pid_file is not None
    try:
        pid_file = PidFile(config.pid_file).acquire()
    except PidFileLocked as exc:
        logger.info("Already running: %s", exc)
        return 0
    try:
        return run(config)
    finally:
        pid_file.release()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Serves a stable SSH agent socket that proxies to the agent of any live sshd session.",
    )
    parser.add_argument("--config", help="path to an optional yaml config")
    parser.add_argument("--socket-path", dest="socket_path", help="path to the socket to listen on")
    parser.add_argument(
        "--agents-dirs",
        dest="agents_dirs",
        metavar="DIR1:..:DIRN",
        help="colon-separated list of directories where to look for running agents",
    )
    parser.add_argument("--daemon", action="store_true", default=None, help="run in the background")
    parser.add_argument("--log-file", dest="log_file", help="path to the file where to write logs")
    parser.add_argument("--pid-file", dest="pid_file", help="path to the PID file to create")
    parser.add_argument("--log-level", dest="log_level", help="logging level (default: info)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"{APP_NAME}: {exc}", file=sys.stderr)
        return 1

    if not config.daemon:
        setup_logging(config.log_level)
        if config.log_file is not None or config.pid_file is not None:
            logger.info("Running in the foreground: ignoring --log-file and --pid-file")
        return run(config)

    assert config.log_file is not None
    if detach(config.log_file):
        setup_logging(config.log_level)
        return _daemon_parent(config)
    setup_logging(config.log_level, config.log_file)
    return _daemon_child(config)


if __name__ == "__main__":
    sys.exit(main())
