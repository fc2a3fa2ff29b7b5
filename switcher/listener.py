from __future__ import annotations

import asyncio
import contextlib
import errno
import fcntl
import logging
import os
import socket
import sys
from pathlib import Path
from typing import Any, Iterator

from switcher.bridge import DataBridge
from switcher.config import SwitcherConfig
from switcher.find import AgentNotFoundError, SocketResolver
from switcher.process import ProcessInspector

LISTEN_BACKLOG = 128
# Neither group nor others may reach the socket, or the agent would be exposed.
LISTENER_UMASK = 0o177


class ListenerError(RuntimeError):
    pass


class AlreadyRunningError(ListenerError):
    pass


@contextlib.contextmanager
def _umask(mask: int) -> Iterator[None]:
    old = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old)


def _is_live_socket(path: Path) -> bool:
    client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        client.connect(str(path))
    except OSError:
        return False
    finally:
        client.close()
    return True


def _inode(path: Path) -> int | None:
    try:
        return os.lstat(path).st_ino
    except FileNotFoundError:
        return None


def _bind(path: Path) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        with _umask(LISTENER_UMASK):
            sock.bind(str(path))
    except OSError:
        sock.close()
        raise
    return sock


def _listen(sock: socket.socket, path: Path) -> socket.socket:
    try:
        sock.listen(LISTEN_BACKLOG)
    except OSError as exc:
        sock.close()
        with contextlib.suppress(OSError):
            os.unlink(path)
        raise ListenerError(f"Cannot listen on {path}: {exc}") from exc
    sock.setblocking(False)
    return sock


def reclaim_lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextlib.contextmanager
def _reclaim_lock(path: Path) -> Iterator[None]:
    # The lock file is left in place: unlinking it would let two instances
    # lock different inodes.
    lock_path = reclaim_lock_path(path)
    try:
        with _umask(LISTENER_UMASK):
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as exc:
        raise ListenerError(f"Cannot open {lock_path}: {exc}") from exc
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise AlreadyRunningError(f"{path} is being reclaimed by another instance") from exc
        yield
    finally:
        os.close(fd)


def _reclaim(path: Path) -> socket.socket:
    inode = _inode(path)
    if _is_live_socket(path):
        raise AlreadyRunningError(f"{path} is already served by a running instance")
    with _reclaim_lock(path):
        # Someone may have reclaimed the path between the check above and the lock.
        if _inode(path) != inode or _is_live_socket(path):
            raise AlreadyRunningError(f"{path} was claimed by another instance")
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ListenerError(f"Cannot remove stale {path}: {exc}") from exc
        try:
            sock = _bind(path)
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                raise AlreadyRunningError(f"{path} was claimed by another instance") from exc
            raise ListenerError(f"Cannot listen on {path}: {exc}") from exc
        # Listen before unlocking so the next reclaimer sees a live socket.
        return _listen(sock, path)


def create_listener(path: Path) -> socket.socket:
    try:
        sock = _bind(path)
    except OSError as exc:
        if exc.errno != errno.EADDRINUSE:
            raise ListenerError(f"Cannot listen on {path}: {exc}") from exc
        return _reclaim(path)
    return _listen(sock, path)


def inherit_listener(fd: int) -> socket.socket:
    try:
        sock = socket.socket(fileno=fd)
    except OSError as exc:
        raise ListenerError(f"Cannot use inherited socket {fd}: {exc}") from exc
    if sock.family != socket.AF_UNIX or sock.type != socket.SOCK_STREAM:
        sock.close()
        raise ListenerError(f"Inherited socket {fd} is not a Unix stream socket")
    sock.setblocking(False)
    return sock


def _close_resolved(fut: asyncio.Future[Any]) -> None:
    if fut.cancelled() or fut.exception() is not None:
        return
    sock, _ = fut.result()
    sock.close()


class SwitcherApp:
    def __init__(self, config: SwitcherConfig, inspector: ProcessInspector):
        self.logger = logging.getLogger("switcher.listener")
        self.config = config
        self.socket_path = config.socket_path
        self.resolver = SocketResolver(config, inspector)
        self.systemd_activated = False
        self.state = "unbound"
        self._sock: socket.socket | None = None
        self._server: asyncio.AbstractServer | None = None
        self._handlers: set[asyncio.Task[Any]] = set()
        self._stop_event = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._shutdown_done = False

    def bind(self) -> None:
        if self.config.listen_fd is None:
            self._sock = create_listener(self.socket_path)
        else:
            self._sock = inherit_listener(self.config.listen_fd)
            self.systemd_activated = True
            name = self._sock.getsockname()
            if isinstance(name, str) and name:
                self.socket_path = Path(name)
        self.logger.info("Listening on %s", self.socket_path)

    async def start(self) -> None:
        if self._sock is None:
            self.bind()
        kwargs: dict[str, Any] = {}
        if self.systemd_activated and sys.version_info >= (3, 13):
            kwargs["cleanup_socket"] = False
        try:
            self._server = await asyncio.start_unix_server(self._on_client, sock=self._sock, **kwargs)
        except Exception:
            await self._cleanup()
            raise
        self.state = "listening"
        await self._stop_event.wait()

    async def serve(self) -> None:
        try:
            await self.start()
        finally:
            await self.shutdown(reason="exit")

    def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.create_task(self.handle_connection(reader, writer), name="switcher-client")
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _open_agent(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        resolving = asyncio.ensure_future(asyncio.to_thread(self.resolver.resolve))
        try:
            sock, _ = await asyncio.shield(resolving)
        except asyncio.CancelledError:
            # The worker thread keeps running; close whatever it opens.
            resolving.add_done_callback(_close_resolved)
            raise
        try:
            sock.setblocking(False)
            return await asyncio.open_unix_connection(sock=sock)
        except BaseException:
            sock.close()
            raise

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.logger.debug("Accepted client connection")
        agent_writer: asyncio.StreamWriter | None = None
        try:
            try:
                agent_reader, agent_writer = await self._open_agent()
            except AgentNotFoundError as exc:
                self.logger.warning("Dropping connection: %s", exc)
                return
            bridge = DataBridge(reader, writer, agent_reader, agent_writer)
            await bridge.run()
            self.logger.info("Closing client connection")
        except asyncio.CancelledError:
            self.logger.debug("Client connection cancelled by shutdown")
            raise
        except Exception as exc:
            self.logger.warning("Dropping connection: %s", exc)
        finally:
            for w in (agent_writer, writer):
                if w is None:
                    continue
                w.close()
                with contextlib.suppress(Exception):
                    await w.wait_closed()

    async def _cleanup(self) -> None:
        if self._server is not None:
            self._server.close()
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        for task in handlers:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        if self._server is not None:
            with contextlib.suppress(Exception):
                await self._server.wait_closed()
            self._server = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self.systemd_activated:
            return
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.socket_path)

    async def shutdown(self, reason: str = "signal") -> None:
        async with self._shutdown_lock:
            if self._shutdown_done:
                return
            self._shutdown_done = True
            if self.state == "unbound" and self._sock is None:
                self.state = "terminated"
                self._stop_event.set()
                return
            self.state = "draining"
            if self.systemd_activated:
                self.logger.info("Shutting down (systemd owns %s)", self.socket_path)
            else:
                self.logger.info("Shutting down due to %s and deleting %s", reason, self.socket_path)
            await self._cleanup()
            self.state = "terminated"
            self._stop_event.set()

    @property
    def active_connections(self) -> int:
        return len(self._handlers)
