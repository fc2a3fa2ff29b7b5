from __future__ import annotations

import asyncio
import contextlib
import logging

CHUNK_SIZE = 65536


class DataBridge:
    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        agent_reader: asyncio.StreamReader,
        agent_writer: asyncio.StreamWriter,
    ):
        self.logger = logging.getLogger("switcher.bridge")
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.agent_reader = agent_reader
        self.agent_writer = agent_writer
        self._tasks: list[asyncio.Task[int]] = []

    async def _pipe(self, src: asyncio.StreamReader, dst: asyncio.StreamWriter, direction: str) -> int:
        total = 0
        while True:
            chunk = await src.read(CHUNK_SIZE)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
            total += len(chunk)
        self.logger.debug("%s reached end of stream after %d bytes", direction, total)
        if dst.can_write_eof():
            with contextlib.suppress(OSError):
                dst.write_eof()
        return total

    async def run(self) -> None:
        to_agent = asyncio.create_task(
            self._pipe(self.client_reader, self.agent_writer, "client->agent"), name="bridge-c2a"
        )
        to_client = asyncio.create_task(
            self._pipe(self.agent_reader, self.client_writer, "agent->client"), name="bridge-a2c"
        )
        self._tasks = [to_agent, to_client]
        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            if to_agent in done and to_agent.exception() is None:
                # Client finished sending; wait for the agent to finish answering.
                await to_client
            else:
                for task in done:
                    task.result()
        finally:
            await self.cancel()

    async def cancel(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
