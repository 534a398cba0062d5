"""
Connection Session Module

Owns one client connection: frames the byte stream into lines, feeds them to
the dispatcher one at a time and writes each reply back CRLF-terminated.
"""

import asyncio
import logging
import uuid
from typing import Optional

from .commands import CommandContext, CommandDispatcher
from .protocol import LINE_TERMINATOR, normalize_address

logger = logging.getLogger("bank_node.session")


def _host(address) -> Optional[str]:
    if not address:
        return None
    host = address[0] if isinstance(address, tuple) else str(address)
    return normalize_address(host)


class ConnectionSession:
    """
    Serves one client until it says exit, goes idle, disconnects or errors
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        dispatcher: CommandDispatcher,
        idle_timeout: float,
        bank_code: Optional[str] = None
    ):
        self.reader = reader
        self.writer = writer
        self.dispatcher = dispatcher
        self.idle_timeout = idle_timeout
        self.connection_id = uuid.uuid4().hex[:8]

        self.peer = _host(writer.get_extra_info("peername")) or "unknown"
        peer_port = (writer.get_extra_info("peername") or (None, None))[1]
        self.remote_info = f"{self.peer}:{peer_port}"

        # Without a configured bank code the node answers as the address the client dialed
        local = _host(writer.get_extra_info("sockname")) or "127.0.0.1"
        self.context = CommandContext(
            peer=self.peer,
            bank_code=bank_code or local,
            connection_id=self.connection_id
        )

    async def _read_line(self) -> Optional[str]:
        """Next line without its terminator; None at end of stream"""
        raw = await asyncio.wait_for(self.reader.readline(), self.idle_timeout)
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def _write_line(self, line: str) -> None:
        self.writer.write((line + LINE_TERMINATOR).encode("utf-8"))
        await self.writer.drain()

    async def run(self) -> None:
        logger.info(f"Client connected: {self.remote_info}")
        try:
            while True:
                try:
                    line = await self._read_line()
                except asyncio.TimeoutError:
                    logger.warning(f"Client {self.remote_info} disconnected for inactivity")
                    break
                if line is None:
                    logger.info(f"Client {self.remote_info} closed the connection")
                    break

                reply = await self.dispatcher.dispatch(line, self.context)
                if reply is None:
                    continue
                await self._write_line(reply.line)
                if reply.close:
                    logger.info(f"Client {self.remote_info} ended the session")
                    break
        except (ConnectionError, OSError) as e:
            logger.error(f"Socket error ({self.remote_info}): {e}")
        except (asyncio.LimitOverrunError, ValueError) as e:
            logger.error(f"Client {self.remote_info} sent an over-long line: {e}")
        finally:
            await self.close()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
