"""
Proxy Forwarder Module

Client side of the bank-to-bank hop: sends one command line to the bank that
hosts the target account and returns that bank's single-line reply.
"""

import asyncio
import logging
import time
from typing import Optional

from .cancellation import CancellationToken
from .protocol import LINE_TERMINATOR, ProxyConnectError, ProxyTimeout, is_error_reply

logger = logging.getLogger("bank_node.proxy")


class ProxyForwarder:
    """Opens a fresh connection per forwarded command; no pooling"""

    def __init__(self, port: int, limit: int = 64 * 1024):
        self.port = port
        self.limit = limit

    async def forward(
        self,
        bank_code: str,
        line: str,
        timeout: float,
        token: Optional[CancellationToken] = None
    ) -> str:
        """
        Forward a command line to another bank

        Args:
            bank_code: Address of the remote bank
            line: Command line exactly as the client sent it
            timeout: Bound on connecting plus waiting for the reply (seconds)
            token: Cancellation token of the calling command

        Returns:
            The remote reply with surrounding whitespace removed

        Raises:
            ProxyTimeout: If the remote bank does not answer in time
            ProxyConnectError: If the connection fails or closes without a reply
        """
        if token is not None:
            token.raise_if_cancelled()

        start = time.monotonic()
        try:
            reply = await asyncio.wait_for(self._round_trip(bank_code, line), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Bank {bank_code}:{self.port} did not answer within {timeout}s")
            raise ProxyTimeout(f"No reply from {bank_code} within {timeout}s") from None
        except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
            logger.error(f"Proxy error ({bank_code}:{self.port}): {e}")
            raise ProxyConnectError(f"{bank_code}:{self.port}: {e}") from e

        latency_ms = (time.monotonic() - start) * 1000
        logger.debug(f"Bank {bank_code} answered in {latency_ms:.1f} ms")
        if is_error_reply(reply):
            logger.info(f"Bank {bank_code} refused the command: {reply}")
        return reply

    async def _round_trip(self, bank_code: str, line: str) -> str:
        reader, writer = await asyncio.open_connection(bank_code, self.port, limit=self.limit)
        try:
            writer.write((line + LINE_TERMINATOR).encode("utf-8"))
            await writer.drain()

            raw = await reader.readline()
            if not raw:
                raise ConnectionResetError("connection closed before a reply arrived")
            return raw.decode("utf-8", errors="replace").strip()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
