"""
Bank Node Server Module

Wires configuration, storage, the account store, the proxy forwarder, the
network monitor and the dispatcher together behind an asyncio TCP listener.
"""

import asyncio
import logging
from typing import Optional, Set

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface, create_async_storage
from .commands import CommandDispatcher
from .config import BankNodeConfig, get_config
from .network import NetworkMonitor, NetworkStatus
from .proxy import ProxyForwarder
from .session import ConnectionSession

logger = logging.getLogger("bank_node.server")


class BankNodeServer:
    """Accepts client connections and runs one session per connection"""

    def __init__(
        self,
        config: Optional[BankNodeConfig] = None,
        storage: Optional[AsyncStorageInterface] = None,
        forwarder: Optional[ProxyForwarder] = None,
        network: Optional[NetworkStatus] = None,
        monitor: Optional[NetworkMonitor] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_async_storage(self.config.storage_url)
        self.store = AccountStore(self.storage)
        self.forwarder = forwarder or ProxyForwarder(
            self.config.effective_remote_port,
            limit=self.config.max_line_length
        )
        self.network = network or NetworkStatus()
        if monitor is None and self.config.network_check_enabled:
            monitor = NetworkMonitor(self.network, self.config.network_check_interval)
        self.monitor = monitor
        self.dispatcher = CommandDispatcher(
            self.store,
            self.forwarder,
            self.network,
            response_timeout=self.config.response_timeout,
            proxy_timeout=self.config.effective_proxy_timeout,
            commit_timeout=self.config.effective_commit_timeout
        )
        self._server: Optional[asyncio.Server] = None
        self._sessions: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """Port actually bound (differs from config when it asked for 0)"""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Server is not listening")
        return self._server.sockets[0].getsockname()[1]

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = ConnectionSession(
            reader,
            writer,
            self.dispatcher,
            idle_timeout=self.config.client_idle_timeout,
            bank_code=self.config.bank_code
        )
        task = asyncio.current_task()
        self._sessions.add(task)
        try:
            await session.run()
        finally:
            self._sessions.discard(task)

    async def start(self) -> None:
        if self.monitor is not None:
            self.monitor.start()
        self._server = await asyncio.start_server(
            self._handle_client,
            host=self.config.host,
            port=self.config.port,
            limit=self.config.max_line_length
        )
        logger.info(f"Bank server started on {self.config.host}:{self.port}")

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        for task in list(self._sessions):
            task.cancel()
        if self._sessions:
            await asyncio.gather(*self._sessions, return_exceptions=True)
        if server is not None:
            await server.wait_closed()
        if self.monitor is not None:
            await self.monitor.stop()
        await self.storage.close()
        logger.info("Bank server stopped")

    async def serve_forever(self) -> None:
        """Start, serve until cancelled, then stop"""
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()
