"""
Network Availability Module

A process-wide availability flag with a single writer (the monitor) and any
number of readers (the command dispatchers), plus the poller that keeps it
current. When no non-loopback IPv4 interface exists, commands are refused.
"""

import asyncio
import ipaddress
import logging
import socket
import struct
import sys
from typing import Callable, Iterable, Optional, Set

logger = logging.getLogger("bank_node.network")

# Documentation address (RFC 5737); connecting a UDP socket sends nothing
_PROBE_ADDRESS = ("192.0.2.1", 9)

# ioctl returning the IPv4 address bound to an interface (linux/sockios.h)
_SIOCGIFADDR = 0x8915


def _linux_interface_addresses() -> Set[str]:
    import fcntl

    addresses = set()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        for _, name in socket.if_nameindex():
            request = struct.pack("256s", name.encode("utf-8")[:15])
            try:
                result = fcntl.ioctl(sock.fileno(), _SIOCGIFADDR, request)
            except OSError:
                # Interface is down or has no IPv4 address
                continue
            addresses.add(socket.inet_ntoa(result[20:24]))
    return addresses


def _hostname_addresses() -> Set[str]:
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        return set()
    return {info[4][0] for info in infos}


def _route_address() -> Set[str]:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(_PROBE_ADDRESS)
        except OSError:
            return set()
        return {sock.getsockname()[0]}


def local_ipv4_addresses() -> Set[str]:
    """
    IPv4 addresses assigned to this host

    Interfaces are listed directly on Linux. Everywhere, the addresses the
    host name resolves to and the source address of the default route are
    added, so a host without a gateway still reports its LAN address.
    """
    addresses = set()
    if sys.platform.startswith("linux"):
        try:
            addresses |= _linux_interface_addresses()
        except OSError as e:
            logger.debug(f"Cannot list network interfaces: {e}")
    addresses |= _hostname_addresses()
    addresses |= _route_address()
    return addresses


def is_external_ipv4(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.version == 4 and not (ip.is_loopback or ip.is_unspecified)


def has_external_ipv4(addresses: Optional[Iterable[str]] = None) -> bool:
    """True if any IPv4 interface other than loopback has an address"""
    if addresses is None:
        addresses = local_ipv4_addresses()
    return any(is_external_ipv4(address) for address in addresses)


class NetworkStatus:
    """Availability cell; only the monitor calls set()"""

    def __init__(self, available: bool = True):
        self._available = available

    @property
    def available(self) -> bool:
        return self._available

    def set(self, available: bool) -> None:
        if available != self._available:
            if available:
                logger.info("Network connection restored")
            else:
                logger.warning("No network connection detected, commands are blocked")
        self._available = available


class NetworkMonitor:
    """Polls the interfaces every interval and writes the result to a NetworkStatus"""

    def __init__(
        self,
        status: NetworkStatus,
        interval: float = 30.0,
        probe: Callable[[], bool] = has_external_ipv4
    ):
        self.status = status
        self.interval = interval
        self.probe = probe
        self._task: Optional[asyncio.Task] = None

    def check(self) -> bool:
        available = self.probe()
        self.status.set(available)
        return available

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                # Host name lookups can block, keep them off the event loop
                self.status.set(await asyncio.to_thread(self.probe))
            except Exception:
                logger.exception("Network check failed")

    def start(self) -> None:
        """Check once right away, then keep polling in the background"""
        if self._task is not None:
            return
        self.check()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Network monitoring started (interval {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Network monitoring stopped")
