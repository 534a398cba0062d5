"""
Command Dispatcher Module

Turns one protocol line into one reply line. Each verb in the static command
table plans the line into one of three operation kinds:

- MetaOp: answered from the connection context alone (BC, exit)
- LocalStoreOp: runs against the local account store (AC, AR, BA, BN and
  AD/AW/AB for this bank)
- ProxyOp: forwarded verbatim to the bank that owns the account (AD/AW/AB
  for another bank)

The planned operation then runs under the response deadline.
"""

import asyncio
import ipaddress
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Optional, Union

from .accounts import AccountStore
from .cancellation import CancellationToken
from .logging_config import get_logger, log_action
from .network import NetworkStatus
from .protocol import (
    GOODBYE, BankNodeError, CommandRequest, CommandTimeout, NetworkUnavailable,
    UnknownCommand, format_reply, parse_account_address, parse_amount, parse_line
)
from .proxy import ProxyForwarder

logger = get_logger("bank_node.commands")


@dataclass(frozen=True)
class Reply:
    """One response line; close asks the session to hang up after writing it"""
    line: str
    close: bool = False


@dataclass(frozen=True)
class CommandContext:
    """What a command may know about the connection it arrived on"""
    peer: str
    bank_code: str
    connection_id: Optional[str] = None


@dataclass(frozen=True)
class MetaOp:
    reply: Reply


@dataclass(frozen=True)
class LocalStoreOp:
    action: Callable[[CancellationToken], Awaitable[str]]


@dataclass(frozen=True)
class ProxyOp:
    bank_code: str
    line: str


Operation = Union[MetaOp, LocalStoreOp, ProxyOp]


def same_bank(bank_code: str, other: str) -> bool:
    """Compare bank codes as addresses, so equivalent IPv6 spellings match"""
    try:
        return ipaddress.ip_address(bank_code) == ipaddress.ip_address(other)
    except ValueError:
        return bank_code == other


def _abandon(task: asyncio.Future) -> None:
    task.cancel()
    # Retrieve the outcome so a late failure is not reported as unhandled
    task.add_done_callback(lambda t: t.cancelled() or t.exception())


def _log_late_outcome(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Write finished after its reply was sent and failed: {error!r}")
    else:
        logger.warning(f"Write finished after its reply was sent: {task.result().line}")


class CommandDispatcher:
    """
    Parses, routes and executes protocol commands
    """

    def __init__(
        self,
        store: AccountStore,
        forwarder: ProxyForwarder,
        network: NetworkStatus,
        response_timeout: float,
        proxy_timeout: Optional[float] = None,
        commit_timeout: Optional[float] = None
    ):
        self.store = store
        self.forwarder = forwarder
        self.network = network
        self.response_timeout = response_timeout
        self.proxy_timeout = proxy_timeout if proxy_timeout is not None else response_timeout * 0.8
        # Extra wait granted to a write that began before the deadline fired
        self.commit_timeout = commit_timeout if commit_timeout is not None else response_timeout

    async def dispatch(self, line: str, ctx: CommandContext) -> Optional[Reply]:
        """
        Handle one protocol line

        Args:
            line: Raw line without its terminator
            ctx: Connection the line arrived on

        Returns:
            The reply to write, or None for a blank line
        """
        request = parse_line(line)
        if request is None:
            return None

        resource = request.args[0] if request.args else None
        try:
            if not self.network.available:
                raise NetworkUnavailable()

            planner = self.COMMANDS.get(request.verb)
            if planner is None:
                raise UnknownCommand(f"Unknown verb {request.verb!r}")

            operation = planner(self, request, ctx)
            reply = await self._run_with_deadline(operation)
        except BankNodeError as e:
            log_action(
                logger, "warning", f"{request.verb} from {ctx.peer} failed: {e}",
                client=ctx.peer, action=request.verb, resource=resource,
                connection_id=ctx.connection_id, extra={"error": type(e).__name__}
            )
            return Reply(e.reply)
        except Exception:
            logger.exception(f"Unexpected error handling {request.verb!r} from {ctx.peer}")
            return Reply(BankNodeError().reply)

        log_action(
            logger, "info", f"{request.verb} from {ctx.peer}: {reply.line}",
            client=ctx.peer, action=request.verb, resource=resource,
            connection_id=ctx.connection_id
        )
        return reply

    async def _run_with_deadline(self, operation: Operation) -> Reply:
        token = CancellationToken()
        task = asyncio.ensure_future(self._execute(operation, token))
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(task), self.response_timeout)
            except asyncio.TimeoutError:
                if task.done():
                    return task.result()
                if token.cancel():
                    raise CommandTimeout(f"No result within {self.response_timeout}s") from None

            # The write already began and cannot be stopped; wait a bounded while for it
            try:
                return await asyncio.wait_for(asyncio.shield(task), self.commit_timeout)
            except asyncio.TimeoutError:
                raise CommandTimeout(
                    f"Write still running {self.response_timeout + self.commit_timeout}s after start"
                ) from None
        finally:
            if not task.done():
                if token.cancel():
                    _abandon(task)
                else:
                    task.add_done_callback(_log_late_outcome)

    async def _execute(self, operation: Operation, token: CancellationToken) -> Reply:
        if isinstance(operation, MetaOp):
            return operation.reply
        if isinstance(operation, LocalStoreOp):
            return Reply(await operation.action(token))
        if isinstance(operation, ProxyOp):
            reply = await self.forwarder.forward(
                operation.bank_code, operation.line, self.proxy_timeout, token
            )
            return Reply(reply)
        raise TypeError(f"Unsupported operation: {operation!r}")

    # Planners: validate arguments and choose the operation, no I/O

    def _plan_bank_code(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        request.expect_args(0)
        return MetaOp(Reply(format_reply("BC", ctx.bank_code)))

    def _plan_create(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        request.expect_args(0)

        async def create(token: CancellationToken) -> str:
            account = await self.store.create(ctx.peer, token)
            return format_reply("AC", f"{account.account_number}/{ctx.bank_code}")

        return LocalStoreOp(create)

    def _plan_deposit(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        return self._plan_balance_change(request, ctx, self.store.deposit)

    def _plan_withdraw(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        return self._plan_balance_change(request, ctx, self.store.withdraw)

    def _plan_balance_change(self, request: CommandRequest, ctx: CommandContext, change) -> Operation:
        target_text, amount_text = request.expect_args(2)
        target = parse_account_address(target_text)
        if not same_bank(target.bank_code, ctx.bank_code):
            return ProxyOp(target.bank_code, request.line)

        amount = parse_amount(amount_text)

        async def apply(token: CancellationToken) -> str:
            await change(target.account_number, amount, token)
            return request.verb

        return LocalStoreOp(apply)

    def _plan_balance(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        (target_text,) = request.expect_args(1)
        target = parse_account_address(target_text)
        if not same_bank(target.bank_code, ctx.bank_code):
            return ProxyOp(target.bank_code, request.line)

        async def balance(token: CancellationToken) -> str:
            return format_reply("AB", await self.store.balance(target.account_number))

        return LocalStoreOp(balance)

    def _plan_remove(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        # Never forwarded: ownership can only be checked where the account lives
        (target_text,) = request.expect_args(1)
        target = parse_account_address(target_text)

        async def remove(token: CancellationToken) -> str:
            await self.store.remove(target.account_number, ctx.peer, token)
            return "AR"

        return LocalStoreOp(remove)

    def _plan_bank_amount(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        request.expect_args(0)

        async def total(token: CancellationToken) -> str:
            return format_reply("BA", await self.store.total_balance())

        return LocalStoreOp(total)

    def _plan_bank_clients(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        request.expect_args(0)

        async def count(token: CancellationToken) -> str:
            return format_reply("BN", await self.store.account_count())

        return LocalStoreOp(count)

    def _plan_exit(self, request: CommandRequest, ctx: CommandContext) -> Operation:
        return MetaOp(Reply(GOODBYE, close=True))

    COMMANDS = MappingProxyType({
        "BC": _plan_bank_code,
        "AC": _plan_create,
        "AD": _plan_deposit,
        "AW": _plan_withdraw,
        "AB": _plan_balance,
        "AR": _plan_remove,
        "BA": _plan_bank_amount,
        "BN": _plan_bank_clients,
        "exit": _plan_exit,
    })
