"""
Wire Protocol Module

Grammar of the line protocol: request parsing, argument validation, reply
formatting and the error taxonomy. Every error knows the `ER` line it is
answered with, so the dispatcher never has to map exceptions to text.
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import Optional, Tuple

LINE_TERMINATOR = "\r\n"
ERROR_PREFIX = "ER"
GOODBYE = "OK Goodbye"

ACCOUNT_NUMBER_MIN = 10000
ACCOUNT_NUMBER_MAX = 99999

_ACCOUNT_NUMBER = re.compile(r"^[0-9]{5}$")
# Far below the interpreter's int<->str conversion limit, so balances stay printable
MAX_AMOUNT_DIGITS = 4000
_AMOUNT = re.compile(r"^[0-9]+$")


class BankNodeError(Exception):
    """Base class for every error that is answered with an `ER` line"""

    message = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.message)
        self.detail = detail

    @property
    def reply(self) -> str:
        return f"{ERROR_PREFIX} {self.message}"


class BadFormat(BankNodeError):
    message = "Invalid command format"


class InvalidAmount(BadFormat):
    """Amount is not a non-negative integer"""


class UnknownCommand(BankNodeError):
    message = "Unknown command"


class NetworkUnavailable(BankNodeError):
    message = "Network is not connected, commands are blocked"


class NotFound(BankNodeError):
    message = "Account does not exist"


class InsufficientFunds(BankNodeError):
    message = "Insufficient funds"


class NotOwner(BankNodeError):
    message = "Account can only be removed by its creator from the original IP address"


class NonZeroBalance(BankNodeError):
    message = "Cannot remove an account that still holds funds"


class AccountSpaceExhausted(BankNodeError):
    message = "No free account numbers left"


class CommandTimeout(BankNodeError):
    message = "Operation took too long"


class ProxyTimeout(BankNodeError):
    message = "Remote bank did not respond in time"


class ProxyConnectError(BankNodeError):
    message = "Could not communicate with remote bank"


@dataclass(frozen=True)
class CommandRequest:
    """One parsed protocol line"""
    verb: str
    args: Tuple[str, ...]
    line: str

    def expect_args(self, count: int) -> Tuple[str, ...]:
        if len(self.args) != count:
            raise BadFormat(f"{self.verb} takes {count} argument(s), got {len(self.args)}")
        return self.args


@dataclass(frozen=True)
class AccountAddress:
    """`<account number>/<bank code>` as written on the wire"""
    account_number: str
    bank_code: str

    def __str__(self) -> str:
        return f"{self.account_number}/{self.bank_code}"


def parse_line(line: str) -> Optional[CommandRequest]:
    """Split a line into verb and arguments; None for a blank line"""
    stripped = line.strip()
    if not stripped:
        return None
    verb, *args = stripped.split()
    return CommandRequest(verb=verb, args=tuple(args), line=stripped)


def normalize_address(address: str) -> str:
    """Strip the IPv4-mapped IPv6 prefix so `::ffff:10.0.0.5` reads `10.0.0.5`"""
    if address.lower().startswith("::ffff:") and "." in address:
        return address[7:]
    return address


def parse_account_number(text: str) -> str:
    if not _ACCOUNT_NUMBER.match(text):
        raise BadFormat(f"Account number must have 5 digits: {text!r}")
    if not ACCOUNT_NUMBER_MIN <= int(text) <= ACCOUNT_NUMBER_MAX:
        raise BadFormat(f"Account number out of range: {text!r}")
    return text


def parse_bank_code(text: str) -> str:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        raise BadFormat(f"Bank code is not an IP address: {text!r}") from None
    return text


def parse_account_address(text: str) -> AccountAddress:
    account_number, sep, bank_code = text.partition("/")
    if not sep:
        raise BadFormat(f"Expected <account>/<bank code>: {text!r}")
    return AccountAddress(
        account_number=parse_account_number(account_number),
        bank_code=parse_bank_code(bank_code)
    )


def parse_amount(value) -> int:
    """Accept an int or a string of ASCII digits; anything else is InvalidAmount"""
    if isinstance(value, bool):
        raise InvalidAmount(f"Not an amount: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise InvalidAmount(f"Amount must not be negative: {value}")
        return value
    if isinstance(value, str) and _AMOUNT.match(value):
        if len(value) > MAX_AMOUNT_DIGITS:
            raise InvalidAmount(f"Amount has more than {MAX_AMOUNT_DIGITS} digits")
        return int(value)
    raise InvalidAmount(f"Not an amount: {value!r}")


def format_reply(verb: str, *values) -> str:
    return " ".join([verb, *(str(value) for value in values)])


def is_error_reply(reply: str) -> bool:
    return reply == ERROR_PREFIX or reply.startswith(ERROR_PREFIX + " ")
