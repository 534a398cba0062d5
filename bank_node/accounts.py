"""
Account Management Module

Keyed balance storage with ownership metadata. Each account is an explicit
record {account_number, owner, balance}; balances are exact Python integers
and never go below zero.

Mutations on one account number are serialized by a per-account lock, and
the existence check, read and write all happen inside that locked section.
Every mutation asks its cancellation token for permission right before the
durable write, so an operation whose deadline already fired never lands late.
"""

import asyncio
import logging
import random
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .async_storage import AsyncStorageInterface
from .cancellation import CancellationToken
from .protocol import (
    ACCOUNT_NUMBER_MAX, ACCOUNT_NUMBER_MIN, AccountSpaceExhausted,
    InsufficientFunds, NonZeroBalance, NotFound, NotOwner,
    normalize_address, parse_amount
)
from .storage import StorageRecord

logger = logging.getLogger("bank_node.accounts")


@dataclass
class Account(StorageRecord):
    """
    Bank account owned by the client address that created it
    """
    owner: str
    balance: int = 0

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    @property
    def account_number(self) -> str:
        return self.id


class AccountStore:
    """
    Creates, mutates and removes accounts on top of an async storage backend
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        rng: Optional[random.Random] = None
    ):
        self.storage = storage
        self.accounts_table = "accounts"
        self._random = rng or random.SystemRandom()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, account_number: str) -> asyncio.Lock:
        lock = self._locks.get(account_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_number] = lock
        return lock

    async def _load(self, account_number: str) -> Account:
        data = await self.storage.load(self.accounts_table, account_number)
        if data is None:
            raise NotFound(f"Account {account_number} not found")
        return Account.from_dict(data)

    async def get(self, account_number: str) -> Account:
        """Return the full account record"""
        return await self._load(account_number)

    async def create(self, owner: str, token: Optional[CancellationToken] = None) -> Account:
        """
        Create a new account with balance 0

        Args:
            owner: Address of the creating client
            token: Cancellation token of the calling command

        Returns:
            The stored account

        Raises:
            AccountSpaceExhausted: If every account number is taken
            OperationCancelled: If the command's deadline fired first
        """
        if token is None:
            token = CancellationToken()
        owner = normalize_address(owner)

        capacity = ACCOUNT_NUMBER_MAX - ACCOUNT_NUMBER_MIN + 1
        if await self.storage.count(self.accounts_table) >= capacity:
            raise AccountSpaceExhausted()

        while True:
            token.raise_if_cancelled()
            account_number = str(self._random.randint(ACCOUNT_NUMBER_MIN, ACCOUNT_NUMBER_MAX))
            async with self._lock_for(account_number):
                if await self.storage.exists(self.accounts_table, account_number):
                    continue

                now = datetime.now(timezone.utc)
                account = Account(
                    id=account_number,
                    created_at=now,
                    updated_at=now,
                    owner=owner,
                    balance=0
                )
                token.begin_commit()
                # Storage-level insert-if-absent guards against other writers
                if await self.storage.insert(self.accounts_table, account_number, account.to_dict()):
                    logger.info(f"Created account {account_number} for {owner}")
                    return account

    async def _mutate(
        self,
        account_number: str,
        change: Callable[[int], int],
        token: Optional[CancellationToken]
    ) -> int:
        if token is None:
            token = CancellationToken()

        async with self._lock_for(account_number):
            account = await self._load(account_number)
            new_balance = change(account.balance)

            token.begin_commit()
            account.balance = new_balance
            account.updated_at = datetime.now(timezone.utc)
            await self.storage.save(self.accounts_table, account_number, account.to_dict())
            return new_balance

    async def deposit(
        self,
        account_number: str,
        amount,
        token: Optional[CancellationToken] = None
    ) -> int:
        """Add amount to the balance and return the new balance"""
        amount = parse_amount(amount)
        new_balance = await self._mutate(account_number, lambda balance: balance + amount, token)
        logger.info(f"Deposit to account {account_number}: {amount}")
        return new_balance

    async def withdraw(
        self,
        account_number: str,
        amount,
        token: Optional[CancellationToken] = None
    ) -> int:
        """Subtract amount from the balance and return the new balance"""
        amount = parse_amount(amount)

        def debit(balance: int) -> int:
            if balance < amount:
                raise InsufficientFunds(
                    f"Account {account_number} holds {balance}, cannot withdraw {amount}"
                )
            return balance - amount

        new_balance = await self._mutate(account_number, debit, token)
        logger.info(f"Withdrawal from account {account_number}: {amount}")
        return new_balance

    async def balance(self, account_number: str) -> int:
        account = await self._load(account_number)
        return account.balance

    async def remove(
        self,
        account_number: str,
        requester: str,
        token: Optional[CancellationToken] = None
    ) -> None:
        """
        Delete an account

        Only the creating address may remove an account, and only once its
        balance is zero.
        """
        if token is None:
            token = CancellationToken()
        requester = normalize_address(requester)

        async with self._lock_for(account_number):
            account = await self._load(account_number)
            if account.owner != requester:
                raise NotOwner(f"Account {account_number} belongs to {account.owner}, not {requester}")
            if account.balance != 0:
                raise NonZeroBalance(f"Account {account_number} still holds {account.balance}")

            token.begin_commit()
            await self.storage.delete(self.accounts_table, account_number)

        logger.info(f"Removed account {account_number}")

    async def total_balance(self) -> int:
        """Sum of every existing account's balance"""
        records = await self.storage.load_all(self.accounts_table)
        return sum(int(record["balance"]) for record in records)

    async def account_count(self) -> int:
        """Number of distinct owners among existing accounts"""
        records = await self.storage.load_all(self.accounts_table)
        return len({record["owner"] for record in records})
