"""
Test suite for accounts module

Tests account lifecycle, balance arithmetic, ownership rules, aggregates,
per-account serialization and cancellation before commit.
"""

import asyncio
import random
import pytest
from datetime import datetime, timezone

from bank_node.accounts import Account, AccountStore
from bank_node.async_storage import ThreadedAsyncStorage
from bank_node.cancellation import CancellationToken, OperationCancelled
from bank_node.protocol import (
    AccountSpaceExhausted, BadFormat, InsufficientFunds, InvalidAmount,
    NonZeroBalance, NotFound, NotOwner
)
from bank_node.storage import InMemoryStorage


OWNER = "10.0.0.7"
OTHER = "10.0.0.8"


@pytest.fixture
def store():
    """Account store over in-memory storage"""
    return AccountStore(ThreadedAsyncStorage(InMemoryStorage()))


class TestAccount:
    """Test Account record"""

    def test_account_number_is_record_id(self):
        """Test the account number is the storage key"""
        now = datetime.now(timezone.utc)
        account = Account(id="12345", created_at=now, updated_at=now, owner=OWNER)

        assert account.account_number == "12345"
        assert account.balance == 0

    def test_negative_balance_rejected(self):
        """Test an account can never hold a negative balance"""
        now = datetime.now(timezone.utc)

        with pytest.raises(ValueError, match="cannot be negative"):
            Account(id="12345", created_at=now, updated_at=now, owner=OWNER, balance=-1)


class TestAccountLifecycle:
    """Test creation and removal"""

    @pytest.mark.asyncio
    async def test_create_account(self, store):
        """Test a new account starts at zero and is owned by its creator"""
        account = await store.create(OWNER)

        assert 10000 <= int(account.account_number) <= 99999
        assert account.owner == OWNER
        assert account.balance == 0
        assert await store.balance(account.account_number) == 0

    @pytest.mark.asyncio
    async def test_create_normalizes_ipv4_mapped_owner(self, store):
        """Test ::ffff:-prefixed peers are recorded as plain IPv4"""
        account = await store.create("::ffff:10.0.0.7")

        assert account.owner == OWNER
        await store.remove(account.account_number, OWNER)

    @pytest.mark.asyncio
    async def test_create_retries_on_collision(self):
        """Test account numbers already taken are skipped"""
        storage = ThreadedAsyncStorage(InMemoryStorage())
        first = AccountStore(storage, rng=random.Random(42))
        taken = await first.create(OWNER)

        # Same seed draws the taken number first
        second = AccountStore(storage, rng=random.Random(42))
        fresh = await second.create(OWNER)

        assert fresh.account_number != taken.account_number
        assert await storage.count("accounts") == 2

    @pytest.mark.asyncio
    async def test_create_fails_when_space_exhausted(self, store):
        """Test creation stops instead of looping when no number is free"""
        async def full(table):
            return 90000

        store.storage.count = full

        with pytest.raises(AccountSpaceExhausted):
            await store.create(OWNER)

    @pytest.mark.asyncio
    async def test_remove_empty_account_by_owner(self, store):
        """Test the creator can remove an empty account"""
        account = await store.create(OWNER)

        await store.remove(account.account_number, OWNER)

        with pytest.raises(NotFound):
            await store.balance(account.account_number)

    @pytest.mark.asyncio
    async def test_remove_by_other_identity_fails(self, store):
        """Test only the creator may remove an account"""
        account = await store.create(OWNER)

        with pytest.raises(NotOwner):
            await store.remove(account.account_number, OTHER)

        assert await store.balance(account.account_number) == 0

    @pytest.mark.asyncio
    async def test_remove_with_funds_fails(self, store):
        """Test an account holding funds cannot be removed"""
        account = await store.create(OWNER)
        await store.deposit(account.account_number, 1)

        with pytest.raises(NonZeroBalance):
            await store.remove(account.account_number, OWNER)

        assert await store.balance(account.account_number) == 1

    @pytest.mark.asyncio
    async def test_remove_checks_owner_before_balance(self, store):
        """Test a stranger learns NotOwner even when the account holds funds"""
        account = await store.create(OWNER)
        await store.deposit(account.account_number, 5)

        with pytest.raises(NotOwner):
            await store.remove(account.account_number, OTHER)

    @pytest.mark.asyncio
    async def test_remove_missing_account(self, store):
        """Test removing an unknown account"""
        with pytest.raises(NotFound):
            await store.remove("12345", OWNER)


class TestBalances:
    """Test deposit and withdrawal arithmetic"""

    @pytest.mark.asyncio
    async def test_deposit_and_withdraw(self, store):
        """Test balance_after = balance_before +/- amount"""
        account = await store.create(OWNER)
        number = account.account_number

        assert await store.deposit(number, 500) == 500
        assert await store.deposit(number, "250") == 750
        assert await store.withdraw(number, 700) == 50
        assert await store.withdraw(number, 50) == 0
        assert await store.balance(number) == 0

    @pytest.mark.asyncio
    async def test_zero_amounts_allowed(self, store):
        """Test zero is a valid non-negative amount"""
        account = await store.create(OWNER)

        assert await store.deposit(account.account_number, 0) == 0
        assert await store.withdraw(account.account_number, "0") == 0

    @pytest.mark.asyncio
    async def test_overdraw_leaves_balance_unchanged(self, store):
        """Test withdrawing more than the balance fails without effect"""
        account = await store.create(OWNER)
        await store.deposit(account.account_number, 500)

        with pytest.raises(InsufficientFunds):
            await store.withdraw(account.account_number, 600)

        assert await store.balance(account.account_number) == 500

    @pytest.mark.asyncio
    async def test_balances_are_arbitrary_precision(self, store):
        """Test amounts far beyond 64 bits are exact"""
        account = await store.create(OWNER)
        huge = 2 ** 200

        await store.deposit(account.account_number, str(huge))
        await store.deposit(account.account_number, huge)
        await store.withdraw(account.account_number, 1)

        assert await store.balance(account.account_number) == 2 * huge - 1

    @pytest.mark.asyncio
    async def test_invalid_amounts(self, store):
        """Test non-integer and negative amounts are rejected"""
        account = await store.create(OWNER)

        for amount in ["-5", "1.5", "abc", "", "1e3", -5, 1.5, True, None, "١"]:
            with pytest.raises(InvalidAmount):
                await store.deposit(account.account_number, amount)

        assert await store.balance(account.account_number) == 0

    @pytest.mark.asyncio
    async def test_invalid_amount_is_bad_format(self):
        """Test InvalidAmount is reported as a format error"""
        assert issubclass(InvalidAmount, BadFormat)

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        """Test operations on an unknown account"""
        with pytest.raises(NotFound):
            await store.deposit("12345", 10)
        with pytest.raises(NotFound):
            await store.withdraw("12345", 10)
        with pytest.raises(NotFound):
            await store.balance("12345")
        with pytest.raises(NotFound):
            await store.get("12345")


class TestAggregates:
    """Test bank-wide totals"""

    @pytest.mark.asyncio
    async def test_total_balance(self, store):
        """Test BA equals the sum of all balances"""
        assert await store.total_balance() == 0

        first = await store.create(OWNER)
        second = await store.create(OTHER)
        await store.deposit(first.account_number, 100)
        await store.deposit(second.account_number, 23)

        assert await store.total_balance() == 123

        await store.withdraw(first.account_number, 100)
        await store.remove(first.account_number, OWNER)

        assert await store.total_balance() == 23

    @pytest.mark.asyncio
    async def test_account_count_is_distinct_owners(self, store):
        """Test BN counts owners, not accounts"""
        assert await store.account_count() == 0

        await store.create(OWNER)
        await store.create(OWNER)
        last = await store.create(OTHER)

        assert await store.account_count() == 2

        await store.remove(last.account_number, OTHER)

        assert await store.account_count() == 1


class TestConcurrency:
    """Test per-account serialization"""

    @pytest.mark.asyncio
    async def test_no_lost_updates(self, store):
        """Test concurrent deposits and withdrawals on one account all land"""
        account = await store.create(OWNER)
        number = account.account_number
        await store.deposit(number, 1000)

        operations = [store.deposit(number, 10) for _ in range(50)]
        operations += [store.withdraw(number, 5) for _ in range(30)]
        await asyncio.gather(*operations)

        assert await store.balance(number) == 1000 + 50 * 10 - 30 * 5

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_never_overdraw(self, store):
        """Test racing withdrawals cannot take more than the balance"""
        account = await store.create(OWNER)
        number = account.account_number
        await store.deposit(number, 100)

        results = await asyncio.gather(
            *[store.withdraw(number, 30) for _ in range(5)],
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientFunds)]
        assert len(successes) == 3
        assert len(failures) == 2
        assert await store.balance(number) == 10


class TestCancellation:
    """Test that cancelled operations never commit"""

    @pytest.mark.asyncio
    async def test_cancelled_deposit_does_not_commit(self, store):
        """Test a deposit with a cancelled token leaves the balance alone"""
        account = await store.create(OWNER)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await store.deposit(account.account_number, 100, token)

        assert await store.balance(account.account_number) == 0

    @pytest.mark.asyncio
    async def test_cancelled_remove_does_not_commit(self, store):
        """Test a removal with a cancelled token keeps the account"""
        account = await store.create(OWNER)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await store.remove(account.account_number, OWNER, token)

        assert await store.balance(account.account_number) == 0

    @pytest.mark.asyncio
    async def test_cancelled_create_does_not_commit(self, store):
        """Test creation with a cancelled token stores nothing"""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await store.create(OWNER, token)

        assert await store.account_count() == 0

    @pytest.mark.asyncio
    async def test_committed_token_refuses_cancel(self, store):
        """Test a token cannot be cancelled once the write began"""
        account = await store.create(OWNER)
        token = CancellationToken()

        await store.deposit(account.account_number, 5, token)

        assert token.cancel() is False
        token.raise_if_cancelled()
