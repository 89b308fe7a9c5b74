import pytest
import asyncio

from config import get_settings
from exceptions import InvalidAccountError, InvalidChargeError, StoreUnavailableError
from repositories import InMemoryLedgerStore, balance_key
from services import BalanceService, get_balance_service


class SlowLedgerStore(InMemoryLedgerStore):
    """Store that never answers within the service timeout."""

    async def compare_and_deduct(self, key, amount):
        await asyncio.sleep(5)
        return await super().compare_and_deduct(key, amount)


def make_service(latency: float = 0.0, **kwargs) -> BalanceService:
    kwargs.setdefault("timeout", 5.0)
    return get_balance_service(InMemoryLedgerStore(latency=latency), **kwargs)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_charge_then_decline(self):
        service = make_service()
        await service.reset("acct")

        first = await service.charge("acct", 30)
        second = await service.charge("acct", 80)

        assert (first.authorized, first.remainingBalance, first.appliedCharge) == (True, 70, 30)
        assert (second.authorized, second.remainingBalance, second.appliedCharge) == (False, 70, 0)

    @pytest.mark.asyncio
    async def test_drain_to_zero(self):
        service = make_service()
        await service.reset("acct")

        first = await service.charge("acct", 100)
        second = await service.charge("acct", 1)

        assert first.authorized and first.remainingBalance == 0
        assert not second.authorized and second.remainingBalance == 0

    @pytest.mark.asyncio
    async def test_ten_concurrent_charges(self):
        service = make_service(latency=0.001)
        await service.reset("acct")

        results = await asyncio.gather(*[service.charge("acct", 10) for _ in range(10)])

        assert all(r.authorized for r in results)
        assert sum(r.appliedCharge for r in results) == 100
        assert await service.get_balance("acct") == 0


class TestConcurrencyProperties:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,callers", [(7, 30), (30, 10), (1, 150), (100, 4), (101, 3)])
    async def test_authorized_count_is_floor(self, amount, callers):
        service = make_service(latency=0.001)
        await service.reset("acct")

        results = await asyncio.gather(*[service.charge("acct", amount) for _ in range(callers)])

        authorized = [r for r in results if r.authorized]
        assert len(authorized) == min(callers, 100 // amount)
        assert await service.get_balance("acct") == 100 - len(authorized) * amount
        assert all(r.remainingBalance >= 0 for r in results)

    @pytest.mark.asyncio
    async def test_mixed_amounts_never_negative(self):
        service = make_service(latency=0.001)
        await service.reset("acct")
        amounts = [13, 40, 7, 55, 21, 3, 90, 8, 1, 34] * 3

        results = await asyncio.gather(*[service.charge("acct", a) for a in amounts])

        deducted = sum(r.appliedCharge for r in results)
        assert all(r.remainingBalance >= 0 for r in results)
        assert await service.get_balance("acct") == 100 - deducted

    @pytest.mark.asyncio
    async def test_accounts_are_independent(self):
        service = make_service(latency=0.001)
        await service.reset("alice")
        await service.reset("bob")

        await asyncio.gather(
            *[service.charge("alice", 25) for _ in range(6)],
            *[service.charge("bob", 50) for _ in range(1)]
        )

        assert await service.get_balance("alice") == 0
        assert await service.get_balance("bob") == 50


class TestResetAndDecline:

    @pytest.mark.asyncio
    async def test_reset_repeated(self):
        service = make_service()

        for _ in range(3):
            await service.reset("acct")

        assert await service.get_balance("acct") == 100

    @pytest.mark.asyncio
    async def test_reset_custom_default(self):
        service = make_service(default_balance=250)

        await service.reset("acct")

        assert await service.get_balance("acct") == 250

    @pytest.mark.asyncio
    async def test_decline_leaves_balance(self):
        service = make_service()
        await service.reset("acct")
        await service.charge("acct", 45)
        before = await service.get_balance("acct")

        result = await service.charge("acct", 56)

        assert not result.authorized
        assert await service.get_balance("acct") == before == 55

    @pytest.mark.asyncio
    async def test_charge_unknown_account(self):
        service = make_service()

        result = await service.charge("ghost", 1)

        assert not result.authorized
        assert result.remainingBalance == 0
        assert await service.get_balance("ghost") is None

    @pytest.mark.asyncio
    async def test_zero_charge_does_not_write(self):
        store = InMemoryLedgerStore()
        service = get_balance_service(store)

        result = await service.charge("ghost", 0)

        assert result.authorized
        assert result.appliedCharge == 0
        assert balance_key("ghost") not in store.balances


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account", ["", "   ", None])
    async def test_invalid_account(self, account):
        store = InMemoryLedgerStore()
        service = get_balance_service(store)

        with pytest.raises(InvalidAccountError):
            await service.charge(account, 10)
        with pytest.raises(InvalidAccountError):
            await service.reset(account)
        assert store.balances == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [-1, 2.5, "10", True])
    async def test_invalid_charge(self, amount):
        service = make_service()
        await service.reset("acct")

        with pytest.raises(InvalidChargeError):
            await service.charge("acct", amount)
        assert await service.get_balance("acct") == 100

    @pytest.mark.asyncio
    async def test_store_timeout(self):
        store = SlowLedgerStore()
        service = get_balance_service(store, timeout=0.05)
        await service.reset("acct")

        with pytest.raises(StoreUnavailableError):
            await service.charge("acct", 10)
        assert await service.get_balance("acct") == 100

    def test_defaults_come_from_settings(self):
        settings = get_settings()

        service = BalanceService(InMemoryLedgerStore())

        assert service.default_balance == settings.default_balance
        assert service.timeout == settings.store_timeout_seconds

    def test_error_codes(self):
        assert InvalidAccountError().code == "INVALID_ACCOUNT"
        assert InvalidChargeError().code == "INVALID_CHARGE"
        assert StoreUnavailableError().code == "STORE_UNAVAILABLE"
