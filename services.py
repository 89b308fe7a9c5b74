import asyncio
from typing import Awaitable, Optional, TypeVar
import structlog

from config import get_settings
from exceptions import InvalidAccountError, InvalidChargeError, StoreUnavailableError
from models import ChargeResult
from repositories import LedgerStore, balance_key

logger = structlog.get_logger()

T = TypeVar("T")


class BalanceService:
    """Reset and charge account balances held in a shared ledger store.

    Nothing is cached locally: every call is a single round trip to the
    store, and a charge is one atomic compare-and-deduct there. Store
    failures surface as StoreUnavailableError and are never retried.
    """

    def __init__(
        self,
        store: LedgerStore,
        default_balance: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        settings = get_settings()
        self.store = store
        self.default_balance = (
            settings.default_balance if default_balance is None else default_balance
        )
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout

    async def reset(self, account: str) -> None:
        """Overwrite the account balance with the default balance."""
        self._validate_account(account)

        await self._call_store(self.store.set(balance_key(account), self.default_balance))

        logger.info(
            "Successfully reset account",
            account=account,
            balance=self.default_balance
        )

    async def charge(self, account: str, amount: int) -> ChargeResult:
        """Deduct `amount` if the current balance covers it."""
        self._validate_account(account)
        self._validate_charge(amount)

        authorized, remaining, applied = await self._call_store(
            self.store.compare_and_deduct(balance_key(account), amount)
        )
        result = ChargeResult(
            authorized=authorized == 1,
            remainingBalance=remaining,
            appliedCharge=applied
        )

        if result.authorized:
            logger.info(
                "Successfully charged account",
                account=account,
                charges=amount,
                remaining_balance=remaining
            )
        else:
            logger.warning(
                "Insufficient balance for account",
                account=account,
                charges=amount,
                remaining_balance=remaining
            )

        return result

    async def get_balance(self, account: str) -> Optional[int]:
        """Read the stored balance. None if the account was never reset."""
        self._validate_account(account)
        return await self._call_store(self.store.get(balance_key(account)))

    async def _call_store(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Ledger store timed out", timeout=self.timeout)
            raise StoreUnavailableError(
                f"Ledger store did not respond within {self.timeout}s"
            ) from e

    @staticmethod
    def _validate_account(account: str) -> None:
        if not isinstance(account, str) or not account.strip():
            logger.warning("Rejected invalid account", account=account)
            raise InvalidAccountError()

    @staticmethod
    def _validate_charge(amount: int) -> None:
        # bool is an int subclass
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            logger.warning("Rejected invalid charge amount", charges=amount)
            raise InvalidChargeError()


# Factory function for dependency injection
def get_balance_service(
    store: LedgerStore,
    default_balance: Optional[int] = None,
    timeout: Optional[float] = None
) -> BalanceService:
    return BalanceService(store, default_balance=default_balance, timeout=timeout)
