from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple
import asyncio
from collections import defaultdict

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from config import Settings, get_settings
from exceptions import StoreUnavailableError

logger = structlog.get_logger()

# (authorized 0|1, remaining balance, applied charge)
DeductResult = Tuple[int, int, int]

# An absent key counts as a zero balance; a zero charge is authorized without a write.
CHARGE_SCRIPT = """
local balance = tonumber(redis.call("GET", KEYS[1]) or "0")
local charges = tonumber(ARGV[1])

if balance >= charges then
    if charges > 0 then
        redis.call("SET", KEYS[1], balance - charges)
    end
    return {1, balance - charges, charges}
else
    return {0, balance, 0}
end
"""


def balance_key(account: str) -> str:
    return f"{account}/balance"


class LedgerStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[int]:
        """Get stored balance. Returns None if the key is absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: int) -> None:
        """Unconditionally overwrite the stored balance."""
        pass

    @abstractmethod
    async def compare_and_deduct(self, key: str, amount: int) -> DeductResult:
        """Deduct `amount` if the balance covers it, as one indivisible step."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store answers."""
        pass

    async def close(self) -> None:
        """Release connections held by the store."""
        pass


class RedisLedgerStore(LedgerStore):
    """Balances kept in Redis; compare-and-deduct runs server-side as a Lua script."""

    backend = "redis"

    def __init__(self, client: aioredis.Redis):
        self.client = client
        self._charge_script = client.register_script(CHARGE_SCRIPT)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisLedgerStore":
        client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            socket_timeout=settings.store_timeout_seconds,
            socket_connect_timeout=settings.store_timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[int]:
        try:
            value = await self.client.get(key)
        except RedisError as e:
            logger.error("Redis GET failed", key=key, error=str(e))
            raise StoreUnavailableError(f"Ledger store unavailable: {e}") from e
        if value is None:
            return None
        try:
            return int(value)
        except ValueError as e:
            logger.error("Corrupt balance in Redis", key=key, value=value)
            raise StoreUnavailableError(f"Ledger store holds a non-integer balance at {key}") from e

    async def set(self, key: str, value: int) -> None:
        try:
            await self.client.set(key, value)
        except RedisError as e:
            logger.error("Redis SET failed", key=key, error=str(e))
            raise StoreUnavailableError(f"Ledger store unavailable: {e}") from e

    async def compare_and_deduct(self, key: str, amount: int) -> DeductResult:
        try:
            authorized, remaining, applied = await self._charge_script(keys=[key], args=[amount])
        except RedisError as e:
            logger.error("Redis charge script failed", key=key, amount=amount, error=str(e))
            raise StoreUnavailableError(f"Ledger store unavailable: {e}") from e
        return int(authorized), int(remaining), int(applied)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryLedgerStore(LedgerStore):
    """Process-local store with per-key locks. Used by tests and local runs."""

    backend = "memory"

    def __init__(self, latency: float = 0.0):
        self.balances: Dict[str, int] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Simulated round trip inside the critical section
        self.latency = latency

    async def get(self, key: str) -> Optional[int]:
        return self.balances.get(key)

    async def set(self, key: str, value: int) -> None:
        async with self.get_lock(key):
            self.balances[key] = value

    async def compare_and_deduct(self, key: str, amount: int) -> DeductResult:
        async with self.get_lock(key):
            balance = self.balances.get(key, 0)
            if self.latency:
                await asyncio.sleep(self.latency)
            if balance >= amount:
                if amount > 0:
                    self.balances[key] = balance - amount
                return 1, balance - amount, amount
            return 0, balance, 0

    async def ping(self) -> bool:
        return True

    def get_lock(self, key: str) -> asyncio.Lock:
        """Get lock for specific key."""
        return self.locks[key]


_ledger_store: Optional[LedgerStore] = None


def build_ledger_store(settings: Settings) -> LedgerStore:
    if settings.ledger_backend == "memory":
        return InMemoryLedgerStore()
    return RedisLedgerStore.from_settings(settings)


def get_ledger_store() -> LedgerStore:
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = build_ledger_store(get_settings())
    return _ledger_store


def set_ledger_store(store: LedgerStore) -> None:
    global _ledger_store
    _ledger_store = store


async def close_ledger_store() -> None:
    global _ledger_store
    if _ledger_store is not None:
        await _ledger_store.close()
        _ledger_store = None


# For tests
def reset_ledger_store():
    """Drop the current store so the next request builds a fresh one (for testing only)."""
    global _ledger_store
    _ledger_store = None
