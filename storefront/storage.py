"""
Key/value storage used to persist cart snapshots and the applied coupon.

Services depend on the KeyValueStorage interface only, so tests use
InMemoryStorage and production uses Redis.
"""
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from storefront.config import Config
from storefront.models import AppliedCoupon
from storefront.redis_client import RedisClient, get_redis_client


class KeyValueStorage(ABC):
    """get/set/clear over string values"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def clear(self, key: str) -> None:
        ...

    def ping(self) -> bool:
        return True


class InMemoryStorage(KeyValueStorage):
    """Process-local storage with optional expiry"""

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    def clear(self, key: str) -> None:
        self._data.pop(key, None)


class RedisStorage(KeyValueStorage):
    """Storage backed by the retrying Redis client"""

    def __init__(self, client: Optional[RedisClient] = None):
        self.redis = client or get_redis_client()

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.redis.set(key, value, ex=ttl)

    def clear(self, key: str) -> None:
        self.redis.delete(key)

    def ping(self) -> bool:
        return self.redis.ping()


def create_storage() -> KeyValueStorage:
    """Build the storage selected by Config.STORAGE_BACKEND"""
    if Config.STORAGE_BACKEND == "memory":
        return InMemoryStorage()
    return RedisStorage()


class CouponStore:
    """Applied coupon for one cart, persisted under appliedCoupon:<cart_id>"""

    def __init__(self, storage: KeyValueStorage, cart_id: str):
        self.storage = storage
        self.key = f"appliedCoupon:{cart_id}"

    def get(self) -> Optional[AppliedCoupon]:
        raw = self.storage.get(self.key)
        if not raw:
            return None
        return AppliedCoupon.model_validate_json(raw)

    def set(self, coupon: AppliedCoupon) -> None:
        self.storage.set(
            self.key,
            coupon.model_dump_json(by_alias=True),
            ttl=Config.CART_TTL_SECONDS
        )

    def clear(self) -> None:
        self.storage.clear(self.key)
