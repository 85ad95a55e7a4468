"""
Guard against duplicate submission of the same action for the same cart.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Set, Tuple

from storefront.exceptions import OperationInProgressError


class InFlightRegistry:
    """Tracks (cart id, action) pairs with a request outstanding"""

    def __init__(self):
        self._active: Set[Tuple[str, str]] = set()

    def is_active(self, cart_id: str, action: str) -> bool:
        return (cart_id, action) in self._active

    @asynccontextmanager
    async def claim(self, cart_id: str, action: str) -> AsyncIterator[None]:
        key = (cart_id, action)
        if key in self._active:
            raise OperationInProgressError(action)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)
