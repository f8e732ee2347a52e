from __future__ import annotations

import math
import time
from typing import Callable, Optional, Protocol

from authserver.logging import get_logger

BLOCKLIST_PREFIX = "blocklist:"


class EphemeralStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def get_and_delete(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class RevocationRegistry:
    """Denylist of refresh tokens, kept only until each token would expire anyway.

    Store failures are not caught here: a registry that cannot be read must
    make the caller fail rather than treat the token as live.
    """

    def __init__(
        self, store: EphemeralStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = get_logger(__name__)

    @staticmethod
    def _key(refresh_token: str) -> str:
        return BLOCKLIST_PREFIX + refresh_token

    async def revoke(self, refresh_token: str, expires_at: int) -> None:
        ttl = math.ceil(expires_at - self._clock())
        if ttl <= 0:
            # Already unusable; nothing to remember
            return
        await self.store.set(self._key(refresh_token), "1", ttl)
        self.logger.info("refresh_token_revoked", ttl_seconds=ttl)

    async def is_revoked(self, refresh_token: str) -> bool:
        return await self.store.get(self._key(refresh_token)) is not None
