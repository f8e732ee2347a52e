"""Tests for the refresh-token revocation registry."""

import pytest

from authserver.service.revocation import BLOCKLIST_PREFIX, RevocationRegistry
from authserver.storage.errors import StoreUnavailable
from authserver.storage.memory import MemoryCodeStore


class BrokenStore:
    async def set(self, key, value, ttl_seconds):
        raise StoreUnavailable("redis", "connection refused")

    async def get(self, key):
        raise StoreUnavailable("redis", "connection refused")


@pytest.fixture
def store(clock):
    return MemoryCodeStore(clock=clock)


@pytest.fixture
def registry(store, clock):
    return RevocationRegistry(store, clock=clock)


async def test_revoked_token_is_reported(registry, clock):
    await registry.revoke("refresh-token", int(clock()) + 3600)
    assert await registry.is_revoked("refresh-token") is True
    assert await registry.is_revoked("another-token") is False


async def test_marker_uses_blocklist_key(registry, store, clock):
    await registry.revoke("tok", int(clock()) + 60)
    assert await store.get(BLOCKLIST_PREFIX + "tok") is not None


async def test_marker_expires_with_token(registry, clock):
    """The denylist entry lives exactly as long as the token would have."""
    await registry.revoke("tok", int(clock()) + 100)
    clock.advance(99)
    assert await registry.is_revoked("tok") is True
    clock.advance(2)
    assert await registry.is_revoked("tok") is False


async def test_already_expired_token_is_noop(registry, store, clock):
    await registry.revoke("old", int(clock()) - 10)
    await registry.revoke("now", int(clock()))
    assert await store.get(BLOCKLIST_PREFIX + "old") is None
    assert await store.get(BLOCKLIST_PREFIX + "now") is None


async def test_revoke_is_idempotent(registry, clock):
    await registry.revoke("tok", int(clock()) + 60)
    await registry.revoke("tok", int(clock()) + 60)
    assert await registry.is_revoked("tok") is True


async def test_store_failure_propagates(clock):
    registry = RevocationRegistry(BrokenStore(), clock=clock)
    with pytest.raises(StoreUnavailable):
        await registry.is_revoked("tok")
    with pytest.raises(StoreUnavailable):
        await registry.revoke("tok", int(clock()) + 60)
