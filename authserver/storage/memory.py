from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from cryptography.fernet import Fernet

from authserver.logging import get_logger
from authserver.storage.common import (
    build_key_cipher,
    decrypt_private_key,
    encrypt_private_key,
    generate_uuid,
    normalize_email,
    normalize_uuid,
)
from authserver.storage.errors import ConstraintViolation
from authserver.storage.models import Client, User


class MemoryStore:
    """In-memory credential store for development and tests."""

    def __init__(
        self,
        *,
        key_material: Optional[str] = None,
        key_cipher: Optional[Fernet] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.clients: Dict[str, Client] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self._key_cipher = key_cipher or build_key_cipher(key_material or "")

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        key = normalize_uuid(user_id)
        with self._data_lock:
            user = self.users.get(key) if key else None
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def update_user_password(self, user_id: str, password_hash: str) -> None:
        key = normalize_uuid(user_id)
        with self._data_lock:
            user = self.users.get(key) if key else None
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.password_hash = password_hash
            user.updated_at = datetime.utcnow()

    def mark_user_verified(self, user_id: str) -> None:
        key = normalize_uuid(user_id)
        with self._data_lock:
            user = self.users.get(key) if key else None
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.verified = True
            user.updated_at = datetime.utcnow()

    def create_client(
        self, name: str, secret_hash: str, private_key: str, public_key: str
    ) -> Client:
        with self._data_lock:
            if any(c.name == name for c in self.clients.values()):
                raise ConstraintViolation(
                    "client name already exists", {"field": "name"}
                )
            client = Client(
                id=generate_uuid(),
                name=name,
                secret_hash=secret_hash,
                private_key=encrypt_private_key(self._key_cipher, private_key),
                public_key=public_key,
            )
            self.clients[client.id] = client
            return self._decrypted(client)

    def get_client(self, client_id: str) -> Optional[Client]:
        key = normalize_uuid(client_id)
        with self._data_lock:
            client = self.clients.get(key) if key else None
        return self._decrypted(client) if client else None

    def get_client_by_name(self, name: str) -> Optional[Client]:
        with self._data_lock:
            for client in self.clients.values():
                if client.name == name:
                    return self._decrypted(client)
        return None

    def close(self) -> None:
        return None

    def _decrypted(self, client: Client) -> Client:
        return replace(
            client, private_key=decrypt_private_key(self._key_cipher, client.private_key)
        )


class MemoryCodeStore:
    """In-process ephemeral key/value store with per-key TTL.

    Mirrors the Redis semantics the service relies on: ``get_and_delete`` is a
    single critical section, so of N concurrent callers for the same key
    exactly one observes the value.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}

    def _live_value(self, key: str, now: float) -> Optional[str]:
        # Caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key, self._clock())

    async def get_and_delete(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key, self._clock())
            self._entries.pop(key, None)
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                self._entries.pop(key, None)
        return len(expired)

    async def close(self) -> None:
        return None
