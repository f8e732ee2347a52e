from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authserver.logging import get_logger
from authserver.storage.common import (
    build_key_cipher,
    decrypt_private_key,
    encrypt_private_key,
    normalize_email,
    normalize_uuid,
    safe_row_value,
)
from authserver.storage.errors import ConstraintViolation, StoreUnavailable
from authserver.storage.models import Client, User


class PostgresStore:
    """Postgres-backed credential store for users and client applications."""

    def __init__(self, dsn: str, *, key_material: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._key_cipher = build_key_cipher(key_material)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``oauth_client`` tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    verified BOOLEAN NOT NULL DEFAULT false,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_client (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    secret_hash TEXT NOT NULL,
                    private_key TEXT NOT NULL,
                    public_key TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user_id, normalized, password_hash, first_name, last_name),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=normalized,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        key = normalize_uuid(user_id)
        if not key:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (key,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_password(self, user_id: str, password_hash: str) -> None:
        key = normalize_uuid(user_id)
        if not key:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, key),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def mark_user_verified(self, user_id: str) -> None:
        key = normalize_uuid(user_id)
        if not key:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET verified = true, updated_at = now() WHERE id = %s",
                (key,),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    # clients
    def create_client(
        self, name: str, secret_hash: str, private_key: str, public_key: str
    ) -> Client:
        client_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_client (id, name, secret_hash, private_key, public_key)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        client_id,
                        name,
                        secret_hash,
                        encrypt_private_key(self._key_cipher, private_key),
                        public_key,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("client name already exists", {"field": "name"})
        return Client(
            id=client_id,
            name=name,
            secret_hash=secret_hash,
            private_key=private_key,
            public_key=public_key,
        )

    def get_client(self, client_id: str) -> Optional[Client]:
        key = normalize_uuid(client_id)
        if not key:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE id = %s", (key,)
            ).fetchone()
        return self._row_to_client(row) if row else None

    def get_client_by_name(self, name: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE name = %s", (name,)
            ).fetchone()
        return self._row_to_client(row) if row else None

    def close(self) -> None:
        self.pool.close()

    def _row_to_user(self, row: Any) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=safe_row_value(row, "first_name", "") or "",
            last_name=safe_row_value(row, "last_name", "") or "",
            verified=bool(safe_row_value(row, "verified", False)),
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
        )

    def _row_to_client(self, row: Any) -> Client:
        return Client(
            id=str(row["id"]),
            name=row["name"],
            secret_hash=row["secret_hash"],
            private_key=decrypt_private_key(self._key_cipher, row["private_key"]),
            public_key=row["public_key"],
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
        )
