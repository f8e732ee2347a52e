from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    verified: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Client:
    id: str
    name: str
    secret_hash: str
    private_key: str  # PEM, decrypted; only the token issuer reads it
    public_key: str  # PEM
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AuthorizationCode:
    """Short-lived authorization code record kept in the ephemeral store."""

    code: str
    client_id: str
    user_id: str
    expires_at: int  # unix seconds
    code_challenge: Optional[str] = None
    code_challenge_method: str = "S256"

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "AuthorizationCode":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("authorization code payload must be an object")
        return cls(
            code=str(data["code"]),
            client_id=str(data["client_id"]),
            user_id=str(data["user_id"]),
            expires_at=int(data["expires_at"]),
            code_challenge=data.get("code_challenge") or None,
            code_challenge_method=data.get("code_challenge_method") or "S256",
        )
