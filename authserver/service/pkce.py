"""Proof Key for Code Exchange (RFC 7636) helpers.

Only the S256 transform is used by default; ``plain`` is available when a
caller asks for it explicitly.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from typing import Tuple

S256 = "S256"
PLAIN = "plain"
SUPPORTED_METHODS = (S256, PLAIN)

# 43-128 characters from the unreserved set
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def _b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def is_valid_verifier(code_verifier: str) -> bool:
    return isinstance(code_verifier, str) and bool(_VERIFIER_RE.match(code_verifier))


def compute_code_challenge(code_verifier: str) -> str:
    """Return BASE64URL-NOPAD(SHA256(ASCII(code_verifier)))."""
    return _b64url_nopad(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce_pair() -> Tuple[str, str]:
    """Generate a (verifier, S256 challenge) pair."""
    verifier = secrets.token_urlsafe(64)[:96]
    return verifier, compute_code_challenge(verifier)


def verify_code_challenge(
    stored_challenge: str, code_verifier: str, method: str = S256
) -> bool:
    if not stored_challenge or not is_valid_verifier(code_verifier):
        return False
    if method == S256:
        candidate = compute_code_challenge(code_verifier)
    elif method == PLAIN:
        candidate = code_verifier
    else:
        return False
    return hmac.compare_digest(candidate.encode(), stored_challenge.encode())
