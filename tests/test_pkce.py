"""Tests for PKCE challenge verification."""

import base64
import hashlib

from authserver.service.pkce import (
    compute_code_challenge,
    generate_pkce_pair,
    is_valid_verifier,
    verify_code_challenge,
)

# RFC 7636 Appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mJ92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestComputeChallenge:
    def test_matches_rfc_vector(self):
        assert compute_code_challenge(RFC_VERIFIER) == RFC_CHALLENGE

    def test_is_unpadded_base64url_of_sha256(self):
        verifier = "a" * 64
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )
        challenge = compute_code_challenge(verifier)
        assert challenge == expected
        assert "=" not in challenge

    def test_generated_pair_verifies(self):
        verifier, challenge = generate_pkce_pair()
        assert is_valid_verifier(verifier)
        assert verify_code_challenge(challenge, verifier)


class TestVerifyCodeChallenge:
    def test_correct_verifier_accepted(self):
        assert verify_code_challenge(RFC_CHALLENGE, RFC_VERIFIER) is True

    def test_wrong_verifier_rejected(self):
        other = RFC_VERIFIER[:-1] + ("a" if RFC_VERIFIER[-1] != "a" else "b")
        assert verify_code_challenge(RFC_CHALLENGE, other) is False

    def test_empty_inputs_rejected(self):
        assert verify_code_challenge(RFC_CHALLENGE, "") is False
        assert verify_code_challenge("", RFC_VERIFIER) is False

    def test_verifier_outside_rfc_charset_rejected(self):
        assert verify_code_challenge(RFC_CHALLENGE, "short") is False
        assert verify_code_challenge(RFC_CHALLENGE, "x" * 129) is False
        assert verify_code_challenge(RFC_CHALLENGE, "!" * 50) is False

    def test_challenge_itself_is_not_a_valid_verifier(self):
        """Presenting the stored challenge as the verifier must fail under S256."""
        assert verify_code_challenge(RFC_CHALLENGE, RFC_CHALLENGE) is False

    def test_plain_only_when_requested(self):
        verifier = "p" * 50
        assert verify_code_challenge(verifier, verifier, method="plain") is True
        assert verify_code_challenge(verifier, verifier) is False

    def test_unknown_method_rejected(self):
        assert verify_code_challenge(RFC_CHALLENGE, RFC_VERIFIER, method="S512") is False

    def test_deterministic(self):
        results = {verify_code_challenge(RFC_CHALLENGE, RFC_VERIFIER) for _ in range(5)}
        assert results == {True}
