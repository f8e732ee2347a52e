"""Unit tests for account registration, verification and password resets."""

import threading

import pytest

from authserver.config import Settings
from authserver.service.accounts import (
    PASSWORD_RESET_PREFIX,
    VERIFICATION_PREFIX,
    AccountService,
    validate_password_strength,
)
from authserver.service.errors import InvalidRequestError, NotFoundError, ValidationError
from authserver.service.tokens import VerifiedClaims
from authserver.storage.errors import ConstraintViolation
from authserver.storage.memory import MemoryCodeStore, MemoryStore

PASSWORD = "Sturdy-Passw0rd"


class RecordingEmail:
    """Captures outgoing mail instead of sending it."""

    def __init__(self):
        self.verifications = []
        self.resets = []
        self.threads = []

    def send_email_verification(self, to_email, code, expires_hours):
        self.threads.append(threading.get_ident())
        self.verifications.append((to_email, code, expires_hours))
        return True

    def send_password_reset(self, to_email, code, expires_hours):
        self.threads.append(threading.get_ident())
        self.resets.append((to_email, code, expires_hours))
        return True


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-refresh-signing-secret-0123456789")


@pytest.fixture
def store():
    return MemoryStore(key_material="unit-test-key-material")


@pytest.fixture
def code_store(clock):
    return MemoryCodeStore(clock=clock)


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def accounts(settings, store, code_store, fast_hasher, email, rsa_key_pairs):
    return AccountService(
        settings,
        store,
        code_store,
        fast_hasher,
        email,
        key_pair_factory=lambda: rsa_key_pairs[0],
    )


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "password",
        ["Sh0rt!", "alllower1!", "ALLUPPER1!", "NoDigits!!", "NoSpecial12", "A1!" + "a" * 130],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValueError):
            validate_password_strength(password)

    def test_strong_password_accepted(self):
        assert validate_password_strength(PASSWORD) == PASSWORD


class TestRegisterUser:
    async def test_creates_user_and_sends_code(self, accounts, store, code_store, email, fast_hasher):
        user, code = await accounts.register_user("Ada", "Lovelace", "Ada@Example.com", PASSWORD)

        assert user.email == "ada@example.com"
        assert user.verified is False
        assert fast_hasher.verify(store.get_user(user.id).password_hash, PASSWORD)
        assert await code_store.get(VERIFICATION_PREFIX + code) == user.id
        assert email.verifications == [("ada@example.com", code, 24)]

    async def test_duplicate_email_conflicts(self, accounts):
        await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        with pytest.raises(ConstraintViolation):
            await accounts.register_user("Ada", "Again", "ADA@example.com", PASSWORD)

    async def test_weak_password_is_validation_error(self, accounts, store):
        with pytest.raises(ValidationError):
            await accounts.register_user("Ada", "Lovelace", "ada@example.com", "weak")
        assert store.get_user_by_email("ada@example.com") is None


class TestRegisterClient:
    async def test_secret_returned_once_and_hashed(self, accounts, store, fast_hasher, rsa_key_pairs):
        client, secret = await accounts.register_client("billing-portal")

        stored = store.get_client(client.id)
        assert stored.secret_hash != secret
        assert fast_hasher.verify(stored.secret_hash, secret)
        assert len(secret) >= 43
        assert stored.private_key == rsa_key_pairs[0][0]
        assert stored.public_key == rsa_key_pairs[0][1]

    async def test_private_key_encrypted_at_rest(self, accounts, store, rsa_key_pairs):
        client, _ = await accounts.register_client("billing-portal")
        assert store.clients[client.id].private_key != rsa_key_pairs[0][0]
        assert "PRIVATE KEY" not in store.clients[client.id].private_key

    async def test_duplicate_name_conflicts(self, accounts):
        await accounts.register_client("billing-portal")
        with pytest.raises(ConstraintViolation):
            await accounts.register_client("billing-portal")

    async def test_blank_name_rejected(self, accounts):
        with pytest.raises(ValidationError):
            await accounts.register_client("   ")

    async def test_profile_exposes_only_public_material(self, accounts):
        client, _ = await accounts.register_client("billing-portal")
        profile = accounts.client_profile(client)
        assert profile == {"name": "billing-portal", "public_key": client.public_key}


class TestEmailVerification:
    async def test_verify_marks_user_and_consumes_code(self, accounts, store):
        user, code = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        assert await accounts.verify_email(code) is True
        assert store.get_user(user.id).verified is True
        with pytest.raises(InvalidRequestError):
            await accounts.verify_email(code)

    async def test_second_code_for_verified_user_returns_false(self, accounts, email):
        _, first = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.resend_verification("ada@example.com")
        second = email.verifications[-1][1]
        assert await accounts.verify_email(first) is True
        assert await accounts.verify_email(second) is False

    async def test_unknown_code_rejected(self, accounts):
        with pytest.raises(InvalidRequestError):
            await accounts.verify_email("never-issued")

    async def test_code_expires(self, accounts, clock, settings):
        _, code = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        clock.advance(settings.email_verification_exp_hours * 3600 + 1)
        with pytest.raises(InvalidRequestError):
            await accounts.verify_email(code)

    async def test_resend_skips_unknown_and_verified(self, accounts, email):
        await accounts.resend_verification("ghost@example.com")
        assert email.verifications == []
        _, code = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.verify_email(code)
        await accounts.resend_verification("ada@example.com")
        assert len(email.verifications) == 1


class TestPasswordReset:
    async def test_forgot_unknown_email_sends_nothing(self, accounts, email):
        await accounts.forgot_password("ghost@example.com")
        assert email.resets == []

    async def test_full_reset_flow(self, accounts, store, code_store, email, fast_hasher):
        user, _ = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.forgot_password("ADA@example.com")
        to_email, code, hours = email.resets[0]
        assert to_email == "ada@example.com"
        assert hours == 24
        assert await code_store.get(PASSWORD_RESET_PREFIX + "ada@example.com") == code

        await accounts.reset_password("ada@example.com", code, "New-Passw0rd!")
        assert fast_hasher.verify(store.get_user(user.id).password_hash, "New-Passw0rd!")
        assert await code_store.get(PASSWORD_RESET_PREFIX + "ada@example.com") is None
        with pytest.raises(InvalidRequestError):
            await accounts.reset_password("ada@example.com", code, "Other-Passw0rd!")

    async def test_wrong_code_rejected_and_kept(self, accounts, store, email, fast_hasher):
        user, _ = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.forgot_password("ada@example.com")
        code = email.resets[0][1]
        with pytest.raises(InvalidRequestError):
            await accounts.reset_password("ada@example.com", "wrong-code", "New-Passw0rd!")
        assert fast_hasher.verify(store.get_user(user.id).password_hash, PASSWORD)
        await accounts.reset_password("ada@example.com", code, "New-Passw0rd!")

    async def test_no_pending_reset_rejected(self, accounts):
        await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        with pytest.raises(InvalidRequestError):
            await accounts.reset_password("ada@example.com", "anything", "New-Passw0rd!")

    async def test_weak_new_password_rejected(self, accounts, email):
        await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.forgot_password("ada@example.com")
        with pytest.raises(ValidationError):
            await accounts.reset_password("ada@example.com", email.resets[0][1], "weak")


class TestUserProfile:
    async def test_profile_for_verified_claims(self, accounts):
        user, _ = await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        claims = VerifiedClaims(sub=user.id, aud="client", iat=0, exp=1)
        profile = accounts.user_profile(claims)
        assert profile["name"] == "Ada Lovelace"
        assert profile["email"] == "ada@example.com"
        assert profile["verified"] is False

    def test_missing_user(self, accounts):
        claims = VerifiedClaims(sub="33333333-3333-3333-3333-333333333333", aud="c", iat=0, exp=1)
        with pytest.raises(NotFoundError):
            accounts.user_profile(claims)


class TestMailDelivery:
    async def test_sends_run_off_the_event_loop_thread(self, accounts, email):
        loop_thread = threading.get_ident()
        await accounts.register_user("Ada", "Lovelace", "ada@example.com", PASSWORD)
        await accounts.forgot_password("ada@example.com")

        assert len(email.threads) == 2
        assert loop_thread not in email.threads
