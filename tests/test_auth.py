"""Tests for password hashing, credential verification and the principal store."""

from __future__ import annotations

import bcrypt
import pytest

from bastion_iam.auth import passwords
from bastion_iam.auth.credentials import CredentialVerifier
from bastion_iam.auth.models import AccountStatus, LoginRequest, MFAMethod, MFAMethodType
from bastion_iam.auth.user_store import UserStore
from bastion_iam.config import IAMPolicy, PasswordPolicy
from bastion_iam.errors import (
    ConfigurationError,
    InvalidCredentials,
    PasswordPolicyError,
    PrincipalNotFound,
)
from bastion_iam.store import Database

from conftest import PASSWORD


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed, algorithm = passwords.hash_password(PASSWORD, rounds=4)
        assert algorithm == passwords.CURRENT_ALGORITHM
        assert hashed.startswith("$2b$04$")
        assert passwords.verify_password(PASSWORD, hashed, algorithm)

    def test_wrong_password(self):
        hashed, algorithm = passwords.hash_password(PASSWORD, rounds=4)
        assert not passwords.verify_password("wrong-password", hashed, algorithm)

    def test_different_hashes(self):
        h1, _ = passwords.hash_password(PASSWORD, rounds=4)
        h2, _ = passwords.hash_password(PASSWORD, rounds=4)
        assert h1 != h2

    def test_legacy_hash(self):
        hashed = passwords.hash_password_legacy(PASSWORD, "salt1234")
        assert passwords.verify_password(PASSWORD, hashed, passwords.LEGACY_ALGORITHM)
        assert not passwords.verify_password("nope", hashed, passwords.LEGACY_ALGORITHM)
        assert passwords.needs_rehash(passwords.LEGACY_ALGORITHM)
        assert not passwords.needs_rehash(passwords.CURRENT_ALGORITHM)

    def test_unknown_algorithm_never_verifies(self):
        assert not passwords.verify_password(PASSWORD, "plain", "md5")

    def test_malformed_bcrypt_hash(self):
        assert not passwords.verify_password(PASSWORD, "$2b$garbage", "bcrypt")

    def test_long_passwords_keep_every_byte(self):
        long_password = "Aa1!" + "x" * 80
        hashed, algorithm = passwords.hash_password(long_password, rounds=4)
        assert passwords.verify_password(long_password, hashed, algorithm)
        # same first 72 bytes, different tail
        assert not passwords.verify_password(long_password[:-1] + "y", hashed, algorithm)

    def test_plain_bcrypt_still_verifies_and_is_upgraded(self):
        hashed = bcrypt.hashpw(PASSWORD.encode(), bcrypt.gensalt(4)).decode()
        assert passwords.verify_password(PASSWORD, hashed, passwords.BCRYPT_ALGORITHM)
        assert not passwords.verify_password("x" * 100, hashed, passwords.BCRYPT_ALGORITHM)
        assert passwords.needs_rehash(passwords.BCRYPT_ALGORITHM)


class TestPasswordPolicy:
    def test_accepts_compliant_password(self):
        passwords.check_password_policy(PASSWORD, PasswordPolicy())

    def test_lists_every_problem(self):
        with pytest.raises(PasswordPolicyError) as exc:
            passwords.check_password_policy("short", PasswordPolicy(require_special=True))
        message = str(exc.value)
        assert "at least 12 characters" in message
        assert "an uppercase letter" in message
        assert "a digit" in message
        assert "a special character" in message
        assert "lowercase" not in message

    def test_password_policy_error_is_configuration_error(self):
        assert issubclass(PasswordPolicyError, ConfigurationError)

    def test_rejects_password_over_max_length(self):
        with pytest.raises(PasswordPolicyError, match="at most 20 characters"):
            passwords.check_password_policy("Aa1" + "x" * 30, PasswordPolicy(max_length=20))

    @pytest.mark.parametrize(
        "update",
        [{"minLength": 200}, {"minLength": 40, "maxLength": 30}, {"maxLength": 5000}],
    )
    def test_length_bounds_validated(self, update):
        with pytest.raises(ConfigurationError):
            IAMPolicy().merged({"password": update})


class TestLongPasswordsThroughService:
    def test_create_and_login(self, service, ctx):
        long_password = "Aa1!" + "x" * 80
        service.create_principal("bob", long_password)
        result = service.authenticator.login(
            LoginRequest(username="bob", password=long_password), ctx
        )
        assert result.tokens is not None
        with pytest.raises(InvalidCredentials):
            service.authenticator.login(
                LoginRequest(username="bob", password=long_password[:-1] + "y"), ctx
            )

    def test_over_policy_maximum_is_policy_error(self, service):
        with pytest.raises(PasswordPolicyError):
            service.create_principal("bob", "Aa1!" + "x" * 300)


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------

class TestUserStore:
    @pytest.fixture
    def store(self, clock):
        return UserStore(Database(":memory:"), clock)

    def _create(self, store, username="alice", **kwargs):
        hashed, algorithm = passwords.hash_password(PASSWORD, rounds=4)
        return store.create_principal(username, hashed, algorithm, **kwargs)

    def test_create_and_get(self, store):
        p = self._create(store, "Alice", email="alice@example.com", roles=["developer"])
        assert p.username == "alice"
        assert p.principal_id.startswith("p-")
        assert p.roles == ["developer"]
        assert p.status == AccountStatus.ACTIVE
        assert store.get(p.principal_id) == p
        assert store.get_by_username("ALICE").principal_id == p.principal_id

    def test_duplicate_username(self, store):
        self._create(store)
        with pytest.raises(ConfigurationError, match="already exists"):
            self._create(store, "  Alice ")

    def test_resolve_by_id_or_username(self, store):
        p = self._create(store)
        assert store.resolve(p.principal_id).username == "alice"
        assert store.resolve("alice").principal_id == p.principal_id
        with pytest.raises(PrincipalNotFound):
            store.resolve("mallory")

    def test_set_status(self, store):
        p = self._create(store)
        assert store.set_status(p.principal_id, AccountStatus.SUSPENDED)
        assert store.get(p.principal_id).status == AccountStatus.SUSPENDED
        assert not store.set_status("p-missing", AccountStatus.ACTIVE)

    def test_record_login(self, store, clock):
        p = self._create(store)
        store.record_login(p.principal_id)
        assert store.get(p.principal_id).last_login == clock()

    def test_mfa_methods_sorted_by_priority(self, store):
        p = self._create(store)
        store.upsert_mfa_method(
            p.principal_id, MFAMethod(type=MFAMethodType.SMS, priority=5, destination="+1555")
        )
        store.upsert_mfa_method(
            p.principal_id, MFAMethod(type=MFAMethodType.TOTP, priority=1, secret="ABC")
        )
        store.upsert_mfa_method(
            p.principal_id, MFAMethod(type=MFAMethodType.EMAIL, enabled=False, destination="x@y")
        )
        loaded = store.get(p.principal_id)
        assert [m.type for m in loaded.enabled_mfa_methods] == [
            MFAMethodType.TOTP,
            MFAMethodType.SMS,
        ]
        assert loaded.mfa_enabled

    def test_backup_codes_are_single_use(self, store):
        p = self._create(store)
        store.replace_backup_codes(p.principal_id, ["h1", "h2"])
        assert store.backup_code_count(p.principal_id) == 2
        assert store.consume_backup_code(p.principal_id, "h1")
        assert not store.consume_backup_code(p.principal_id, "h1")
        assert store.backup_code_count(p.principal_id) == 1

    def test_advance_totp_step_only_moves_forward(self, store):
        p = self._create(store)
        store.upsert_mfa_method(p.principal_id, MFAMethod(type=MFAMethodType.TOTP, secret="A"))
        assert store.advance_totp_step(p.principal_id, 100)
        assert not store.advance_totp_step(p.principal_id, 100)
        assert not store.advance_totp_step(p.principal_id, 99)
        assert store.advance_totp_step(p.principal_id, 101)

    def test_group_member_requires_defined_group(self, store):
        p = self._create(store)
        with pytest.raises(ConfigurationError):
            store.add_group_member("ghosts", p.principal_id)


# ---------------------------------------------------------------------------
# CredentialVerifier
# ---------------------------------------------------------------------------

class TestCredentialVerifier:
    @pytest.fixture
    def store(self, clock):
        return UserStore(Database(":memory:"), clock)

    @pytest.fixture
    def verifier(self, store):
        return CredentialVerifier(store, bcrypt_rounds=4)

    def _create(self, store, username="alice", status=AccountStatus.ACTIVE):
        hashed, algorithm = passwords.hash_password(PASSWORD, rounds=4)
        return store.create_principal(username, hashed, algorithm, status=status)

    def test_correct_password(self, store, verifier):
        p = self._create(store)
        assert verifier.verify("alice", PASSWORD).principal_id == p.principal_id

    def test_unknown_user_and_wrong_password_look_the_same(self, store, verifier):
        self._create(store)
        with pytest.raises(InvalidCredentials) as unknown:
            verifier.verify("nobody", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            verifier.verify("alice", "Wrong-Horse-42")
        assert str(unknown.value) == str(wrong.value)

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.PENDING])
    def test_inactive_account_rejected(self, store, verifier, status):
        self._create(store, status=status)
        with pytest.raises(InvalidCredentials):
            verifier.verify("alice", PASSWORD)

    def test_legacy_hash_upgraded_after_login(self, store, verifier):
        p = store.create_principal(
            "bob",
            passwords.hash_password_legacy(PASSWORD, "s4lt"),
            passwords.LEGACY_ALGORITHM,
        )
        verifier.verify("bob", PASSWORD)
        assert verifier.upgrade_hash(p.principal_id, PASSWORD)
        credential = store.get_credential(p.principal_id)
        assert credential.algorithm == passwords.CURRENT_ALGORITHM
        assert verifier.verify("bob", PASSWORD).principal_id == p.principal_id
        assert not verifier.upgrade_hash(p.principal_id, PASSWORD)
