"""Username/password verification."""

from __future__ import annotations

import logging

from bastion_iam.auth import passwords
from bastion_iam.auth.models import AccountStatus, Credential, Principal
from bastion_iam.auth.user_store import UserStore
from bastion_iam.errors import InvalidCredentials

logger = logging.getLogger(__name__)


class CredentialVerifier:
    """Checks a username/password pair without revealing which part was wrong.

    Unknown usernames, wrong passwords and accounts that may not log in
    (SUSPENDED, PENDING) all raise the same :class:`InvalidCredentials`, and
    each path performs exactly one password-hash comparison.

    Args:
        users: Principal repository.
        bcrypt_rounds: Cost used for the dummy hash and for re-hashing.
    """

    def __init__(self, users: UserStore, bcrypt_rounds: int = passwords.BCRYPT_ROUNDS) -> None:
        self._users = users
        self._rounds = bcrypt_rounds
        self._dummy_hash = passwords.make_dummy_hash(bcrypt_rounds)

    def lookup(self, username: str) -> Principal | None:
        return self._users.get_by_username(username)

    def verify(self, username: str, password: str, principal: Principal | None = None) -> Principal:
        """Return the principal for a correct password or raise InvalidCredentials.

        Args:
            username: Case-insensitive username.
            password: Plaintext password.
            principal: Already looked-up principal (saves a read), or None.
        """
        if principal is None:
            principal = self._users.get_by_username(username)
        credential = self._users.get_credential(principal.principal_id) if principal else None
        if principal is None or credential is None:
            passwords.verify_password(password, self._dummy_hash)
            raise InvalidCredentials()

        ok = passwords.verify_password(password, credential.password_hash, credential.algorithm)
        if not ok or principal.status in (AccountStatus.SUSPENDED, AccountStatus.PENDING):
            raise InvalidCredentials()
        return principal

    def needs_rehash(self, credential: Credential) -> bool:
        return passwords.needs_rehash(credential.algorithm)

    def upgrade_hash(self, principal_id: str, password: str) -> bool:
        """Re-hash a legacy credential with the current algorithm after a good login."""
        credential = self._users.get_credential(principal_id)
        if credential is None or not self.needs_rehash(credential):
            return False
        hashed, algorithm = passwords.hash_password(password, self._rounds)
        self._users.set_credential(principal_id, hashed, algorithm)
        logger.info(
            "Upgraded password hash for %s from %s to %s",
            principal_id,
            credential.algorithm,
            algorithm,
        )
        return True

    def set_password(self, principal_id: str, password: str) -> None:
        """Store a new password (policy is checked by the caller)."""
        hashed, algorithm = passwords.hash_password(password, self._rounds)
        self._users.set_credential(principal_id, hashed, algorithm)
