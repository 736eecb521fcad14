"""Password hashing with algorithm versions, and password policy checks.

Hashes are self-describing; ``algorithm`` is stored next to them so an older
hash can be verified and then upgraded on the next successful login:

- ``bcrypt_sha256`` (current): bcrypt, cost 12, over the base64 SHA-256 digest
  of the password. bcrypt only reads 72 bytes, so the digest keeps every
  character significant and any password length hashable.
- ``bcrypt`` (older): bcrypt over the raw password, at most 72 bytes.
- ``pbkdf2_sha256`` (legacy): ``pbkdf2:<salt>$<hex digest>``, 600k iterations.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets

import bcrypt

from bastion_iam.config import PasswordPolicy
from bastion_iam.errors import PasswordPolicyError

logger = logging.getLogger(__name__)

CURRENT_ALGORITHM = "bcrypt_sha256"
BCRYPT_ALGORITHM = "bcrypt"
LEGACY_ALGORITHM = "pbkdf2_sha256"
BCRYPT_ROUNDS = 12

_BCRYPT_MAX_BYTES = 72
_PBKDF2_ITERATIONS = 600_000
_PBKDF2_PREFIX = "pbkdf2:"
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def _prehash(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str, rounds: int = BCRYPT_ROUNDS) -> tuple[str, str]:
    """Hash *plain* with the current algorithm. Returns ``(hash, algorithm)``."""
    hashed = bcrypt.hashpw(_prehash(plain), bcrypt.gensalt(rounds)).decode()
    return hashed, CURRENT_ALGORITHM


def hash_password_legacy(plain: str, salt: str) -> str:
    """Produce a legacy PBKDF2 hash (imports from older deployments, tests)."""
    dk = hashlib.pbkdf2_hmac("sha256", plain.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return f"{_PBKDF2_PREFIX}{salt}${dk.hex()}"


def verify_password(plain: str, hashed: str, algorithm: str = CURRENT_ALGORITHM) -> bool:
    """Constant-time check of *plain* against a stored hash."""
    if algorithm == LEGACY_ALGORITHM:
        if not hashed.startswith(_PBKDF2_PREFIX):
            return False
        salt, _, dk_hex = hashed[len(_PBKDF2_PREFIX):].partition("$")
        dk = hashlib.pbkdf2_hmac("sha256", plain.encode(), salt.encode(), _PBKDF2_ITERATIONS)
        return hmac.compare_digest(dk.hex(), dk_hex)
    if algorithm == CURRENT_ALGORITHM:
        candidate = _prehash(plain)
    elif algorithm == BCRYPT_ALGORITHM:
        candidate = plain.encode("utf-8")
        if len(candidate) > _BCRYPT_MAX_BYTES:
            return False
    else:
        logger.warning("Unknown password hash algorithm '%s'", algorithm)
        return False
    try:
        return bcrypt.checkpw(candidate, hashed.encode())
    except ValueError:
        # malformed stored hash
        logger.warning("Stored bcrypt hash could not be parsed")
        return False


def make_dummy_hash(rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash checked when the username is unknown, at the same cost as real hashes."""
    return bcrypt.hashpw(secrets.token_bytes(16), bcrypt.gensalt(rounds)).decode()


def needs_rehash(algorithm: str) -> bool:
    return algorithm != CURRENT_ALGORITHM


def check_password_policy(password: str, policy: PasswordPolicy) -> None:
    """Raise :class:`PasswordPolicyError` listing every unmet rule."""
    if len(password) > policy.max_length:
        raise PasswordPolicyError(f"Password must be at most {policy.max_length} characters")
    problems: list[str] = []
    if len(password) < policy.min_length:
        problems.append(f"at least {policy.min_length} characters")
    if policy.require_uppercase and not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if policy.require_lowercase and not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if policy.require_numbers and not any(c.isdigit() for c in password):
        problems.append("a digit")
    if policy.require_special and not _SPECIAL.search(password):
        problems.append("a special character")
    if problems:
        raise PasswordPolicyError("Password must contain " + ", ".join(problems))
