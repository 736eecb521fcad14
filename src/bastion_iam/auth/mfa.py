"""Multi-factor enrollment, login challenges and second-factor verification.

Supported factors:

- TOTP (RFC 6238 via pyotp) with single-use backup codes ``xxxxx-xxxxx``.
  A code is accepted within ``totp_window`` time steps either side of now,
  and only if its step is newer than the last step accepted for the
  principal, so a code cannot be replayed inside its validity window.
- SMS / EMAIL one-time codes, generated per challenge, stored hashed on the
  challenge row and handed to a :class:`CodeSender`.
- HARDWARE_TOKEN / BIOMETRIC assertions, checked by an injected attestation
  verifier. Without one these methods always fail.

The password and MFA steps of a login are correlated by a short-lived
``mfa_challenges`` row, so no connection or in-process state is held
between the two requests.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Callable, Protocol

import pyotp

from bastion_iam.auth.models import (
    MFAChallenge,
    MFAEnrollment,
    MFAMethod,
    MFAMethodType,
    Principal,
    RequestContext,
)
from bastion_iam.auth.user_store import UserStore
from bastion_iam.errors import MFASetupError, MFAVerificationFailed
from bastion_iam.store import Clock, Database, parse_ts, ts, utcnow

logger = logging.getLogger(__name__)

AttestationVerifier = Callable[[Principal, MFAMethod, str], bool]

_BACKUP_CODE_RE = re.compile(r"^[0-9a-f]{10}$")
_OTP_DIGITS = 6


class CodeSender(Protocol):
    """Delivers an SMS/e-mail one-time code. Implementations must not log *code*."""

    def send(self, method: MFAMethodType, destination: str, code: str) -> None: ...


class LoggingCodeSender:
    """Default sender: records a masked dispatch notice and delivers nothing."""

    def send(self, method: MFAMethodType, destination: str, code: str) -> None:
        logger.info(
            "One-time code dispatched via %s to %s", method.value, mask_destination(destination)
        )


def mask_destination(destination: str) -> str:
    """``alice@example.com`` -> ``a***@example.com``; ``+15551234567`` -> ``+1********67``."""
    if "@" in destination:
        local, _, domain = destination.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(destination) <= 4:
        return "*" * len(destination)
    return destination[:2] + "*" * (len(destination) - 4) + destination[-2:]


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalise_backup_code(code: str) -> str | None:
    """Canonical form of a backup code, or None if *code* is not shaped like one."""
    compact = code.strip().lower().replace("-", "").replace(" ", "")
    if not _BACKUP_CODE_RE.match(compact):
        return None
    return f"{compact[:5]}-{compact[5:]}"


class MFAChallengeManager:
    """Owns MFA enrolments, login challenges and factor verification.

    Args:
        db: Shared database (challenge rows).
        users: Principal repository (enrolments, backup codes, TOTP step).
        issuer: Issuer label in TOTP provisioning URIs.
        totp_window: Accepted clock skew, in 30-second steps.
        backup_codes_count: Backup codes generated per TOTP enrolment.
        challenge_ttl: Lifetime of a login challenge.
        otp_ttl: Lifetime of an SMS/EMAIL one-time code.
        code_sender: Delivery for one-time codes.
        attestation_verifier: Checks HARDWARE_TOKEN/BIOMETRIC assertions.
        clock: Source of "now".
    """

    def __init__(
        self,
        db: Database,
        users: UserStore,
        *,
        issuer: str = "Bastion-IAM",
        totp_window: int = 1,
        backup_codes_count: int = 10,
        challenge_ttl: timedelta = timedelta(minutes=5),
        otp_ttl: timedelta = timedelta(minutes=5),
        code_sender: CodeSender | None = None,
        attestation_verifier: AttestationVerifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._users = users
        self._issuer = issuer
        self._window = totp_window
        self._backup_count = backup_codes_count
        self._challenge_ttl = challenge_ttl
        self._otp_ttl = otp_ttl
        self._sender: CodeSender = code_sender or LoggingCodeSender()
        self._attestation = attestation_verifier
        self._clock = clock or utcnow

    # ---- Enrollment ----

    def setup(
        self,
        principal: Principal,
        method_type: MFAMethodType,
        *,
        enabled: bool = True,
        priority: int = 0,
        destination: str | None = None,
        reference: str | None = None,
    ) -> MFAEnrollment:
        """Enroll (or re-enroll) a factor and return its method-specific payload."""
        now = self._clock()
        method = MFAMethod(type=method_type, enabled=enabled, priority=priority, created_at=now)
        enrollment = MFAEnrollment(method=method_type, enabled=enabled, priority=priority)

        if method_type == MFAMethodType.TOTP:
            method.secret = pyotp.random_base32()
            enrollment.secret = method.secret
            enrollment.provisioning_uri = pyotp.TOTP(method.secret).provisioning_uri(
                name=principal.email or principal.username, issuer_name=self._issuer
            )
            codes = [self._new_backup_code() for _ in range(self._backup_count)]
            enrollment.backup_codes = codes
        elif method_type.uses_one_time_code:
            target = destination or (principal.email if method_type == MFAMethodType.EMAIL else "")
            if not target:
                raise MFASetupError(f"{method_type.value} enrollment requires a destination")
            method.destination = target
            enrollment.masked_destination = mask_destination(target)
        else:
            if not reference:
                raise MFASetupError(f"{method_type.value} enrollment requires a reference")
            method.reference = reference
            enrollment.reference = reference

        self._users.upsert_mfa_method(principal.principal_id, method)
        if enrollment.backup_codes is not None:
            self._users.replace_backup_codes(
                principal.principal_id, [_digest(c) for c in enrollment.backup_codes]
            )
        logger.info(
            "MFA method %s enrolled for %s (enabled=%s)",
            method_type.value,
            principal.principal_id,
            enabled,
        )
        return enrollment

    def revoke(self, principal_id: str, method_type: MFAMethodType) -> bool:
        removed = self._users.delete_mfa_method(principal_id, method_type)
        if removed:
            logger.info("MFA method %s removed for %s", method_type.value, principal_id)
        return removed

    def regenerate_backup_codes(self, principal: Principal) -> list[str]:
        if principal.method(MFAMethodType.TOTP) is None:
            raise MFASetupError("Backup codes require an enrolled TOTP method")
        codes = [self._new_backup_code() for _ in range(self._backup_count)]
        self._users.replace_backup_codes(principal.principal_id, [_digest(c) for c in codes])
        return codes

    @staticmethod
    def available_methods(principal: Principal) -> list[MFAMethodType]:
        return [m.type for m in principal.enabled_mfa_methods]

    @staticmethod
    def _new_backup_code() -> str:
        raw = secrets.token_hex(5)
        return f"{raw[:5]}-{raw[5:]}"

    # ---- Challenges ----

    def open_challenge(self, principal: Principal, context: RequestContext) -> MFAChallenge:
        """Start the MFA step of a login. A single enabled method is preselected."""
        now = self._clock()
        methods = principal.enabled_mfa_methods
        challenge = MFAChallenge(
            challenge_id=secrets.token_urlsafe(32),
            principal_id=principal.principal_id,
            created_at=now,
            expires_at=now + self._challenge_ttl,
            method=methods[0].type if len(methods) == 1 else None,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_id=context.device_id,
        )
        code = None
        if challenge.method is not None and challenge.method.uses_one_time_code:
            code = self._issue_otp(challenge, now)
        with self._db.connect(write=True) as conn:
            conn.execute(
                "DELETE FROM mfa_challenges WHERE expires_at <= ?", (ts(now),)
            )
            conn.execute(
                "INSERT INTO mfa_challenges (challenge_id, principal_id, created_at, expires_at, "
                "method, otp_hash, otp_expires_at, ip_address, user_agent, device_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    challenge.challenge_id,
                    challenge.principal_id,
                    ts(challenge.created_at),
                    ts(challenge.expires_at),
                    challenge.method.value if challenge.method else None,
                    challenge.otp_hash,
                    ts(challenge.otp_expires_at),
                    challenge.ip_address,
                    challenge.user_agent,
                    challenge.device_id,
                ),
            )
        if code is not None:
            self._dispatch(principal, challenge.method, code)
        return challenge

    def get_challenge(self, challenge_id: str) -> MFAChallenge:
        """Return a live challenge or raise MFAVerificationFailed."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_challenges WHERE challenge_id = ?", (challenge_id,)
            ).fetchone()
        if row is None:
            raise MFAVerificationFailed()
        challenge = MFAChallenge(
            challenge_id=row["challenge_id"],
            principal_id=row["principal_id"],
            created_at=parse_ts(row["created_at"]),
            expires_at=parse_ts(row["expires_at"]),
            method=MFAMethodType(row["method"]) if row["method"] else None,
            otp_hash=row["otp_hash"],
            otp_expires_at=parse_ts(row["otp_expires_at"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            device_id=row["device_id"],
            consumed=bool(row["consumed"]),
        )
        if challenge.consumed or self._clock() >= challenge.expires_at:
            raise MFAVerificationFailed()
        return challenge

    def select_method(
        self, challenge_id: str, principal: Principal, method_type: MFAMethodType
    ) -> MFAChallenge:
        """Choose the factor for a challenge; sends a fresh code for SMS/EMAIL."""
        challenge = self.get_challenge(challenge_id)
        if challenge.principal_id != principal.principal_id:
            raise MFAVerificationFailed()
        if method_type not in self.available_methods(principal):
            raise MFAVerificationFailed("MFA method not available")
        now = self._clock()
        challenge.method = method_type
        challenge.otp_hash = ""
        challenge.otp_expires_at = None
        code = self._issue_otp(challenge, now) if method_type.uses_one_time_code else None
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE mfa_challenges SET method = ?, otp_hash = ?, otp_expires_at = ? "
                "WHERE challenge_id = ? AND consumed = 0 AND expires_at > ?",
                (
                    method_type.value,
                    challenge.otp_hash,
                    ts(challenge.otp_expires_at),
                    challenge_id,
                    ts(now),
                ),
            )
        if cur.rowcount != 1:
            raise MFAVerificationFailed()
        if code is not None:
            self._dispatch(principal, method_type, code)
        return challenge

    def consume_challenge(self, challenge_id: str) -> bool:
        """Mark a challenge used. True only for the single caller that consumed it."""
        with self._db.connect(write=True) as conn:
            cur = conn.execute(
                "UPDATE mfa_challenges SET consumed = 1 "
                "WHERE challenge_id = ? AND consumed = 0 AND expires_at > ?",
                (challenge_id, ts(self._clock())),
            )
        return cur.rowcount == 1

    def _issue_otp(self, challenge: MFAChallenge, now: datetime) -> str:
        code = f"{secrets.randbelow(10 ** _OTP_DIGITS):0{_OTP_DIGITS}d}"
        challenge.otp_hash = _digest(code)
        challenge.otp_expires_at = now + self._otp_ttl
        return code

    def _dispatch(self, principal: Principal, method_type: MFAMethodType, code: str) -> None:
        method = principal.method(method_type)
        destination = method.destination if method else ""
        self._sender.send(method_type, destination, code)

    # ---- Verification ----

    def verify(
        self,
        principal: Principal,
        method_type: MFAMethodType,
        token: str,
        challenge: MFAChallenge | None = None,
    ) -> str:
        """Verify a second factor. Returns how it was satisfied (e.g. ``"totp"``).

        Raises:
            MFAVerificationFailed: wrong, expired, replayed or unsupported token.
        """
        method = principal.method(method_type)
        if method is None or not method.enabled or not token:
            raise MFAVerificationFailed()

        if method_type == MFAMethodType.TOTP:
            backup = normalise_backup_code(token)
            if backup is not None:
                if self._users.consume_backup_code(principal.principal_id, _digest(backup)):
                    logger.info("Backup code used by %s", principal.principal_id)
                    return "backup_code"
                raise MFAVerificationFailed()
            self._verify_totp(principal.principal_id, method, token)
            return "totp"

        if method_type.uses_one_time_code:
            if challenge is None or challenge.method != method_type or not challenge.otp_hash:
                raise MFAVerificationFailed()
            if challenge.otp_expires_at is None or self._clock() >= challenge.otp_expires_at:
                raise MFAVerificationFailed()
            if not hmac.compare_digest(challenge.otp_hash, _digest(token.strip())):
                raise MFAVerificationFailed()
            return method_type.value.lower()

        if self._attestation is None:
            logger.warning(
                "No attestation verifier configured; rejecting %s assertion", method_type.value
            )
            raise MFAVerificationFailed()
        if not self._attestation(principal, method, token):
            raise MFAVerificationFailed()
        return method_type.value.lower()

    def _verify_totp(self, principal_id: str, method: MFAMethod, token: str) -> None:
        code = token.strip().replace(" ", "")
        totp = pyotp.TOTP(method.secret)
        current = totp.timecode(self._clock())
        matched: int | None = None
        for offset in range(-self._window, self._window + 1):
            step = current + offset
            if hmac.compare_digest(totp.generate_otp(step), code):
                matched = step
                break
        if matched is None:
            raise MFAVerificationFailed()
        if matched <= method.last_used_step or not self._users.advance_totp_step(
            principal_id, matched
        ):
            logger.warning("Rejected replayed TOTP code for %s", principal_id)
            raise MFAVerificationFailed()
