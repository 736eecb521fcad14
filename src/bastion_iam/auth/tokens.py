"""HMAC-signed access/refresh/id tokens.

Format: ``base64url(payload_json) + "." + base64url(hmac_sha256(secret, payload_json))``
with unpadded base64url. The payload carries ``typ`` (access, refresh, id),
``sub`` (principal id), ``sid`` (session id), ``iat``/``exp`` (epoch seconds)
and a random ``jti``. A token is only a pointer to a server-side session:
:class:`SessionManager` remains the authority on whether it is still live.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from bastion_iam.auth.models import Principal, Session, TokenBundle
from bastion_iam.errors import SessionNotFound
from bastion_iam.store import Clock, utcnow

logger = logging.getLogger(__name__)

_SECRET_FILE = "token_secret"

ACCESS = "access"
REFRESH = "refresh"
ID = "id"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def load_or_create_secret(data_dir: Path) -> str:
    """Return the token secret kept in *data_dir*, creating it on first use."""
    secret_path = data_dir / _SECRET_FILE
    if secret_path.exists():
        return secret_path.read_text().strip()
    data_dir.mkdir(parents=True, exist_ok=True)
    secret = secrets.token_hex(32)
    secret_path.write_text(secret)
    # Restrict permissions on Unix
    try:
        secret_path.chmod(0o600)
    except OSError:
        pass
    logger.info("Generated new token secret at %s", secret_path)
    return secret


class TokenSigner:
    """Creates and verifies session-bound tokens.

    Args:
        secret: HMAC key.
        access_ttl: Access token lifetime (capped at the session expiry).
        clock: Source of "now".
    """

    def __init__(
        self,
        secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        clock: Clock | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._key = secret.encode()
        self._access_ttl = access_ttl
        self._clock = clock or utcnow

    def issue(self, principal: Principal, session: Session) -> TokenBundle:
        """Issue an access/refresh/id token triple for a session."""
        now = self._clock()
        access_exp = min(now + self._access_ttl, session.expires_at)
        base = {"sub": principal.principal_id, "sid": session.session_id}
        access = self._sign({**base, "typ": ACCESS}, now, access_exp)
        refresh = self._sign({**base, "typ": REFRESH}, now, session.expires_at)
        id_token = self._sign(
            {
                **base,
                "typ": ID,
                "username": principal.username,
                "email": principal.email,
                "mfa": session.mfa_verified,
            },
            now,
            session.expires_at,
        )
        return TokenBundle(
            access_token=access,
            refresh_token=refresh,
            id_token=id_token,
            expires_in=max(int((access_exp - now).total_seconds()), 0),
        )

    def verify(self, token: str, expected_type: str) -> dict[str, Any]:
        """Check signature, type and expiry. Raises SessionNotFound on any problem."""
        try:
            payload_b64, sig_b64 = token.split(".", 1)
            payload_bytes = _unb64(payload_b64)
            expected = hmac.new(self._key, payload_bytes, hashlib.sha256).digest()
            if not hmac.compare_digest(expected, _unb64(sig_b64)):
                raise SessionNotFound()
            data = json.loads(payload_bytes)
        except (ValueError, binascii.Error, UnicodeDecodeError) as e:
            raise SessionNotFound() from e
        if not isinstance(data, dict) or data.get("typ") != expected_type:
            raise SessionNotFound()
        if not isinstance(data.get("exp"), int) or self._clock().timestamp() >= data["exp"]:
            raise SessionNotFound()
        if not data.get("sid") or not data.get("sub"):
            raise SessionNotFound()
        return data

    def _sign(self, claims: dict[str, Any], now: datetime, expires: datetime) -> str:
        payload = dict(claims)
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int(expires.timestamp())
        payload["jti"] = secrets.token_hex(8)
        raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        sig = hmac.new(self._key, raw, hashlib.sha256).digest()
        return f"{_b64(raw)}.{_b64(sig)}"
