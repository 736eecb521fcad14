"""Risk scoring for logins and security events (0.0 = benign, 1.0 = hostile)."""

from __future__ import annotations

import ipaddress
import re

_BASE_SCORE = 0.1

# Source address class -> added risk
_PRIVATE_IP_RISK = 0.1
_PUBLIC_IP_RISK = 0.3
_UNKNOWN_IP_RISK = 0.1

_AUTOMATED_AGENT_RISK = 0.5
_AUTOMATED_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget|python-requests", re.I)

_PER_FAILURE_RISK = 0.1
_MAX_FAILURE_RISK = 0.3

# Fixed scores for events that are not logins
EVENT_RISK: dict[str, float] = {
    "LOGIN_FAILURE": 0.5,
    "LOCKOUT": 0.8,
    "MFA_FAILURE": 0.6,
    "PERMISSION_DENIED": 0.5,
    "PERMISSION_GRANTED": 0.1,
    "SESSION_EVICTED": 0.2,
}


def _ip_risk(ip: str) -> float:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        # missing or unparsable source address
        return _PUBLIC_IP_RISK
    if addr.is_private or addr.is_loopback:
        return _PRIVATE_IP_RISK
    return _PUBLIC_IP_RISK


def is_automated_agent(user_agent: str) -> bool:
    return bool(_AUTOMATED_AGENT.search(user_agent or ""))


def score_login(
    ip_address: str,
    user_agent: str,
    failed_attempts: int = 0,
    known_ip: bool = True,
) -> float:
    """Score a login attempt.

    Args:
        ip_address: Source address as seen by the HTTP layer.
        user_agent: Client user agent.
        failed_attempts: Failures currently counted against the principal.
        known_ip: Whether the principal has had a session from this address before.

    Returns:
        Risk in ``[0.0, 1.0]``, rounded to two decimals.
    """
    score = _BASE_SCORE + _ip_risk(ip_address)
    if is_automated_agent(user_agent):
        score += _AUTOMATED_AGENT_RISK
    score += min(max(failed_attempts, 0) * _PER_FAILURE_RISK, _MAX_FAILURE_RISK)
    if not known_ip:
        score += _UNKNOWN_IP_RISK
    return round(min(max(score, 0.0), 1.0), 2)


def event_risk(kind: str) -> float:
    return EVENT_RISK.get(kind, 0.0)
