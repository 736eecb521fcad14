"""Exception taxonomy for the IAM core.

Authentication and authorization errors carry deliberately generic messages:
the HTTP layer returns ``str(exc)`` to unauthenticated callers, so nothing in
those messages may distinguish an unknown user from a wrong password.
"""

from __future__ import annotations


class IAMError(Exception):
    """Base class for all IAM core errors."""

    public_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class InvalidCredentials(IAMError):
    """Bad username or password (never says which)."""

    public_message = "Invalid username or password"


class AccountLocked(IAMError):
    """Too many failed attempts; retry after ``retry_after`` seconds."""

    public_message = "Account temporarily locked"

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(int(retry_after), 0)


class MFARequired(IAMError):
    """A second factor is outstanding. An outcome, not a failure."""

    public_message = "Multi-factor authentication required"


class MFAVerificationFailed(IAMError):
    public_message = "Invalid or expired verification code"


class MFASetupError(IAMError):
    public_message = "MFA setup failed"


class SessionError(IAMError):
    """Session could not be validated; callers must treat it as unauthenticated."""

    public_message = "Authentication required"


class SessionNotFound(SessionError):
    pass


class SessionExpired(SessionError):
    public_message = "Session expired"


class PermissionDenied(IAMError):
    public_message = "Insufficient permissions"


class ConfigurationError(IAMError):
    """Malformed policy or configuration update. Messages may be detailed."""

    public_message = "Invalid configuration"


class PasswordPolicyError(ConfigurationError):
    public_message = "Password does not satisfy the password policy"


class PrincipalNotFound(IAMError):
    """Administrative lookup miss (never raised on the login path)."""

    public_message = "Principal not found"


class AuditWriteFailed(IAMError):
    """Operational: an audit event could not be persisted."""

    public_message = "Audit write failed"


class StoreUnavailable(IAMError):
    """The store of record failed. Detail goes to the operational log only."""

    public_message = "Internal error"
