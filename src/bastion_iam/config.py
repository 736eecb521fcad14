"""Configuration loading and the runtime IAM policy model.

Resolution order (later wins)::

    built-in defaults <- environment profile <- YAML file <- BASTION_IAM_* env vars

The profile (``development``, ``staging`` or ``production``) is taken from the
``profile`` argument, the ``BASTION_IAM_PROFILE`` variable or a top-level
``profile:`` key in the file, in that order.

The subset of settings that administrators may change at runtime lives in
:class:`IAMPolicy`. Its live value is persisted in the store of record (see
``bastion_iam.store.PolicyStore``) so that every replica enforces the same policy;
the file only seeds it.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from bastion_iam.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".bastion-iam" / "config.yaml"

_DEFAULTS: dict[str, Any] = {
    "profile": None,
    "storage": {
        "db_path": "~/.bastion-iam/iam.db",
        "busy_timeout_seconds": 5.0,
    },
    "audit": {
        "dir": "~/.bastion-iam/audit",
        "background": True,
        "fsync": True,
        "default_page_size": 100,
        "max_page_size": 1000,
    },
    "session": {
        "timeout_minutes": 60,
        "absolute_timeout_minutes": 720,
        "sliding_expiration": False,
        "max_concurrent_sessions": 5,
        "access_token_minutes": 15,
    },
    "security": {
        "max_login_attempts": 5,
        "lockout_window_minutes": 15,
        "lockout_duration_minutes": 30,
        "require_mfa": False,
        "token_secret": "",
        "bcrypt_rounds": 12,
        "password_policy": {
            "min_length": 12,
            "max_length": 256,
            "require_uppercase": True,
            "require_lowercase": True,
            "require_numbers": True,
            "require_special": False,
        },
    },
    "mfa": {
        "issuer": "Bastion-IAM",
        "totp_window": 1,
        "backup_codes_count": 10,
        "challenge_ttl_minutes": 5,
        "otp_ttl_minutes": 5,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
    "serve": {
        "host": "127.0.0.1",
        "port": 8080,
    },
}

PROFILES: dict[str, dict[str, Any]] = {
    "development": {
        "audit": {"fsync": False},
        "session": {"timeout_minutes": 480},
        "security": {
            "max_login_attempts": 10,
            "lockout_duration_minutes": 5,
            "require_mfa": False,
            "password_policy": {"min_length": 8},
        },
    },
    "staging": {
        "session": {"timeout_minutes": 120},
        "security": {
            "max_login_attempts": 3,
            "lockout_duration_minutes": 15,
            "require_mfa": True,
        },
    },
    "production": {
        "session": {"timeout_minutes": 60, "max_concurrent_sessions": 3},
        "security": {
            "max_login_attempts": 3,
            "lockout_duration_minutes": 30,
            "require_mfa": True,
            "password_policy": {
                "min_length": 12,
                "require_uppercase": True,
                "require_lowercase": True,
                "require_numbers": True,
                "require_special": True,
            },
        },
    },
}

# env var -> (config path, converter)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Any]] = {
    "BASTION_IAM_DB_PATH": (("storage", "db_path"), str),
    "BASTION_IAM_AUDIT_DIR": (("audit", "dir"), str),
    "BASTION_IAM_TOKEN_SECRET": (("security", "token_secret"), str),
    "BASTION_IAM_SESSION_TIMEOUT": (("session", "timeout_minutes"), int),
    "BASTION_IAM_MAX_CONCURRENT_SESSIONS": (("session", "max_concurrent_sessions"), int),
    "BASTION_IAM_REQUIRE_MFA": (("security", "require_mfa"), "bool"),
    "BASTION_IAM_MAX_LOGIN_ATTEMPTS": (("security", "max_login_attempts"), int),
    "BASTION_IAM_LOCKOUT_DURATION": (("security", "lockout_duration_minutes"), int),
    "BASTION_IAM_LOG_LEVEL": (("logging", "level"), str),
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into a copy of *base*."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _convert_env(raw: str, converter: Any) -> Any:
    if converter == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return converter(raw)


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    for var, (path, converter) in _ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = _convert_env(raw, converter)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from e
        section = cfg
        for key in path[:-1]:
            section = section.setdefault(key, {})
        section[path[-1]] = value


def load_config(
    config_path: str | Path | None = None,
    profile: str | None = None,
) -> dict[str, Any]:
    """Load configuration with defaults, profile, file and environment overrides.

    Args:
        config_path: YAML file to read. ``None`` means :data:`DEFAULT_CONFIG_PATH`
            if it exists. A missing file is not an error.
        profile: Environment profile name overriding any file/env selection.

    Raises:
        ConfigurationError: unreadable YAML, unknown profile or bad env values.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    file_cfg: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        file_cfg = loaded or {}
        logger.debug("Loaded config file %s", path)

    profile_name = profile or os.environ.get("BASTION_IAM_PROFILE") or file_cfg.get("profile")
    cfg = copy.deepcopy(_DEFAULTS)
    if profile_name:
        if profile_name not in PROFILES:
            raise ConfigurationError(
                f"Unknown profile '{profile_name}' (expected one of: {', '.join(PROFILES)})"
            )
        cfg = _deep_merge(cfg, PROFILES[profile_name])
    cfg = _deep_merge(cfg, file_cfg)
    cfg["profile"] = profile_name
    _apply_env_overrides(cfg)
    return cfg


def generate_default_yaml() -> str:
    """Return a commented default config file."""
    return """\
# Bastion-IAM configuration
# Environment variables (BASTION_IAM_*) override values in this file.

# Optional preset: development | staging | production
profile: null

storage:
  # SQLite store of record shared by all workers on this host
  db_path: ~/.bastion-iam/iam.db
  busy_timeout_seconds: 5.0

audit:
  # Daily JSONL files, hash-chained
  dir: ~/.bastion-iam/audit
  background: true        # write from a background thread
  fsync: true
  default_page_size: 100
  max_page_size: 1000

session:
  timeout_minutes: 60
  absolute_timeout_minutes: 720
  sliding_expiration: false
  max_concurrent_sessions: 5
  access_token_minutes: 15

security:
  max_login_attempts: 5
  lockout_window_minutes: 15
  lockout_duration_minutes: 30
  require_mfa: false
  # HMAC key for tokens. Empty = generate and keep one next to the database.
  token_secret: ""
  bcrypt_rounds: 12       # cost factor for new password hashes
  password_policy:
    min_length: 12
    max_length: 256
    require_uppercase: true
    require_lowercase: true
    require_numbers: true
    require_special: false

mfa:
  issuer: Bastion-IAM
  totp_window: 1          # accepted clock skew in 30s steps
  backup_codes_count: 10
  challenge_ttl_minutes: 5
  otp_ttl_minutes: 5

logging:
  level: INFO
  file: null

serve:
  host: 127.0.0.1
  port: 8080
"""


# ---------------------------------------------------------------------------
# Runtime policy
# ---------------------------------------------------------------------------

def _camel(key: str) -> str:
    return to_camel(key) if "_" in key else key


class _PolicyModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class SessionPolicy(_PolicyModel):
    timeout: int = Field(default=60, ge=1, le=7 * 24 * 60, description="minutes")
    absolute_timeout: int = Field(default=720, ge=1, le=30 * 24 * 60, description="minutes")
    sliding_expiration: bool = False
    max_concurrent_sessions: int = Field(default=5, ge=1, le=100)
    require_mfa: bool = False


class SecurityPolicy(_PolicyModel):
    max_login_attempts: int = Field(default=5, ge=1, le=100)
    lockout_window: int = Field(default=15, ge=1, le=24 * 60, description="minutes")
    lockout_duration: int = Field(default=30, ge=1, le=7 * 24 * 60, description="minutes")


class PasswordPolicy(_PolicyModel):
    min_length: int = Field(default=12, ge=8, le=128)
    max_length: int = Field(default=256, ge=8, le=1024)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special: bool = False


class IAMPolicy(_PolicyModel):
    """Administrator-tunable IAM policy (``GET``/``PUT /config``)."""

    session: SessionPolicy = Field(default_factory=SessionPolicy)
    security: SecurityPolicy = Field(default_factory=SecurityPolicy)
    password: PasswordPolicy = Field(default_factory=PasswordPolicy)

    @model_validator(mode="after")
    def _absolute_covers_idle(self) -> IAMPolicy:
        if self.session.absolute_timeout < self.session.timeout:
            raise ValueError("session.absoluteTimeout must be >= session.timeout")
        if self.password.max_length < self.password.min_length:
            raise ValueError("password.maxLength must be >= password.minLength")
        return self

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> IAMPolicy:
        """Seed a policy from a loaded config dict."""
        sess = cfg.get("session", {})
        sec = cfg.get("security", {})
        pwd = sec.get("password_policy", {})
        return cls.parse_update(
            {
                "session": {
                    "timeout": sess.get("timeout_minutes", 60),
                    "absolute_timeout": sess.get("absolute_timeout_minutes", 720),
                    "sliding_expiration": sess.get("sliding_expiration", False),
                    "max_concurrent_sessions": sess.get("max_concurrent_sessions", 5),
                    "require_mfa": sec.get("require_mfa", False),
                },
                "security": {
                    "max_login_attempts": sec.get("max_login_attempts", 5),
                    "lockout_window": sec.get("lockout_window_minutes", 15),
                    "lockout_duration": sec.get("lockout_duration_minutes", 30),
                },
                "password": {
                    "min_length": pwd.get("min_length", 12),
                    "max_length": pwd.get("max_length", 256),
                    "require_uppercase": pwd.get("require_uppercase", True),
                    "require_lowercase": pwd.get("require_lowercase", True),
                    "require_numbers": pwd.get("require_numbers", True),
                    "require_special": pwd.get("require_special", False),
                },
            }
        )

    @classmethod
    def parse_update(cls, data: dict[str, Any]) -> IAMPolicy:
        """Validate a full policy document, mapping errors to ConfigurationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'policy'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid IAM policy: {problems}") from e

    def merged(self, patch: dict[str, Any]) -> IAMPolicy:
        """Return a new validated policy with *patch* (camelCase or snake_case) applied."""
        if not isinstance(patch, dict):
            raise ConfigurationError("Policy update must be an object")
        current = self.model_dump(by_alias=True)
        normalised: dict[str, Any] = {}
        for section, values in patch.items():
            key = _camel(section)
            if key not in current:
                raise ConfigurationError(f"Unknown policy section '{section}'")
            if not isinstance(values, dict):
                raise ConfigurationError(f"Policy section '{section}' must be an object")
            normalised[key] = {_camel(k): v for k, v in values.items()}
        return self.parse_update(_deep_merge(current, normalised))
