"""Configuration management for the draft gateway."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class LoggingSettings(_Frozen):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(_Frozen):
    sqlite_path: str = Field(default="./data/draft_gateway.sqlite")
    sqlite_wal: bool = Field(default=True)


class PolicySettings(_Frozen):
    path: str = Field(default="./policy.yaml")


class AuthSettings(_Frozen):
    """Identity provider settings.

    ``jwt`` verifies bearer tokens with PyJWT, either against a shared HMAC
    secret (``jwt_secret``) or a JWKS document (``jwks_uri``). ``static`` maps
    fixed tokens to user ids and exists for local runs and tests.
    """

    provider: Literal["jwt", "static"] = Field(default="jwt")
    jwt_secret: str | None = Field(default=None, repr=False)
    jwks_uri: str | None = Field(default=None)
    issuer: str | None = Field(default=None)
    audience: str | None = Field(default=None)
    algorithms: tuple[str, ...] = Field(default=("HS256",))
    clock_skew_seconds: int = Field(default=30, ge=0, le=300)
    jwks_cache_ttl_seconds: int = Field(default=3600, ge=60, le=86400)
    static_tokens: dict[str, str] = Field(default_factory=dict, repr=False)

    @field_validator("algorithms")
    @classmethod
    def _reject_none_algorithm(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if any(alg.lower() == "none" for alg in value):
            raise ValueError("Algorithm 'none' is not allowed")
        return value


class SigningSettings(_Frozen):
    secret: str | None = Field(default=None, repr=False)
    confirmation_ttl_seconds: int = Field(default=600, ge=30, le=86400)
    legacy_ttl_seconds: int = Field(default=600, ge=30, le=86400)


class ExecutionSettings(_Frozen):
    reservation_stale_seconds: int = Field(
        default=600,
        ge=30,
        le=86400,
        description="Age after which a 'reserved' row may be taken over.",
    )
    max_legacy_batch: int = Field(default=20, ge=1, le=100)


class LimitSettings(_Frozen):
    window_seconds: int = Field(default=60, ge=1, le=3600)
    dry_run_per_window: int = Field(default=60, ge=1)
    confirm_per_window: int = Field(default=20, ge=1)
    execute_per_window: int = Field(default=20, ge=1)
    sign_per_window: int = Field(default=20, ge=1)
    legacy_execute_per_window: int = Field(default=20, ge=1)

    def limit_for(self, mode: str) -> int:
        return {
            "dry_run": self.dry_run_per_window,
            "confirm": self.confirm_per_window,
            "execute": self.execute_per_window,
            "sign": self.sign_per_window,
            "legacy_execute": self.legacy_execute_per_window,
        }.get(mode, self.execute_per_window)


class MaintenanceSettings(_Frozen):
    key: str | None = Field(default=None, repr=False)
    allowed_ips: tuple[str, ...] = Field(default=())
    dedupe_retention_minutes: int = Field(default=60, ge=1)
    rate_limit_retention_hours: int = Field(default=24, ge=1)
    pending_approval_retention_days: int = Field(default=7, ge=1)


class ServerSettings(_Frozen):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1024, le=65535)
    app_env: Literal["dev", "staging", "prod"] = Field(default="dev")
    http_allowed_origins: tuple[str, ...] = Field(default=())
    http_enable_cors: bool = Field(default=False)
    http_trust_forwarded_headers: bool = Field(default=False)
    max_body_size_kb: int = Field(default=256, ge=1)
    max_header_size_kb: int = Field(default=8, ge=1)
    request_timeout_seconds: float = Field(default=30.0, ge=0.1)
    audit_enabled: bool = Field(default=True)


class Settings(_Frozen):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)


ENV_KEYS = {
    "host": "GATEWAY_HOST",
    "port": "GATEWAY_PORT",
    "app_env": "APP_ENV",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "sqlite_path": "SQLITE_PATH",
    "policy_path": "POLICY_PATH",
    "auth_provider": "AUTH_PROVIDER",
    "signing_secret": "GATEWAY_SIGNING_SECRET",
    "maintenance_key": "MAINTENANCE_KEY",
    "maintenance_ips": "MAINTENANCE_ALLOWED_IPS",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})
_MIN_SECRET_LENGTH = 16


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_static_tokens(value: str | None) -> dict[str, str]:
    """Parse ``token=user_id`` pairs separated by commas."""
    tokens: dict[str, str] = {}
    for item in _split_csv_preserve_case(value):
        token, sep, user_id = item.partition("=")
        if not sep or not token.strip() or not user_id.strip():
            _config_logger.warning("Ignoring malformed AUTH_STATIC_TOKENS entry")
            continue
        tokens[token.strip()] = user_id.strip()
    return tokens


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    algorithms = _split_csv_preserve_case(os.getenv("AUTH_JWT_ALGORITHMS"))

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "app_env": os.getenv(ENV_KEYS["app_env"], ServerSettings().app_env),
            "http_allowed_origins": tuple(
                _split_csv_preserve_case(os.getenv("HTTP_ALLOWED_ORIGINS"))
            ),
            "http_enable_cors": _env_bool("HTTP_ENABLE_CORS", ServerSettings().http_enable_cors),
            "http_trust_forwarded_headers": _env_bool(
                "HTTP_TRUST_FORWARDED_HEADERS",
                ServerSettings().http_trust_forwarded_headers,
            ),
            "max_body_size_kb": _env_int(
                "HTTP_MAX_BODY_SIZE_KB", ServerSettings().max_body_size_kb
            ),
            "max_header_size_kb": _env_int(
                "HTTP_MAX_HEADER_SIZE_KB", ServerSettings().max_header_size_kb
            ),
            "request_timeout_seconds": _env_float(
                "HTTP_REQUEST_TIMEOUT_SECONDS",
                ServerSettings().request_timeout_seconds,
            ),
            "audit_enabled": _env_bool("HTTP_AUDIT_ENABLED", ServerSettings().audit_enabled),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
        },
        "policy": {
            "path": _resolve_path(os.getenv(ENV_KEYS["policy_path"], PolicySettings().path)),
        },
        "auth": {
            "provider": os.getenv(ENV_KEYS["auth_provider"], AuthSettings().provider),
            "jwt_secret": os.getenv("AUTH_JWT_SECRET") or None,
            "jwks_uri": os.getenv("AUTH_JWKS_URI") or None,
            "issuer": os.getenv("AUTH_JWT_ISSUER") or None,
            "audience": os.getenv("AUTH_JWT_AUDIENCE") or None,
            "algorithms": tuple(algorithms) if algorithms else AuthSettings().algorithms,
            "clock_skew_seconds": _env_int(
                "AUTH_CLOCK_SKEW_SECONDS", AuthSettings().clock_skew_seconds
            ),
            "jwks_cache_ttl_seconds": _env_int(
                "AUTH_JWKS_CACHE_TTL_SECONDS", AuthSettings().jwks_cache_ttl_seconds
            ),
            "static_tokens": _parse_static_tokens(os.getenv("AUTH_STATIC_TOKENS")),
        },
        "signing": {
            "secret": os.getenv(ENV_KEYS["signing_secret"]) or None,
            "confirmation_ttl_seconds": _env_int(
                "DRAFT_CONFIRMATION_TTL_SECONDS",
                SigningSettings().confirmation_ttl_seconds,
            ),
            "legacy_ttl_seconds": _env_int(
                "LEGACY_PROPOSAL_TTL_SECONDS",
                SigningSettings().legacy_ttl_seconds,
            ),
        },
        "execution": {
            "reservation_stale_seconds": _env_int(
                "RESERVATION_STALE_SECONDS",
                ExecutionSettings().reservation_stale_seconds,
            ),
            "max_legacy_batch": _env_int(
                "LEGACY_MAX_BATCH", ExecutionSettings().max_legacy_batch
            ),
        },
        "limits": {
            "window_seconds": _env_int("RATE_LIMIT_WINDOW_SECONDS", LimitSettings().window_seconds),
            "dry_run_per_window": _env_int(
                "RATE_LIMIT_DRY_RUN", LimitSettings().dry_run_per_window
            ),
            "confirm_per_window": _env_int(
                "RATE_LIMIT_CONFIRM", LimitSettings().confirm_per_window
            ),
            "execute_per_window": _env_int(
                "RATE_LIMIT_EXECUTE", LimitSettings().execute_per_window
            ),
            "sign_per_window": _env_int("RATE_LIMIT_SIGN", LimitSettings().sign_per_window),
            "legacy_execute_per_window": _env_int(
                "RATE_LIMIT_LEGACY_EXECUTE", LimitSettings().legacy_execute_per_window
            ),
        },
        "maintenance": {
            "key": os.getenv(ENV_KEYS["maintenance_key"]) or None,
            "allowed_ips": tuple(_split_csv_preserve_case(os.getenv(ENV_KEYS["maintenance_ips"]))),
            "dedupe_retention_minutes": _env_int(
                "MAINTENANCE_DEDUPE_RETENTION_MINUTES",
                MaintenanceSettings().dedupe_retention_minutes,
            ),
            "rate_limit_retention_hours": _env_int(
                "MAINTENANCE_RATE_LIMIT_RETENTION_HOURS",
                MaintenanceSettings().rate_limit_retention_hours,
            ),
            "pending_approval_retention_days": _env_int(
                "MAINTENANCE_PENDING_APPROVAL_RETENTION_DAYS",
                MaintenanceSettings().pending_approval_retention_days,
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    validate_settings(settings)
    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)
    return settings


def validate_settings(settings: Settings) -> None:
    """Cross-field checks that pydantic field validation cannot express."""
    secret = settings.signing.secret
    if not secret or len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            "Invalid configuration: GATEWAY_SIGNING_SECRET must be set "
            f"(at least {_MIN_SECRET_LENGTH} characters)"
        )
    if settings.auth.provider == "jwt" and not (
        settings.auth.jwt_secret or settings.auth.jwks_uri
    ):
        raise RuntimeError(
            "Invalid configuration: AUTH_JWT_SECRET or AUTH_JWKS_URI is required "
            "for AUTH_PROVIDER=jwt"
        )
    if settings.auth.provider == "static" and not settings.auth.static_tokens:
        raise RuntimeError(
            "Invalid configuration: AUTH_STATIC_TOKENS is required for AUTH_PROVIDER=static"
        )
