"""Identity providers that turn a bearer token into an authenticated user.

Two implementations are selected by ``AUTH_PROVIDER``:

- ``JwtIdentityProvider`` verifies JWTs with PyJWT, using either a shared
  HMAC secret or keys fetched from a JWKS endpoint.
- ``StaticIdentityProvider`` maps fixed tokens to user ids (local runs, tests).

``authenticate`` never raises for a bad token; it returns ``AuthFailure``.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
import jwt

from draft_gateway.config import AuthSettings

logger = logging.getLogger(__name__)

_JWKS_FETCH_TIMEOUT_SECONDS = 10.0
_JWKS_FAILURE_BACKOFF_SECONDS = 60


class TokenValidationError(Exception):
    """Token validation failure with error code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None
    issuer: str = ""
    expiry: datetime | None = None
    raw_claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthFailure:
    code: str
    message: str


AuthResult = Identity | AuthFailure


class IdentityProvider(Protocol):
    async def authenticate(self, token: str) -> AuthResult: ...


class StaticIdentityProvider:
    """Token table lookup. Never use in production deployments."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = dict(tokens)

    async def authenticate(self, token: str) -> AuthResult:
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                return Identity(user_id=user_id, issuer="static")
        return AuthFailure("invalid_token", "Invalid token")


class JWKSClient:
    """JWKS client with TTL caching and failure backoff."""

    def __init__(self, jwks_uri: str, ttl_seconds: int = 3600) -> None:
        self.jwks_uri = jwks_uri
        self.ttl_seconds = ttl_seconds
        self._jwks_data: dict[str, Any] | None = None
        self._last_fetch: datetime | None = None
        self._last_failure: datetime | None = None
        self._lock = asyncio.Lock()

    async def get_signing_key(self, kid: str | None) -> Any:
        async with self._lock:
            if self._should_refresh():
                await self._refresh()

        keys = (self._jwks_data or {}).get("keys", [])
        if not keys:
            raise TokenValidationError("No keys in JWKS", "jwks_error")

        if kid is None:
            return self._jwk_to_key(keys[0])
        for key in keys:
            if key.get("kid") == kid:
                return self._jwk_to_key(key)

        # Unknown kid: the issuer may have rotated keys.
        async with self._lock:
            await self._refresh(force=True)
        for key in (self._jwks_data or {}).get("keys", []):
            if key.get("kid") == kid:
                return self._jwk_to_key(key)
        raise TokenValidationError("Signing key not found", "key_not_found")

    @staticmethod
    def _jwk_to_key(jwk_data: dict[str, Any]) -> Any:
        kty = str(jwk_data.get("kty", "")).upper()
        if kty == "RSA":
            return jwt.algorithms.RSAAlgorithm.from_jwk(jwk_data)
        if kty == "EC":
            return jwt.algorithms.ECAlgorithm.from_jwk(jwk_data)
        if kty == "OKP":
            return jwt.algorithms.OKPAlgorithm.from_jwk(jwk_data)
        raise TokenValidationError(f"Unsupported key type: {kty}", "unsupported_key_type")

    def _should_refresh(self) -> bool:
        if self._jwks_data is None or self._last_fetch is None:
            return True
        age = (datetime.now(timezone.utc) - self._last_fetch).total_seconds()
        return age >= self.ttl_seconds

    def _can_retry(self) -> bool:
        if self._last_failure is None:
            return True
        elapsed = (datetime.now(timezone.utc) - self._last_failure).total_seconds()
        return elapsed >= _JWKS_FAILURE_BACKOFF_SECONDS

    async def _refresh(self, force: bool = False) -> None:
        if not force and not self._can_retry():
            logger.debug("JWKS refresh skipped (backoff)")
            return
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(self.jwks_uri, timeout=_JWKS_FETCH_TIMEOUT_SECONDS)
                resp.raise_for_status()
                self._jwks_data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._last_failure = datetime.now(timezone.utc)
            logger.warning("JWKS fetch from %s failed: %s", self.jwks_uri, exc)
            if self._jwks_data is None:
                raise TokenValidationError(f"JWKS fetch failed: {exc}", "jwks_error") from exc
            return
        self._last_fetch = datetime.now(timezone.utc)
        self._last_failure = None
        logger.info("JWKS refreshed from %s", self.jwks_uri)


class JwtIdentityProvider:
    """Verifies bearer JWTs and extracts the ``sub`` claim as the user id."""

    def __init__(self, settings: AuthSettings, jwks_client: JWKSClient | None = None) -> None:
        self._settings = settings
        self._secret = settings.jwt_secret
        self._algorithms = list(settings.algorithms)
        self._jwks_client = jwks_client
        if self._jwks_client is None and settings.jwks_uri:
            self._jwks_client = JWKSClient(settings.jwks_uri, settings.jwks_cache_ttl_seconds)
        if self._secret is None and self._jwks_client is None:
            raise ValueError("JwtIdentityProvider needs a jwt_secret or a jwks_uri")

    async def authenticate(self, token: str) -> AuthResult:
        try:
            claims = await self._decode(token)
        except TokenValidationError as exc:
            logger.warning("Token validation failed: %s (%s)", exc, exc.code)
            return AuthFailure(exc.code, str(exc))

        user_id = claims.get("sub")
        if not user_id:
            return AuthFailure("missing_claim", "Missing required claim: sub")
        exp = claims.get("exp")
        expiry = (
            datetime.fromtimestamp(exp, tz=timezone.utc)
            if isinstance(exp, (int, float))
            else None
        )
        return Identity(
            user_id=str(user_id),
            email=claims.get("email"),
            issuer=str(claims.get("iss", "")),
            expiry=expiry,
            raw_claims=claims,
        )

    async def _decode(self, token: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.exceptions.DecodeError as exc:
            raise TokenValidationError("Invalid token header", "invalid_token") from exc

        alg = str(header.get("alg", ""))
        if alg.lower() == "none" or alg not in self._algorithms:
            raise TokenValidationError(f"Algorithm '{alg}' not allowed", "invalid_algorithm")

        if alg.startswith("HS"):
            if self._secret is None:
                raise TokenValidationError("HMAC tokens are not accepted", "invalid_algorithm")
            key: Any = self._secret
        else:
            if self._jwks_client is None:
                raise TokenValidationError("No JWKS configured", "jwks_error")
            key = await self._jwks_client.get_signing_key(header.get("kid"))

        options: dict[str, Any] = {
            "require": ["sub", "exp"],
            "verify_exp": True,
            "verify_nbf": True,
            "verify_aud": self._settings.audience is not None,
            "verify_iss": self._settings.issuer is not None,
        }
        try:
            return jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._settings.audience,
                issuer=self._settings.issuer,
                leeway=self._settings.clock_skew_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenValidationError("Token expired", "token_expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenValidationError("Invalid audience", "invalid_audience") from exc
        except jwt.InvalidIssuerError as exc:
            raise TokenValidationError("Invalid issuer", "invalid_issuer") from exc
        except jwt.ImmatureSignatureError as exc:
            raise TokenValidationError("Token not yet valid (nbf)", "token_immature") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenValidationError("Invalid token", "invalid_token") from exc


def build_identity_provider(settings: AuthSettings) -> IdentityProvider:
    if settings.provider == "static":
        logger.warning("Using static identity provider; do not run this in production")
        return StaticIdentityProvider(settings.static_tokens)
    return JwtIdentityProvider(settings)
