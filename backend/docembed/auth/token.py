"""
JWT Token Verification — OIDC-Compatible
═════════════════════════════════════════

Verifies user bearer tokens issued by the identity provider (Auth0 or
Cognito style; both sign RS256 with rotating key sets).

  Layer 1 │ _JWKSCache   — async JWKS fetcher with TTL + rotation handling
  Layer 2 │ JWTDecoder   — RS256 decode, claim extraction, TokenPayload build

The JWKS document is fetched from <issuer>/.well-known/jwks.json once and
cached for an hour. An unknown kid forces one refresh before the token is
rejected.

Every failure raises core.exceptions.Unauthorized; the API renders it as
401 { error }.

Tenant claim lookup order:
  custom:tenant_id                      (Cognito)
  <auth0_namespace>/tenant_id           (Auth0)
  tenant_id                             (generic)
"""

from __future__ import annotations

import logging
import time
from uuid import UUID

import httpx
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel, ValidationError

from docembed.core.config import settings
from docembed.core.exceptions import Unauthorized

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims."""
    sub:       str          # provider user ID
    email:     str = ""
    tenant_id: UUID
    exp:       int
    iss:       str


# ─────────────────────────────────────────────────────────────────────────────
# Layer 1: JWKS Cache
# ─────────────────────────────────────────────────────────────────────────────

class _JWKSCache:
    """
    In-memory JWKS cache keyed by issuer.

    Behaviour:
      • Fetches the provider's /.well-known/jwks.json once and caches for TTL.
      • On cache miss for a specific kid: force-refreshes once (handles rotation).
      • On second miss: raises Unauthorized.
      • JWKS endpoint failures are reported as Unauthorized too; the caller
        cannot be authenticated without the keys.
    """

    _TTL: int = 3600   # 1 hour

    def __init__(self) -> None:
        self._store: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)

    async def get_signing_key(self, token: str, issuer: str | None = None) -> object:
        """Resolve the RSA public key for the token's kid."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise Unauthorized("Malformed token header") from exc

        kid    = header.get("kid")
        issuer = issuer or settings.auth_issuer

        for attempt in range(2):
            if attempt == 1:
                self._store.pop(issuer, None)   # force refresh on second attempt

            jwks = await self._fetch(issuer)

            for key_data in jwks.get("keys", []):
                if key_data.get("kid") == kid:
                    return jwk.construct(key_data).public_key()

        raise Unauthorized(f"No signing key found for kid={kid!r}")

    async def _fetch(self, issuer: str) -> dict:
        """Fetch JWKS from well-known endpoint with TTL-based caching."""
        now    = time.monotonic()
        cached = self._store.get(issuer)

        if cached and (now - cached[1]) < self._TTL:
            return cached[0]

        if not issuer:
            raise Unauthorized("Token issuer is not configured")

        uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(uri)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("JWKS fetch failed | issuer=%s status=%d", issuer, exc.response.status_code)
            raise Unauthorized("Unable to retrieve token signing keys") from exc
        except httpx.RequestError as exc:
            logger.error("JWKS fetch network error | issuer=%s error=%s", issuer, exc)
            raise Unauthorized("Unable to retrieve token signing keys") from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    def prime(self, issuer: str, jwks: dict) -> None:
        """Seed the cache for an issuer without a network call."""
        self._store[issuer] = (jwks, time.monotonic())

    def clear(self) -> None:
        self._store.clear()


# Module-level singleton: persists across requests
jwks_cache = _JWKSCache()


# ─────────────────────────────────────────────────────────────────────────────
# Layer 2: JWT Decoder
# ─────────────────────────────────────────────────────────────────────────────

class JWTDecoder:
    """
    Verifies a raw bearer token and returns its TokenPayload.

    Instantiate with explicit issuer/audience for test isolation:
        decoder = JWTDecoder(issuer="https://test.auth0.com/", audience="test-api")

    Default constructor reads from app settings:
        decoder = JWTDecoder()
    """

    def __init__(
        self,
        issuer:    str | None = None,
        audience:  str | None = None,
        cache:     _JWKSCache | None = None,
        namespace: str | None = None,
    ) -> None:
        self._issuer    = issuer    or settings.auth_issuer
        self._audience  = audience  or settings.auth_audience
        self._cache     = cache     or jwks_cache
        self._namespace = namespace or settings.auth0_namespace

    async def decode(self, token: str, request_id: str = "-") -> TokenPayload:
        """
        Steps:
          1. Resolve signing key from JWKS cache (by kid in token header).
          2. Decode and verify: signature, expiry, issuer, audience.
          3. Extract tenant_id from provider-specific custom claims.
        """
        signing_key = await self._cache.get_signing_key(token, issuer=self._issuer)

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": True},
            )
        except ExpiredSignatureError as exc:
            logger.info("Expired token | request_id=%s", request_id)
            raise Unauthorized("Token has expired") from exc
        except JWTError as exc:
            logger.warning("JWT decode error | request_id=%s error=%s", request_id, exc)
            raise Unauthorized(f"Invalid token: {exc}") from exc

        tenant_id = self._extract_tenant_id(claims, request_id)
        try:
            return TokenPayload(
                sub=claims["sub"],
                email=claims.get("email", ""),
                tenant_id=tenant_id,
                exp=claims["exp"],
                iss=claims["iss"],
            )
        except (KeyError, ValidationError) as exc:
            # jose only validates sub/exp when they are present
            logger.warning(
                "Token missing required claims | request_id=%s error=%s", request_id, exc,
            )
            raise Unauthorized("Token is missing required claims") from exc

    def _extract_tenant_id(self, claims: dict, request_id: str) -> UUID:
        raw = (
            claims.get("custom:tenant_id")
            or claims.get(f"{self._namespace}/tenant_id")
            or claims.get("tenant_id")
        )
        if not raw:
            logger.warning(
                "Token missing tenant_id claim | sub=%s request_id=%s",
                claims.get("sub"), request_id,
            )
            raise Unauthorized("Token is missing the required tenant_id claim")
        try:
            return UUID(str(raw))
        except ValueError as exc:
            raise Unauthorized(f"Invalid tenant_id value in token: {raw!r}") from exc
