"""
Access Gate — Who May Trigger an Embedding Run
═══════════════════════════════════════════════

Two kinds of caller:

  service  The extraction subsystem and other internal jobs. Presents the
           trusted service-role key as its bearer credential. Not bound to
           a tenant.
  user     A signed-in user. Presents an identity-provider JWT, which must
           verify and carry a tenant_id claim. May only act on documents
           of that tenant.

A missing or unverifiable credential raises Unauthorized before any
pipeline work begins.

Usage in routes
───────────────
  from docembed.auth.gate import Identity, access_gate

  @router.post("/generate-embeddings")
  async def generate(identity: Identity = Depends(access_gate)):
      ...
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Literal
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docembed.auth.token import JWTDecoder
from docembed.core.config import settings
from docembed.core.exceptions import Unauthorized

logger = logging.getLogger(__name__)

# auto_error=False so a missing header becomes our own 401 body, not FastAPI's 403
_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    kind:      Literal["service", "user"]
    subject:   str
    tenant_id: UUID | None = None

    @property
    def is_service(self) -> bool:
        return self.kind == "service"


SERVICE_IDENTITY = Identity(kind="service", subject="service-role")


class AccessGate:
    """
    Class-based FastAPI dependency resolving the caller's Identity.

    Instantiate with explicit collaborators for tests:
        gate = AccessGate(service_key="test-key", decoder=JWTDecoder(...))
    """

    def __init__(
        self,
        service_key: str | None = None,
        decoder:     JWTDecoder | None = None,
    ) -> None:
        self._service_key = service_key if service_key is not None else settings.service_role_key
        self._decoder     = decoder or JWTDecoder()

    async def __call__(
        self,
        request:     Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    ) -> Identity:
        request_id = request.headers.get("X-Request-ID", "-")
        token = credentials.credentials if credentials is not None else None
        return await self.authorize(token, request_id)

    async def authorize(self, token: str | None, request_id: str = "-") -> Identity:
        if not token:
            logger.info("Missing credential | request_id=%s", request_id)
            raise Unauthorized("Missing authorization header")

        if self._is_service_key(token):
            logger.debug("Service caller authenticated | request_id=%s", request_id)
            return SERVICE_IDENTITY

        payload = await self._decoder.decode(token, request_id)
        logger.debug(
            "User authenticated | sub=%s tenant=%s request_id=%s",
            payload.sub, payload.tenant_id, request_id,
        )
        return Identity(kind="user", subject=payload.sub, tenant_id=payload.tenant_id)

    def _is_service_key(self, token: str) -> bool:
        if not self._service_key:
            return False
        return hmac.compare_digest(token.encode(), self._service_key.encode())


# Default gate instance (uses settings)
access_gate = AccessGate()
