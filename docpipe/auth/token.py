"""
Short-lived worker tokens — HS256 JWT (python-jose)

The isolated worker never receives a long-lived provider secret. The
coordinator (or the /auth/token endpoint) mints a token bound to ONE
document; the worker redeems it to unlock its own configured credentials.

Claims:
    sub    document id the token is bound to
    scope  "document:process"
    iat    issued-at (unix seconds)
    exp    expiry   (iat + ttl, default 5 min)
"""

from __future__ import annotations

import logging
import time
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ValidationError

from docpipe.core.config import settings
from docpipe.core.errors import CoordinationError

logger = logging.getLogger(__name__)

WORKER_SCOPE = "document:process"


class WorkerTokenClaims(BaseModel):
    """Validated worker-token claims."""
    sub:   str
    scope: str
    iat:   int
    exp:   int


class IssuedToken(BaseModel):
    token:      str
    expires_in: int


def create_worker_token(
    document_id: UUID | str,
    ttl_seconds: int | None = None,
    secret:      str | None = None,
    algorithm:   str | None = None,
) -> IssuedToken:
    ttl = ttl_seconds or settings.worker_token_ttl_seconds
    now = int(time.time())
    claims = {
        "sub":   str(document_id),
        "scope": WORKER_SCOPE,
        "iat":   now,
        "exp":   now + ttl,
    }
    try:
        token = jwt.encode(
            claims,
            secret or settings.worker_token_secret,
            algorithm=algorithm or settings.worker_token_algorithm,
        )
    except JWTError as exc:
        raise CoordinationError(f"Could not issue worker token: {exc}") from exc

    logger.debug("Worker token issued | doc=%s ttl=%ds", document_id, ttl)
    return IssuedToken(token=token, expires_in=ttl)


def decode_worker_token(
    token:       str,
    document_id: UUID | str,
    secret:      str | None = None,
    algorithm:   str | None = None,
) -> WorkerTokenClaims:
    """
    Verify signature, expiry, scope and document binding.

    Raises:
        CoordinationError on any failure; the worker then reports `error`
        and the coordinator falls back to the next path.
    """
    try:
        raw = jwt.decode(
            token,
            secret or settings.worker_token_secret,
            algorithms=[algorithm or settings.worker_token_algorithm],
        )
    except ExpiredSignatureError as exc:
        raise CoordinationError("Worker token expired") from exc
    except JWTError as exc:
        raise CoordinationError(f"Invalid worker token: {exc}") from exc

    try:
        claims = WorkerTokenClaims(**raw)
    except ValidationError as exc:
        raise CoordinationError("Worker token is missing required claims") from exc

    if claims.scope != WORKER_SCOPE:
        raise CoordinationError(f"Worker token has wrong scope: {claims.scope}")
    if claims.sub != str(document_id):
        raise CoordinationError("Worker token is bound to a different document")
    return claims
