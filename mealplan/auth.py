from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import get_settings

logger = logging.getLogger(__name__)

_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)

JWKS_TTL_SECONDS = 600


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class JWKSCache:
    """Signing keys per JWKS url, refetched after the TTL or on an unknown kid."""

    def __init__(self, ttl_seconds: float = JWKS_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._url: Optional[str] = None
        self._exp_ts: float = 0.0

    def _refresh(self, url: str) -> None:
        resp = _http.get(url)
        resp.raise_for_status()
        self._keys = {k["kid"]: k for k in resp.json().get("keys", []) if k.get("kid")}
        self._url = url
        self._exp_ts = time.time() + self._ttl
        logger.info("JWKS refreshed url=%s keys=%s", url, len(self._keys))

    def key_for(self, url: str, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        if self._url != url or time.time() >= self._exp_ts:
            self._refresh(url)
        elif kid not in self._keys:
            # Issuer may have rotated keys since the last fetch.
            self._refresh(url)
        return self._keys.get(kid) if kid else None

    def clear(self) -> None:
        self._keys = {}
        self._url = None
        self._exp_ts = 0.0


_jwks_cache = JWKSCache()


def _verify_jwt(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if settings.auth_disable_verification:
        # Local development only: claims are trusted without a signature check.
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as e:
            raise _unauthorized(f"Invalid token: {e}")

    if not settings.auth_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    jwks_url = settings.auth_jwks_url or settings.auth_issuer.rstrip("/") + "/.well-known/jwks.json"
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}")
    try:
        key = _jwks_cache.key_for(jwks_url, header.get("kid"))
    except httpx.HTTPError:
        logger.exception("JWKS fetch failed url=%s", jwks_url)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    if not key:
        raise _unauthorized("Signing key not found")
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
    except JWTError as e:
        raise _unauthorized(f"JWT verification failed: {e}")


def get_current_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, Any]:
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing bearer token")
    claims = _verify_jwt(creds.credentials)
    principal = {
        "sub": claims.get("sub"),
        "email": claims.get("email") or claims.get("email_address"),
        "claims": claims,
    }
    if not principal["sub"]:
        raise _unauthorized("Invalid token: no sub")
    return principal
