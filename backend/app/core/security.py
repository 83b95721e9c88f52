from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.core.settings import Settings, get_settings

# Tokens are issued by the identity provider; the URL only documents the flow.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class JWTError(Exception):
    """Minimal JWT error wrapper."""


@dataclass(frozen=True)
class SessionIdentity:
    """The (user, role, tenant) triple every activity session is bound to."""

    user_id: str
    role: str
    tenant_id: str


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _datetime_encoder(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return int(obj.timestamp())
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def jwt_encode(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_b64 = _b64encode(
        json.dumps(payload, default=_datetime_encoder, separators=(",", ":")).encode("utf-8")
    )
    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    signature = _b64encode(hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest())
    return f"{header_b64}.{payload_b64}.{signature}"


def jwt_decode(token: str, secret: str, issuer: str | None = None) -> dict[str, Any]:
    try:
        header_b64, payload_b64, signature = token.split(".")
    except ValueError as exc:  # pragma: no cover - malformed token
        raise JWTError("Invalid token format") from exc

    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    expected_signature = _b64encode(hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest())
    if not hmac.compare_digest(expected_signature, signature):
        raise JWTError("Invalid signature")

    try:
        payload = json.loads(_b64decode(payload_b64))
    except (json.JSONDecodeError, ValueError) as exc:  # pragma: no cover - malformed payload
        raise JWTError("Invalid payload") from exc

    if issuer and payload.get("iss") != issuer:
        raise JWTError("Invalid issuer")

    exp = payload.get("exp")
    if exp is not None and time.time() > float(exp):
        raise JWTError("Token expired")

    return payload


class TokenManager:
    def __init__(self, settings: Settings):
        self.settings = settings

    def create_access_token(self, identity: SessionIdentity) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.settings.security.access_token_minutes)
        to_encode = {
            "sub": identity.user_id,
            "role": identity.role,
            "tenant": identity.tenant_id,
            "exp": expire,
            "iss": self.settings.security.jwt_issuer,
            "type": "access",
        }
        return jwt_encode(to_encode, self.settings.security.jwt_secret)

    def decode_token(self, token: str, expected_type: str = "access") -> dict[str, Any]:
        try:
            payload = jwt_decode(token, self.settings.security.jwt_secret, issuer=self.settings.security.jwt_issuer)
        except JWTError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        if payload.get("type") != expected_type:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
        return payload

    def identity_from_token(self, token: str) -> SessionIdentity:
        payload = self.decode_token(token, expected_type="access")
        user_id = payload.get("sub")
        role = payload.get("role")
        tenant_id = payload.get("tenant")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
        if not role or not tenant_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token lacks role or tenant")
        return SessionIdentity(user_id=str(user_id), role=str(role), tenant_id=str(tenant_id))


def get_token_manager(settings: Settings = Depends(get_settings)) -> TokenManager:
    return TokenManager(settings)


def auth_required(
    token: str = Depends(oauth2_scheme),
    token_manager: TokenManager = Depends(get_token_manager),
) -> SessionIdentity:
    return token_manager.identity_from_token(token)
