"""
WorkFlu - Security Utilities

JWT access token helpers and request signing.

Tokens are issued by the identity provider; this service verifies them. The
create helper exists for service-to-service calls and tests.
"""

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional, Any, Union

from jose import JWTError, jwt

from workflu.config import settings


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Dictionary containing token payload
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT access token.

    Returns:
        Decoded payload, or None when the token is invalid, expired or not
        an access token.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    return payload


def sign_webhook_payload(body: Union[str, bytes], secret: str) -> str:
    """
    Hex HMAC-SHA256 of the exact request body bytes.

    Pure function of (body, secret); receivers recompute it over the raw body
    they received and compare with X-WorkFlu-Signature.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: Union[str, bytes], signature: str, secret: str) -> bool:
    """Constant-time comparison of a received signature."""
    return hmac.compare_digest(sign_webhook_payload(body, secret), signature)
