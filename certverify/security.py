"""
Security module for the certificate verification service.

Provides bearer-token signing and verification, input validation,
client identification and log sanitization.
"""

import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .util import b64url_decode, b64url_encode, constant_time_compare, generate_id, now_epoch


# ============================================================
# Input Validation
# ============================================================

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,128}$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_identifier(value: str, field_name: str) -> str:
    """
    Validate an opaque path identifier (user id, certificate id, request id).

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.strip()

    if not value:
        raise ValidationError(field_name, "cannot be empty")

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")

    return value


# ============================================================
# Bearer Tokens
# ============================================================

class AuthenticationError(Exception):
    """Raised when a bearer token is missing, malformed, forged or expired."""


@dataclass
class TokenClaims:
    sub: str
    iat: int
    exp: int
    jti: str


def _sign(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return b64url_encode(digest)


def generate_auth_token(user_id: str, secret: str, ttl_seconds: int = 3600, now: Optional[int] = None) -> str:
    """
    Issue a signed token ``<payload>.<signature>``.

    The payload is base64url JSON; the signature is HMAC-SHA256 over the
    encoded payload, keyed with the service secret.
    """
    if not secret:
        raise ValueError("secret is required to sign tokens")
    issued_at = now if now is not None else now_epoch()
    payload = {"sub": user_id, "iat": issued_at, "exp": issued_at + ttl_seconds, "jti": generate_id(8)}
    payload_b64 = b64url_encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def verify_auth_token(token: str, secret: str, now: Optional[int] = None) -> TokenClaims:
    """
    Verify signature and expiry of a bearer token.

    Raises:
        AuthenticationError: On any defect
    """
    if not secret:
        raise AuthenticationError("Server is not configured to verify tokens")

    parts = token.split(".")
    if len(parts) != 2 or not all(parts):
        raise AuthenticationError("Malformed token")
    payload_b64, signature = parts

    if not constant_time_compare(signature, _sign(payload_b64, secret)):
        raise AuthenticationError("Invalid signature")

    try:
        payload = json.loads(b64url_decode(payload_b64))
        claims = TokenClaims(
            sub=str(payload["sub"]),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=str(payload.get("jti", "")),
        )
    except (ValueError, KeyError, TypeError):
        raise AuthenticationError("Malformed token payload")

    current = now if now is not None else now_epoch()
    if claims.exp < current:
        raise AuthenticationError("Token expired")

    return claims


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header, None if absent."""
    if not authorization:
        return None
    match = re.match(r'^Bearer\s+(.+)$', authorization.strip(), re.IGNORECASE)
    if not match:
        raise AuthenticationError("Invalid authentication format")
    return match.group(1).strip()


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_id(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    """
    Extract a client identifier from request headers for rate limiting.
    Falls back to the peer address, then to a default.
    """
    api_key = headers.get("x-api-key", "")
    if api_key:
        return f"api:{hashlib.sha256(api_key.encode('utf-8')).hexdigest()[:12]}"

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    if peer_host:
        return f"ip:{peer_host}"

    return "anonymous"


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["api_key", "authorization", "secret", "password", "token"]

    result = {}
    for key, value in data.items():
        if key.lower() in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
