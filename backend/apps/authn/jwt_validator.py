"""
JWT claim extraction for Supabase access tokens.

The store is the authority on tokens: it verifies every forwarded bearer
token and applies row-level security. When SUPABASE_JWT_SECRET is set the
token is also verified here so bad tokens are rejected before any work
starts; otherwise claims are only read for logging and audit context.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from django.conf import settings

logger = logging.getLogger(__name__)


class JWTValidationError(Exception):
    """Raised when JWT validation fails."""
    pass


@dataclass
class TokenClaims:
    """Claims read from an access token."""
    sub: str  # Subject (user ID)
    email: Optional[str]
    role: Optional[str]
    verified: bool
    raw_claims: Dict[str, Any]


def _claims_from_payload(payload: Dict[str, Any], verified: bool) -> TokenClaims:
    return TokenClaims(
        sub=payload.get('sub', ''),
        email=payload.get('email'),
        role=payload.get('role'),
        verified=verified,
        raw_claims=payload,
    )


def _read_unverified(token: str) -> TokenClaims:
    """
    Read claims without verification.

    Tokens that are not JWTs (opaque keys) are still forwarded to the store,
    which decides whether they are valid; they get empty claims here.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.DecodeError:
        logger.debug("Bearer token is not a JWT; forwarding without claims")
        payload = {}
    return _claims_from_payload(payload, verified=False)


def validate_token(token: str) -> TokenClaims:
    """
    Read the claims of a Supabase access token.

    With SUPABASE_JWT_SECRET configured, performs:
    1. HS256 signature verification
    2. Expiry check
    3. Audience check against SUPABASE_JWT_AUDIENCE

    Args:
        token: The JWT token string (without 'Bearer ' prefix)

    Returns:
        TokenClaims (verified=False when no secret is configured; empty
        claims when the token is not a JWT)

    Raises:
        JWTValidationError: If verification is configured and the token fails it
    """
    secret = getattr(settings, 'SUPABASE_JWT_SECRET', '')

    try:
        if not secret:
            return _read_unverified(token)

        payload = jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            audience=getattr(settings, 'SUPABASE_JWT_AUDIENCE', 'authenticated'),
            options={
                'verify_signature': True,
                'verify_exp': True,
                'verify_aud': True,
            }
        )
        return _claims_from_payload(payload, verified=True)

    except jwt.ExpiredSignatureError:
        raise JWTValidationError("Token has expired")
    except jwt.InvalidAudienceError:
        raise JWTValidationError("Invalid token audience")
    except jwt.InvalidTokenError as e:
        raise JWTValidationError(f"Invalid token: {e}")
