"""
Authentication decorators for bearer-protected endpoints.
"""
import logging
from typing import Optional, Callable
from functools import wraps

from django.http import JsonResponse, HttpRequest

from .audit import audit_auth_rejected
from .jwt_validator import validate_token, JWTValidationError

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when the request carries no usable credential."""
    pass


def get_authorization_header(request: HttpRequest) -> Optional[str]:
    """Return the raw Authorization header, or None when absent."""
    auth_header = request.META.get('HTTP_AUTHORIZATION', '').strip()
    return auth_header or None


def get_token_from_request(request: HttpRequest) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Args:
        request: The Django HTTP request

    Returns:
        The token string if found, None otherwise
    """
    auth_header = get_authorization_header(request)

    if not auth_header:
        return None

    parts = auth_header.split()

    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None

    return parts[1]


def authenticate(request: HttpRequest) -> str:
    """
    Attach the caller's credential to the request.

    Sets request.authorization (forwarded to the store unchanged) and
    request.user_claims (for logging and audit).

    Returns:
        The raw Authorization header

    Raises:
        AuthError: If the header is missing, malformed or fails verification
    """
    auth_header = get_authorization_header(request)
    if not auth_header:
        raise AuthError('No authorization header passed')

    token = get_token_from_request(request)
    if not token:
        raise AuthError('Authorization header must use the Bearer scheme')

    try:
        claims = validate_token(token)
    except JWTValidationError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise AuthError(str(e))

    request.authorization = auth_header
    request.user_claims = claims
    logger.debug(f"Authenticated request for sub={claims.sub} (verified={claims.verified})")
    return auth_header


def auth_required(view_func: Callable = None, *, status: int = 401) -> Callable:
    """
    Decorator that requires a bearer token.

    The token is attached as request.authorization / request.user_claims.
    Failures return {"error": ...} with the given status.

    Usage:
        @auth_required
        def my_view(request):
            gateway = StoreGateway(request.authorization)
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(request: HttpRequest, *args, **kwargs):
            try:
                authenticate(request)
            except AuthError as e:
                audit_auth_rejected(request, str(e))
                return JsonResponse({'error': str(e)}, status=status)
            return func(request, *args, **kwargs)

        return wrapper

    if view_func is not None:
        return decorator(view_func)
    return decorator
