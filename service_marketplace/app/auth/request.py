"""
Resolve the credentials presented on an HTTP request.
"""

from typing import Optional

from fastapi import Request

from shared.errors import AuthenticationError
from shared.logging import set_access_context

from .access import AuthContext
from .credentials import CredentialValidator, REASON_EXPIRED, REASON_REVOKED

API_KEY_HEADER = "X-API-Key"

REASON_MESSAGES = {
    REASON_REVOKED: "API key has been revoked",
    REASON_EXPIRED: "API key has expired",
}


def presented_api_key(request: Request) -> Optional[str]:
    """``X-API-Key`` header, or the ``apiKey`` query parameter."""
    return request.headers.get(API_KEY_HEADER) or request.query_params.get("apiKey")


async def resolve_auth_context(request: Request, validator: CredentialValidator, *,
                               subscription_id: Optional[str] = None,
                               consumer: Optional[str] = None,
                               provider: Optional[str] = None) -> AuthContext:
    """Build the request's ``AuthContext``.

    A presented key that fails validation is ignored when legacy
    credentials are also present; otherwise it is an authentication error.
    The validated credential is stored on ``request.state`` for usage
    recording.
    """
    context = AuthContext(subscription_id=subscription_id, consumer_address=consumer, provider_address=provider)
    secret = presented_api_key(request)
    if not secret:
        return context

    result = await validator.validate(secret)
    if result.valid:
        context.credential = result.credential
        request.state.credential = result.credential
        set_access_context(credential_id=result.credential.id)
        return context

    if (subscription_id and consumer) or provider:
        return context
    raise AuthenticationError(REASON_MESSAGES.get(result.reason, "Invalid API key"), {"reason": result.reason})
