"""
Authentication and authorization for the marketplace gateway.
"""

from .credentials import CredentialValidator, IssuedCredential, ValidationResult
from .access import AccessDecision, AccessDecisionEngine, AuthContext
from .request import resolve_auth_context

__all__ = [
    "AccessDecision",
    "AccessDecisionEngine",
    "AuthContext",
    "CredentialValidator",
    "IssuedCredential",
    "ValidationResult",
    "resolve_auth_context",
]
