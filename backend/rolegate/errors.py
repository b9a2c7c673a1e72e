"""
Exceptions for unexpected failures at the provider boundary.

Expected outcomes travel as `domain.Result`; these are raised only when a
collaborator is unreachable or answers with something we cannot interpret.
"""

from __future__ import annotations


class IdentityProviderError(Exception):
    """Raised when an identity provider call fails or cannot be reached."""

    def __init__(self, code: str = "provider_error"):
        super().__init__(code)
        self.code = code


# Boundary-facing alias used by the web adapter.
UpstreamError = IdentityProviderError


class AccountExistsError(IdentityProviderError):
    """The provider already has an account for this identifier (email)."""

    def __init__(self, code: str = "account_exists"):
        super().__init__(code)


class AccountNotFoundError(IdentityProviderError):
    def __init__(self, code: str = "account_not_found"):
        super().__init__(code)


class WebhookVerificationError(Exception):
    """Raised when an inbound event fails signature or shape checks."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code
