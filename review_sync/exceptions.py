"""
Exceptions raised by platform clients and the sync pipeline.

TokenExpiredError deliberately does not inherit from IntegrationError:
callers tell "reconnect" apart from "retry later" by type alone.
"""

from typing import Optional


class IntegrationError(Exception):
    """Retryable platform failure (network, 5xx, malformed response, missing metadata)."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code


class AuthRejectedError(IntegrationError):
    """
    The platform rejected the access token on a data call.

    `refreshable` is False when the rejected token is not the one a refresh
    replaces (Facebook page tokens).
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        refreshable: bool = True,
    ):
        super().__init__(message, platform=platform, status_code=status_code)
        self.refreshable = refreshable


class CredentialLockError(IntegrationError):
    """Another sync currently holds the credential."""


class CredentialConfigurationError(IntegrationError):
    """The credential cannot be synced as stored (e.g. no business attached). Not retried."""


class TokenExpiredError(Exception):
    """
    The credential can no longer be refreshed or extended.

    Terminal for the credential until the user re-authorizes.
    """

    def __init__(
        self,
        platform: str,
        credential_id: Optional[int],
        message: str,
        can_reconnect: bool = True,
    ):
        super().__init__(message)
        self.platform = platform
        self.credential_id = credential_id
        self.can_reconnect = can_reconnect


class DuplicateCredentialError(ValueError):
    """A credential already exists for this (organization, business, platform)."""


class OAuthStateError(ValueError):
    """OAuth state is unknown, expired, or was issued for another platform."""
