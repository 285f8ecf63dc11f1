"""Exception hierarchy for Studio365.

Every error the Microsoft 365 integration can surface to a caller derives from
``Studio365Exception`` so the API layer can render it uniformly as
``{"error": {"message", "code", "details"}}`` with a machine-readable code.

Categories:
- CONFIG: tenant configuration missing or disabled
- OAUTH:  interactive flow errors (state, provider denial, token endpoint)
- TOKEN:  stored token lifecycle (not connected, refresh, reauthorization)
- CRYPTO: secrets at rest
- GRAPH:  Microsoft Graph calls
- SYSTEM: fatal process configuration
"""

from __future__ import annotations

from typing import Any


class Studio365Exception(Exception):
    """Base exception for all Studio365 application errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with user-facing message and metadata.

        Args:
            message: User-facing error message (never contains secrets or provider payloads)
            code: Machine-readable error code (e.g. "NOT_CONNECTED")
            status_code: HTTP status code
            details: Optional additional, non-sensitive context
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "details": self.details,
            }
        }


# ============================================================================
# CONFIG ERRORS
# ============================================================================

class ConfigMissing(Studio365Exception):
    """No Microsoft 365 configuration (or a required part of it) for the tenant."""

    def __init__(self, studio_id: str, missing: str | None = None):
        message = "Microsoft 365 is not configured for this studio"
        if missing:
            message = f"{message}: {missing} is missing"
        super().__init__(
            message=message,
            code="CONFIG_MISSING",
            status_code=404,
            details={"studio_id": studio_id, "missing": missing} if missing else {"studio_id": studio_id},
        )


class ConfigDisabled(Studio365Exception):
    """Microsoft 365 integration is disabled for the tenant."""

    def __init__(self, studio_id: str):
        super().__init__(
            message="Microsoft 365 is disabled for this studio",
            code="CONFIG_DISABLED",
            status_code=403,
            details={"studio_id": studio_id},
        )


# ============================================================================
# OAUTH FLOW ERRORS
# ============================================================================

class InvalidState(Studio365Exception):
    """OAuth state is unknown, expired, tampered with or already consumed."""

    def __init__(self, reason: str = "unknown"):
        super().__init__(
            message="Invalid or expired authorization state. Please start the connection again.",
            code="INVALID_STATE",
            status_code=400,
            details={"reason": reason},
        )


class ProviderDenied(Studio365Exception):
    """The identity provider returned an error on the authorization callback."""

    def __init__(self, provider_error: str, provider_description: str | None = None):
        super().__init__(
            message="Microsoft 365 authorization was not granted",
            code="PROVIDER_DENIED",
            status_code=400,
            details={"provider_error": provider_error},
        )
        self.provider_error = provider_error
        self.provider_description = provider_description


class TokenExchangeFailed(Studio365Exception):
    """The token endpoint rejected a request or could not be reached.

    The raw provider error is kept on the instance for operator logs only.
    """

    def __init__(
        self,
        provider_error: str,
        provider_description: str | None = None,
        status_code: int | None = None,
        message: str = "Microsoft 365 connection failed, please retry",
        code: str = "TOKEN_EXCHANGE_FAILED",
    ):
        super().__init__(message=message, code=code, status_code=502)
        self.provider_error = provider_error
        self.provider_description = provider_description
        self.provider_status = status_code


# ============================================================================
# TOKEN ERRORS
# ============================================================================

class RefreshFailed(TokenExchangeFailed):
    """Refreshing a delegated token failed; the user must reconnect."""

    def __init__(
        self,
        provider_error: str,
        provider_description: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(
            provider_error,
            provider_description,
            status_code,
            message="Microsoft 365 session could not be renewed, please reconnect",
            code="REFRESH_FAILED",
        )


class NotConnected(Studio365Exception):
    """No usable token for this user (never connected, revoked, or undecryptable)."""

    def __init__(self, studio_id: str, user_id: str, reason: str = "no_token"):
        super().__init__(
            message="Microsoft 365 account is not connected",
            code="NOT_CONNECTED",
            status_code=409,
            details={"reason": reason},
        )
        self.studio_id = studio_id
        self.user_id = user_id


class ReauthorizationRequired(Studio365Exception):
    """Delegated access token expired and there is no refresh token."""

    def __init__(self, studio_id: str, user_id: str):
        super().__init__(
            message="Microsoft 365 access expired, please reconnect your account",
            code="REAUTHORIZATION_REQUIRED",
            status_code=409,
        )
        self.studio_id = studio_id
        self.user_id = user_id


# ============================================================================
# CRYPTO ERRORS
# ============================================================================

class DecryptionFailed(Studio365Exception):
    """Envelope is malformed, tampered with, or was sealed with another key."""

    def __init__(self, reason: str = "invalid_envelope"):
        super().__init__(
            message="Stored secret could not be decrypted",
            code="DECRYPTION_FAILED",
            status_code=500,
            details={"reason": reason},
        )
        self.reason = reason


class VaultLocked(Studio365Exception):
    """Passphrase vault is locked (never unlocked or idle timeout elapsed)."""

    def __init__(self):
        super().__init__(
            message="Vault is locked, re-enter the passphrase",
            code="VAULT_LOCKED",
            status_code=423,
        )


# ============================================================================
# GRAPH ERRORS
# ============================================================================

class GraphAuthorizationFailed(Studio365Exception):
    """Graph rejected the bearer token even after a forced refresh."""

    def __init__(self, status: int, graph_code: str | None = None):
        super().__init__(
            message="Microsoft Graph denied access for this account",
            code="GRAPH_AUTHORIZATION_FAILED",
            status_code=403,
            details={"graph_status": status, "graph_code": graph_code},
        )


class GraphRequestFailed(Studio365Exception):
    """Graph call failed for a non-authorization reason or returned malformed data."""

    def __init__(self, reason: str, status: int | None = None, graph_code: str | None = None):
        super().__init__(
            message="Microsoft Graph request failed",
            code="GRAPH_REQUEST_FAILED",
            status_code=502,
            details={"reason": reason, "graph_status": status, "graph_code": graph_code},
        )


# ============================================================================
# SYSTEM ERRORS
# ============================================================================

class ConfigurationError(Studio365Exception):
    """Application configuration is invalid or missing (fatal, not retryable)."""

    def __init__(self, parameter: str, reason: str | None = None):
        message = f"Configuration error: {parameter} is not configured properly"
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details={"parameter": parameter},
        )
        self.reason = reason


class EncryptionKeyError(ConfigurationError):
    """Master encryption key is absent or has the wrong length."""

    def __init__(self, parameter: str, reason: str):
        super().__init__(parameter, reason)
        self.code = "ENCRYPTION_KEY_ERROR"
