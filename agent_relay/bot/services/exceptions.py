"""Service-specific exceptions for the agent-relay bot services.

Every error that ends a turn carries a ``user_message``: the plain text
posted to the agent's channel when the branch is abandoned.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base exception for all service layer errors.

    This base class provides common functionality for all service errors
    including error codes, context data, and user-friendly messages.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        user_message: str | None = None
    ):
        """Initialize service error.

        Args:
            message: Technical error message for logging
            error_code: Unique error code for categorization
            context: Additional context data for debugging
            user_message: User-friendly error message for Discord responses
        """
        super().__init__(message)
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.user_message = user_message or message

    def __str__(self) -> str:
        """Return technical error message."""
        return super().__str__()

    def get_user_message(self) -> str:
        """Get user-friendly error message."""
        return self.user_message


class ConfigurationError(ServiceError):
    """Exception for agent or provider misconfiguration.

    Raised before any remote call is made, when the agent's provider cannot
    be resolved into a usable credential.
    """


class ProviderNotFoundError(ConfigurationError):
    """Raised when an agent names a provider the guild does not have."""

    def __init__(self, provider_name: str, agent_name: str, **kwargs):
        message = (
            f'Configuration error: Provider "{provider_name}" for agent '
            f'"{agent_name}" not found.'
        )
        super().__init__(
            message,
            context={"provider": provider_name, "agent": agent_name},
            **kwargs
        )
        self.provider_name = provider_name
        self.agent_name = agent_name


class CredentialDecryptionError(ConfigurationError):
    """Raised when a stored API key cannot be decrypted."""

    def __init__(self, provider_name: str, **kwargs):
        message = f'Configuration error: Could not access API key for provider "{provider_name}".'
        super().__init__(message, context={"provider": provider_name}, **kwargs)
        self.provider_name = provider_name


class ProviderError(ServiceError):
    """Exception for failures talking to a completion provider."""

    def __init__(self, message: str, provider_name: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.provider_name = provider_name


class InvalidProviderURLError(ProviderError):
    """Raised when a provider URL cannot be turned into a completions URL."""

    def __init__(self, provider_name: str, url: str, **kwargs):
        super().__init__(
            f'Invalid provider URL configured for "{provider_name}": {url}',
            provider_name=provider_name,
            context={"url": url},
            **kwargs
        )
        self.url = url


class ProviderConnectionError(ProviderError):
    """Raised when the provider cannot be reached at all."""

    def __init__(self, provider_name: str, reason: str, **kwargs):
        super().__init__(
            f'Error contacting LLM provider "{provider_name}": {reason}',
            provider_name=provider_name,
            **kwargs
        )


class ProviderResponseError(ProviderError):
    """Raised when the provider answers with a non-success status."""

    def __init__(
        self,
        provider_name: str,
        status: int,
        reason: str,
        body: str = "",
        **kwargs
    ):
        """Initialize response error.

        Args:
            provider_name: Provider that returned the error
            status: HTTP status code
            reason: HTTP reason phrase
            body: Response body, already truncated by the caller
            **kwargs: Additional arguments passed to parent
        """
        super().__init__(
            f'LLM Provider "{provider_name}" returned an error: {status} {reason}. Details: {body}',
            provider_name=provider_name,
            context={"status": status},
            **kwargs
        )
        self.status = status
        self.reason = reason
        self.body = body


class EmptyResponseError(ProviderError):
    """Raised when the provider answers successfully without a body."""

    def __init__(self, provider_name: str, **kwargs):
        super().__init__(
            f'Received an empty response from LLM provider "{provider_name}".',
            provider_name=provider_name,
            **kwargs
        )


class StreamInterruptedError(ProviderError):
    """Raised when the response stream breaks after it started."""

    def __init__(self, provider_name: str, agent_name: str, reason: str = "", **kwargs):
        super().__init__(
            f"Stream from provider {provider_name!r} interrupted: {reason}",
            provider_name=provider_name,
            user_message=(
                f'An error occurred while processing the LLM response for agent "{agent_name}".'
            ),
            **kwargs
        )
        self.agent_name = agent_name
