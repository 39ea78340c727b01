"""Exceptions raised while pruning a registry repository."""

from __future__ import annotations


class RegistryPruneError(Exception):
    """Base class for every error raised by registry_prune."""


class ConfigurationError(RegistryPruneError):
    """Invalid run configuration, raised before any network call."""


class InvalidPolicyError(ConfigurationError):
    pass


class ValidationError(RegistryPruneError):
    """Malformed user input such as a bad repository reference."""


class EmptyRepositoryError(RegistryPruneError):
    pass


class RegistryError(RegistryPruneError):
    """An error reported by (or while talking to) the registry API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(RegistryError):
    pass


class NotFoundError(RegistryError):
    pass


class TransientError(RegistryError):
    """Network failure or 5xx response; safe to retry."""


class RateLimitError(TransientError):
    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after
