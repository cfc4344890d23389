"""
Error types raised by the repository manager.
"""

from typing import Optional


class RepositoryError(Exception):
    """Base class for every failure reported by the repository manager."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class NotInitializedError(RepositoryError):
    """An operation was attempted before initialize() completed."""


class InitializationError(RepositoryError):
    """The working copy could not be prepared or cloned."""


class ResolutionError(RepositoryError):
    """A version could not be resolved to a commit."""


class CheckoutError(RepositoryError):
    """A commit could not be checked out."""


class CommitPreconditionError(RepositoryError):
    """The requested commit target is not acceptable."""


class BackendFailure(RepositoryError):
    """Unclassified error from the VCS backend."""
