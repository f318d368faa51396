"""Exception taxonomy shared across the memory, retrieval and action layers."""

from __future__ import annotations


class NocturneError(Exception):
    """Base class for every error raised by nocturne."""


class DuplicateError(NocturneError):
    """Raised when a unique insert collides with an existing record."""

    def __init__(self, message: str, *, existing_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class StoreUnavailableError(NocturneError):
    """Raised when the backing store cannot be reached.

    This is the only failure allowed to propagate out of the pipeline.
    """


class RetrievalUnavailable(NocturneError):
    """Raised by backends that have no vector index to search."""


class EmbeddingError(NocturneError):
    """Raised by embedding adapters when a call fails."""


class GenerationError(NocturneError):
    """Raised by generation adapters when a call fails."""


class ProviderError(NocturneError):
    """Raised by context providers that cannot produce a contribution."""


class ActionValidationRejected(NocturneError):
    """Raised when a matched action refuses to run for the current message."""


class ActionExecutionError(NocturneError):
    """Raised by action handlers that fail while executing."""
