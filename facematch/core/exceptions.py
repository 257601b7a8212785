"""Custom exceptions for the face matching service."""
from typing import Optional


class FaceMatchingError(Exception):
    """Base exception for face matching operations."""

    def __init__(self, message: str, details: Optional[dict] = None):
        """
        Initialize face matching error.

        Args:
            message: Error description
            details: Additional error context
        """
        super().__init__(message)
        self.details = details or {}


class InvalidImageError(FaceMatchingError):
    """Raised when the provided image is invalid or cannot be decoded."""
    pass


class AlreadyInProgressError(FaceMatchingError):
    """Raised when a search is already running for the same person."""
    pass


class NoReferenceAvailableError(FaceMatchingError):
    """Raised when a person has no verified face and no usable primary photo."""
    pass


class PersonNotFoundError(FaceMatchingError):
    """Raised when the requested person does not exist in the record store."""
    pass


class EmbeddingNotFoundError(FaceMatchingError):
    """Raised when a face embedding record cannot be found."""
    pass


class RecordStoreError(FaceMatchingError):
    """Base exception for record store operations."""
    pass


class StoreUnavailableError(RecordStoreError):
    """Raised when the record store cannot be opened or queried."""
    pass


class SaveFailedError(RecordStoreError):
    """Raised when committing pending changes to the record store fails."""
    pass


class ServiceNotInitializedError(FaceMatchingError):
    """Raised when a service is requested before the container is initialized."""
    pass
