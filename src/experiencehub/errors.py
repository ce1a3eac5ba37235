"""Exception hierarchy shared by the store, storage and web layers."""

from __future__ import annotations


class ExperienceHubError(Exception):
    """Base class for every error raised by ExperienceHub."""


class ValidationError(ExperienceHubError):
    """A submitted form failed a field check before any store call."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class StoreError(ExperienceHubError):
    """The relational store rejected an insert, update, delete or read."""


class RecordNotFoundError(StoreError):
    """No experience (or attachment) exists with the requested id."""


class StorageError(ExperienceHubError):
    """The object store rejected an upload, listing or delete."""


class DerivationError(ExperienceHubError):
    """A public URL could not be mapped back to a storage object path."""


class AuthenticationError(ExperienceHubError):
    """No signed-in identity is available for an action that needs one."""


class PermissionDeniedError(AuthenticationError):
    """The signed-in identity does not own the record it tries to change."""


class DraftBusyError(ExperienceHubError):
    """A save is already running for the same draft."""


class UnknownFacetError(KeyError):
    """A filter referenced a facet name that does not exist."""
