"""Mapping of public image URLs back to storage object paths."""

from __future__ import annotations

import logging

from experiencehub.errors import DerivationError, StorageError
from experiencehub.media.objects import ObjectStore
from experiencehub.utils.files import record_prefix

LOGGER = logging.getLogger(__name__)


class ObjectPathResolver:
    """Two-tier lookup: derive the path from the URL, else search the record folder.

    Neither tier is guaranteed to succeed; a URL that resolves to nothing
    leaves its object orphaned in the bucket.
    """

    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects

    def derive(self, url: str) -> str:
        path = self.objects.path_from_public_url(url)
        if path is None:
            raise DerivationError(f"Cannot derive object path from {url!r}")
        return path

    def search(self, url: str, record_id: str) -> str | None:
        """Find the object under the record folder whose public URL equals ``url``."""
        prefix = record_prefix(record_id)
        try:
            names = self.objects.list(prefix)
        except StorageError as exc:
            LOGGER.warning("Could not list %s for fallback lookup: %s", prefix, exc)
            return None
        for name in names:
            candidate = f"{prefix}{name}"
            if self.objects.public_url(candidate) == url:
                return candidate
        return None

    def resolve(self, url: str, record_id: str) -> str | None:
        try:
            return self.derive(url)
        except DerivationError as exc:
            LOGGER.debug("%s; searching %s", exc, record_prefix(record_id))
        return self.search(url, record_id)
