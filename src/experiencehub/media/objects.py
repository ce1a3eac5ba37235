"""Object storage backends for experience images."""

from __future__ import annotations

import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Sequence
from urllib.parse import quote, unquote, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from experiencehub.errors import StorageError

LOGGER = logging.getLogger(__name__)

DEFAULT_BUCKET = "experience-images"
PUBLIC_ROUTE = "storage/v1/object/public"


class ObjectStore(ABC):
    """A bucket addressed by slash-separated object paths.

    Public URLs follow ``<public_base_url>/storage/v1/object/public/<bucket>/<path>``
    so that a URL can normally be mapped back to its object path.
    """

    def __init__(self, bucket: str, public_base_url: str) -> None:
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def public_prefix(self) -> str:
        return f"{self.public_base_url}/{PUBLIC_ROUTE}/{quote(self.bucket)}/"

    def public_url(self, path: str) -> str:
        return self.public_prefix + quote(path)

    def path_from_public_url(self, url: str) -> str | None:
        """Strip the public URL prefix; None when the URL does not follow it."""
        if not url or not url.startswith(self.public_prefix):
            return None
        parts = urlsplit(url)
        if parts.query or parts.fragment:
            return None
        path = unquote(url[len(self.public_prefix):])
        if not path or path.endswith("/") or ".." in path.split("/"):
            return None
        return path

    @abstractmethod
    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        """Store ``content`` at ``path``; fails if the path already exists."""

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Names of the objects directly under ``prefix``."""

    @abstractmethod
    def remove(self, paths: Sequence[str]) -> List[str]:
        """Delete the given paths and return the ones that were removed."""

    @abstractmethod
    def prefixes(self) -> List[str]:
        """Top-level folders of the bucket, each ending with a slash."""


def _check_path(path: str) -> str:
    if not path or path.startswith("/") or ".." in path.split("/"):
        raise StorageError(f"Invalid object path: {path!r}")
    return path


class LocalObjectStore(ObjectStore):
    """Bucket stored as a directory tree on the local filesystem."""

    def __init__(self, root: Path, bucket: str = DEFAULT_BUCKET, *, public_base_url: str) -> None:
        super().__init__(bucket, public_base_url)
        self.root = Path(root) / bucket
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str) -> Path:
        return self.root / _check_path(path)

    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("xb") as handle:
                handle.write(content)
        except FileExistsError as exc:
            raise StorageError(f"Object already exists: {path}") from exc
        except OSError as exc:
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        LOGGER.debug("Stored %s (%d bytes)", path, len(content))
        return path

    def list(self, prefix: str) -> List[str]:
        folder = self.root / prefix.strip("/") if prefix.strip("/") else self.root
        if not folder.is_dir():
            return []
        try:
            return sorted(child.name for child in folder.iterdir() if child.is_file())
        except OSError as exc:
            raise StorageError(f"Listing failed for {prefix}: {exc}") from exc

    def remove(self, paths: Sequence[str]) -> List[str]:
        removed: List[str] = []
        for path in paths:
            target = self.resolve(path)
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"Delete failed for {path}: {exc}") from exc
            removed.append(path)
            parent = target.parent
            if parent == self.root:
                continue
            try:
                if not any(parent.iterdir()):
                    parent.rmdir()
            except OSError as exc:
                LOGGER.debug("Keeping folder %s: %s", parent, exc)
        return removed

    def prefixes(self) -> List[str]:
        return sorted(f"{child.name}/" for child in self.root.iterdir() if child.is_dir())


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class S3ObjectStore(ObjectStore):
    """Bucket on S3 or an S3-compatible server such as MinIO."""

    batch_size = 1000

    def __init__(
        self,
        bucket: str = DEFAULT_BUCKET,
        *,
        public_base_url: str,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        client=None,
    ) -> None:
        super().__init__(bucket, public_base_url)
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region_name,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        self._client = client

    def _exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        _check_path(path)
        content_type = content_type or mimetypes.guess_type(path)[0] or "application/octet-stream"
        try:
            if self._exists(path):
                raise StorageError(f"Object already exists: {path}")
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=content,
                ContentType=content_type,
                CacheControl="max-age=3600",
                IfNoneMatch="*",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in ("PreconditionFailed", "412", "ConditionalRequestConflict"):
                raise StorageError(f"Object already exists: {path}") from exc
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        return path

    def list(self, prefix: str) -> List[str]:
        prefix = prefix if prefix.endswith("/") or not prefix else prefix + "/"
        names: List[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for item in page.get("Contents", []):
                    name = item["Key"][len(prefix):]
                    if name:
                        names.append(name)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Listing failed for {prefix}: {exc}") from exc
        return sorted(names)

    def remove(self, paths: Sequence[str]) -> List[str]:
        removed: List[str] = []
        failed: List[str] = []
        try:
            for batch in _chunks(list(paths), self.batch_size):
                response = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": _check_path(key)} for key in batch], "Quiet": True},
                )
                errors = {error["Key"] for error in response.get("Errors", [])}
                failed.extend(key for key in batch if key in errors)
                removed.extend(key for key in batch if key not in errors)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Delete failed: {exc}") from exc
        if failed:
            raise StorageError(f"Delete failed for {', '.join(failed)}")
        return removed

    def prefixes(self) -> List[str]:
        found: List[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Delimiter="/"):
                found.extend(item["Prefix"] for item in page.get("CommonPrefixes", []))
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Listing failed: {exc}") from exc
        return sorted(found)
