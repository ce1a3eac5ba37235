"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from experiencehub.media.objects import DEFAULT_BUCKET

DEFAULT_PUBLIC_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_EMAIL_DOMAIN = "iitr.ac.in"
DEFAULT_DRAFT_TTL = 60 * 60.0
ENV_PREFIX = "EXPERIENCEHUB_"


def _get_default_home() -> Path:
    """Directory holding the database and the local bucket."""
    # When running from source, prefer local data/ if it exists
    local = Path("data")
    if local.is_dir():
        return local
    return Path.home() / ".experiencehub"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    media_root: Path | None = None
    bucket: str = DEFAULT_BUCKET
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    allowed_email_domain: str = DEFAULT_EMAIL_DOMAIN
    storage_backend: str = "local"
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    draft_ttl: float = DEFAULT_DRAFT_TTL

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_home() / "experiencehub.db"
        if self.media_root is None:
            self.media_root = Path(self.db_path).parent / "storage"
        if self.storage_backend not in ("local", "s3"):
            raise ValueError(f"Unknown storage backend: {self.storage_backend}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from ``EXPERIENCEHUB_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        home = get("HOME")
        db_path = get("DB")
        media_root = get("MEDIA_ROOT")
        return cls(
            db_path=Path(db_path) if db_path else (Path(home) / "experiencehub.db" if home else None),
            media_root=Path(media_root) if media_root else (Path(home) / "storage" if home else None),
            bucket=get("BUCKET") or DEFAULT_BUCKET,
            public_base_url=get("PUBLIC_BASE_URL") or DEFAULT_PUBLIC_BASE_URL,
            allowed_email_domain=get("EMAIL_DOMAIN") or DEFAULT_EMAIL_DOMAIN,
            storage_backend=get("STORAGE") or "local",
            s3_endpoint_url=get("S3_ENDPOINT_URL"),
            s3_region=get("S3_REGION"),
            draft_ttl=float(get("DRAFT_TTL") or DEFAULT_DRAFT_TTL),
        )

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_home() / "experiencehub.db"
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def resolve_media_root(self, base_dir: Path | None = None) -> Path:
        if self.media_root is None:
            self.media_root = Path(self.db_path).parent / "storage"
        if Path(self.media_root).is_absolute() or base_dir is None:
            return Path(self.media_root)
        return base_dir / self.media_root
