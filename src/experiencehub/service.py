"""Coordinates validation, the store, the bucket and per-form attachment state."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from experiencehub.auth import SessionState
from experiencehub.config import DEFAULT_DRAFT_TTL, AppConfig
from experiencehub.errors import PermissionDeniedError, RecordNotFoundError, StorageError
from experiencehub.index.filters import FilterEngine, FilterState
from experiencehub.index.storage import SQLiteExperienceStore
from experiencehub.media.lifecycle import AttachmentManager, CommitReport, DestroyReport, RemovalOutcome
from experiencehub.media.objects import LocalObjectStore, ObjectStore, S3ObjectStore
from experiencehub.media.previews import PreviewPool
from experiencehub.models import Experience, IncomingFile
from experiencehub.utils.files import build_object_path
from experiencehub.validation import validate_form

LOGGER = logging.getLogger(__name__)

INLINE_FALLBACK_PREFIX = "anon"


@dataclass(slots=True)
class SaveResult:
    experience: Experience
    report: CommitReport


@dataclass(slots=True)
class PruneStats:
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class InlineImage:
    path: str
    url: str


@dataclass(slots=True)
class _OpenDraft:
    draft: AttachmentManager
    owner_id: str
    touched: float


def open_object_store(config: AppConfig, base_dir: Path | None = None) -> ObjectStore:
    if config.storage_backend == "s3":
        return S3ObjectStore(
            config.bucket,
            public_base_url=config.public_base_url,
            endpoint_url=config.s3_endpoint_url,
            region_name=config.s3_region,
        )
    return LocalObjectStore(
        config.resolve_media_root(base_dir),
        config.bucket,
        public_base_url=config.public_base_url,
    )


class ExperienceHub:
    """High-level API used by the web app and the CLI.

    Open drafts belong to the user who opened them. A draft left untouched for
    ``draft_ttl`` seconds is discarded the next time drafts are looked up.
    """

    def __init__(
        self,
        store: SQLiteExperienceStore,
        objects: ObjectStore,
        *,
        session: SessionState,
        previews: PreviewPool | None = None,
        draft_ttl: float = DEFAULT_DRAFT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.objects = objects
        self.session = session
        self.previews = previews or PreviewPool()
        self.draft_ttl = draft_ttl
        self._clock = clock
        self._drafts: Dict[str, _OpenDraft] = {}
        self._lock = threading.Lock()
        self._last_stamp = 0

    @classmethod
    def open(cls, config: AppConfig, session: SessionState, base_dir: Path | None = None) -> "ExperienceHub":
        db_path = config.resolve_db_path(base_dir)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = SQLiteExperienceStore(db_path, check_same_thread=False)
        return cls(
            store,
            open_object_store(config, base_dir),
            session=session,
            draft_ttl=config.draft_ttl,
        )

    def close(self) -> None:
        with self._lock:
            entries = list(self._drafts.values())
            self._drafts.clear()
        for entry in entries:
            entry.draft.teardown()
        self.previews.close()
        self.store.close()

    # Drafts

    def _manager(self, record: Experience | None = None) -> AttachmentManager:
        return AttachmentManager(
            self.store,
            self.objects,
            self.previews,
            record_id=record.id if record is not None else None,
            attachments=record.images if record is not None else (),
        )

    def _evict_stale(self) -> None:
        cutoff = self._clock() - self.draft_ttl
        with self._lock:
            stale = [
                draft_id
                for draft_id, entry in self._drafts.items()
                if entry.touched < cutoff and not entry.draft.is_busy
            ]
            evicted = [self._drafts.pop(draft_id) for draft_id in stale]
        for entry in evicted:
            LOGGER.info("Discarding abandoned draft %s", entry.draft.draft_id)
            entry.draft.teardown()

    def open_draft(self, record_id: str | None = None) -> AttachmentManager:
        """Start a form; an edit form is seeded with the record's images."""
        self._evict_stale()
        record = None
        if record_id is not None:
            record = self.get(record_id)
            identity = self.session.require_owner(record)
        else:
            identity = self.session.require_identity()
        draft = self._manager(record)
        with self._lock:
            self._drafts[draft.draft_id] = _OpenDraft(draft, identity.user_id, self._clock())
        return draft

    def get_draft(self, draft_id: str) -> AttachmentManager:
        self._evict_stale()
        with self._lock:
            entry = self._drafts.get(draft_id)
        if entry is None:
            raise RecordNotFoundError(f"Draft {draft_id} not found")
        identity = self.session.require_identity()
        if entry.owner_id != identity.user_id:
            raise PermissionDeniedError("This form belongs to another user")
        entry.touched = self._clock()
        return entry.draft

    def close_draft(self, draft_id: str) -> bool:
        with self._lock:
            entry = self._drafts.get(draft_id)
        if entry is None:
            return False
        if entry.owner_id != self.session.require_identity().user_id:
            raise PermissionDeniedError("This form belongs to another user")
        with self._lock:
            entry = self._drafts.pop(draft_id, None)
        if entry is None:
            return False
        entry.draft.teardown()
        return True

    def discard_drafts(self, user_id: str) -> int:
        """Drop every draft opened by ``user_id``, e.g. when they sign out."""
        with self._lock:
            owned = [draft_id for draft_id, entry in self._drafts.items() if entry.owner_id == user_id]
            entries = [self._drafts.pop(draft_id) for draft_id in owned]
        for entry in entries:
            entry.draft.teardown()
        return len(entries)

    @staticmethod
    def _bind(draft: AttachmentManager, record_id: str | None) -> None:
        """Reject a draft that was opened for a different record."""
        if draft.record_id is not None and draft.record_id != record_id:
            raise PermissionDeniedError("This form belongs to a different experience")

    # Reads

    def get(self, record_id: str) -> Experience:
        record = self.store.get_experience(record_id)
        if record is None:
            raise RecordNotFoundError(f"Experience {record_id} not found")
        return record

    def engine(self) -> FilterEngine:
        return FilterEngine(self.store.list_experiences())

    def browse(self, state: FilterState | None = None) -> List[Experience]:
        return self.engine().apply(state or FilterState())

    def facets(self) -> Dict[str, List[Any]]:
        return self.engine().all_facet_values()

    # Writes

    def submit(self, form: Mapping[str, Any], draft: AttachmentManager | None = None) -> SaveResult:
        """Validate and insert a new experience, then upload its pending images."""
        draft = draft or self._manager()
        self._bind(draft, None)
        with draft.busy():
            payload = validate_form(form)
            identity = self.session.require_identity()
            experience = self.store.insert_experience(payload, user_id=identity.user_id)
            LOGGER.info("Created experience %s for %s", experience.id, experience.company_name)
            report = draft.commit(experience.id)
        self._forget(draft)
        return SaveResult(self.get(experience.id), report)

    def update(
        self, record_id: str, form: Mapping[str, Any], draft: AttachmentManager | None = None
    ) -> SaveResult:
        """Replace an experience's fields and upload images added in the form."""
        record = self.get(record_id)
        self.session.require_owner(record)
        draft = draft or self._manager(record)
        self._bind(draft, record_id)
        with draft.busy():
            payload = validate_form(form)
            self.store.update_experience(record_id, payload)
            report = draft.commit(record_id)
        self._forget(draft)
        return SaveResult(self.get(record_id), report)

    def delete_attachment(
        self, record_id: str, attachment_id: str, draft: AttachmentManager | None = None
    ) -> RemovalOutcome:
        record = self.get(record_id)
        self.session.require_owner(record)
        draft = draft or self._manager(record)
        self._bind(draft, record_id)
        attachment = draft.find_persisted(attachment_id)
        if attachment is None or attachment.experience_id != record_id:
            raise RecordNotFoundError(f"Image {attachment_id} not found on experience {record_id}")
        return draft.remove_persisted(attachment, record_id=record_id)

    def delete(self, record_id: str) -> DestroyReport:
        """Delete an experience together with its images."""
        record = self.get(record_id)
        self.session.require_owner(record)
        draft = self._manager(record)
        with draft.busy():
            report = draft.destroy_all(record_id)
            if not self.store.delete_experience(record_id):
                raise RecordNotFoundError(f"Experience {record_id} not found")
        LOGGER.info("Deleted experience %s", record_id)
        return report

    def _forget(self, draft: AttachmentManager) -> None:
        if draft.pending:
            return
        with self._lock:
            self._drafts.pop(draft.draft_id, None)

    def _next_stamp(self) -> int:
        with self._lock:
            stamp = max(int(self._clock() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return stamp

    def upload_inline_image(self, incoming: IncomingFile, record_id: str | None = None) -> InlineImage:
        """Store an image embedded in rich-text markup and return its public URL.

        The image goes under the record's folder when editing an existing
        experience and under ``anon/`` otherwise. Only markup keeps it alive.
        """
        if record_id is not None:
            self.session.require_owner(self.get(record_id))
        else:
            self.session.require_identity()
        path = build_object_path(record_id or INLINE_FALLBACK_PREFIX, incoming.filename, self._next_stamp())
        self.objects.upload(path, incoming.content, content_type=incoming.content_type)
        return InlineImage(path=path, url=self.objects.public_url(path))

    # Maintenance

    def prune_orphans(self) -> PruneStats:
        """Remove stored objects that neither an image row nor any markup references."""
        stats = PruneStats()
        referenced = self.store.referenced_urls()
        markup = self.store.markup_texts()

        def in_use(path: str) -> bool:
            url = self.objects.public_url(path)
            return url in referenced or any(url in text for text in markup)

        for prefix in self.objects.prefixes():
            try:
                names = self.objects.list(prefix)
            except StorageError as exc:
                LOGGER.warning("Could not list %s: %s", prefix, exc)
                continue
            orphans = [f"{prefix}{name}" for name in names if not in_use(f"{prefix}{name}")]
            if not orphans:
                continue
            try:
                stats.removed.extend(self.objects.remove(orphans))
            except StorageError as exc:
                LOGGER.warning("Could not remove orphans under %s: %s", prefix, exc)
                stats.failed.extend(orphans)
        return stats
