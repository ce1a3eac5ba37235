"""Attachment lifecycle of one experience form.

A form tracks an ordered list of slots. Each slot is either an ``Attachment``
already persisted in the store or a ``PendingAttachment`` that only exists
locally until ``commit`` uploads it. Removing a slot is a transition, not a
state: the slot simply stops being tracked.

Storage cleanup is best effort. Metadata rows are authoritative; an object
whose path cannot be resolved or deleted is logged and left behind for
``ExperienceHub.prune_orphans`` to collect later.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Sequence, Union

from experiencehub.errors import DraftBusyError, RecordNotFoundError, StorageError, StoreError
from experiencehub.index.storage import SQLiteExperienceStore
from experiencehub.media.objects import ObjectStore
from experiencehub.media.previews import PreviewPool
from experiencehub.media.resolver import ObjectPathResolver
from experiencehub.models import Attachment, IncomingFile, PendingAttachment
from experiencehub.utils.files import build_object_path, record_prefix

LOGGER = logging.getLogger(__name__)

Slot = Union[Attachment, PendingAttachment]


class CommitStatus(str, Enum):
    EMPTY = "empty"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(slots=True)
class CommitFailure:
    filename: str
    error: str


@dataclass(slots=True)
class CommitReport:
    uploaded: List[Attachment] = field(default_factory=list)
    failed: List[CommitFailure] = field(default_factory=list)

    @property
    def status(self) -> CommitStatus:
        if not self.uploaded and not self.failed:
            return CommitStatus.EMPTY
        if not self.failed:
            return CommitStatus.COMPLETE
        if self.uploaded:
            return CommitStatus.PARTIAL
        return CommitStatus.FAILED


@dataclass(slots=True)
class RemovalOutcome:
    attachment: Attachment
    object_path: str | None = None
    storage_removed: bool = False


@dataclass(slots=True)
class DestroyReport:
    record_id: str
    storage_removed: List[str] = field(default_factory=list)
    storage_errors: List[str] = field(default_factory=list)
    metadata_removed: int = 0


class AttachmentManager:
    """Coordinates pending, persisted and removed images for one form."""

    def __init__(
        self,
        store: SQLiteExperienceStore,
        objects: ObjectStore,
        previews: PreviewPool,
        *,
        record_id: str | None = None,
        attachments: Sequence[Attachment] = (),
        clock: Callable[[], float] = time.time,
        draft_id: str | None = None,
    ) -> None:
        self.store = store
        self.objects = objects
        self.previews = previews
        self.resolver = ObjectPathResolver(objects)
        self.record_id = record_id
        self.draft_id = draft_id or uuid.uuid4().hex
        self._slots: List[Slot] = list(attachments)
        self._clock = clock
        self._last_stamp = 0
        self._lock = threading.Lock()
        self._busy = False

    @property
    def slots(self) -> List[Slot]:
        return list(self._slots)

    @property
    def pending(self) -> List[PendingAttachment]:
        return [slot for slot in self._slots if isinstance(slot, PendingAttachment)]

    @property
    def persisted(self) -> List[Attachment]:
        return [slot for slot in self._slots if isinstance(slot, Attachment)]

    @property
    def is_busy(self) -> bool:
        return self._busy

    @contextmanager
    def busy(self) -> Iterator["AttachmentManager"]:
        """Hold the form for one save; a second concurrent save is rejected."""
        with self._lock:
            if self._busy:
                raise DraftBusyError("A save is already in progress for this form")
            self._busy = True
        try:
            yield self
        finally:
            self._busy = False

    def _index_of(self, slot: Slot) -> int | None:
        for index, candidate in enumerate(self._slots):
            if candidate is slot:
                return index
        return None

    def find_pending(self, slot_id: str) -> PendingAttachment | None:
        for slot in self.pending:
            if slot.slot_id == slot_id:
                return slot
        return None

    def find_persisted(self, attachment_id: str) -> Attachment | None:
        for slot in self.persisted:
            if slot.id == attachment_id:
                return slot
        return None

    def add_pending(self, files: Iterable[IncomingFile]) -> List[PendingAttachment]:
        """Queue files for upload; previously queued files are kept."""
        added: List[PendingAttachment] = []
        for incoming in files:
            preview = self.previews.create(incoming.content, incoming.filename)
            pending = PendingAttachment(
                slot_id=uuid.uuid4().hex,
                filename=incoming.filename,
                content=incoming.content,
                preview=preview,
                content_type=incoming.content_type,
            )
            self._slots.append(pending)
            added.append(pending)
        return added

    def remove_pending(self, slot: PendingAttachment | str) -> bool:
        """Stop tracking a pending file and release its preview.

        Returns False when the slot was not tracked (for example on a second
        call for the same slot).
        """
        pending = self.find_pending(slot) if isinstance(slot, str) else slot
        if pending is None:
            return False
        removed = False
        try:
            index = self._index_of(pending)
            if index is not None:
                del self._slots[index]
                removed = True
        finally:
            self.previews.release(pending.preview)
        return removed

    def remove_persisted(self, attachment: Attachment | str, *, record_id: str | None = None) -> RemovalOutcome:
        """Delete an image row, then try to delete its object from storage.

        A failing row delete raises StoreError and leaves the slot in place.
        Storage failures after that are logged only.
        """
        if isinstance(attachment, str):
            found = self.find_persisted(attachment)
            if found is None:
                raise RecordNotFoundError(f"Attachment {attachment} is not part of this form")
            attachment = found
        owner = record_id or attachment.experience_id or self.record_id

        self.store.delete_images_by_url(attachment.image_url)

        outcome = RemovalOutcome(attachment=attachment)
        if owner is None:
            LOGGER.warning("No record id for %s; storage object left in place", attachment.image_url)
        else:
            outcome.object_path = self.resolver.resolve(attachment.image_url, owner)
            if outcome.object_path is None:
                LOGGER.warning("Could not resolve storage object for %s; left orphaned", attachment.image_url)
            else:
                try:
                    outcome.storage_removed = bool(self.objects.remove([outcome.object_path]))
                except StorageError as exc:
                    LOGGER.warning("Storage object removal reported error: %s", exc)

        index = self._index_of(attachment)
        if index is not None:
            del self._slots[index]
        return outcome

    def _next_stamp(self) -> int:
        stamp = int(self._clock() * 1000)
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def commit(self, record_id: str) -> CommitReport:
        """Upload every pending file under ``record_id`` and record it.

        Files are handled one after another; a file whose upload or row insert
        fails is skipped and stays pending.
        """
        report = CommitReport()
        for pending in self.pending:
            path = build_object_path(record_id, pending.filename, self._next_stamp())
            try:
                self.objects.upload(path, pending.content, content_type=pending.content_type)
            except StorageError as exc:
                LOGGER.warning("Image upload failed for %s: %s", pending.filename, exc)
                report.failed.append(CommitFailure(pending.filename, str(exc)))
                continue

            url = self.objects.public_url(path)
            try:
                attachment = self.store.insert_image(record_id, url, pending.filename)
            except StoreError as exc:
                LOGGER.warning("Failed to insert image row for %s: %s", pending.filename, exc)
                report.failed.append(CommitFailure(pending.filename, str(exc)))
                self._discard_object(path)
                continue

            index = self._index_of(pending)
            if index is not None:
                self._slots[index] = attachment
            self.previews.release(pending.preview)
            report.uploaded.append(attachment)

        self.record_id = record_id
        if report.failed:
            LOGGER.info(
                "Committed %d of %d images for %s",
                len(report.uploaded),
                len(report.uploaded) + len(report.failed),
                record_id,
            )
        return report

    def _discard_object(self, path: str) -> None:
        try:
            self.objects.remove([path])
        except StorageError as exc:
            LOGGER.warning("Could not remove unreferenced upload %s: %s", path, exc)

    def destroy_all(self, record_id: str) -> DestroyReport:
        """Remove every stored object and image row of a record about to be deleted.

        Storage problems never stop the image rows from being deleted, so the
        record itself can always be removed afterwards.
        """
        report = DestroyReport(record_id=record_id)
        sweep = False
        try:
            images = self.store.list_images(record_id)
        except StoreError as exc:
            LOGGER.warning("Couldn't fetch images before delete: %s", exc)
            images = []
            sweep = True

        paths: List[str] = []
        for image in images:
            path = self.objects.path_from_public_url(image.image_url)
            if path is None:
                sweep = True
            else:
                paths.append(path)

        if paths:
            try:
                report.storage_removed.extend(self.objects.remove(paths))
            except StorageError as exc:
                LOGGER.warning("Some storage deletes failed: %s", exc)
                report.storage_errors.append(str(exc))

        if sweep:
            prefix = record_prefix(record_id)
            try:
                leftovers = [f"{prefix}{name}" for name in self.objects.list(prefix)]
                if leftovers:
                    report.storage_removed.extend(self.objects.remove(leftovers))
            except StorageError as exc:
                LOGGER.warning("Could not clean up %s: %s", prefix, exc)
                report.storage_errors.append(str(exc))

        try:
            report.metadata_removed = self.store.delete_images_for(record_id)
        except StoreError as exc:
            LOGGER.warning("Failed to delete image rows for %s: %s", record_id, exc)

        self._slots = [slot for slot in self._slots if isinstance(slot, PendingAttachment)]
        self.teardown()
        return report

    def teardown(self) -> None:
        """Drop every pending file and release its preview."""
        for pending in self.pending:
            self.remove_pending(pending)
