"""Tests for the ExperienceHub coordinator."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from experiencehub.auth import Identity, LocalIdentityProvider, SessionState
from experiencehub.config import AppConfig
from experiencehub.errors import (
    AuthenticationError,
    DraftBusyError,
    PermissionDeniedError,
    RecordNotFoundError,
    ValidationError,
)
from experiencehub.index.filters import FilterState
from experiencehub.index.storage import SQLiteExperienceStore
from experiencehub.media.lifecycle import CommitStatus
from experiencehub.media.objects import LocalObjectStore, S3ObjectStore
from experiencehub.media.previews import PreviewPool
from experiencehub.models import IncomingFile
from experiencehub.service import ExperienceHub, open_object_store

OWNER = Identity(user_id="u1", email="asha@iitr.ac.in")
OTHER = Identity(user_id="u2", email="ravi@iitr.ac.in")


def make_form(**overrides) -> dict:
    form = {
        "company_name": "Google",
        "candidate_name": "Asha",
        "experience_type": "Internship",
        "assessment_type": "interview",
        "graduating_year": "2025",
        "branch": "CSE",
        "result": "Selected",
        "experience_description": "<p>Two rounds</p>",
        "additional_tips": "",
    }
    form.update(overrides)
    return form


@pytest.fixture
def provider() -> LocalIdentityProvider:
    return LocalIdentityProvider()


@pytest.fixture
def session(provider: LocalIdentityProvider) -> SessionState:
    session = SessionState("iitr.ac.in")
    session.start(provider)
    provider.sign_in(OWNER)
    return session


@pytest.fixture
def hub(tmp_path: Path, session: SessionState):
    store = SQLiteExperienceStore(tmp_path / "test.db")
    objects = LocalObjectStore(tmp_path / "storage", public_base_url="http://media.test")
    hub = ExperienceHub(store, objects, session=session, previews=PreviewPool(tmp_path / "previews"))
    yield hub
    hub.close()


@pytest.fixture
def mocked_hub(session: SessionState) -> ExperienceHub:
    return ExperienceHub(MagicMock(), MagicMock(), session=session, previews=MagicMock())


class TestSubmit:
    """Creating experiences."""

    def test_invalid_year_touches_nothing(self, mocked_hub: ExperienceHub) -> None:
        with pytest.raises(ValidationError, match="Please enter a valid graduating year"):
            mocked_hub.submit(make_form(graduating_year="abcd"))

        assert mocked_hub.store.mock_calls == []
        assert mocked_hub.objects.mock_calls == []

    def test_missing_field_reports_first_failure(self, mocked_hub: ExperienceHub) -> None:
        with pytest.raises(ValidationError) as info:
            mocked_hub.submit(make_form(company_name="  ", branch=""))
        assert info.value.field == "company_name"
        mocked_hub.store.insert_experience.assert_not_called()

    def test_submit_without_files(self, mocked_hub: ExperienceHub) -> None:
        result = mocked_hub.submit(make_form())

        mocked_hub.store.insert_experience.assert_called_once()
        payload = mocked_hub.store.insert_experience.call_args.args[0]
        assert payload.experience_type == "intern"
        assert payload.result == "selected"
        assert payload.additional_tips is None
        assert mocked_hub.store.insert_experience.call_args.kwargs["user_id"] == "u1"
        assert mocked_hub.objects.mock_calls == []
        assert result.report.status is CommitStatus.EMPTY

    def test_submit_requires_sign_in(self, mocked_hub: ExperienceHub, provider) -> None:
        provider.sign_out()
        with pytest.raises(AuthenticationError):
            mocked_hub.submit(make_form())
        mocked_hub.store.insert_experience.assert_not_called()

    def test_submit_with_files(self, hub: ExperienceHub) -> None:
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a"), IncomingFile("b.png", b"b")])

        result = hub.submit(make_form(), draft)

        assert result.report.status is CommitStatus.COMPLETE
        assert [i.image_name for i in result.experience.images] == ["a.png", "b.png"]
        assert len(hub.objects.list(f"{result.experience.id}/")) == 2
        with pytest.raises(RecordNotFoundError):
            hub.get_draft(draft.draft_id)

    def test_busy_draft_rejected(self, mocked_hub: ExperienceHub) -> None:
        draft = mocked_hub._manager()
        with draft.busy():
            with pytest.raises(DraftBusyError):
                mocked_hub.submit(make_form(), draft)
        mocked_hub.store.insert_experience.assert_not_called()


class TestUpdateAndOwnership:
    """Editing records."""

    def test_owner_can_update(self, hub: ExperienceHub) -> None:
        created = hub.submit(make_form()).experience

        updated = hub.update(created.id, make_form(company_name="Amazon")).experience

        assert updated.company_name == "Amazon"
        assert updated.user_id == "u1"

    def test_other_user_cannot_update(self, hub: ExperienceHub, provider) -> None:
        created = hub.submit(make_form()).experience
        provider.sign_in(OTHER)

        with pytest.raises(PermissionDeniedError):
            hub.update(created.id, make_form(company_name="Amazon"))
        with pytest.raises(PermissionDeniedError):
            hub.open_draft(created.id)
        with pytest.raises(PermissionDeniedError):
            hub.delete(created.id)
        assert hub.get(created.id).company_name == "Google"

    def test_edit_draft_seeded_with_images(self, hub: ExperienceHub) -> None:
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a")])
        created = hub.submit(make_form(), draft).experience

        edit = hub.open_draft(created.id)

        assert edit.persisted == created.images
        assert hub.get_draft(edit.draft_id) is edit
        assert hub.close_draft(edit.draft_id) is True
        assert hub.close_draft(edit.draft_id) is False

    def test_delete_attachment(self, hub: ExperienceHub) -> None:
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a")])
        created = hub.submit(make_form(), draft).experience
        image = created.images[0]

        outcome = hub.delete_attachment(created.id, image.id)

        assert outcome.storage_removed is True
        assert hub.get(created.id).images == []
        with pytest.raises(RecordNotFoundError):
            hub.delete_attachment(created.id, image.id)


class TestDraftBinding:
    """A form can only write to the record it was opened for."""

    def _with_image(self, hub: ExperienceHub, **overrides):
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a")])
        return hub.submit(make_form(**overrides), draft).experience

    def test_foreign_draft_cannot_delete_image(self, hub: ExperienceHub, provider) -> None:
        victim = self._with_image(hub)
        victim_image = victim.images[0]
        victim_draft = hub.open_draft(victim.id)
        provider.sign_in(OTHER)
        own = self._with_image(hub, company_name="Amazon")

        with pytest.raises(PermissionDeniedError):
            hub.delete_attachment(own.id, victim_image.id, victim_draft)

        provider.sign_in(OWNER)
        assert hub.get(victim.id).images == [victim_image]
        assert len(hub.objects.list(f"{victim.id}/")) == 1

    def test_image_of_another_record_not_found(self, hub: ExperienceHub) -> None:
        first = self._with_image(hub)
        second = self._with_image(hub, company_name="Amazon")
        draft = hub._manager(hub.get(first.id))
        draft.record_id = second.id

        with pytest.raises(RecordNotFoundError):
            hub.delete_attachment(second.id, first.images[0].id, draft)
        assert hub.get(first.id).images == first.images

    def test_update_rejects_draft_of_another_record(self, hub: ExperienceHub) -> None:
        first = self._with_image(hub)
        second = self._with_image(hub, company_name="Amazon")
        draft = hub.open_draft(first.id)
        draft.add_pending([IncomingFile("b.png", b"b")])

        with pytest.raises(PermissionDeniedError):
            hub.update(second.id, make_form(company_name="Meta"), draft)
        assert hub.get(second.id).company_name == "Amazon"
        assert len(hub.get(second.id).images) == 1

    def test_submit_rejects_edit_draft(self, hub: ExperienceHub) -> None:
        created = self._with_image(hub)
        draft = hub.open_draft(created.id)

        with pytest.raises(PermissionDeniedError):
            hub.submit(make_form(company_name="Meta"), draft)
        assert [e.company_name for e in hub.browse()] == ["Google"]

    def test_other_user_cannot_use_draft(self, hub: ExperienceHub, provider) -> None:
        draft = hub.open_draft()
        provider.sign_in(OTHER)

        with pytest.raises(PermissionDeniedError):
            hub.get_draft(draft.draft_id)
        with pytest.raises(PermissionDeniedError):
            hub.close_draft(draft.draft_id)


class TestDraftLifetime:
    """Abandoned forms are discarded."""

    @pytest.fixture
    def clock(self) -> list[float]:
        return [1000.0]

    @pytest.fixture
    def timed_hub(self, tmp_path: Path, session: SessionState, clock: list[float]):
        store = SQLiteExperienceStore(tmp_path / "test.db")
        objects = LocalObjectStore(tmp_path / "storage", public_base_url="http://media.test")
        hub = ExperienceHub(
            store,
            objects,
            session=session,
            previews=PreviewPool(tmp_path / "previews"),
            draft_ttl=60,
            clock=lambda: clock[0],
        )
        yield hub
        hub.close()

    def test_stale_draft_is_evicted(self, timed_hub: ExperienceHub, clock: list[float]) -> None:
        draft = timed_hub.open_draft()
        pending = draft.add_pending([IncomingFile("a.png", b"a")])[0]
        clock[0] += 61

        with pytest.raises(RecordNotFoundError):
            timed_hub.get_draft(draft.draft_id)
        assert draft.pending == []
        assert not pending.preview.path.exists()

    def test_touching_keeps_draft_alive(self, timed_hub: ExperienceHub, clock: list[float]) -> None:
        draft = timed_hub.open_draft()
        for _ in range(3):
            clock[0] += 40
            assert timed_hub.get_draft(draft.draft_id) is draft

    def test_opening_sweeps_old_drafts(self, timed_hub: ExperienceHub, clock: list[float]) -> None:
        old = timed_hub.open_draft()
        clock[0] += 120
        timed_hub.open_draft()

        assert old.draft_id not in timed_hub._drafts
        assert len(timed_hub._drafts) == 1

    def test_discard_drafts_for_user(self, hub: ExperienceHub, provider) -> None:
        mine = hub.open_draft()
        provider.sign_in(OTHER)
        theirs = hub.open_draft()

        assert hub.discard_drafts("u1") == 1
        assert hub.get_draft(theirs.draft_id) is theirs
        provider.sign_in(OWNER)
        with pytest.raises(RecordNotFoundError):
            hub.get_draft(mine.draft_id)


class TestInlineImages:
    """Images pasted into the rich-text editor."""

    def test_upload_without_record_goes_under_anon(self, hub: ExperienceHub) -> None:
        image = hub.upload_inline_image(IncomingFile("my pic.png", b"x"))

        assert image.path.startswith("anon/")
        assert image.path.endswith("_my_pic.png")
        assert image.url == hub.objects.public_url(image.path)
        assert hub.objects.list("anon/") == [image.path.split("/", 1)[1]]

    def test_upload_for_record_checks_owner(self, hub: ExperienceHub, provider) -> None:
        created = hub.submit(make_form()).experience
        image = hub.upload_inline_image(IncomingFile("a.png", b"x"), created.id)
        assert image.path.startswith(f"{created.id}/")

        provider.sign_in(OTHER)
        with pytest.raises(PermissionDeniedError):
            hub.upload_inline_image(IncomingFile("b.png", b"x"), created.id)

    def test_upload_requires_sign_in(self, hub: ExperienceHub, provider) -> None:
        provider.sign_out()
        with pytest.raises(AuthenticationError):
            hub.upload_inline_image(IncomingFile("a.png", b"x"))
        assert hub.objects.prefixes() == []

    def test_same_name_twice_gets_distinct_paths(self, hub: ExperienceHub) -> None:
        first = hub.upload_inline_image(IncomingFile("a.png", b"1"))
        second = hub.upload_inline_image(IncomingFile("a.png", b"2"))
        assert first.path != second.path

    def test_prune_keeps_image_referenced_in_markup(self, hub: ExperienceHub) -> None:
        kept = hub.upload_inline_image(IncomingFile("kept.png", b"x"))
        dropped = hub.upload_inline_image(IncomingFile("dropped.png", b"x"))
        hub.submit(make_form(experience_description=f'<p>Board</p><img src="{kept.url}">'))

        stats = hub.prune_orphans()

        assert stats.removed == [dropped.path]
        assert hub.objects.list("anon/") == [kept.path.split("/", 1)[1]]


class TestDelete:
    """Deleting records and their images."""

    def test_delete_removes_everything(self, hub: ExperienceHub) -> None:
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a"), IncomingFile("b.png", b"b")])
        created = hub.submit(make_form(), draft).experience

        report = hub.delete(created.id)

        assert report.metadata_removed == 2
        assert len(report.storage_removed) == 2
        assert hub.objects.prefixes() == []
        with pytest.raises(RecordNotFoundError):
            hub.get(created.id)

    def test_non_derivable_urls_with_empty_listing(self, session: SessionState) -> None:
        store = MagicMock()
        store.get_experience.return_value = MagicMock(id="rec", user_id="u1", images=[])
        store.list_images.return_value = [
            MagicMock(image_url=f"https://cdn.test/{name}.png") for name in ("a", "b", "c")
        ]
        store.delete_images_for.return_value = 3
        store.delete_experience.return_value = True
        objects = MagicMock()
        objects.path_from_public_url.return_value = None
        objects.list.return_value = []
        hub = ExperienceHub(store, objects, session=session, previews=MagicMock())

        report = hub.delete("rec")

        objects.remove.assert_not_called()
        store.delete_images_for.assert_called_once_with("rec")
        store.delete_experience.assert_called_once_with("rec")
        assert report.metadata_removed == 3

    def test_delete_missing(self, hub: ExperienceHub) -> None:
        with pytest.raises(RecordNotFoundError):
            hub.delete("missing")


class TestBrowse:
    """Reading through the filter engine."""

    def test_browse_and_facets(self, hub: ExperienceHub) -> None:
        hub.submit(make_form())
        hub.submit(make_form(company_name="Amazon", result="rejected", graduating_year="2024"))

        assert [e.company_name for e in hub.browse()] == ["Amazon", "Google"]
        state = FilterState(selections={"result": "selected"})
        assert [e.company_name for e in hub.browse(state)] == ["Google"]
        facets = hub.facets()
        assert facets["company"] == ["Amazon", "Google"]
        assert facets["graduating_year"] == [2024, 2025]


class TestPrune:
    """Removing unreferenced objects."""

    def test_prune_keeps_referenced_and_inline(self, hub: ExperienceHub) -> None:
        draft = hub.open_draft()
        draft.add_pending([IncomingFile("a.png", b"a")])
        created = hub.submit(make_form(), draft).experience
        hub.objects.upload(f"{created.id}/9_orphan.png", b"x")
        hub.objects.upload("inline/1_pic.png", b"x")
        inline_url = hub.objects.public_url("inline/1_pic.png")
        hub.update(created.id, make_form(additional_tips=f'<img src="{inline_url}">'))

        stats = hub.prune_orphans()

        assert stats.removed == [f"{created.id}/9_orphan.png"]
        assert stats.failed == []
        assert len(hub.objects.list(f"{created.id}/")) == 1
        assert hub.objects.list("inline/") == ["1_pic.png"]


class TestOpen:
    """Building a hub from configuration."""

    def test_open_creates_database(self, tmp_path: Path, session: SessionState) -> None:
        config = AppConfig(db_path=tmp_path / "nested" / "hub.db")

        hub = ExperienceHub.open(config, session)

        assert (tmp_path / "nested" / "hub.db").exists()
        assert isinstance(hub.objects, LocalObjectStore)
        hub.close()

    def test_s3_backend(self, tmp_path: Path) -> None:
        config = AppConfig(db_path=tmp_path / "hub.db", storage_backend="s3", s3_region="us-east-1")
        assert isinstance(open_object_store(config), S3ObjectStore)
