"""FastAPI application backing the ExperienceHub web UI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from experiencehub.auth import Identity, LocalIdentityProvider, SessionState
from experiencehub.config import AppConfig
from experiencehub.errors import (
    AuthenticationError,
    DraftBusyError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageError,
    StoreError,
    UnknownFacetError,
    ValidationError,
)
from experiencehub.index.filters import FilterState
from experiencehub.media.lifecycle import AttachmentManager, CommitReport, Slot
from experiencehub.media.objects import LocalObjectStore
from experiencehub.models import (
    AssessmentType,
    Attachment,
    Experience,
    ExperienceType,
    IncomingFile,
    PendingAttachment,
    Result,
    display_label,
)
from experiencehub.service import ExperienceHub
from experiencehub.utils.html import sanitize_markup

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="ExperienceHub", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SignInRequest(BaseModel):
    user_id: str
    email: str


class DraftRequest(BaseModel):
    record_id: str | None = None


class ExperienceForm(BaseModel):
    company_name: str | None = None
    experience_type: str | None = None
    assessment_type: str | None = None
    candidate_name: str | None = None
    graduating_year: str | int | None = None
    branch: str | None = None
    result: str | None = None
    experience_description: str | None = None
    additional_tips: str | None = None
    draft_id: str | None = None

    def form_values(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"draft_id"})


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    config = AppConfig.from_env()
    provider = LocalIdentityProvider()
    session = SessionState(config.allowed_email_domain)
    session.start(provider)
    app.state.config = config
    app.state.provider = provider
    app.state.session = session
    app.state.hub = ExperienceHub.open(config, session, Path.cwd())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    hub: ExperienceHub | None = getattr(app.state, "hub", None)
    if hub is not None:
        hub.close()
        app.state.hub = None
    session: SessionState | None = getattr(app.state, "session", None)
    if session is not None:
        session.stop()


def _hub() -> ExperienceHub:
    hub = getattr(app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Service is starting up, please retry")
    return hub


def _error(status_code: int, detail: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, exc.message, field=exc.field)


@app.exception_handler(RecordNotFoundError)
async def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return _error(404, str(exc))


@app.exception_handler(PermissionDeniedError)
async def _forbidden(request: Request, exc: PermissionDeniedError) -> JSONResponse:
    return _error(403, str(exc))


@app.exception_handler(AuthenticationError)
async def _unauthenticated(request: Request, exc: AuthenticationError) -> JSONResponse:
    return _error(401, str(exc))


@app.exception_handler(DraftBusyError)
async def _busy(request: Request, exc: DraftBusyError) -> JSONResponse:
    return _error(409, str(exc))


@app.exception_handler(UnknownFacetError)
async def _unknown_facet(request: Request, exc: UnknownFacetError) -> JSONResponse:
    return _error(400, f"Unknown filter: {exc.args[0]}")


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    LOGGER.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "The database could not complete the request. Please try again.", error=str(exc))


@app.exception_handler(StorageError)
async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    LOGGER.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "File storage could not complete the request. Please try again.", error=str(exc))


def _attachment_dict(attachment: Attachment) -> Dict[str, Any]:
    return {
        "id": attachment.id,
        "image_url": attachment.image_url,
        "image_name": attachment.image_name,
        "created_at": attachment.created_at,
    }


def _experience_dict(experience: Experience) -> Dict[str, Any]:
    """Serialise an experience; markup always leaves through the sanitiser."""
    return {
        "id": experience.id,
        "company_name": experience.company_name,
        "experience_type": experience.experience_type,
        "experience_type_label": display_label(ExperienceType, experience.experience_type),
        "assessment_type": experience.assessment_type,
        "assessment_type_label": display_label(AssessmentType, experience.assessment_type),
        "candidate_name": experience.candidate_name,
        "graduating_year": experience.graduating_year,
        "branch": experience.branch,
        "result": experience.result,
        "result_label": display_label(Result, experience.result),
        "experience_description": sanitize_markup(experience.experience_description),
        "additional_tips": sanitize_markup(experience.additional_tips) or None,
        "created_at": experience.created_at,
        "user_id": experience.user_id,
        "images": [_attachment_dict(image) for image in experience.images],
    }


def _slot_dict(slot: Slot) -> Dict[str, Any]:
    if isinstance(slot, PendingAttachment):
        return {
            "kind": "pending",
            "slot_id": slot.slot_id,
            "name": slot.filename,
            "url": f"/previews/{slot.preview.token}",
        }
    return {"kind": "persisted", "id": slot.id, "name": slot.image_name, "url": slot.image_url}


def _draft_dict(draft: AttachmentManager) -> Dict[str, Any]:
    return {
        "draft_id": draft.draft_id,
        "record_id": draft.record_id,
        "busy": draft.is_busy,
        "slots": [_slot_dict(slot) for slot in draft.slots],
    }


def _report_dict(report: CommitReport) -> Dict[str, Any]:
    return {
        "status": report.status.value,
        "uploaded": [_attachment_dict(image) for image in report.uploaded],
        "failed": [{"filename": item.filename, "error": item.error} for item in report.failed],
    }


def _optional_draft(draft_id: str | None) -> AttachmentManager | None:
    return _hub().get_draft(draft_id) if draft_id else None


@app.post("/auth/sign-in")
async def sign_in(payload: SignInRequest) -> dict[str, Any]:
    provider: LocalIdentityProvider = app.state.provider
    session: SessionState = app.state.session
    provider.sign_in(Identity(user_id=payload.user_id, email=payload.email))
    if session.snapshot is None:
        raise HTTPException(
            status_code=403,
            detail=f"Only {session.allowed_domain} email addresses are allowed",
        )
    return {"user_id": session.snapshot.user_id, "email": session.snapshot.email}


@app.post("/auth/sign-out")
async def sign_out() -> dict[str, str]:
    identity = app.state.session.snapshot
    hub: ExperienceHub | None = getattr(app.state, "hub", None)
    if identity is not None and hub is not None:
        hub.discard_drafts(identity.user_id)
    app.state.provider.sign_out()
    return {"status": "ok"}


@app.get("/auth/session")
async def current_session() -> dict[str, Any]:
    identity = app.state.session.snapshot
    if identity is None:
        return {"authenticated": False}
    return {"authenticated": True, "user_id": identity.user_id, "email": identity.email}


@app.get("/experiences")
async def list_experiences(
    q: str = "",
    company: str | None = Query(None),
    experience_type: str | None = Query(None),
    assessment_type: str | None = Query(None),
    result: str | None = Query(None),
    graduating_year: str | None = Query(None),
    branch: str | None = Query(None),
) -> dict[str, Any]:
    """Search and filter every experience; omitted filters do not constrain."""
    requested = {
        "company": company,
        "experience_type": experience_type,
        "assessment_type": assessment_type,
        "result": result,
        "graduating_year": graduating_year,
        "branch": branch,
    }
    state = FilterState(
        search_text=q,
        selections={name: value for name, value in requested.items() if value is not None},
    )
    experiences = _hub().browse(state)
    return {
        "experiences": [_experience_dict(experience) for experience in experiences],
        "count": len(experiences),
    }


@app.get("/experiences/facets")
async def list_facets() -> dict[str, Dict[str, List[Any]]]:
    return {"facets": _hub().facets()}


@app.get("/experiences/{record_id}")
async def get_experience(record_id: str) -> dict[str, Any]:
    return _experience_dict(_hub().get(record_id))


@app.post("/experiences", status_code=201)
async def create_experience(form: ExperienceForm) -> dict[str, Any]:
    saved = _hub().submit(form.form_values(), _optional_draft(form.draft_id))
    return {"experience": _experience_dict(saved.experience), "images": _report_dict(saved.report)}


@app.put("/experiences/{record_id}")
async def update_experience(record_id: str, form: ExperienceForm) -> dict[str, Any]:
    saved = _hub().update(record_id, form.form_values(), _optional_draft(form.draft_id))
    return {"experience": _experience_dict(saved.experience), "images": _report_dict(saved.report)}


@app.delete("/experiences/{record_id}")
async def delete_experience(record_id: str) -> dict[str, Any]:
    report = _hub().delete(record_id)
    return {
        "status": "ok",
        "deleted_id": record_id,
        "images_removed": report.metadata_removed,
        "storage_removed": report.storage_removed,
        "storage_errors": report.storage_errors,
    }


@app.delete("/experiences/{record_id}/images/{image_id}")
async def delete_image(record_id: str, image_id: str, draft_id: str | None = None) -> dict[str, Any]:
    outcome = _hub().delete_attachment(record_id, image_id, _optional_draft(draft_id))
    return {
        "status": "ok",
        "image": _attachment_dict(outcome.attachment),
        "storage_removed": outcome.storage_removed,
    }


@app.post("/drafts", status_code=201)
async def create_draft(payload: DraftRequest | None = None) -> dict[str, Any]:
    record_id = payload.record_id if payload is not None else None
    return _draft_dict(_hub().open_draft(record_id))


@app.get("/drafts/{draft_id}")
async def get_draft(draft_id: str) -> dict[str, Any]:
    return _draft_dict(_hub().get_draft(draft_id))


@app.post("/drafts/{draft_id}/files")
async def add_draft_files(draft_id: str, files: List[UploadFile] = File(...)) -> dict[str, Any]:
    draft = _hub().get_draft(draft_id)
    incoming = [
        IncomingFile(
            filename=upload.filename or "upload",
            content=await upload.read(),
            content_type=upload.content_type,
        )
        for upload in files
    ]
    draft.add_pending(incoming)
    return _draft_dict(draft)


@app.delete("/drafts/{draft_id}/files/{slot_id}")
async def remove_draft_file(draft_id: str, slot_id: str) -> dict[str, Any]:
    draft = _hub().get_draft(draft_id)
    if not draft.remove_pending(slot_id):
        raise HTTPException(status_code=404, detail=f"File {slot_id} is not pending in this draft")
    return _draft_dict(draft)


@app.delete("/drafts/{draft_id}")
async def discard_draft(draft_id: str) -> dict[str, str]:
    if not _hub().close_draft(draft_id):
        raise HTTPException(status_code=404, detail=f"Draft {draft_id} not found")
    return {"status": "ok"}


@app.post("/editor-images", status_code=201)
async def upload_editor_image(
    file: UploadFile = File(...),
    record_id: str | None = Form(None),
) -> dict[str, str]:
    """Store an image pasted into the rich-text editor; the URL goes inline."""
    incoming = IncomingFile(
        filename=file.filename or "image",
        content=await file.read(),
        content_type=file.content_type,
    )
    image = _hub().upload_inline_image(incoming, record_id or None)
    return {"path": image.path, "url": image.url}


@app.get("/previews/{token}")
async def get_preview(token: str) -> FileResponse:
    ref = _hub().previews.lookup(token)
    if ref is None or not ref.path.exists():
        raise HTTPException(status_code=404, detail="Preview not found")
    return FileResponse(ref.path, filename=ref.filename)


@app.get("/storage/v1/object/public/{bucket}/{object_path:path}")
async def get_public_object(bucket: str, object_path: str) -> FileResponse:
    objects = _hub().objects
    if not isinstance(objects, LocalObjectStore) or bucket != objects.bucket:
        raise HTTPException(status_code=404, detail="Object not found")
    try:
        target = objects.resolve(object_path)
    except StorageError:
        raise HTTPException(status_code=404, detail="Object not found") from None
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(target)
