from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..errors import AttachmentNotFound, AttachmentReadFailure, InvalidAttachment, MessageNotFound
from ..services import attachments as attachment_service
from ..services import storage

router = APIRouter(prefix="/attachments", tags=["attachments"])


def _serialize(db: Session, record) -> schemas.AttachmentOut:
    return attachment_service.serialize(record, attachment_service.linked_message_ids(db, record.id))


@router.post("", response_model=schemas.AttachmentOut)
def upload_attachment(
    file: UploadFile = File(...),
    message_id: Optional[UUID] = Form(None),
    db: Session = Depends(get_db),
):
    data = file.file.read(attachment_service.MAX_FILE_SIZE_BYTES + 1)
    mime_type = file.content_type or "application/octet-stream"
    try:
        record = attachment_service.create_attachment(
            db, data, mime_type, filename=file.filename, message_id=message_id
        )
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except InvalidAttachment as err:
        raise HTTPException(status_code=400, detail=str(err))
    except storage.StorageError as err:
        raise HTTPException(status_code=502, detail=f"Could not store upload: {err}")
    return _serialize(db, record)


@router.post("/url", response_model=schemas.AttachmentOut)
def create_url_attachment(payload: schemas.AttachmentUrlCreate, db: Session = Depends(get_db)):
    try:
        record = attachment_service.create_url_attachment(
            db, payload.url, payload.mime_type, message_id=payload.message_id
        )
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except InvalidAttachment as err:
        raise HTTPException(status_code=400, detail=str(err))
    return _serialize(db, record)


@router.post("/link")
def link_attachment(payload: schemas.AttachmentLinkRequest, db: Session = Depends(get_db)):
    try:
        created = attachment_service.link_to_message(db, payload.attachment_id, payload.message_id)
    except AttachmentNotFound:
        raise HTTPException(status_code=404, detail="Attachment not found")
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"linked": True, "created": created}


@router.post("/unlink")
def unlink_attachment(payload: schemas.AttachmentLinkRequest, db: Session = Depends(get_db)):
    removed = attachment_service.unlink_from_message(db, payload.attachment_id, payload.message_id)
    return {"unlinked": removed}


@router.post("/purge-orphans", response_model=schemas.DeletedResponse)
def purge_orphans(db: Session = Depends(get_db)):
    return {"deleted": attachment_service.purge_orphans(db)}


@router.get("/{attachment_id}", response_model=schemas.AttachmentOut)
def get_attachment(attachment_id: UUID, db: Session = Depends(get_db)):
    try:
        record = attachment_service.get_attachment(db, attachment_id)
    except AttachmentNotFound:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return _serialize(db, record)


@router.get("/{attachment_id}/content")
def get_attachment_content(attachment_id: UUID, db: Session = Depends(get_db)):
    try:
        record = attachment_service.get_attachment(db, attachment_id)
    except AttachmentNotFound:
        raise HTTPException(status_code=404, detail="Attachment not found")
    if record.storage == "url":
        return RedirectResponse(record.url)
    try:
        data = attachment_service.read_attachment_bytes(record)
    except AttachmentReadFailure as err:
        raise HTTPException(status_code=502, detail=str(err))
    return Response(content=data, media_type=record.mime_type)
