import hashlib
import logging
import os
import re
from io import BytesIO
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from PIL import Image, UnidentifiedImageError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models
from ..errors import AttachmentNotFound, AttachmentReadFailure, InvalidAttachment, MessageNotFound
from ..schemas import AttachmentOut
from . import storage

ALLOWED_CONTENT_PREFIXES: Tuple[str, ...] = ("image/",)

MAX_FILE_SIZE_BYTES = int(os.getenv("UPLOAD_MAX_BYTES", str(25 * 1024 * 1024)))
MAX_ATTACHMENTS_PER_MESSAGE = int(os.getenv("UPLOAD_MAX_ATTACHMENTS_PER_MESSAGE", "5"))

_FILENAME_SAFE_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")


logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    base = filename.strip() or "image"
    sanitized = _FILENAME_SAFE_PATTERN.sub("_", base)
    if not sanitized:
        sanitized = "image"
    return sanitized[:200]


def _validate_type(mime_type: str) -> None:
    if not any(mime_type.startswith(prefix) for prefix in ALLOWED_CONTENT_PREFIXES):
        raise InvalidAttachment("Unsupported content type")


def _validate_size(size: int) -> None:
    if size <= 0:
        raise InvalidAttachment("File size must be greater than zero")
    if size > MAX_FILE_SIZE_BYTES:
        raise InvalidAttachment("File exceeds the maximum allowed size")


def _image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(BytesIO(data)) as image:
            return image.width, image.height
    except UnidentifiedImageError:
        return None, None
    except Exception as exc:
        logger.warning("Failed to read image dimensions: %s", exc)
        return None, None


def get_attachment(db: Session, attachment_id: UUID) -> models.Attachment:
    record = db.get(models.Attachment, attachment_id)
    if not record:
        raise AttachmentNotFound(f"Attachment {attachment_id} not found")
    return record


def get_by_sha256(db: Session, sha256: str) -> Optional[models.Attachment]:
    return db.scalars(select(models.Attachment).where(models.Attachment.sha256 == sha256)).first()


def require_attachments(db: Session, attachment_ids: Sequence[UUID]) -> List[models.Attachment]:
    if not attachment_ids:
        return []
    rows = list(db.scalars(select(models.Attachment).where(models.Attachment.id.in_(attachment_ids))))
    row_map = {row.id: row for row in rows}
    missing = [str(aid) for aid in attachment_ids if aid not in row_map]
    if missing:
        raise AttachmentNotFound(f"Unknown attachments: {', '.join(missing)}")
    # keep caller order, drop repeats
    return [row_map[aid] for aid in dict.fromkeys(attachment_ids)]


def _insert_deduplicated(db: Session, record: models.Attachment) -> models.Attachment:
    """Insert guarded by UNIQUE(sha256); a concurrent winner is re-read instead of duplicated."""
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_by_sha256(db, record.sha256)
        if winner is None:
            raise
        logger.info("Concurrent upload of %s resolved to attachment %s", record.sha256, winner.id)
        return winner
    db.refresh(record)
    return record


def _require_message(db: Session, message_id: Optional[UUID]) -> None:
    if message_id is not None and crud.get_message(db, message_id) is None:
        raise MessageNotFound(f"Message {message_id} not found")


def create_attachment(
    db: Session,
    data: bytes,
    mime_type: str,
    filename: Optional[str] = None,
    message_id: Optional[UUID] = None,
) -> models.Attachment:
    _validate_type(mime_type)
    _validate_size(len(data))
    _require_message(db, message_id)

    sha256 = hashlib.sha256(data).hexdigest()
    record = get_by_sha256(db, sha256)
    if record is not None:
        logger.debug("Upload deduplicated to attachment %s", record.id)
    else:
        key = storage.object_key_for(sha256)
        storage.put_bytes(key, data, mime_type)
        width, height = _image_dimensions(data)
        record = _insert_deduplicated(
            db,
            models.Attachment(
                kind="image",
                mime_type=mime_type,
                storage="file",
                object_key=key,
                filename=sanitize_filename(filename or "image"),
                sha256=sha256,
                size_bytes=len(data),
                width=width,
                height=height,
            ),
        )

    if message_id is not None:
        link_to_message(db, record.id, message_id)
    return record


def create_url_attachment(
    db: Session,
    url: str,
    mime_type: str,
    message_id: Optional[UUID] = None,
) -> models.Attachment:
    _validate_type(mime_type)
    _require_message(db, message_id)

    sha256 = hashlib.sha256(url.encode("utf-8")).hexdigest()
    record = get_by_sha256(db, sha256)
    if record is None:
        record = _insert_deduplicated(
            db,
            models.Attachment(kind="image", mime_type=mime_type, storage="url", url=url, sha256=sha256, size_bytes=0),
        )
    if message_id is not None:
        link_to_message(db, record.id, message_id)
    return record


def link_to_message(db: Session, attachment_id: UUID, message_id: UUID) -> bool:
    """Link an attachment to a message. Returns False when the link already existed."""
    get_attachment(db, attachment_id)
    _require_message(db, message_id)

    existing = db.scalars(
        select(models.MessageAttachmentLink).where(
            models.MessageAttachmentLink.message_id == message_id,
            models.MessageAttachmentLink.attachment_id == attachment_id,
        )
    ).first()
    if existing:
        return False
    db.add(models.MessageAttachmentLink(message_id=message_id, attachment_id=attachment_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def link_many(db: Session, attachments: Iterable[models.Attachment], message_id: UUID) -> None:
    for record in attachments:
        link_to_message(db, record.id, message_id)


def unlink_from_message(db: Session, attachment_id: UUID, message_id: UUID) -> bool:
    """Remove one link. The attachment row and its blob are kept even when no links remain."""
    result = db.execute(
        delete(models.MessageAttachmentLink).where(
            models.MessageAttachmentLink.message_id == message_id,
            models.MessageAttachmentLink.attachment_id == attachment_id,
        )
    )
    db.commit()
    return result.rowcount > 0


def get_by_message(db: Session, message_id: UUID) -> List[models.Attachment]:
    return list(
        db.scalars(
            select(models.Attachment)
            .join(models.MessageAttachmentLink, models.MessageAttachmentLink.attachment_id == models.Attachment.id)
            .where(models.MessageAttachmentLink.message_id == message_id)
            .order_by(models.MessageAttachmentLink.created_at.asc(), models.MessageAttachmentLink.id.asc())
        )
    )


def get_by_messages(db: Session, message_ids: Iterable[UUID]) -> Dict[UUID, List[models.Attachment]]:
    ids = list(message_ids)
    grouped: Dict[UUID, List[models.Attachment]] = {}
    if not ids:
        return grouped
    rows = db.execute(
        select(models.MessageAttachmentLink.message_id, models.Attachment)
        .join(models.Attachment, models.MessageAttachmentLink.attachment_id == models.Attachment.id)
        .where(models.MessageAttachmentLink.message_id.in_(ids))
        .order_by(models.MessageAttachmentLink.created_at.asc(), models.MessageAttachmentLink.id.asc())
    ).all()
    for message_id, attachment in rows:
        grouped.setdefault(message_id, []).append(attachment)
    return grouped


def linked_message_ids(db: Session, attachment_id: UUID) -> List[UUID]:
    return list(
        db.scalars(
            select(models.MessageAttachmentLink.message_id)
            .where(models.MessageAttachmentLink.attachment_id == attachment_id)
            .order_by(models.MessageAttachmentLink.created_at.asc(), models.MessageAttachmentLink.id.asc())
        )
    )


def read_attachment_bytes(record: models.Attachment) -> bytes:
    if record.storage != "file" or not record.object_key:
        raise AttachmentReadFailure(f"Attachment {record.id} has no stored bytes")
    try:
        return storage.get_bytes(record.object_key)
    except storage.StorageError as exc:
        raise AttachmentReadFailure(f"Attachment {record.id} could not be read: {exc}") from exc


def purge_orphans(db: Session) -> int:
    """Delete attachments with no remaining message links, together with their blobs."""
    linked = select(models.MessageAttachmentLink.attachment_id)
    orphans = list(db.scalars(select(models.Attachment).where(models.Attachment.id.not_in(linked))))
    if not orphans:
        return 0
    keys = [record.object_key for record in orphans if record.storage == "file" and record.object_key]
    for record in orphans:
        db.delete(record)
    db.commit()
    storage.delete_objects(keys)
    logger.info("Purged %d orphaned attachments", len(orphans))
    return len(orphans)


def content_url(record: models.Attachment) -> Optional[str]:
    if record.storage == "url":
        return record.url
    return f"/api/attachments/{record.id}/content"


def serialize(record: models.Attachment, message_ids: Optional[List[UUID]] = None) -> AttachmentOut:
    return AttachmentOut(
        id=record.id,
        kind=record.kind,
        mime_type=record.mime_type,
        storage=record.storage,
        url=content_url(record),
        filename=record.filename,
        sha256=record.sha256,
        size_bytes=record.size_bytes,
        width=record.width,
        height=record.height,
        created_at=record.created_at,
        message_ids=message_ids or [],
    )
