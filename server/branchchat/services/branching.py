"""Edit-and-resend as branching: an edit adds a sibling, the original subtree stays."""
import logging
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from .. import crud, models
from ..errors import MessageNotFound
from . import attachments as attachment_service

logger = logging.getLogger(__name__)


def carried_attachments(
    db: Session,
    original: models.Message,
    remove_attachment_ids: Sequence[UUID] = (),
    add_attachment_ids: Sequence[UUID] = (),
) -> List[models.Attachment]:
    removed = set(remove_attachment_ids)
    kept = [a for a in attachment_service.get_by_message(db, original.id) if a.id not in removed]
    added = attachment_service.require_attachments(db, list(add_attachment_ids))
    seen = {a.id for a in kept}
    return kept + [a for a in added if a.id not in seen]


def branch_from_edit(
    db: Session,
    original_message_id: UUID,
    new_content: str,
    remove_attachment_ids: Sequence[UUID] = (),
    add_attachment_ids: Sequence[UUID] = (),
    message_id: Optional[UUID] = None,
) -> models.Message:
    """Create a sibling of ``original_message_id`` holding ``new_content``.

    The sibling shares the original's parent (or is another root when the
    original is a root). Attachments of the original are linked onto the
    sibling unless listed in ``remove_attachment_ids``; ``add_attachment_ids``
    are linked as well. Nothing about the original or its descendants changes.
    """
    original = crud.get_message(db, original_message_id)
    if original is None:
        raise MessageNotFound(f"Message {original_message_id} not found")

    # resolve attachments first so an unknown id fails before anything is written
    attachments = carried_attachments(db, original, remove_attachment_ids, add_attachment_ids)

    sibling = crud.append_message(
        db,
        conversation_id=original.conversation_id,
        parent_id=original.parent_id,
        role=original.role,
        content=new_content,
        message_id=message_id,
    )
    attachment_service.link_many(db, attachments, sibling.id)
    logger.info("Branched message %s into %s", original.id, sibling.id)
    return sibling
