import json
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional
from uuid import UUID

from sqlalchemy import literal, select
from sqlalchemy.orm import Session

from . import models
from .errors import ConversationNotFound, MessageNotFound, ParentNotFound, TreeInvariantViolation

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
MAX_TREE_DEPTH = 10_000

# SQLite ignores FOR UPDATE, so tree writes in this process take turns instead
_SQLITE_TREE_LOCK = threading.RLock()


def create_conversation(db: Session, title: Optional[str] = None, model_name: Optional[str] = None) -> models.Conversation:
    c = models.Conversation(title=title, model_name=model_name)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def list_conversations(db: Session) -> List[models.Conversation]:
    return db.query(models.Conversation).order_by(models.Conversation.updated_at.desc()).all()


def get_conversation(db: Session, conversation_id: UUID) -> Optional[models.Conversation]:
    return db.query(models.Conversation).filter(models.Conversation.id == conversation_id).first()


def update_conversation_title(db: Session, conversation_id: UUID, title: Optional[str]) -> Optional[models.Conversation]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        return None
    conversation.title = title
    db.commit()
    db.refresh(conversation)
    return conversation


def touch_conversation(db: Session, conversation_id: UUID) -> None:
    """Bump updated_at; the caller commits."""
    conversation = get_conversation(db, conversation_id)
    if conversation is not None:
        conversation.updated_at = models.utcnow()


def delete_conversation(db: Session, conversation_id: UUID) -> int:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        return 0
    message_ids = select(models.Message.id).where(models.Message.conversation_id == conversation_id)
    try:
        db.query(models.MessageAttachmentLink).filter(
            models.MessageAttachmentLink.message_id.in_(message_ids)
        ).delete()
        db.query(models.Message).filter(models.Message.conversation_id == conversation_id).delete()
        db.delete(conversation)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return 1


# ---------------------------------------------------------------------------
# Message tree
# ---------------------------------------------------------------------------

@contextmanager
def _tree_write(db: Session) -> Iterator[None]:
    if db.get_bind().dialect.name == "sqlite":
        with _SQLITE_TREE_LOCK:
            yield
    else:
        yield


def _dump_children(ids: Iterable[UUID]) -> str:
    return json.dumps([str(i) for i in ids])


def _parse_children(raw: Optional[str]) -> List[UUID]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("children cache is not a list")
    return [UUID(str(item)) for item in data]


def _scan_children(db: Session, message_id: UUID) -> List[UUID]:
    rows = (
        db.query(models.Message.id)
        .filter(models.Message.parent_id == message_id)
        .order_by(models.Message.created_at.asc(), models.Message.id.asc())
        .all()
    )
    return [row.id for row in rows]


def _cached_or_scanned_children(db: Session, message: models.Message) -> List[UUID]:
    try:
        return _parse_children(message.children_ids)
    except (TypeError, ValueError):
        logger.warning("Malformed children cache on message %s; rebuilding from parent_id scan", message.id)
        return _scan_children(db, message.id)


def _fresh_message(db: Session, message_id: UUID, conversation_id: Optional[UUID] = None, lock: bool = False):
    # populate_existing: another session may have changed the row since it entered this identity map
    q = db.query(models.Message).filter(models.Message.id == message_id)
    if conversation_id is not None:
        q = q.filter(models.Message.conversation_id == conversation_id)
    if lock:
        q = q.with_for_update()
    return q.populate_existing().one_or_none()


def get_message(db: Session, message_id: UUID) -> Optional[models.Message]:
    return db.query(models.Message).filter(models.Message.id == message_id).first()


def get_conversation_messages(db: Session, conversation_id: UUID) -> List[models.Message]:
    return (
        db.query(models.Message)
        .filter(models.Message.conversation_id == conversation_id)
        .order_by(models.Message.created_at.asc(), models.Message.id.asc())
        .all()
    )


def append_message(
    db: Session,
    conversation_id: UUID,
    parent_id: Optional[UUID],
    role: str,
    content: str,
    reasoning: Optional[str] = None,
    model_name: Optional[str] = None,
    partial: bool = False,
    message_id: Optional[UUID] = None,
) -> models.Message:
    """Insert a message and register it in its parent's children list in one transaction.

    Validation happens before anything is written: an unknown conversation or a
    parent outside the conversation leaves the database untouched. The parent is
    re-read under lock, so children appended by other sessions are kept.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    with _tree_write(db):
        if get_conversation(db, conversation_id) is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")

        parent = None
        if parent_id is not None:
            parent = _fresh_message(db, parent_id, conversation_id, lock=True)
            if parent is None:
                db.rollback()
                raise ParentNotFound(f"Parent {parent_id} not found in conversation {conversation_id}")

        m = models.Message(
            id=message_id or uuid.uuid4(),
            conversation_id=conversation_id,
            parent_id=parent_id,
            children_ids="[]",
            role=role,
            content=content,
            reasoning=reasoning,
            model_name=model_name,
            partial=partial,
        )
        try:
            if parent is not None:
                siblings = _cached_or_scanned_children(db, parent)
                if m.id in siblings:
                    raise TreeInvariantViolation(f"Message {m.id} is already a child of {parent.id}")
                parent.children_ids = _dump_children(siblings + [m.id])
            db.add(m)
            touch_conversation(db, conversation_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(m)
    return m


def update_message(db: Session, message_id: UUID, content: str, reasoning: Optional[str] = None) -> models.Message:
    msg = get_message(db, message_id)
    if not msg:
        raise MessageNotFound(f"Message {message_id} not found")
    msg.content = content
    if reasoning is not None:
        msg.reasoning = reasoning
    touch_conversation(db, msg.conversation_id)
    db.commit()
    db.refresh(msg)
    return msg


def get_children(db: Session, message_id: UUID) -> List[UUID]:
    msg = _fresh_message(db, message_id)
    if not msg:
        raise MessageNotFound(f"Message {message_id} not found")
    try:
        return _parse_children(msg.children_ids)
    except (TypeError, ValueError):
        pass
    with _tree_write(db):
        msg = _fresh_message(db, message_id, lock=True)
        if msg is None:
            db.rollback()
            raise MessageNotFound(f"Message {message_id} not found")
        children = _scan_children(db, msg.id)
        logger.warning("Repaired malformed children cache on message %s (%d children)", msg.id, len(children))
        msg.children_ids = _dump_children(children)
        db.commit()
    return children


def get_path_to_root(db: Session, message_id: UUID) -> List[models.Message]:
    """Ancestor chain of a message, root first."""
    path = (
        select(models.Message.id, models.Message.parent_id, literal(0).label("depth"))
        .where(models.Message.id == message_id)
        .cte("path", recursive=True)
    )
    path = path.union_all(
        select(models.Message.id, models.Message.parent_id, path.c.depth + 1)
        .join(path, models.Message.id == path.c.parent_id)
        .where(path.c.depth < MAX_TREE_DEPTH)
    )
    rows = db.execute(
        select(models.Message).join(path, models.Message.id == path.c.id).order_by(path.c.depth.desc())
    ).scalars().all()
    if rows and rows[0].parent_id is not None:
        raise TreeInvariantViolation(f"Ancestor chain of {message_id} does not end at a root")
    return list(rows)


def get_subtree_message_ids(db: Session, message_id: UUID) -> List[UUID]:
    subtree = select(models.Message.id).where(models.Message.id == message_id).cte("subtree", recursive=True)
    subtree = subtree.union(
        select(models.Message.id).join(subtree, models.Message.parent_id == subtree.c.id)
    )
    return list(db.scalars(select(subtree.c.id)))


def delete_message(db: Session, message_id: UUID) -> int:
    """Delete a message with its whole subtree and prune it from the parent's children.

    Returns the number of deleted messages; 0 when the id does not exist.
    """
    with _tree_write(db):
        target = _fresh_message(db, message_id)
        if not target:
            return 0

        try:
            parent = None
            if target.parent_id is not None:
                parent = _fresh_message(db, target.parent_id, lock=True)
                if parent is None:
                    raise TreeInvariantViolation(f"Message {target.id} references missing parent {target.parent_id}")

            ids = get_subtree_message_ids(db, target.id)
            db.query(models.MessageAttachmentLink).filter(
                models.MessageAttachmentLink.message_id.in_(ids)
            ).delete(synchronize_session=False)
            db.query(models.Message).filter(models.Message.id.in_(ids)).delete(synchronize_session="fetch")

            if parent is not None:
                siblings = _cached_or_scanned_children(db, parent)
                parent.children_ids = _dump_children([c for c in siblings if c != target.id])
            touch_conversation(db, target.conversation_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
    return len(ids)
