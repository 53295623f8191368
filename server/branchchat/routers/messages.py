import logging
import uuid
from typing import Iterable, Iterator, List, Optional, Sequence
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..database import get_db
from ..deps import get_generation_registry, get_provider
from ..errors import AttachmentNotFound, GenerationConflict, MessageNotFound, ParentNotFound
from ..services import attachments as attachment_service
from ..services import branching, llm, paths
from ..services.generation import GenerationController, GenerationHandle, GenerationRegistry
from ..services.protocol import MEDIA_TYPE, UserMessageEvent, encode_event

router = APIRouter(prefix="/messages", tags=["messages"])

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


def serialize_message(msg: models.Message, attachments: Iterable[models.Attachment] = ()) -> schemas.MessageOut:
    out = schemas.MessageOut.model_validate(msg)
    out.attachments = [attachment_service.serialize(a) for a in attachments]
    return out


def serialize_messages(db: Session, msgs: Sequence[models.Message]) -> List[schemas.MessageOut]:
    grouped = attachment_service.get_by_messages(db, [m.id for m in msgs])
    return [serialize_message(m, grouped.get(m.id, [])) for m in msgs]


def _require_message(db: Session, message_id: UUID) -> models.Message:
    msg = crud.get_message(db, message_id)
    if not msg:
        raise HTTPException(status_code=404, detail="Message not found")
    return msg


def _open(controller: GenerationController, key: UUID, aliases: Sequence[UUID] = ()) -> GenerationHandle:
    try:
        return controller.open(key, aliases)
    except GenerationConflict as err:
        raise HTTPException(status_code=409, detail=str(err))


def _stream_response(
    db: Session,
    controller: GenerationController,
    handle: GenerationHandle,
    user_msg: models.Message,
    model_name: Optional[str],
) -> StreamingResponse:
    try:
        chain = crud.get_path_to_root(db, user_msg.id)
        grouped = attachment_service.get_by_messages(db, [m.id for m in chain])
        provider_messages = llm.build_messages(chain, grouped)
        user_event = UserMessageEvent(message=serialize_message(user_msg, grouped.get(user_msg.id, [])))
    except Exception:
        controller.registry.release(handle)
        raise

    conversation_id = user_msg.conversation_id
    user_message_id = user_msg.id

    def event_stream() -> Iterator[bytes]:
        try:
            yield encode_event(user_event)
            for event in controller.stream(db, handle, conversation_id, user_message_id, provider_messages, model_name):
                yield encode_event(event)
        finally:
            controller.registry.release(handle)

    return StreamingResponse(event_stream(), media_type=MEDIA_TYPE, headers={"Cache-Control": "no-cache"})


@router.get("/graph/{conversation_id}", response_model=schemas.GraphResponse)
def get_graph(conversation_id: UUID, db: Session = Depends(get_db)):
    if not crud.get_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return paths.build_graph(crud.get_conversation_messages(db, conversation_id))


@router.get("/{message_id}/branch-path", response_model=schemas.BranchPathResponse)
def get_branch_path(message_id: UUID, db: Session = Depends(get_db)):
    msg = _require_message(db, message_id)
    msgs = crud.get_conversation_messages(db, msg.conversation_id)
    return {"path": paths.build_branch_path(msgs, msg.id)}


@router.get("/{message_id}/children", response_model=schemas.ChildrenResponse)
def get_children(message_id: UUID, db: Session = Depends(get_db)):
    try:
        return {"children_ids": crud.get_children(db, message_id)}
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")


@router.get("/{message_id}/attachments", response_model=List[schemas.AttachmentOut])
def get_message_attachments(message_id: UUID, db: Session = Depends(get_db)):
    _require_message(db, message_id)
    return [attachment_service.serialize(a) for a in attachment_service.get_by_message(db, message_id)]


@router.post("/stream")
def post_message_stream(
    payload: schemas.MessageCreate,
    db: Session = Depends(get_db),
    registry: GenerationRegistry = Depends(get_generation_registry),
    provider: llm.OpenAIProvider = Depends(get_provider),
):
    conversation = crud.get_conversation(db, payload.conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    if len(payload.attachments) > attachment_service.MAX_ATTACHMENTS_PER_MESSAGE:
        raise HTTPException(status_code=400, detail="Too many attachments")
    try:
        attachment_records = attachment_service.require_attachments(db, payload.attachments)
    except AttachmentNotFound as err:
        raise HTTPException(status_code=400, detail=str(err))

    model_name = payload.model or conversation.model_name or llm.OPENAI_MODEL
    is_first_message = not crud.get_conversation_messages(db, conversation.id)

    # register the generation before the user message exists so an abort can always find it
    controller = GenerationController(registry, provider)
    user_message_id = uuid.uuid4()
    handle = _open(controller, user_message_id)
    try:
        user_msg = crud.append_message(
            db,
            conversation_id=conversation.id,
            parent_id=payload.parent_id,
            role="user",
            content=payload.content,
            message_id=user_message_id,
        )
        attachment_service.link_many(db, attachment_records, user_msg.id)
    except ParentNotFound as err:
        registry.release(handle)
        raise HTTPException(status_code=404, detail=str(err))
    except Exception:
        registry.release(handle)
        raise

    if is_first_message and not conversation.title:
        snapped = paths.collapse_whitespace(payload.content)
        title = snapped[:TITLE_LENGTH] + ("..." if len(snapped) > TITLE_LENGTH else "")
        crud.update_conversation_title(db, conversation.id, title)

    return _stream_response(db, controller, handle, user_msg, model_name)


@router.post("/{message_id}/edit/stream")
def edit_message_stream(
    message_id: UUID,
    payload: schemas.MessageEdit,
    db: Session = Depends(get_db),
    registry: GenerationRegistry = Depends(get_generation_registry),
    provider: llm.OpenAIProvider = Depends(get_provider),
):
    original = _require_message(db, message_id)
    if original.role != "user":
        raise HTTPException(status_code=400, detail="Only user messages can be resent; use PUT to correct other messages")
    if len(payload.attachments) > attachment_service.MAX_ATTACHMENTS_PER_MESSAGE:
        raise HTTPException(status_code=400, detail="Too many attachments")

    conversation = crud.get_conversation(db, original.conversation_id)
    model_name = payload.model or (conversation.model_name if conversation else None) or llm.OPENAI_MODEL

    controller = GenerationController(registry, provider)
    sibling_id = uuid.uuid4()
    # the original id is reserved too, so two concurrent edits of one message cannot both run
    handle = _open(controller, sibling_id, aliases=(original.id,))
    try:
        sibling = branching.branch_from_edit(
            db,
            original.id,
            payload.content,
            remove_attachment_ids=payload.remove_attachments,
            add_attachment_ids=payload.attachments,
            message_id=sibling_id,
        )
    except AttachmentNotFound as err:
        registry.release(handle)
        raise HTTPException(status_code=400, detail=str(err))
    except (MessageNotFound, ParentNotFound) as err:
        registry.release(handle)
        raise HTTPException(status_code=404, detail=str(err))
    except Exception:
        registry.release(handle)
        raise

    return _stream_response(db, controller, handle, sibling, model_name)


@router.post("/{message_id}/regenerate/stream")
def regenerate_stream(
    message_id: UUID,
    payload: Optional[schemas.MessageRegenerate] = None,
    db: Session = Depends(get_db),
    registry: GenerationRegistry = Depends(get_generation_registry),
    provider: llm.OpenAIProvider = Depends(get_provider),
):
    user_msg = _require_message(db, message_id)
    if user_msg.role != "user":
        raise HTTPException(status_code=400, detail="Replies can only be generated for user messages")

    conversation = crud.get_conversation(db, user_msg.conversation_id)
    model_name = (payload.model if payload else None) or (conversation.model_name if conversation else None) or llm.OPENAI_MODEL

    controller = GenerationController(registry, provider)
    handle = _open(controller, user_msg.id)
    return _stream_response(db, controller, handle, user_msg, model_name)


@router.post("/{message_id}/abort", response_model=schemas.AbortResponse)
def abort_generation(
    message_id: UUID,
    registry: GenerationRegistry = Depends(get_generation_registry),
):
    return {"aborted": registry.abort(message_id)}


@router.put("/{message_id}", response_model=schemas.MessageOut)
def update_message(message_id: UUID, payload: schemas.MessageUpdate, db: Session = Depends(get_db)):
    try:
        msg = crud.update_message(db, message_id, payload.content, payload.reasoning)
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    return serialize_message(msg, attachment_service.get_by_message(db, msg.id))


@router.delete("/{message_id}", response_model=schemas.DeletedResponse)
def delete_message(
    message_id: UUID,
    db: Session = Depends(get_db),
    registry: GenerationRegistry = Depends(get_generation_registry),
):
    for mid in crud.get_subtree_message_ids(db, message_id):
        if registry.abort(mid):
            logger.info("Aborted generation for %s before deleting its subtree", mid)

    deleted = crud.delete_message(db, message_id)
    if deleted == 0:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"deleted": deleted}
