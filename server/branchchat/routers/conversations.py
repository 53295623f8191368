from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..services import paths
from .messages import serialize_messages

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", response_model=schemas.ConversationOut)
def create_conversation(payload: schemas.ConversationCreate, db: Session = Depends(get_db)):
    return crud.create_conversation(db, title=payload.title, model_name=payload.model_name)


@router.get("", response_model=List[schemas.ConversationOut])
def list_conversations(db: Session = Depends(get_db)):
    return crud.list_conversations(db)


@router.delete("/{conversation_id}", response_model=schemas.DeletedResponse)
def delete_conversation(conversation_id: UUID, db: Session = Depends(get_db)):
    deleted = crud.delete_conversation(db, conversation_id)
    if deleted == 0:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"deleted": deleted}


@router.patch("/{conversation_id}", response_model=schemas.ConversationOut)
def rename_conversation(conversation_id: UUID, payload: schemas.ConversationUpdate, db: Session = Depends(get_db)):
    updated = crud.update_conversation_title(db, conversation_id, payload.title)
    if not updated:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return updated


@router.get("/{conversation_id}/messages", response_model=List[schemas.MessageOut])
def get_conversation_messages(conversation_id: UUID, db: Session = Depends(get_db)):
    if not crud.get_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return serialize_messages(db, crud.get_conversation_messages(db, conversation_id))


@router.post("/{conversation_id}/path", response_model=schemas.PathResponse)
def resolve_path(conversation_id: UUID, payload: schemas.PathRequest, db: Session = Depends(get_db)):
    if not crud.get_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    msgs = crud.get_conversation_messages(db, conversation_id)
    tier, selected = paths.resolve_with_tier(msgs, payload.path)
    return {"tier": tier, "messages": serialize_messages(db, selected)}
