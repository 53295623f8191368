import json
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

Role = Literal["user", "assistant", "system"]


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    model_name: Optional[str] = None


class ConversationUpdate(BaseModel):
    title: Optional[str] = None


class ConversationOut(BaseModel):
    id: UUID
    title: Optional[str] = None
    model_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    conversation_id: UUID
    parent_id: Optional[UUID] = None
    content: str = Field(min_length=1)
    attachments: List[UUID] = Field(default_factory=list)
    model: Optional[str] = None


class MessageEdit(BaseModel):
    content: str = Field(min_length=1)
    attachments: List[UUID] = Field(default_factory=list)
    remove_attachments: List[UUID] = Field(default_factory=list)
    model: Optional[str] = None


class MessageRegenerate(BaseModel):
    model: Optional[str] = None


class MessageUpdate(BaseModel):
    content: str
    reasoning: Optional[str] = None


class AttachmentOut(BaseModel):
    id: UUID
    kind: str
    mime_type: str
    storage: str
    url: Optional[str] = None
    filename: Optional[str] = None
    sha256: str
    size_bytes: int
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: Optional[datetime] = None
    message_ids: List[UUID] = Field(default_factory=list)

    class Config:
        from_attributes = True


class MessageOut(BaseModel):
    id: UUID
    conversation_id: UUID
    parent_id: Optional[UUID] = None
    children_ids: List[UUID] = Field(default_factory=list)
    role: Role
    content: str
    reasoning: Optional[str] = None
    model_name: Optional[str] = None
    created_at: datetime
    partial: bool = False
    attachments: List[AttachmentOut] = Field(default_factory=list)

    class Config:
        from_attributes = True

    @field_validator("children_ids", mode="before")
    @classmethod
    def _decode_children(cls, value):
        # the ORM column holds the JSON text cache; a broken cache renders as empty
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return []
            if not isinstance(value, list):
                return []
        return value


class PathRequest(BaseModel):
    path: Optional[List[UUID]] = None


class PathResponse(BaseModel):
    tier: Literal["explicit", "filtered", "flat"]
    messages: List[MessageOut]


class BranchPathResponse(BaseModel):
    path: List[UUID]


class ChildrenResponse(BaseModel):
    children_ids: List[UUID]


class GraphNode(BaseModel):
    id: str
    role: str
    label: str
    parent_id: Optional[str] = None
    created_at: Optional[str] = None
    virtual: bool = False


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str


class GraphResponse(BaseModel):
    nodes: List[GraphNode]
    edges: List[GraphEdge]


class AttachmentLinkRequest(BaseModel):
    message_id: UUID
    attachment_id: UUID


class AttachmentUrlCreate(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    mime_type: str
    message_id: Optional[UUID] = None


class AbortResponse(BaseModel):
    aborted: bool


class DeletedResponse(BaseModel):
    deleted: int
