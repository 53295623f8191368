import uuid
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import func, select

from branchchat import crud, models
from branchchat.errors import AttachmentNotFound, MessageNotFound
from branchchat.services import attachments as attachment_service
from branchchat.services import branching


def _png(seed: int) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (2, 2), color=(seed, seed, seed)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def tree(db, conversation):
    """P -> X("foo") -> reply -> follow-up"""
    p = crud.append_message(db, conversation.id, None, "system", "be nice")
    x = crud.append_message(db, conversation.id, p.id, "user", "foo")
    reply = crud.append_message(db, conversation.id, x.id, "assistant", "answer")
    follow = crud.append_message(db, conversation.id, reply.id, "user", "more")
    return {"p": p, "x": x, "reply": reply, "follow": follow}


def test_edit_creates_sibling_and_keeps_original_subtree(db, conversation, tree):
    y = branching.branch_from_edit(db, tree["x"].id, "bar")

    db.expire_all()
    assert y.parent_id == tree["p"].id
    assert y.content == "bar"
    assert y.role == "user"
    assert y.conversation_id == conversation.id
    assert crud.get_children(db, tree["p"].id) == [tree["x"].id, y.id]

    x = crud.get_message(db, tree["x"].id)
    assert x.content == "foo"
    assert crud.get_children(db, x.id) == [tree["reply"].id]
    assert crud.get_children(db, tree["reply"].id) == [tree["follow"].id]
    assert crud.get_children(db, y.id) == []


def test_edit_of_root_makes_another_root(db, conversation):
    root = crud.append_message(db, conversation.id, None, "user", "first")
    crud.append_message(db, conversation.id, root.id, "assistant", "reply")

    new_root = branching.branch_from_edit(db, root.id, "first, reworded")

    assert new_root.parent_id is None
    assert new_root.conversation_id == conversation.id
    roots = [m for m in crud.get_conversation_messages(db, conversation.id) if m.parent_id is None]
    assert {m.id for m in roots} == {root.id, new_root.id}


def test_edit_uses_preallocated_id(db, tree):
    wanted = uuid.uuid4()
    y = branching.branch_from_edit(db, tree["x"].id, "bar", message_id=wanted)
    assert y.id == wanted


def test_edit_links_attachments_instead_of_copying(db, tree):
    x = tree["x"]
    a1 = attachment_service.create_attachment(db, _png(1), "image/png", message_id=x.id)
    a2 = attachment_service.create_attachment(db, _png(2), "image/png", message_id=x.id)
    a3 = attachment_service.create_attachment(db, _png(3), "image/png")
    rows_before = db.scalar(select(func.count(models.Attachment.id)))

    y = branching.branch_from_edit(db, x.id, "bar", remove_attachment_ids=[a1.id], add_attachment_ids=[a3.id])

    assert [a.id for a in attachment_service.get_by_message(db, y.id)] == [a2.id, a3.id]
    assert [a.id for a in attachment_service.get_by_message(db, x.id)] == [a1.id, a2.id]
    assert db.scalar(select(func.count(models.Attachment.id))) == rows_before


def test_edit_with_unknown_attachment_writes_nothing(db, conversation, tree):
    before = len(crud.get_conversation_messages(db, conversation.id))
    with pytest.raises(AttachmentNotFound):
        branching.branch_from_edit(db, tree["x"].id, "bar", add_attachment_ids=[uuid.uuid4()])
    assert len(crud.get_conversation_messages(db, conversation.id)) == before


def test_edit_missing_message(db):
    with pytest.raises(MessageNotFound):
        branching.branch_from_edit(db, uuid.uuid4(), "bar")
