import hashlib
import uuid
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import func, select

from branchchat import crud, models
from branchchat.errors import AttachmentNotFound, AttachmentReadFailure, InvalidAttachment, MessageNotFound
from branchchat.services import attachments as attachment_service
from branchchat.services import llm, storage


def _png(width=3, height=2, shade=10) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color=(shade, 0, 0)).save(buf, format="PNG")
    return buf.getvalue()


def _attachment_rows(db):
    return db.scalar(select(func.count(models.Attachment.id)))


@pytest.fixture
def messages(db, conversation):
    a = crud.append_message(db, conversation.id, None, "user", "look at this")
    b = crud.append_message(db, conversation.id, None, "user", "and this")
    return a, b


def test_identical_bytes_share_one_row_with_two_links(db, messages):
    a, b = messages
    data = _png()

    first = attachment_service.create_attachment(db, data, "image/png", filename="cat.png", message_id=a.id)
    second = attachment_service.create_attachment(db, data, "image/png", filename="copy.png", message_id=b.id)

    assert first.id == second.id
    assert _attachment_rows(db) == 1
    assert first.sha256 == hashlib.sha256(data).hexdigest()
    assert [x.id for x in attachment_service.get_by_message(db, a.id)] == [first.id]
    assert [x.id for x in attachment_service.get_by_message(db, b.id)] == [first.id]
    assert set(attachment_service.linked_message_ids(db, first.id)) == {a.id, b.id}


def test_upload_records_metadata_and_stores_blob(db, upload_dir):
    data = _png(5, 4)
    record = attachment_service.create_attachment(db, data, "image/png", filename="my photo.png")

    assert record.kind == "image"
    assert record.storage == "file"
    assert record.size_bytes == len(data)
    assert (record.width, record.height) == (5, 4)
    assert record.filename == "my_photo.png"
    assert (upload_dir / record.object_key).read_bytes() == data
    assert attachment_service.read_attachment_bytes(record) == data


def test_undecodable_image_has_no_dimensions(db):
    record = attachment_service.create_attachment(db, b"not really a png", "image/png")
    assert record.width is None
    assert record.height is None


@pytest.mark.parametrize("mime", ["application/pdf", "text/plain"])
def test_non_images_are_rejected(db, mime):
    with pytest.raises(InvalidAttachment):
        attachment_service.create_attachment(db, b"data", mime)


def test_empty_upload_is_rejected(db):
    with pytest.raises(InvalidAttachment):
        attachment_service.create_attachment(db, b"", "image/png")


def test_upload_for_missing_message_writes_nothing(db):
    with pytest.raises(MessageNotFound):
        attachment_service.create_attachment(db, _png(), "image/png", message_id=uuid.uuid4())
    assert _attachment_rows(db) == 0


def test_concurrent_insert_falls_back_to_existing_row(db):
    data = _png()
    winner = attachment_service.create_attachment(db, data, "image/png")

    # a second writer that missed the lookup runs into the unique constraint
    loser = models.Attachment(
        kind="image", mime_type="image/png", storage="file", sha256=winner.sha256, size_bytes=len(data)
    )
    resolved = attachment_service._insert_deduplicated(db, loser)

    assert resolved.id == winner.id
    assert _attachment_rows(db) == 1


def test_link_is_idempotent(db, messages):
    a, _ = messages
    record = attachment_service.create_attachment(db, _png(), "image/png")

    assert attachment_service.link_to_message(db, record.id, a.id) is True
    assert attachment_service.link_to_message(db, record.id, a.id) is False
    assert len(attachment_service.get_by_message(db, a.id)) == 1


def test_link_unknown_ids(db, messages):
    a, _ = messages
    record = attachment_service.create_attachment(db, _png(), "image/png")
    with pytest.raises(AttachmentNotFound):
        attachment_service.link_to_message(db, uuid.uuid4(), a.id)
    with pytest.raises(MessageNotFound):
        attachment_service.link_to_message(db, record.id, uuid.uuid4())


def test_unlinking_keeps_shared_attachment(db, messages):
    a, b = messages
    record = attachment_service.create_attachment(db, _png(), "image/png", message_id=a.id)
    attachment_service.link_to_message(db, record.id, b.id)

    assert attachment_service.unlink_from_message(db, record.id, a.id) is True
    assert attachment_service.unlink_from_message(db, record.id, a.id) is False
    assert attachment_service.get_by_message(db, a.id) == []
    assert [x.id for x in attachment_service.get_by_message(db, b.id)] == [record.id]


def test_last_unlink_retains_orphan_until_purged(db, messages, upload_dir):
    a, b = messages
    orphan = attachment_service.create_attachment(db, _png(shade=1), "image/png", message_id=a.id)
    kept = attachment_service.create_attachment(db, _png(shade=2), "image/png", message_id=b.id)
    blob = upload_dir / orphan.object_key

    attachment_service.unlink_from_message(db, orphan.id, a.id)
    assert attachment_service.get_attachment(db, orphan.id) is not None
    assert blob.exists()

    assert attachment_service.purge_orphans(db) == 1
    with pytest.raises(AttachmentNotFound):
        attachment_service.get_attachment(db, orphan.id)
    assert not blob.exists()
    assert attachment_service.get_attachment(db, kept.id).id == kept.id
    assert attachment_service.purge_orphans(db) == 0


def test_deleting_a_message_drops_links_not_attachments(db, conversation):
    root = crud.append_message(db, conversation.id, None, "user", "root")
    record = attachment_service.create_attachment(db, _png(), "image/png", message_id=root.id)

    crud.delete_message(db, root.id)

    assert attachment_service.linked_message_ids(db, record.id) == []
    assert attachment_service.get_attachment(db, record.id).id == record.id


def test_url_attachments_dedupe_on_url(db, messages):
    a, b = messages
    url = "https://example.com/cat.png"
    first = attachment_service.create_url_attachment(db, url, "image/png", message_id=a.id)
    second = attachment_service.create_url_attachment(db, url, "image/png", message_id=b.id)

    assert first.id == second.id
    assert first.storage == "url"
    assert attachment_service.content_url(first) == url
    with pytest.raises(AttachmentReadFailure):
        attachment_service.read_attachment_bytes(first)


def test_missing_blob_raises_read_failure(db):
    record = attachment_service.create_attachment(db, _png(), "image/png")
    storage.delete_objects([record.object_key])
    with pytest.raises(AttachmentReadFailure):
        attachment_service.read_attachment_bytes(record)


def test_unreadable_attachment_is_skipped_in_provider_payload(db, messages):
    a, _ = messages
    good = attachment_service.create_attachment(db, _png(shade=1), "image/png", message_id=a.id)
    bad = attachment_service.create_attachment(db, _png(shade=2), "image/png", message_id=a.id)
    storage.delete_objects([bad.object_key])

    payload = llm.build_messages([a], attachment_service.get_by_messages(db, [a.id]))

    user = payload[-1]
    assert user["role"] == "user"
    parts = user["content"]
    assert parts[0] == {"type": "text", "text": "look at this"}
    assert len(parts) == 2
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert good.id != bad.id


def test_image_only_message_still_reaches_provider(db, conversation):
    msg = crud.append_message(db, conversation.id, None, "user", "  ")
    attachment_service.create_attachment(db, _png(), "image/png", message_id=msg.id)
    empty = crud.append_message(db, conversation.id, msg.id, "assistant", "")

    payload = llm.build_messages([msg, empty], attachment_service.get_by_messages(db, [msg.id]))

    assert len(payload) == 2
    parts = payload[-1]["content"]
    assert [p["type"] for p in parts] == ["image_url"]
