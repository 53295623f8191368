import uuid
from datetime import datetime, timedelta, timezone

import pytest

from branchchat import crud, models
from branchchat.errors import TreeInvariantViolation
from branchchat.services import paths

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _msg(minute, parent=None, role="user", content="x"):
    return models.Message(
        id=uuid.uuid4(),
        conversation_id=uuid.UUID(int=1),
        parent_id=parent.id if parent is not None else None,
        role=role,
        content=content,
        children_ids="[]",
        created_at=T0 + timedelta(minutes=minute),
    )


@pytest.fixture
def chain():
    a = _msg(0)
    b = _msg(1, a, "assistant")
    c = _msg(2, b)
    d = _msg(3, c, "assistant")
    return a, b, c, d


def test_explicit_path_keeps_given_order(chain):
    a, b, c, d = chain
    tier, out = paths.resolve_with_tier([d, c, b, a], [c.id, a.id, b.id])
    assert tier == paths.TIER_EXPLICIT
    assert out == [c, a, b]


def test_stale_ids_are_filtered_and_sorted(chain):
    a, b, c, d = chain
    tier, out = paths.resolve_with_tier([d, a, c], [c.id, b.id, a.id])
    assert tier == paths.TIER_FILTERED
    assert out == [a, c]


def test_missing_path_falls_back_to_flat_view(chain):
    a, b, c, d = chain
    for path in (None, []):
        tier, out = paths.resolve_with_tier([c, a, d, b, a], path)
        assert tier == paths.TIER_FLAT
        assert out == [a, b, c, d]


def test_fully_stale_path_falls_back_to_flat_view(chain):
    a, b, c, d = chain
    tier, out = paths.resolve_with_tier([b, a], [c.id, d.id])
    assert tier == paths.TIER_FLAT
    assert out == [a, b]


def test_resolution_is_deterministic_for_equal_timestamps():
    x = _msg(0)
    y = _msg(0)
    first = paths.resolve_display_path([x, y])
    second = paths.resolve_display_path([y, x])
    assert first == second


def test_deleted_middle_message_is_dropped(db, conversation):
    a = crud.append_message(db, conversation.id, None, "user", "A")
    b = crud.append_message(db, conversation.id, a.id, "assistant", "B")
    c = crud.append_message(db, conversation.id, a.id, "assistant", "C")
    crud.delete_message(db, b.id)

    out = paths.resolve_display_path(crud.get_conversation_messages(db, conversation.id), [a.id, b.id, c.id])

    assert [m.id for m in out] == [a.id, c.id]


def test_branch_path_follows_earliest_child_to_leaf():
    root = _msg(0)
    first = _msg(1, root, "assistant")
    later = _msg(2, root, "assistant")
    leaf = _msg(3, first)
    other_leaf = _msg(4, later)
    msgs = [other_leaf, leaf, later, first, root]

    assert paths.build_branch_path(msgs, root.id) == [root.id, first.id, leaf.id]
    assert paths.build_branch_path(msgs, later.id) == [root.id, later.id, other_leaf.id]
    assert paths.build_branch_path(msgs, uuid.uuid4()) == []


def test_branch_path_detects_cycles():
    a = _msg(0)
    b = _msg(1, a)
    a.parent_id = b.id
    with pytest.raises(TreeInvariantViolation):
        paths.build_branch_path([a, b], a.id)


def test_graph_synthesizes_virtual_root_over_every_root():
    r1 = _msg(0, content="first   root\nmessage")
    r2 = _msg(1, content="second root")
    child = _msg(2, r1, "assistant", content="y" * 100)

    graph = paths.build_graph([child, r2, r1])

    node_ids = [n["id"] for n in graph["nodes"]]
    assert node_ids[0] == paths.VIRTUAL_ROOT_ID
    assert graph["nodes"][0]["virtual"] is True
    edges = {(e["source"], e["target"]) for e in graph["edges"]}
    assert edges == {
        (paths.VIRTUAL_ROOT_ID, str(r1.id)),
        (paths.VIRTUAL_ROOT_ID, str(r2.id)),
        (str(r1.id), str(child.id)),
    }
    labels = {n["id"]: n["label"] for n in graph["nodes"]}
    assert labels[str(r1.id)] == "first root message"
    assert len(labels[str(child.id)]) == 72


def test_graph_of_empty_conversation():
    assert paths.build_graph([]) == {"nodes": [], "edges": []}


def test_repeated_ids_in_path_appear_once(chain):
    a, b, c, d = chain
    tier, out = paths.resolve_with_tier([a, b, c, d], [a.id, b.id, a.id])
    assert tier == paths.TIER_EXPLICIT
    assert out == [a, b]

    tier, out = paths.resolve_with_tier([a, b, c, d], [c.id, uuid.uuid4(), c.id, a.id])
    assert tier == paths.TIER_FILTERED
    assert out == [a, c]
