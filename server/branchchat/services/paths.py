"""Turning the message forest into something a client can display.

Nothing here writes to the database; the virtual root used by the overview
graph exists only in the returned view.
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from .. import models
from ..errors import TreeInvariantViolation

VIRTUAL_ROOT_ID = "__root__"

TIER_EXPLICIT = "explicit"
TIER_FILTERED = "filtered"
TIER_FLAT = "flat"


def _timestamp(m: models.Message) -> datetime:
    ts = m.created_at
    if ts is None:
        return datetime.min
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _chronological(messages: Iterable[models.Message]) -> List[models.Message]:
    return sorted(messages, key=lambda m: (_timestamp(m), str(m.id)))


def _index(messages: Iterable[models.Message]) -> Dict[UUID, models.Message]:
    by_id: Dict[UUID, models.Message] = {}
    for m in messages:
        by_id.setdefault(m.id, m)
    return by_id


def resolve_with_tier(
    messages: Iterable[models.Message],
    path: Optional[Sequence[UUID]] = None,
) -> Tuple[str, List[models.Message]]:
    """Pick the messages to display and report which rule produced them.

    1. ``explicit``: every id in ``path`` exists, returned in path order
       without repeats.
    2. ``filtered``: some ids are stale, the survivors sorted by creation time.
    3. ``flat``: no usable path, every message once, sorted by creation time.
    """
    by_id = _index(messages)
    if path:
        path = list(dict.fromkeys(path))
        found = [by_id[mid] for mid in path if mid in by_id]
        if found and len(found) == len(path):
            return TIER_EXPLICIT, found
        if found:
            return TIER_FILTERED, _chronological(_index(found).values())
    return TIER_FLAT, _chronological(by_id.values())


def resolve_display_path(
    messages: Iterable[models.Message],
    path: Optional[Sequence[UUID]] = None,
) -> List[models.Message]:
    return resolve_with_tier(messages, path)[1]


def children_by_parent(messages: Iterable[models.Message]) -> Dict[Optional[UUID], List[models.Message]]:
    grouped: Dict[Optional[UUID], List[models.Message]] = {}
    for m in _chronological(_index(messages).values()):
        grouped.setdefault(m.parent_id, []).append(m)
    return grouped


def build_branch_path(messages: Iterable[models.Message], message_id: UUID) -> List[UUID]:
    """Root -> ... -> message, then down the earliest child until a leaf."""
    messages = list(messages)
    by_id = _index(messages)
    if message_id not in by_id:
        return []

    path: List[UUID] = []
    seen = set()
    current: Optional[models.Message] = by_id[message_id]
    while current is not None:
        if current.id in seen:
            raise TreeInvariantViolation(f"Cycle through message {current.id}")
        seen.add(current.id)
        path.append(current.id)
        current = by_id.get(current.parent_id) if current.parent_id else None
    path.reverse()

    children = children_by_parent(messages)
    tail = path[-1]
    while children.get(tail):
        tail = children[tail][0].id
        if tail in seen:
            raise TreeInvariantViolation(f"Cycle through message {tail}")
        seen.add(tail)
        path.append(tail)
    return path


def collapse_whitespace(text: str) -> str:
    return " ".join(text.strip().split())


def make_excerpt(text: str, limit: int = 72) -> str:
    snapped = collapse_whitespace(text)
    if len(snapped) <= limit:
        return snapped
    return snapped[: limit - 1].rstrip() + "…"


def build_graph(messages: Iterable[models.Message]) -> Dict[str, List[Dict]]:
    """Overview graph of a conversation, with a virtual root above every real root."""
    msgs = _chronological(_index(messages).values())
    nodes: List[Dict] = []
    edges: List[Dict] = []

    def add_edge(parent: str, child: str) -> None:
        edges.append({"id": f"{parent}->{child}", "source": parent, "target": child})

    if msgs:
        nodes.append({"id": VIRTUAL_ROOT_ID, "role": "root", "label": "", "parent_id": None, "virtual": True})

    known = {m.id for m in msgs}
    for m in msgs:
        # a dangling parent would hide the subtree; hang it off the virtual root instead
        parent = str(m.parent_id) if m.parent_id in known else VIRTUAL_ROOT_ID
        nodes.append(
            {
                "id": str(m.id),
                "role": m.role,
                "label": make_excerpt(m.content) or "(empty)",
                "parent_id": parent,
                "created_at": m.created_at.isoformat() if m.created_at else None,
                "virtual": False,
            }
        )
        add_edge(parent, str(m.id))
    return {"nodes": nodes, "edges": edges}
