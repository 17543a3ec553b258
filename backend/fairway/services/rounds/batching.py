from typing import Iterable, Iterator, List, Tuple, Type

from fairway import db
from fairway.models import child_collections


def chunked(items: Iterable, size: int) -> Iterator[list]:
    """Yield consecutive lists of at most ``size`` items."""
    size = max(1, int(size))
    chunk = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def _has_rows(model, fk: str, parent_id) -> bool:
    return model.query.filter(getattr(model, fk) == parent_id).first() is not None


def purge_child_collections(parent, batch_size: int) -> int:
    """Delete every child record below ``parent``, leaving the parent itself.

    Works through an explicit worklist of (child model, fk column, parent id)
    entries. The top entry is re-listed in batches until it is empty; rows
    that still have children of their own push those collections first.
    Each deleted batch is committed on its own, so a failure part way keeps
    what was already removed and the next run resumes from there.
    Returns the number of rows deleted.
    """
    worklist: List[Tuple[Type, str, int]] = [
        (child_model, fk, parent.id) for child_model, fk in child_collections(type(parent))
    ]
    deleted = 0
    while worklist:
        child_model, fk, parent_id = worklist[-1]
        batch = (
            child_model.query
            .filter(getattr(child_model, fk) == parent_id)
            .order_by(child_model.id)
            .limit(batch_size)
            .all()
        )
        if not batch:
            worklist.pop()
            continue

        nested = [
            (grandchild, gfk, row.id)
            for row in batch
            for grandchild, gfk in child_collections(child_model)
            if _has_rows(grandchild, gfk, row.id)
        ]
        if nested:
            worklist.extend(nested)
            continue

        ids = [row.id for row in batch]
        child_model.query.filter(child_model.id.in_(ids)).delete(synchronize_session=False)
        db.session.commit()
        deleted += len(ids)
    return deleted
