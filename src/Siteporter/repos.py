# repos.py

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Siteporter import models
from Siteporter.records import EntityKind

# Meta table and owning column per entity kind
_META_TABLES: dict[EntityKind, tuple[type, str]] = {
    EntityKind.POST: (models.PostMeta, "post_id"),
    EntityKind.COMMENT: (models.CommentMeta, "comment_id"),
    EntityKind.TERM: (models.TermMeta, "term_id"),
}


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise


def _meta_table(kind: EntityKind) -> tuple[Any, Any]:
    try:
        table, column = _META_TABLES[kind]
    except KeyError:
        raise ValueError(f"No meta table for {kind.value}") from None
    return table, getattr(table, column)


async def add_row(s: AsyncSession, obj: Any) -> int:
    s.add(obj)
    await _flush_retry(s)
    return obj.id


async def update_row(s: AsyncSession, model: Any, row_id: int, **fields: Any) -> None:
    if not fields:
        return
    await s.execute(update(model).where(model.id == row_id).values(**fields))
    await _flush_retry(s)


async def add_meta(s: AsyncSession, kind: EntityKind, object_id: int, key: str, value: Any) -> None:
    table, column = _meta_table(kind)
    s.add(table(**{column.key: object_id, "meta_key": key, "meta_value": value}))
    await _flush_retry(s)


async def get_meta(s: AsyncSession, kind: EntityKind, object_id: int, key: str) -> list[Any]:
    table, column = _meta_table(kind)
    q = await s.execute(
        select(table.meta_value)
        .where(column == object_id, table.meta_key == key)
        .order_by(table.id)
    )
    return list(q.scalars().all())


async def delete_meta(
    s: AsyncSession, kind: EntityKind, object_id: int, key: str, value: Any = None
) -> None:
    table, column = _meta_table(kind)
    if value is None:
        await s.execute(delete(table).where(column == object_id, table.meta_key == key))
    else:
        # JSON equality is not portable in SQL; filter in Python
        q = await s.execute(select(table).where(column == object_id, table.meta_key == key))
        for row in q.scalars().all():
            if row.meta_value == value:
                await s.delete(row)
    await _flush_retry(s)


async def set_post_terms(
    s: AsyncSession, post_id: int, taxonomy: str, term_ids: list[int], *, append: bool = False
) -> None:
    q = await s.execute(
        select(models.PostTerm.term_id).where(
            models.PostTerm.post_id == post_id, models.PostTerm.taxonomy == taxonomy
        )
    )
    current = set(q.scalars().all())
    if not append:
        stale = current - set(term_ids)
        if stale:
            await s.execute(
                delete(models.PostTerm).where(
                    models.PostTerm.post_id == post_id, models.PostTerm.term_id.in_(stale)
                )
            )
        current -= stale
    for term_id in dict.fromkeys(term_ids):
        if term_id not in current:
            s.add(models.PostTerm(post_id=post_id, term_id=term_id, taxonomy=taxonomy))
    await _flush_retry(s)


async def get_post_terms(s: AsyncSession, post_id: int, taxonomy: str | None = None) -> list[int]:
    stmt = select(models.PostTerm.term_id).where(models.PostTerm.post_id == post_id)
    if taxonomy is not None:
        stmt = stmt.where(models.PostTerm.taxonomy == taxonomy)
    q = await s.execute(stmt.order_by(models.PostTerm.term_id))
    return list(q.scalars().all())


async def get_by_id(s: AsyncSession, model: Any, row_id: int) -> Any | None:
    return await s.get(model, row_id)


async def list_post_keys(s: AsyncSession) -> list[tuple[str, int]]:
    q = await s.execute(select(models.Post.guid, models.Post.id).where(models.Post.guid != ""))
    return [(guid, pid) for guid, pid in q.all()]


async def list_comment_keys(s: AsyncSession) -> list[tuple[str, str, int]]:
    q = await s.execute(select(models.Comment.author, models.Comment.date, models.Comment.id))
    return [(author, date, cid) for author, date, cid in q.all()]


async def list_term_keys(s: AsyncSession) -> list[tuple[str, str, int]]:
    q = await s.execute(select(models.Term.taxonomy, models.Term.slug, models.Term.id))
    return [(taxonomy, slug, tid) for taxonomy, slug, tid in q.all()]


async def list_user_keys(s: AsyncSession) -> list[tuple[str, int]]:
    q = await s.execute(select(models.User.login, models.User.id))
    return [(login, uid) for login, uid in q.all()]


async def find_post_by_guid(s: AsyncSession, guid: str) -> int | None:
    q = await s.execute(select(models.Post.id).where(models.Post.guid == guid).limit(1))
    return q.scalar_one_or_none()


async def find_comment(s: AsyncSession, author: str, date: str) -> int | None:
    q = await s.execute(
        select(models.Comment.id)
        .where(models.Comment.author == author, models.Comment.date == date)
        .limit(1)
    )
    return q.scalar_one_or_none()


async def find_term(s: AsyncSession, taxonomy: str, slug: str) -> int | None:
    q = await s.execute(
        select(models.Term.id).where(models.Term.taxonomy == taxonomy, models.Term.slug == slug)
    )
    return q.scalar_one_or_none()


async def find_user(s: AsyncSession, login: str) -> int | None:
    q = await s.execute(select(models.User.id).where(models.User.login == login))
    return q.scalar_one_or_none()


async def rewrite_post_content(s: AsyncSession, rewrite: Callable[[str], str]) -> int:
    """Apply ``rewrite`` to every post body and ``enclosure`` meta value.

    Returns:
        Number of rows changed
    """
    changed = 0
    q = await s.execute(select(models.Post.id, models.Post.content))
    for post_id, content in q.all():
        new_content = rewrite(content or "")
        if new_content != (content or ""):
            await s.execute(
                update(models.Post).where(models.Post.id == post_id).values(content=new_content)
            )
            changed += 1
    q = await s.execute(select(models.PostMeta).where(models.PostMeta.meta_key == "enclosure"))
    for row in q.scalars().all():
        if isinstance(row.meta_value, str):
            new_value = rewrite(row.meta_value)
            if new_value != row.meta_value:
                row.meta_value = new_value
                changed += 1
    await _flush_retry(s)
    return changed
