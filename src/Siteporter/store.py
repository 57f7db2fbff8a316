"""Content-store collaborators.

The importer talks to the target site only through ``ContentStore``. Every
method is async and may raise ``StoreRejected``; the importer treats that as a
per-entity failure and moves on.

Two implementations ship with the package: ``MemoryContentStore`` for tests
and dry runs, and ``SqlContentStore`` over the async SQLAlchemy models.
"""

from __future__ import annotations

import dataclasses
import itertools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from Siteporter import models, repos
from Siteporter.errors import StoreRejected
from Siteporter.fetch import LocalFile
from Siteporter.records import CommentRecord, EntityKind, PostRecord, TermRecord, UserRecord

log = structlog.get_logger()

POST_UPDATABLE = frozenset({"parent_id", "author_id", "content", "guid"})
COMMENT_UPDATABLE = frozenset({"parent_id", "user_id"})
TERM_UPDATABLE = frozenset({"parent_id"})


@dataclass
class StoredPost:
    id: int
    post_type: str
    title: str = ""
    guid: str = ""
    content: str = ""
    status: str = "publish"
    parent_id: int = 0
    author_id: int | None = None
    menu_order: int = 0
    is_sticky: bool = False
    file_path: str | None = None
    mime_type: str | None = None


@dataclass
class StoredComment:
    id: int
    post_id: int
    parent_id: int = 0
    user_id: int | None = None
    author: str = ""
    date: str = ""
    content: str = ""


@dataclass
class StoredTerm:
    id: int
    taxonomy: str
    slug: str
    name: str = ""
    parent_id: int = 0


@dataclass
class StoredUser:
    id: int
    login: str
    email: str = ""
    display_name: str = ""


class ContentStore(Protocol):
    async def create_post(
        self,
        record: PostRecord,
        *,
        parent_id: int,
        author_id: int | None,
        guid: str,
        attachment: LocalFile | None = None,
    ) -> int: ...

    async def create_comment(
        self, record: CommentRecord, *, post_id: int, parent_id: int, user_id: int | None
    ) -> int: ...

    async def create_term(self, record: TermRecord, *, parent_id: int) -> int: ...

    async def create_user(self, record: UserRecord, *, login: str) -> int: ...

    async def attach_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None: ...

    async def get_meta(self, kind: EntityKind, object_id: int, key: str) -> list[Any]: ...

    async def update_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None: ...

    async def delete_meta(
        self, kind: EntityKind, object_id: int, key: str, value: Any = None
    ) -> None: ...

    async def set_post_terms(
        self, post_id: int, taxonomy: str, term_ids: list[int], *, append: bool = False
    ) -> None: ...

    async def update_post(self, post_id: int, **fields: Any) -> None: ...

    async def update_comment(self, comment_id: int, **fields: Any) -> None: ...

    async def update_term(self, term_id: int, **fields: Any) -> None: ...

    async def get_post(self, post_id: int) -> StoredPost | None: ...

    async def get_existing_posts(self) -> list[tuple[str, int]]: ...

    async def get_existing_comments(self) -> list[tuple[str, str, int]]: ...

    async def get_existing_terms(self) -> list[tuple[str, str, int]]: ...

    async def get_existing_users(self) -> list[tuple[str, int]]: ...

    async def find_post_by_guid(self, guid: str) -> int | None: ...

    async def find_comment(self, author: str, date: str) -> int | None: ...

    async def find_term(self, taxonomy: str, slug: str) -> int | None: ...

    async def find_user(self, login: str) -> int | None: ...

    async def stick_post(self, post_id: int) -> None: ...

    async def rewrite_content(self, rewrite: Callable[[str], str]) -> int: ...


def _check_fields(allowed: frozenset[str], fields: dict[str, Any]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise StoreRejected(f"Cannot update fields: {sorted(unknown)}")


class MemoryContentStore:
    """Dict-backed store; ids are allocated per kind starting at 1."""

    def __init__(self) -> None:
        self.posts: dict[int, StoredPost] = {}
        self.comments: dict[int, StoredComment] = {}
        self.terms: dict[int, StoredTerm] = {}
        self.users: dict[int, StoredUser] = {}
        self.meta: dict[tuple[EntityKind, int], list[tuple[str, Any]]] = {}
        self.post_terms: dict[int, dict[str, list[int]]] = {}
        self._ids = {kind: itertools.count(1) for kind in EntityKind}

    def _table(self, kind: EntityKind) -> dict[int, Any]:
        return {
            EntityKind.POST: self.posts,
            EntityKind.COMMENT: self.comments,
            EntityKind.TERM: self.terms,
            EntityKind.USER: self.users,
        }[kind]

    def _require(self, kind: EntityKind, object_id: int) -> Any:
        obj = self._table(kind).get(object_id)
        if obj is None:
            raise StoreRejected(f"No {kind.value} with id {object_id}")
        return obj

    async def create_post(
        self,
        record: PostRecord,
        *,
        parent_id: int,
        author_id: int | None,
        guid: str,
        attachment: LocalFile | None = None,
    ) -> int:
        post_id = next(self._ids[EntityKind.POST])
        self.posts[post_id] = StoredPost(
            id=post_id,
            post_type=record.post_type,
            title=record.title,
            guid=guid,
            content=record.content,
            status=record.status,
            parent_id=parent_id,
            author_id=author_id,
            menu_order=record.menu_order,
            file_path=str(attachment.path) if attachment else None,
            mime_type=attachment.mime_type if attachment else None,
        )
        return post_id

    async def create_comment(
        self, record: CommentRecord, *, post_id: int, parent_id: int, user_id: int | None
    ) -> int:
        self._require(EntityKind.POST, post_id)
        comment_id = next(self._ids[EntityKind.COMMENT])
        self.comments[comment_id] = StoredComment(
            id=comment_id,
            post_id=post_id,
            parent_id=parent_id,
            user_id=user_id,
            author=record.author,
            date=record.date,
            content=record.content,
        )
        return comment_id

    async def create_term(self, record: TermRecord, *, parent_id: int) -> int:
        if await self.find_term(record.taxonomy, record.slug) is not None:
            raise StoreRejected(f"Term {record.taxonomy}:{record.slug} already exists")
        term_id = next(self._ids[EntityKind.TERM])
        self.terms[term_id] = StoredTerm(
            id=term_id,
            taxonomy=record.taxonomy,
            slug=record.slug,
            name=record.name or record.slug,
            parent_id=parent_id,
        )
        return term_id

    async def create_user(self, record: UserRecord, *, login: str) -> int:
        if await self.find_user(login) is not None:
            raise StoreRejected(f"User {login} already exists")
        user_id = next(self._ids[EntityKind.USER])
        self.users[user_id] = StoredUser(
            id=user_id, login=login, email=record.email, display_name=record.display_name
        )
        return user_id

    async def attach_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None:
        self._require(kind, object_id)
        self.meta.setdefault((kind, object_id), []).append((key, value))

    async def get_meta(self, kind: EntityKind, object_id: int, key: str) -> list[Any]:
        return [v for k, v in self.meta.get((kind, object_id), []) if k == key]

    async def update_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None:
        await self.delete_meta(kind, object_id, key)
        await self.attach_meta(kind, object_id, key, value)

    async def delete_meta(
        self, kind: EntityKind, object_id: int, key: str, value: Any = None
    ) -> None:
        items = self.meta.get((kind, object_id), [])
        self.meta[(kind, object_id)] = [
            (k, v) for k, v in items if not (k == key and (value is None or v == value))
        ]

    async def set_post_terms(
        self, post_id: int, taxonomy: str, term_ids: list[int], *, append: bool = False
    ) -> None:
        self._require(EntityKind.POST, post_id)
        by_tax = self.post_terms.setdefault(post_id, {})
        current = by_tax.get(taxonomy, []) if append else []
        by_tax[taxonomy] = list(dict.fromkeys([*current, *term_ids]))

    async def get_post_terms(self, post_id: int, taxonomy: str | None = None) -> list[int]:
        by_tax = self.post_terms.get(post_id, {})
        if taxonomy is not None:
            return sorted(by_tax.get(taxonomy, []))
        return sorted(t for ids in by_tax.values() for t in ids)

    async def update_post(self, post_id: int, **fields: Any) -> None:
        _check_fields(POST_UPDATABLE, fields)
        post = self._require(EntityKind.POST, post_id)
        self.posts[post_id] = dataclasses.replace(post, **fields)

    async def update_comment(self, comment_id: int, **fields: Any) -> None:
        _check_fields(COMMENT_UPDATABLE, fields)
        comment = self._require(EntityKind.COMMENT, comment_id)
        self.comments[comment_id] = dataclasses.replace(comment, **fields)

    async def update_term(self, term_id: int, **fields: Any) -> None:
        _check_fields(TERM_UPDATABLE, fields)
        term = self._require(EntityKind.TERM, term_id)
        self.terms[term_id] = dataclasses.replace(term, **fields)

    async def get_post(self, post_id: int) -> StoredPost | None:
        post = self.posts.get(post_id)
        return dataclasses.replace(post) if post else None

    async def get_existing_posts(self) -> list[tuple[str, int]]:
        return [(p.guid, p.id) for p in self.posts.values() if p.guid]

    async def get_existing_comments(self) -> list[tuple[str, str, int]]:
        return [(c.author, c.date, c.id) for c in self.comments.values()]

    async def get_existing_terms(self) -> list[tuple[str, str, int]]:
        return [(t.taxonomy, t.slug, t.id) for t in self.terms.values()]

    async def get_existing_users(self) -> list[tuple[str, int]]:
        return [(u.login, u.id) for u in self.users.values()]

    async def find_post_by_guid(self, guid: str) -> int | None:
        return next((p.id for p in self.posts.values() if p.guid == guid), None)

    async def find_comment(self, author: str, date: str) -> int | None:
        return next(
            (c.id for c in self.comments.values() if c.author == author and c.date == date), None
        )

    async def find_term(self, taxonomy: str, slug: str) -> int | None:
        return next(
            (t.id for t in self.terms.values() if t.taxonomy == taxonomy and t.slug == slug), None
        )

    async def find_user(self, login: str) -> int | None:
        return next((u.id for u in self.users.values() if u.login == login), None)

    async def stick_post(self, post_id: int) -> None:
        post = self._require(EntityKind.POST, post_id)
        post.is_sticky = True

    async def rewrite_content(self, rewrite: Callable[[str], str]) -> int:
        changed = 0
        for post in self.posts.values():
            new_content = rewrite(post.content)
            if new_content != post.content:
                post.content = new_content
                changed += 1
        for (kind, _), items in self.meta.items():
            if kind is not EntityKind.POST:
                continue
            for i, (key, value) in enumerate(items):
                if key == "enclosure" and isinstance(value, str):
                    new_value = rewrite(value)
                    if new_value != value:
                        items[i] = (key, new_value)
                        changed += 1
        return changed


class SqlContentStore:
    """Store backed by the async SQLAlchemy session.

    Each mutating call commits on success. A database error rolls the session
    back and surfaces as ``StoreRejected`` so earlier entities stay imported.
    """

    def __init__(self, session: AsyncSession):
        self._s = session

    async def _write(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            result = await fn(self._s, *args, **kwargs)
            await self._s.commit()
            return result
        except SQLAlchemyError as exc:
            await self._s.rollback()
            log.warning("store.rejected", op=op, error=str(exc))
            raise StoreRejected(f"{op} failed: {exc}") from exc

    async def _read(self, op: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await fn(self._s, *args)
        except SQLAlchemyError as exc:
            await self._s.rollback()
            raise StoreRejected(f"{op} failed: {exc}") from exc

    async def create_post(
        self,
        record: PostRecord,
        *,
        parent_id: int,
        author_id: int | None,
        guid: str,
        attachment: LocalFile | None = None,
    ) -> int:
        row = models.Post(
            post_type=record.post_type,
            guid=guid,
            title=record.title,
            content=record.content,
            excerpt=record.excerpt,
            status=record.status,
            name=record.name,
            date=record.date,
            date_gmt=record.date_gmt,
            comment_status=record.comment_status,
            ping_status=record.ping_status,
            password=record.password,
            menu_order=record.menu_order,
            parent_id=parent_id,
            author_id=author_id,
            file_path=str(attachment.path) if attachment else None,
            mime_type=attachment.mime_type if attachment else None,
        )
        return await self._write("create_post", repos.add_row, row)

    async def create_comment(
        self, record: CommentRecord, *, post_id: int, parent_id: int, user_id: int | None
    ) -> int:
        row = models.Comment(
            post_id=post_id,
            parent_id=parent_id,
            user_id=user_id,
            author=record.author,
            author_email=record.author_email,
            author_url=record.author_url,
            author_ip=record.author_ip,
            date=record.date,
            date_gmt=record.date_gmt,
            content=record.content,
            approved=record.approved,
            comment_type=record.comment_type,
        )
        return await self._write("create_comment", repos.add_row, row)

    async def create_term(self, record: TermRecord, *, parent_id: int) -> int:
        row = models.Term(
            taxonomy=record.taxonomy,
            slug=record.slug,
            name=record.name or record.slug,
            description=record.description,
            parent_id=parent_id,
        )
        return await self._write("create_term", repos.add_row, row)

    async def create_user(self, record: UserRecord, *, login: str) -> int:
        row = models.User(
            login=login,
            email=record.email,
            display_name=record.display_name,
            first_name=record.first_name,
            last_name=record.last_name,
        )
        return await self._write("create_user", repos.add_row, row)

    async def attach_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None:
        await self._write("attach_meta", repos.add_meta, kind, object_id, key, value)

    async def get_meta(self, kind: EntityKind, object_id: int, key: str) -> list[Any]:
        return await self._read("get_meta", repos.get_meta, kind, object_id, key)

    async def update_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> None:
        await self._write("update_meta", repos.delete_meta, kind, object_id, key)
        await self._write("update_meta", repos.add_meta, kind, object_id, key, value)

    async def delete_meta(
        self, kind: EntityKind, object_id: int, key: str, value: Any = None
    ) -> None:
        await self._write("delete_meta", repos.delete_meta, kind, object_id, key, value)

    async def set_post_terms(
        self, post_id: int, taxonomy: str, term_ids: list[int], *, append: bool = False
    ) -> None:
        await self._write(
            "set_post_terms", repos.set_post_terms, post_id, taxonomy, term_ids, append=append
        )

    async def get_post_terms(self, post_id: int, taxonomy: str | None = None) -> list[int]:
        return await self._read("get_post_terms", repos.get_post_terms, post_id, taxonomy)

    async def update_post(self, post_id: int, **fields: Any) -> None:
        _check_fields(POST_UPDATABLE, fields)
        await self._write("update_post", repos.update_row, models.Post, post_id, **fields)

    async def update_comment(self, comment_id: int, **fields: Any) -> None:
        _check_fields(COMMENT_UPDATABLE, fields)
        await self._write("update_comment", repos.update_row, models.Comment, comment_id, **fields)

    async def update_term(self, term_id: int, **fields: Any) -> None:
        _check_fields(TERM_UPDATABLE, fields)
        await self._write("update_term", repos.update_row, models.Term, term_id, **fields)

    async def get_post(self, post_id: int) -> StoredPost | None:
        row = await self._read("get_post", repos.get_by_id, models.Post, post_id)
        if row is None:
            return None
        await self._s.refresh(row)
        return StoredPost(
            id=row.id,
            post_type=row.post_type,
            title=row.title,
            guid=row.guid,
            content=row.content,
            status=row.status,
            parent_id=row.parent_id,
            author_id=row.author_id,
            menu_order=row.menu_order,
            is_sticky=row.is_sticky,
            file_path=row.file_path,
            mime_type=row.mime_type,
        )

    async def get_comment(self, comment_id: int) -> StoredComment | None:
        row = await self._read("get_comment", repos.get_by_id, models.Comment, comment_id)
        if row is None:
            return None
        await self._s.refresh(row)
        return StoredComment(
            id=row.id,
            post_id=row.post_id,
            parent_id=row.parent_id,
            user_id=row.user_id,
            author=row.author,
            date=row.date,
            content=row.content,
        )

    async def get_term(self, term_id: int) -> StoredTerm | None:
        row = await self._read("get_term", repos.get_by_id, models.Term, term_id)
        if row is None:
            return None
        await self._s.refresh(row)
        return StoredTerm(
            id=row.id, taxonomy=row.taxonomy, slug=row.slug, name=row.name, parent_id=row.parent_id
        )

    async def get_existing_posts(self) -> list[tuple[str, int]]:
        return await self._read("get_existing_posts", repos.list_post_keys)

    async def get_existing_comments(self) -> list[tuple[str, str, int]]:
        return await self._read("get_existing_comments", repos.list_comment_keys)

    async def get_existing_terms(self) -> list[tuple[str, str, int]]:
        return await self._read("get_existing_terms", repos.list_term_keys)

    async def get_existing_users(self) -> list[tuple[str, int]]:
        return await self._read("get_existing_users", repos.list_user_keys)

    async def find_post_by_guid(self, guid: str) -> int | None:
        return await self._read("find_post_by_guid", repos.find_post_by_guid, guid)

    async def find_comment(self, author: str, date: str) -> int | None:
        return await self._read("find_comment", repos.find_comment, author, date)

    async def find_term(self, taxonomy: str, slug: str) -> int | None:
        return await self._read("find_term", repos.find_term, taxonomy, slug)

    async def find_user(self, login: str) -> int | None:
        return await self._read("find_user", repos.find_user, login)

    async def stick_post(self, post_id: int) -> None:
        await self._write("stick_post", repos.update_row, models.Post, post_id, is_sticky=True)

    async def rewrite_content(self, rewrite: Callable[[str], str]) -> int:
        return await self._write("rewrite_content", repos.rewrite_post_content, rewrite)


__all__ = [
    "ContentStore",
    "MemoryContentStore",
    "SqlContentStore",
    "StoredComment",
    "StoredPost",
    "StoredTerm",
    "StoredUser",
]
