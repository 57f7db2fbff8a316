# tests/conftest.py

import io
import os
from collections.abc import AsyncIterator
from xml.sax.saxutils import escape

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

# Point the app at a process-local in-memory DB before any app module is
# imported; Siteporter.db reads settings at import time.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
TEST_DATABASE_URL = os.environ["DATABASE_URL"]

import Siteporter.db as _db  # noqa: E402

_db.configure(TEST_DATABASE_URL)

# Import models so all ORM tables are registered on Base.metadata before create_all
from Siteporter import models as _models  # noqa: F401,E402
from Siteporter.db import Base, get_engine, get_sessionmaker  # noqa: E402
from Siteporter.metrics import reset_counters  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_state() -> None:
    """Fresh counters and an unconfigured engine for every test."""
    reset_counters()
    _db.configure(TEST_DATABASE_URL)


@pytest.fixture
async def db() -> AsyncIterator[AsyncSession]:
    # The engine is created inside this test's event loop and disposed with it;
    # disposing an in-memory SQLite engine also drops its data.
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _db._schema_initialized = True
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()
            await _db.dispose_engine()


class WXRBuilder:
    """Builds small WXR 1.2 documents for tests."""

    def __init__(self, version: str = "1.2", base_url: str = "http://old.example.com"):
        self.version = version
        self.base_url = base_url

    @staticmethod
    def _tags(**fields: object) -> str:
        out = []
        for tag, value in fields.items():
            if value is None:
                continue
            name = tag.replace("__", ":")
            out.append(f"<{name}>{escape(str(value))}</{name}>")
        return "".join(out)

    @staticmethod
    def meta(key: str, value: object, tag: str = "wp:postmeta") -> str:
        return (
            f"<{tag}><wp:meta_key>{escape(key)}</wp:meta_key>"
            f"<wp:meta_value><![CDATA[{value}]]></wp:meta_value></{tag}>"
        )

    def author(self, login: str, old_id: int, email: str = "", display_name: str = "") -> str:
        return (
            "<wp:author>"
            + self._tags(
                wp__author_id=old_id,
                wp__author_login=login,
                wp__author_email=email,
                wp__author_display_name=display_name or login,
            )
            + "</wp:author>"
        )

    def category(self, slug: str, name: str = "", parent: str = "", old_id: int = 0) -> str:
        return (
            "<wp:category>"
            + self._tags(
                wp__term_id=old_id or None,
                wp__category_nicename=slug,
                wp__category_parent=parent,
                wp__cat_name=name or slug,
            )
            + "</wp:category>"
        )

    def tag(self, slug: str, name: str = "", old_id: int = 0) -> str:
        return (
            "<wp:tag>"
            + self._tags(wp__term_id=old_id or None, wp__tag_slug=slug, wp__tag_name=name or slug)
            + "</wp:tag>"
        )

    def term(
        self, taxonomy: str, slug: str, old_id: int = 0, parent: str = "", meta: tuple = ()
    ) -> str:
        return (
            "<wp:term>"
            + self._tags(
                wp__term_id=old_id or None,
                wp__term_taxonomy=taxonomy,
                wp__term_slug=slug,
                wp__term_parent=parent,
                wp__term_name=slug,
            )
            + "".join(self.meta(k, v, "wp:termmeta") for k, v in meta)
            + "</wp:term>"
        )

    def comment(
        self,
        old_id: int,
        author: str = "Reader",
        date: str = "2020-01-01 10:00:00",
        parent: int = 0,
        user_id: int = 0,
        content: str = "Nice post",
        meta: tuple = (),
    ) -> str:
        return (
            "<wp:comment>"
            + self._tags(
                wp__comment_id=old_id,
                wp__comment_author=author,
                wp__comment_date=date,
                wp__comment_content=content,
                wp__comment_approved=1,
                wp__comment_parent=parent,
                wp__comment_user_id=user_id,
            )
            + "".join(self.meta(k, v, "wp:commentmeta") for k, v in meta)
            + "</wp:comment>"
        )

    def item(
        self,
        old_id: int,
        title: str = "",
        post_type: str = "post",
        guid: str | None = None,
        content: str = "",
        author: str = "",
        parent: int = 0,
        status: str = "publish",
        date: str = "2020-01-15 09:30:00",
        sticky: bool = False,
        attachment_url: str | None = None,
        categories: tuple = (),
        meta: tuple = (),
        comments: tuple = (),
    ) -> str:
        cats = "".join(
            f'<category domain="{escape(d)}" nicename="{escape(s)}"><![CDATA[{s}]]></category>'
            for d, s in categories
        )
        return (
            "<item>"
            + self._tags(
                title=title or f"Post {old_id}",
                guid=guid if guid is not None else f"{self.base_url}/?p={old_id}",
                dc__creator=author,
                wp__post_id=old_id,
                wp__post_date=date,
                wp__post_type=post_type,
                wp__status=status,
                wp__post_parent=parent,
                wp__is_sticky=1 if sticky else 0,
                wp__attachment_url=attachment_url,
            )
            + f"<content:encoded><![CDATA[{content}]]></content:encoded>"
            + cats
            + "".join(self.meta(k, v) for k, v in meta)
            + "".join(comments)
            + "</item>"
        )

    def document(self, *blocks: str) -> bytes:
        body = "".join(blocks)
        return (
            '<?xml version="1.0" encoding="UTF-8" ?>\n'
            '<rss version="2.0"'
            ' xmlns:excerpt="http://wordpress.org/export/1.2/excerpt/"'
            ' xmlns:content="http://purl.org/rss/1.0/modules/content/"'
            ' xmlns:wfw="http://wellformedweb.org/CommentAPI/"'
            ' xmlns:dc="http://purl.org/dc/elements/1.1/"'
            ' xmlns:wp="http://wordpress.org/export/1.2/">'
            "<channel>"
            "<title>Old Site</title>"
            "<generator>https://wordpress.org/?v=6.4</generator>"
            f"<wp:wxr_version>{self.version}</wp:wxr_version>"
            f"<wp:base_site_url>{self.base_url}</wp:base_site_url>"
            f"<wp:base_blog_url>{self.base_url}</wp:base_blog_url>"
            f"{body}"
            "</channel></rss>"
        ).encode("utf-8")

    def stream(self, *blocks: str) -> io.BytesIO:
        return io.BytesIO(self.document(*blocks))


@pytest.fixture
def wxr() -> WXRBuilder:
    return WXRBuilder()
