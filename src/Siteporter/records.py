"""Typed records produced by the entity parsers and consumed by the importer.

Each entity type has a fixed field set. Anything the export carries beyond
that set travels in the open-ended ``meta`` list as ``MetaRecord`` entries.
Old identities are the integers assigned by the exporting site; ``0`` means
"none" for every reference field.
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from typing import Any

import phpserialize


class EntityKind(str, enum.Enum):
    POST = "post"
    COMMENT = "comment"
    TERM = "term"
    USER = "user"


def term_key(taxonomy: str, slug: str) -> str:
    """Natural key of a term: sha1 of ``taxonomy:slug``."""
    return hashlib.sha1(f"{taxonomy}:{slug}".encode("utf-8")).hexdigest()


def comment_key(author: str, date: str) -> str:
    """Heuristic fingerprint of a comment: sha1 of ``author:date``."""
    return hashlib.sha1(f"{author}:{date}".encode("utf-8")).hexdigest()


def is_serialized(value: str) -> bool:
    """Return True when ``value`` looks like a PHP ``serialize()`` dump."""
    data = value.strip()
    if data == "N;":
        return True
    if len(data) < 4 or data[1] != ":":
        return False
    if data[-1] not in ";}":
        return False
    return data[0] in "saObid"


def decode_meta_value(value: str) -> Any:
    """Decode a PHP-serialized meta value, returning the raw string otherwise.

    Objects are decoded into plain dicts carrying their class name under
    ``__class__`` so the result stays JSON-serializable.
    """
    if not is_serialized(value):
        return value
    try:
        return phpserialize.loads(
            value.strip().encode("utf-8"),
            decode_strings=True,
            object_hook=lambda name, values: {"__class__": name, **dict(values)},
        )
    except (ValueError, TypeError):
        # Looks serialized but is not; keep the raw text
        return value


@dataclass
class MetaRecord:
    key: str
    value: str

    def decoded(self) -> Any:
        return decode_meta_value(self.value)


@dataclass(frozen=True)
class TermRef:
    """Reference from a post to a term by natural key."""

    taxonomy: str
    slug: str
    name: str = ""

    @property
    def key(self) -> str:
        return term_key(self.taxonomy, self.slug)


@dataclass
class CommentRecord:
    old_id: int = 0
    parent: int = 0
    author: str = ""
    author_email: str = ""
    author_url: str = ""
    author_ip: str = ""
    user_id: int = 0
    date: str = ""
    date_gmt: str = ""
    content: str = ""
    approved: str = "1"
    comment_type: str = ""
    meta: list[MetaRecord] = field(default_factory=list)

    @property
    def fingerprint(self) -> str:
        return comment_key(self.author, self.date)


@dataclass
class PostRecord:
    old_id: int = 0
    post_type: str = "post"
    title: str = ""
    guid: str = ""
    content: str = ""
    excerpt: str = ""
    status: str = "publish"
    date: str = ""
    date_gmt: str = ""
    name: str = ""
    comment_status: str = ""
    ping_status: str = ""
    parent: int = 0
    menu_order: int = 0
    password: str = ""
    author: str = ""
    is_sticky: bool = False
    attachment_url: str = ""
    meta: list[MetaRecord] = field(default_factory=list)
    comments: list[CommentRecord] = field(default_factory=list)
    terms: list[TermRef] = field(default_factory=list)

    def meta_value(self, key: str) -> str | None:
        """Return the first raw value stored under ``key``."""
        for item in self.meta:
            if item.key == key:
                return item.value
        return None


@dataclass
class TermRecord:
    taxonomy: str
    slug: str
    old_id: int = 0
    name: str = ""
    description: str = ""
    parent: int = 0
    # Exports usually name the parent by slug rather than id
    parent_slug: str = ""
    meta: list[MetaRecord] = field(default_factory=list)

    @property
    def key(self) -> str:
        return term_key(self.taxonomy, self.slug)


@dataclass
class UserRecord:
    login: str
    old_id: int = 0
    email: str = ""
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""


@dataclass
class SiteInfo:
    """Preliminary summary of an export document; produced without store access."""

    version: str = "1.0"
    generator: str = ""
    title: str = ""
    site_url: str = ""
    home_url: str = ""
    users: list[UserRecord] = field(default_factory=list)
    post_count: int = 0
    media_count: int = 0
    comment_count: int = 0
    term_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generator": self.generator,
            "title": self.title,
            "site_url": self.site_url,
            "home_url": self.home_url,
            "users": [u.login for u in self.users],
            "post_count": self.post_count,
            "media_count": self.media_count,
            "comment_count": self.comment_count,
            "term_count": self.term_count,
        }


@dataclass(frozen=True)
class UnresolvedReference:
    """A reference field that stayed unresolved after the deferred pass."""

    kind: EntityKind
    object_id: int
    field: str
    old_value: Any


__all__ = [
    "CommentRecord",
    "EntityKind",
    "MetaRecord",
    "PostRecord",
    "SiteInfo",
    "TermRecord",
    "TermRef",
    "UnresolvedReference",
    "UserRecord",
    "comment_key",
    "decode_meta_value",
    "is_serialized",
    "term_key",
]
