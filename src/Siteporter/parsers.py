"""Entity parsers: one export block in, one typed record out.

Every parser is a pure function of an element subtree whose tags have already
been normalised to ``prefix:local`` by the reader. Unknown children are
ignored so newer exports with extra fields still import.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from xml.etree import ElementTree as ET

from Siteporter.errors import MalformedEntity, UnsupportedEntityState
from Siteporter.records import (
    CommentRecord,
    MetaRecord,
    PostRecord,
    TermRecord,
    TermRef,
    UserRecord,
)

# Child tag -> PostRecord field, for plain text fields
_POST_TEXT_FIELDS = {
    "wp:post_type": "post_type",
    "title": "title",
    "guid": "guid",
    "dc:creator": "author",
    "content:encoded": "content",
    "excerpt:encoded": "excerpt",
    "wp:post_date": "date",
    "wp:post_date_gmt": "date_gmt",
    "wp:comment_status": "comment_status",
    "wp:ping_status": "ping_status",
    "wp:post_name": "name",
    "wp:status": "status",
    "wp:post_password": "password",
    "wp:attachment_url": "attachment_url",
}
_POST_INT_FIELDS = {
    "wp:post_id": "old_id",
    "wp:post_parent": "parent",
    "wp:menu_order": "menu_order",
}

_COMMENT_TEXT_FIELDS = {
    "wp:comment_author": "author",
    "wp:comment_author_email": "author_email",
    "wp:comment_author_IP": "author_ip",
    "wp:comment_author_url": "author_url",
    "wp:comment_date": "date",
    "wp:comment_date_gmt": "date_gmt",
    "wp:comment_content": "content",
    "wp:comment_approved": "approved",
    "wp:comment_type": "comment_type",
}
_COMMENT_INT_FIELDS = {
    "wp:comment_id": "old_id",
    "wp:comment_user_id": "user_id",
    "wp:comment_parent": "parent",
}

_AUTHOR_FIELDS = {
    "wp:author_login": "login",
    "wp:author_email": "email",
    "wp:author_display_name": "display_name",
    "wp:author_first_name": "first_name",
    "wp:author_last_name": "last_name",
}

# Per block kind: field -> child tag. ``wp:term`` is the generic form.
_TERM_TAGS: dict[str, dict[str, str | None]] = {
    "term": {
        "old_id": "wp:term_id",
        "taxonomy": "wp:term_taxonomy",
        "slug": "wp:term_slug",
        "parent": "wp:term_parent",
        "name": "wp:term_name",
        "description": "wp:term_description",
    },
    "category": {
        "old_id": "wp:term_id",
        "taxonomy": None,
        "slug": "wp:category_nicename",
        "parent": "wp:category_parent",
        "name": "wp:cat_name",
        "description": "wp:category_description",
    },
    "tag": {
        "old_id": "wp:term_id",
        "taxonomy": None,
        "slug": "wp:tag_slug",
        "parent": None,
        "name": "wp:tag_name",
        "description": "wp:tag_description",
    },
}
_TERM_DEFAULT_TAXONOMY = {"category": "category", "tag": "post_tag"}


def _text(elem: ET.Element) -> str:
    return "".join(elem.itertext())


def _to_int(raw: str, field: str) -> int:
    """Parse an id field; blank means 0, anything non-numeric is malformed."""
    raw = raw.strip()
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError as exc:
        raise MalformedEntity(f"{field} is not an integer: {raw!r}", data={field: raw}) from exc


def _normalize_taxonomy(taxonomy: str) -> str:
    # WXR 1.0 compatibility
    return "post_tag" if taxonomy == "tag" else taxonomy


def parse_meta_node(elem: ET.Element) -> MetaRecord | None:
    """Parse ``wp:postmeta`` / ``wp:commentmeta`` / ``wp:termmeta``.

    Returns None when either the key or the value is missing.
    """
    key = value = ""
    for child in elem:
        if child.tag == "wp:meta_key":
            key = _text(child)
        elif child.tag == "wp:meta_value":
            value = _text(child)
    if not key or not value:
        return None
    return MetaRecord(key=key, value=value)


def parse_comment_node(elem: ET.Element) -> CommentRecord:
    comment = CommentRecord()
    for child in elem:
        tag = child.tag
        if tag in _COMMENT_TEXT_FIELDS:
            setattr(comment, _COMMENT_TEXT_FIELDS[tag], _text(child))
        elif tag in _COMMENT_INT_FIELDS:
            setattr(comment, _COMMENT_INT_FIELDS[tag], _to_int(_text(child), tag))
        elif tag == "wp:commentmeta":
            meta = parse_meta_node(child)
            if meta is not None:
                comment.meta.append(meta)
    return comment


def parse_category_node(elem: ET.Element) -> TermRef | None:
    """Parse an item's ``<category domain=".." nicename="..">`` reference.

    Returns None when the reference carries no slug.
    """
    slug = elem.get("nicename", "")
    if not slug:
        return None
    taxonomy = _normalize_taxonomy(elem.get("domain", "category"))
    return TermRef(taxonomy=taxonomy, slug=slug, name=_text(elem))


def parse_post_node(elem: ET.Element) -> PostRecord:
    """Parse an ``<item>`` block.

    Raises:
        UnsupportedEntityState: For ``auto-draft`` posts
        MalformedEntity: For non-numeric ids or a missing post type
    """
    post = PostRecord(post_type="")
    for child in elem:
        tag = child.tag
        if tag in _POST_TEXT_FIELDS:
            setattr(post, _POST_TEXT_FIELDS[tag], _text(child))
        elif tag in _POST_INT_FIELDS:
            setattr(post, _POST_INT_FIELDS[tag], _to_int(_text(child), tag))
        elif tag == "wp:is_sticky":
            post.is_sticky = _text(child).strip() == "1"
        elif tag == "wp:postmeta":
            meta = parse_meta_node(child)
            if meta is not None:
                post.meta.append(meta)
        elif tag == "wp:comment":
            post.comments.append(parse_comment_node(child))
        elif tag == "category":
            ref = parse_category_node(child)
            if ref is not None:
                post.terms.append(ref)

    if post.status == "auto-draft":
        raise UnsupportedEntityState(
            "Cannot import auto-draft posts", data={"old_id": post.old_id, "title": post.title}
        )
    post.post_type = post.post_type.strip()
    if not post.post_type:
        raise MalformedEntity(
            "Post has no post type", data={"old_id": post.old_id, "title": post.title}
        )
    return post


def parse_author_node(elem: ET.Element) -> UserRecord:
    """Parse a ``wp:author`` block; the login is required."""
    fields: dict[str, Any] = {}
    old_id = 0
    for child in elem:
        if child.tag in _AUTHOR_FIELDS:
            fields[_AUTHOR_FIELDS[child.tag]] = _text(child)
        elif child.tag == "wp:author_id":
            old_id = _to_int(_text(child), child.tag)
    login = fields.pop("login", "").strip()
    if not login:
        raise MalformedEntity("Author has no login", data=fields)
    return UserRecord(login=login, old_id=old_id, **fields)


def parse_term_node(elem: ET.Element, kind: str = "term") -> TermRecord:
    """Parse a ``wp:term``, ``wp:category`` or ``wp:tag`` block.

    Args:
        elem: The block element
        kind: ``term``, ``category`` or ``tag``; selects the child tag names

    Raises:
        MalformedEntity: If taxonomy or slug is missing, or the id is not numeric
    """
    tags = _TERM_TAGS.get(kind, _TERM_TAGS["term"])
    by_tag = {tag: name for name, tag in tags.items() if tag}
    values: dict[str, str] = {"taxonomy": _TERM_DEFAULT_TAXONOMY.get(kind, "")}
    for child in elem:
        name = by_tag.get(child.tag)
        if name:
            values[name] = _text(child)

    taxonomy = _normalize_taxonomy(values.get("taxonomy", "").strip())
    slug = values.get("slug", "").strip()
    if not taxonomy or not slug:
        raise MalformedEntity("Term is missing taxonomy or slug", data=values)

    term = TermRecord(
        taxonomy=taxonomy,
        slug=slug,
        old_id=_to_int(values.get("old_id", ""), "old_id"),
        name=values.get("name", ""),
        description=values.get("description", ""),
    )
    parent = values.get("parent", "").strip()
    if parent.isdigit():
        term.parent = int(parent)
    elif parent:
        term.parent_slug = parent
    for child in elem:
        if child.tag == "wp:termmeta":
            meta = parse_meta_node(child)
            if meta is not None:
                term.meta.append(meta)
    return term


def _term_parser(kind: str) -> Callable[[ET.Element], TermRecord]:
    def _parse(elem: ET.Element) -> TermRecord:
        return parse_term_node(elem, kind)

    return _parse


PARSERS: dict[str, Callable[[ET.Element], Any]] = {
    "item": parse_post_node,
    "wp:author": parse_author_node,
    "wp:category": _term_parser("category"),
    "wp:tag": _term_parser("tag"),
    "wp:term": _term_parser("term"),
}


def parse_node(tag: str, elem: ET.Element) -> PostRecord | UserRecord | TermRecord | None:
    """Dispatch a top-level block to its parser; None for tags without one."""
    parser = PARSERS.get(tag)
    if parser is None:
        return None
    return parser(elem)


__all__ = [
    "PARSERS",
    "parse_author_node",
    "parse_category_node",
    "parse_comment_node",
    "parse_meta_node",
    "parse_node",
    "parse_post_node",
    "parse_term_node",
]
