"""Pull-based reader for WXR export documents.

The reader never builds the whole tree. It walks ``iterparse`` events and,
each time an element directly under ``<channel>`` closes, hands that one
subtree to the caller as an ``EntityNode``. Once the caller asks for the next
node the previous subtree is detached from ``<channel>`` and cleared, so memory
stays bounded by the largest single entity rather than the document.

Parsing goes through ``defusedxml`` so DTD entity expansion and external
entity resolution are refused on untrusted exports.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any
from xml.etree import ElementTree as ET

# SECURITY: Use defusedxml to protect against XXE and entity expansion attacks
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET
import structlog

from Siteporter.errors import CannotOpenSource, MalformedEntity, UnsupportedEntityState
from Siteporter.parsers import parse_author_node, parse_post_node
from Siteporter.records import SiteInfo, UserRecord

log = structlog.get_logger()

# Newest WXR version this importer has been written against
MAX_WXR_VERSION = "1.2"

# rss > channel > entity
ENTITY_DEPTH = 2

TERM_TAGS = ("wp:category", "wp:tag", "wp:term")


@dataclass
class EntityNode:
    """One top-level block of the export, valid until the reader advances."""

    tag: str
    element: ET.Element

    def text(self) -> str:
        return "".join(self.element.itertext()).strip()

    def children(self) -> Iterator[ET.Element]:
        return iter(self.element)


def _version_tuple(version: str) -> tuple[int, ...]:
    parts = []
    for piece in version.strip().split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def check_version(version: str) -> bool:
    """Warn when the document is newer than this importer; never fails.

    Returns:
        True if the version is supported
    """
    if _version_tuple(version) > _version_tuple(MAX_WXR_VERSION):
        log.warning(
            "reader.version.unsupported",
            version=version,
            max_version=MAX_WXR_VERSION,
            message="This WXR file is newer than the importer and may not be supported.",
        )
        return False
    return True


def _normalize_tags(elem: ET.Element, prefixes: dict[str, str]) -> None:
    """Rewrite ``{uri}local`` tags in a subtree to ``prefix:local``."""
    for child in elem.iter():
        tag = child.tag
        if not isinstance(tag, str) or not tag.startswith("{"):
            continue
        uri, local = tag[1:].split("}", 1)
        prefix = prefixes.get(uri)
        child.tag = f"{prefix}:{local}" if prefix else local


class DocumentReader:
    """Iterator over the top-level entity blocks of one export document."""

    def __init__(self, handle: IO[bytes], name: str = "<stream>"):
        self.name = name
        self._handle = handle
        self._events = DefusedET.iterparse(
            handle,
            events=("start", "end", "start-ns"),
            forbid_dtd=False,
            forbid_entities=True,
            forbid_external=True,
        )
        self._nodes = self._iter_nodes()
        self._yielded = 0

    def __iter__(self) -> Iterator[EntityNode]:
        return self

    def __next__(self) -> EntityNode:
        node = self.next_node()
        if node is None:
            raise StopIteration
        return node

    def __enter__(self) -> DocumentReader:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def next_node(self) -> EntityNode | None:
        """Advance to the next entity block; None at end of stream.

        Raises:
            CannotOpenSource: If the document is not parseable at all
            MalformedEntity: If the markup breaks after some entities were read
        """
        try:
            node = next(self._nodes, None)
        except (ET.ParseError, DefusedXmlException) as exc:
            self.close()
            if self._yielded == 0:
                raise CannotOpenSource(f"Could not parse {self.name}: {exc}") from exc
            raise MalformedEntity(f"Document {self.name} is malformed: {exc}") from exc
        if node is not None:
            self._yielded += 1
        return node

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()

    def _iter_nodes(self) -> Iterator[EntityNode]:
        prefixes: dict[str, str] = {}
        stack: list[ET.Element] = []
        for event, payload in self._events:
            if event == "start-ns":
                prefix, uri = payload
                prefixes.setdefault(uri, prefix)
            elif event == "start":
                stack.append(payload)
            else:
                elem = stack.pop()
                if len(stack) != ENTITY_DEPTH:
                    continue
                _normalize_tags(elem, prefixes)
                yield EntityNode(tag=elem.tag, element=elem)
                # Caller is done with this subtree; drop it
                stack[-1].remove(elem)
                elem.clear()
        self.close()


def open_reader(source: str | os.PathLike[str] | IO[bytes]) -> DocumentReader:
    """Open an export document for streaming.

    Args:
        source: Path to the WXR file, or an already-open binary stream

    Raises:
        CannotOpenSource: If the path is missing or unreadable
    """
    if hasattr(source, "read"):
        return DocumentReader(source, name=getattr(source, "name", "<stream>"))  # type: ignore[arg-type]
    path = Path(source)  # type: ignore[arg-type]
    if not path.is_file():
        raise CannotOpenSource(f"The file does not exist: {path}")
    try:
        handle = path.open("rb")
    except OSError as exc:
        raise CannotOpenSource(f"Could not open the file for parsing: {path}") from exc
    return DocumentReader(handle, name=str(path))


def read_site_info(source: str | os.PathLike[str] | IO[bytes]) -> SiteInfo:
    """Preliminary pass over a document: counts and site metadata, no store access."""
    info = SiteInfo()
    with open_reader(source) as reader:
        for node in reader:
            if node.tag == "wp:wxr_version":
                info.version = node.text()
                check_version(info.version)
            elif node.tag == "generator":
                info.generator = node.text()
            elif node.tag == "title":
                info.title = node.text()
            elif node.tag == "wp:base_site_url":
                info.site_url = node.text()
            elif node.tag == "wp:base_blog_url":
                info.home_url = node.text()
            elif node.tag == "wp:author":
                try:
                    info.users.append(parse_author_node(node.element))
                except MalformedEntity as exc:
                    log.warning("reader.author.malformed", error=str(exc))
            elif node.tag == "item":
                try:
                    post = parse_post_node(node.element)
                except UnsupportedEntityState:
                    continue
                except MalformedEntity as exc:
                    log.warning("reader.item.malformed", error=str(exc))
                    continue
                if post.post_type == "attachment":
                    info.media_count += 1
                else:
                    info.post_count += 1
                info.comment_count += len(post.comments)
            elif node.tag in TERM_TAGS:
                info.term_count += 1
    return info


def read_authors(source: str | os.PathLike[str] | IO[bytes]) -> list[UserRecord]:
    """Collect the author blocks of a document, e.g. to build a user mapping."""
    authors: list[UserRecord] = []
    with open_reader(source) as reader:
        for node in reader:
            if node.tag == "wp:wxr_version":
                check_version(node.text())
            elif node.tag == "wp:author":
                try:
                    authors.append(parse_author_node(node.element))
                except MalformedEntity as exc:
                    log.warning("reader.author.malformed", error=str(exc))
    return authors


__all__ = [
    "DocumentReader",
    "EntityNode",
    "MAX_WXR_VERSION",
    "check_version",
    "open_reader",
    "read_authors",
    "read_site_info",
]
