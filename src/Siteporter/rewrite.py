"""Old attachment URL -> new URL rewriting."""

from __future__ import annotations

import re

import structlog

log = structlog.get_logger()

# Content that probably embeds an attachment: a wp-image-N / attachment-* class,
# or an <img src> pointing at an uploads-shaped path.
HAS_ATTACHMENT_REFS = re.compile(
    r"""(
        class=['"].*?\b(wp-image-\d+|attachment-[\w\-]+)\b
        |
        src=['"][^'"]*(
            [0-9]{4}/[0-9]{2}/[^'"]+\.(jpg|jpeg|png|gif)
            |
            content/uploads[^'"]+
        )['"]
    )""",
    re.IGNORECASE | re.VERBOSE,
)


def has_attachment_refs(content: str) -> bool:
    return bool(content) and HAS_ATTACHMENT_REFS.search(content) is not None


class UrlRemap:
    """Ordered remote -> local URL table.

    ``apply`` scans the text once; at every position the longest matching
    original wins, so ``.../a.jpg`` never clobbers part of ``.../a.jpg-150x150.jpg``.
    """

    def __init__(self) -> None:
        self._map: dict[str, str] = {}
        self._pattern: re.Pattern[str] | None = None

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, url: object) -> bool:
        return url in self._map

    def add(self, remote_url: str, new_url: str) -> None:
        """Record a pair, plus the plain-http variant of an https original."""
        if not remote_url or remote_url == new_url:
            return
        self._map[remote_url] = new_url
        if remote_url.startswith("https://"):
            self._map.setdefault("http://" + remote_url[len("https://"):], new_url)
        self._pattern = None

    def get(self, remote_url: str) -> str | None:
        return self._map.get(remote_url)

    def pairs(self) -> list[tuple[str, str]]:
        """All pairs, longest original first."""
        return sorted(self._map.items(), key=lambda kv: len(kv[0]), reverse=True)

    def _compiled(self) -> re.Pattern[str] | None:
        if self._pattern is None and self._map:
            alternation = "|".join(re.escape(old) for old, _ in self.pairs())
            self._pattern = re.compile(alternation)
        return self._pattern

    def apply(self, text: str) -> str:
        if not text:
            return text
        pattern = self._compiled()
        if pattern is None:
            return text
        return pattern.sub(lambda m: self._map[m.group(0)], text)


__all__ = ["HAS_ATTACHMENT_REFS", "UrlRemap", "has_attachment_refs"]
