"""WXR import orchestrator.

``WXRImporter.import_file`` streams an export document and replays it into a
``ContentStore``:

1. the registry is prefilled (or switched to lazy lookups) per the options;
2. every top-level block is parsed and processed in document order, inside a
   single critical section;
3. attachment downloads run concurrently outside that section, bounded by
   ``attachment_concurrency``, and re-enter it to create and map the post;
4. once the stream and all downloads are done, a deferred pass resolves every
   reference that pointed forward (parents, authors, terms, menu targets,
   attachment URLs in content, featured images);
5. optionally, an aggressive pass rewrites every old attachment URL across all
   post bodies and ``enclosure`` meta.

References that cannot be resolved at creation time are blanked, recorded as
``_wxr_import_*`` sentinel meta on the created entity and flagged in the
registry. The deferred pass clears sentinels as it resolves them; whatever is
left is reported as a permanent gap on the ``ImportReport``.

One bad entity never aborts the run. Only failing to open the document does.
"""

from __future__ import annotations

import asyncio
import math
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Any

import structlog

from Siteporter.config import ImportOptions
from Siteporter.errors import (
    AttachmentFetchFailed,
    MalformedEntity,
    StoreRejected,
    UnsupportedEntityState,
)
from Siteporter.fetch import AttachmentFetcher, LocalFile
from Siteporter.metrics import inc_counter
from Siteporter.parsers import PARSERS, parse_node
from Siteporter.reader import EntityNode, check_version, open_reader
from Siteporter.records import (
    CommentRecord,
    EntityKind,
    MetaRecord,
    PostRecord,
    TermRecord,
    TermRef,
    UnresolvedReference,
    UserRecord,
    comment_key,
    term_key,
)
from Siteporter.registry import IdentityRegistry
from Siteporter.rewrite import UrlRemap, has_attachment_refs
from Siteporter.store import ContentStore

log = structlog.get_logger()

# Sentinel meta keys written by the importer and removed once resolved
META_PARENT = "_wxr_import_parent"
META_USER_SLUG = "_wxr_import_user_slug"
META_USER = "_wxr_import_user"
META_TERM = "_wxr_import_term"
META_MENU_ITEM = "_wxr_import_menu_item"
META_HAS_ATTACHMENT_REFS = "_wxr_import_has_attachment_refs"

# Regenerated by the target, or meaningless after import
SKIPPED_META_KEYS = frozenset({"_wp_attached_file", "_wp_attachment_metadata", "_edit_lock"})

_UPLOAD_FOLDER = re.compile(r"^[0-9]{4}/[0-9]{2}")

_TAG_KINDS = {
    "item": EntityKind.POST,
    "wp:author": EntityKind.USER,
    "wp:category": EntityKind.TERM,
    "wp:tag": EntityKind.TERM,
    "wp:term": EntityKind.TERM,
}

OUTCOMES = ("created", "duplicate", "skipped", "failed")

# Sentinels still present after the deferred pass, reported as gaps under these names
_GAP_FIELDS = {
    EntityKind.POST: ((META_PARENT, "parent"), (META_TERM, "terms"), (META_MENU_ITEM, "menu_item_object")),
    EntityKind.COMMENT: ((META_PARENT, "parent"), (META_USER, "user")),
    EntityKind.TERM: ((META_PARENT, "parent"),),
}


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _label(record: Any) -> str:
    if isinstance(record, PostRecord):
        return record.title or record.guid
    if isinstance(record, TermRecord):
        return f"{record.taxonomy}:{record.slug}"
    if isinstance(record, UserRecord):
        return record.login
    return type(record).__name__


@dataclass
class ImportHooks:
    """Optional callbacks around each entity.

    ``pre_process`` may return a replacement record, or None to skip the
    entity. The others are notifications.
    """

    pre_process: Callable[[EntityKind, Any], Any | None] | None = None
    processed: Callable[[EntityKind, int, Any], None] | None = None
    skipped: Callable[[EntityKind, Any, str], None] | None = None
    already_imported: Callable[[EntityKind, Any, int], None] | None = None
    failed: Callable[[EntityKind, Any, Exception], None] | None = None


@dataclass
class ImportReport:
    """Outcome of one run: per-kind counts, failures and permanent gaps."""

    source: str = ""
    version: str = ""
    base_url: str = ""
    counts: dict[str, dict[str, int]] = field(
        default_factory=lambda: {kind.value: dict.fromkeys(OUTCOMES, 0) for kind in EntityKind}
    )
    gaps: list[UnresolvedReference] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    remap_passes: int = 0
    resolved: int = 0
    rewritten: int = 0
    url_remap_size: int = 0
    duration_ms: int = 0
    # Set when the document turned unreadable part way through
    aborted: str | None = None

    def record(self, kind: EntityKind, outcome: str) -> None:
        self.counts[kind.value][outcome] += 1
        inc_counter(f"importer.{kind.value}.{outcome}")

    def count(self, kind: EntityKind, outcome: str) -> int:
        return self.counts[kind.value][outcome]

    def add_failure(self, kind: EntityKind, label: str, error: Exception) -> None:
        self.failures.append({"kind": kind.value, "entity": label, "error": str(error)})

    def add_gap(self, gap: UnresolvedReference) -> None:
        self.gaps.append(gap)
        inc_counter("importer.remap.gap")

    def summary(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "version": self.version,
            "base_url": self.base_url,
            "counts": self.counts,
            "gaps": [
                {
                    "kind": g.kind.value,
                    "object_id": g.object_id,
                    "field": g.field,
                    "old_value": g.old_value,
                }
                for g in self.gaps
            ],
            "failures": list(self.failures),
            "remap_passes": self.remap_passes,
            "resolved": self.resolved,
            "rewritten": self.rewritten,
            "url_remap_size": self.url_remap_size,
            "duration_ms": self.duration_ms,
            "aborted": self.aborted,
        }


class WXRImporter:
    """Replays one WXR document into a content store.

    Args:
        store: Target content store
        options: Import options; defaults to ``ImportOptions()``
        fetcher: Attachment downloader, required when ``fetch_attachments`` is on
        hooks: Per-entity callbacks
        registry: Identity registry; a fresh one per importer by default
    """

    def __init__(
        self,
        store: ContentStore,
        options: ImportOptions | None = None,
        *,
        fetcher: AttachmentFetcher | None = None,
        hooks: ImportHooks | None = None,
        registry: IdentityRegistry | None = None,
    ):
        self.store = store
        self.options = options or ImportOptions()
        self.fetcher = fetcher
        self.hooks = hooks or ImportHooks()
        self.registry = registry or IdentityRegistry()
        self.url_remap = UrlRemap()
        self.report = ImportReport()
        self.base_url = ""
        self.version = "1.0"
        self._user_slug_override: dict[str, str] = {}
        # new post id -> old attachment id
        self._featured_images: dict[int, int] = {}
        self._lock = asyncio.Lock()
        self._fetch_slots = asyncio.Semaphore(self.options.attachment_concurrency)
        self._tasks: list[asyncio.Task[None]] = []
        # download marker -> later items waiting on the same download
        self._inflight: dict[str, list[PostRecord]] = {}

    # --- operator input ---

    def set_user_mapping(self, mapping: list[dict[str, Any]]) -> int:
        """Map exported authors onto existing users before the run.

        Each entry needs ``old_slug``, ``old_id`` and ``new_id``.
        """
        return self.registry.seed_users(mapping)

    def set_user_slug_overrides(self, overrides: dict[str, str]) -> None:
        """Rename exported logins when the users are created."""
        for old, new in overrides.items():
            if not old or not new:
                log.warning("importer.user_override.invalid", old=old, new=new)
                continue
            self._user_slug_override[old] = new

    # --- run ---

    async def import_file(self, source: str | os.PathLike[str] | IO[bytes]) -> ImportReport:
        """Import a whole document.

        Raises:
            CannotOpenSource: If the document cannot be opened or is not XML at all
        """
        start = time.perf_counter()
        reader = open_reader(source)
        self.report.source = reader.name
        with structlog.contextvars.bound_contextvars(import_source=reader.name):
            log.info("importer.run.started", options=self.options.model_dump())
            try:
                await self._prefill()
                with reader:
                    await self._stream(reader)
            finally:
                if self._tasks:
                    results = await asyncio.gather(*self._tasks, return_exceptions=True)
                    self._tasks.clear()
                    for result in results:
                        if isinstance(result, BaseException):
                            log.error("importer.attachment.task_failed", error=repr(result))

            async with self._lock:
                await self._post_process()
                if self.options.aggressive_url_search:
                    await self._replace_attachment_urls()

            self.report.version = self.version
            self.report.base_url = self.base_url
            self.report.url_remap_size = len(self.url_remap)
            self.report.duration_ms = math.trunc((time.perf_counter() - start) * 1000)
            log.info(
                "importer.run.completed",
                counts=self.report.counts,
                gaps=len(self.report.gaps),
                failures=len(self.report.failures),
                duration_ms=self.report.duration_ms,
            )
        return self.report

    async def _prefill(self) -> None:
        o, r, s = self.options, self.registry, self.store
        if o.prefill_existing_posts:
            r.prefill(EntityKind.POST, await s.get_existing_posts())
        else:
            r.use_lookup(EntityKind.POST, s.find_post_by_guid)
        if o.prefill_existing_comments:
            rows = await s.get_existing_comments()
            r.prefill(EntityKind.COMMENT, [(comment_key(a, d), cid) for a, d, cid in rows])
        else:
            r.use_lookup(EntityKind.COMMENT, s.find_comment)
        if o.prefill_existing_terms:
            rows = await s.get_existing_terms()
            r.prefill(EntityKind.TERM, [(term_key(t, slug), tid) for t, slug, tid in rows])
        else:
            r.use_lookup(EntityKind.TERM, s.find_term)
        if o.prefill_existing_users:
            r.prefill(EntityKind.USER, await s.get_existing_users())
        else:
            r.use_lookup(EntityKind.USER, s.find_user)

    async def _stream(self, reader: Any) -> None:
        while True:
            try:
                node = reader.next_node()
            except MalformedEntity as exc:
                # Nothing past this point can be read
                log.error("importer.document.malformed", error=str(exc))
                self.report.aborted = str(exc)
                return
            if node is None:
                return
            async with self._lock:
                await self._process_node(node)
            # Let pending attachment tasks make progress between entities
            await asyncio.sleep(0)

    async def _process_node(self, node: EntityNode) -> None:
        tag = node.tag
        if tag == "wp:wxr_version":
            self.version = node.text()
            check_version(self.version)
            return
        if tag == "wp:base_site_url":
            self.base_url = node.text()
            return
        if tag not in PARSERS:
            return

        kind = _TAG_KINDS[tag]
        try:
            record = parse_node(tag, node.element)
        except UnsupportedEntityState as exc:
            log.info("importer.entity.unsupported", tag=tag, reason=str(exc), **exc.data)
            self.report.record(kind, "skipped")
            return
        except MalformedEntity as exc:
            log.warning("importer.entity.malformed", tag=tag, error=str(exc), data=exc.data)
            self.report.record(kind, "failed")
            self.report.add_failure(kind, tag, exc)
            return

        record = self._pre_process(kind, record)
        if record is None:
            return
        try:
            if isinstance(record, PostRecord):
                await self._process_post(record)
            elif isinstance(record, TermRecord):
                await self._process_term(record)
            elif isinstance(record, UserRecord):
                await self._process_user(record)
        except StoreRejected as exc:
            # Lookups before creation; the entity is skipped, the stream goes on
            log.error("importer.entity.store_failed", kind=kind.value, error=str(exc))
            self._failed(kind, record, _label(record), exc)

    # --- hooks ---

    def _pre_process(self, kind: EntityKind, record: Any) -> Any | None:
        if self.hooks.pre_process is None:
            return record
        result = self.hooks.pre_process(kind, record)
        if result is None:
            self._skipped(kind, record, "pre_process")
        return result

    def _skipped(self, kind: EntityKind, record: Any, reason: str) -> None:
        self.report.record(kind, "skipped")
        if self.hooks.skipped:
            self.hooks.skipped(kind, record, reason)

    def _already_imported(self, kind: EntityKind, record: Any, existing_id: int) -> None:
        self.report.record(kind, "duplicate")
        if self.hooks.already_imported:
            self.hooks.already_imported(kind, record, existing_id)

    def _failed(self, kind: EntityKind, record: Any, label: str, error: Exception) -> None:
        self.report.record(kind, "failed")
        self.report.add_failure(kind, label, error)
        if self.hooks.failed:
            self.hooks.failed(kind, record, error)

    def _processed(self, kind: EntityKind, new_id: int, record: Any) -> None:
        self.report.record(kind, "created")
        if self.hooks.processed:
            self.hooks.processed(kind, new_id, record)

    # --- users ---

    async def _process_user(self, user: UserRecord) -> None:
        r = self.registry
        existing = r.map_old(EntityKind.USER, user.old_id)
        if existing:
            r.record_user_slug(user.login, existing)
            self._already_imported(EntityKind.USER, user, existing)
            return
        existing = r.map_user_slug(user.login)
        if existing:
            r.record_mapping(EntityKind.USER, user.old_id, existing)
            self._already_imported(EntityKind.USER, user, existing)
            return

        login = self._user_slug_override.get(user.login, user.login)
        existing = await r.exists_by_key(EntityKind.USER, login)
        if existing:
            r.record_mapping(EntityKind.USER, user.old_id, existing)
            r.record_user_slug(user.login, existing)
            log.info("importer.user.exists", login=login, existing_id=existing)
            self._already_imported(EntityKind.USER, user, existing)
            return

        try:
            user_id = await self.store.create_user(user, login=login)
        except StoreRejected as exc:
            log.error("importer.user.failed", login=login, error=str(exc))
            self._failed(EntityKind.USER, user, login, exc)
            return

        r.record_mapping(EntityKind.USER, user.old_id, user_id)
        r.record_user_slug(user.login, user_id)
        r.record_exists(EntityKind.USER, login, user_id)
        log.info("importer.user.imported", login=login, old_id=user.old_id, new_id=user_id)
        self._processed(EntityKind.USER, user_id, user)

    # --- terms ---

    async def _find_term(self, taxonomy: str, slug: str) -> int | None:
        return await self.registry.exists_by_key(
            EntityKind.TERM, term_key(taxonomy, slug), taxonomy, slug
        )

    async def _process_term(self, term: TermRecord) -> None:
        r = self.registry
        existing = await self._find_term(term.taxonomy, term.slug)
        if existing:
            r.record_mapping(EntityKind.TERM, term.old_id, existing)
            log.debug("importer.term.exists", taxonomy=term.taxonomy, slug=term.slug)
            self._already_imported(EntityKind.TERM, term, existing)
            return

        sentinels: list[tuple[str, Any]] = []
        parent_id = 0
        if term.parent:
            parent_id = r.map_old(EntityKind.TERM, term.parent) or 0
            if not parent_id:
                sentinels.append((META_PARENT, term.parent))
        elif term.parent_slug:
            parent_id = await self._find_term(term.taxonomy, term.parent_slug) or 0
            if not parent_id:
                sentinels.append((META_PARENT, {"taxonomy": term.taxonomy, "slug": term.parent_slug}))

        try:
            term_id = await self.store.create_term(term, parent_id=parent_id)
        except StoreRejected as exc:
            log.warning("importer.term.failed", taxonomy=term.taxonomy, slug=term.slug, error=str(exc))
            self._failed(EntityKind.TERM, term, f"{term.taxonomy}:{term.slug}", exc)
            return

        r.record_mapping(EntityKind.TERM, term.old_id, term_id)
        r.record_exists(EntityKind.TERM, term.key, term_id)
        await self._attach_meta(EntityKind.TERM, term_id, [(m.key, m.decoded()) for m in term.meta])
        await self._attach_meta(EntityKind.TERM, term_id, sentinels)
        if sentinels:
            r.flag(EntityKind.TERM, term_id)
        log.info(
            "importer.term.imported",
            taxonomy=term.taxonomy,
            slug=term.slug,
            old_id=term.old_id,
            new_id=term_id,
        )
        self._processed(EntityKind.TERM, term_id, term)

    # --- posts ---

    async def _process_post(self, post: PostRecord) -> None:
        r = self.registry
        if r.map_old(EntityKind.POST, post.old_id):
            log.debug("importer.post.seen", old_id=post.old_id)
            return

        existing = await r.exists_by_key(EntityKind.POST, post.guid) if post.guid else None
        if existing:
            r.record_mapping(EntityKind.POST, post.old_id, existing)
            log.info("importer.post.exists", title=post.title, post_type=post.post_type, existing_id=existing)
            self._already_imported(EntityKind.POST, post, existing)
            # New comments on an existing post are still imported
            await self._process_comments(post.comments, existing, post_exists=True)
            return

        if post.post_type == "attachment":
            fetcher = self.fetcher
            if not self.options.fetch_attachments or fetcher is None:
                log.info("importer.attachment.skipped", title=post.title, reason="fetching disabled")
                self._skipped(EntityKind.POST, post, "fetch_attachments disabled")
                return
            marker = post.guid or self._remote_url(post)
            if marker in self._inflight:
                log.debug("importer.attachment.queued", title=post.title, guid=marker)
                self._inflight[marker].append(post)
                return
            self._inflight[marker] = []
            self._tasks.append(asyncio.create_task(self._import_attachment(post, marker, fetcher)))
            return

        await self._insert_post(post, guid=post.guid)

    def _remote_url(self, post: PostRecord) -> str:
        url = post.attachment_url or post.guid
        # Host-relative URLs are resolved against the exporting site
        if len(url) > 1 and url.startswith("/") and self.base_url:
            url = self.base_url.rstrip("/") + url
        return url

    @staticmethod
    def _upload_folder(post: PostRecord) -> str:
        attached = post.meta_value("_wp_attached_file")
        if attached:
            m = _UPLOAD_FOLDER.match(attached)
            if m:
                return m.group(0)
        if len(post.date) >= 7:
            return post.date[:7].replace("-", "/")
        return ""

    async def _import_attachment(
        self, post: PostRecord, marker: str, fetcher: AttachmentFetcher
    ) -> None:
        remote_url = self._remote_url(post)
        async with self._fetch_slots:
            try:
                local = await fetcher.fetch(remote_url, self._upload_folder(post))
            except Exception as exc:
                # Only this attachment is lost; the run continues
                async with self._lock:
                    log.error(
                        "importer.attachment.failed",
                        title=post.title,
                        url=remote_url,
                        error=str(exc),
                        exc_info=not isinstance(exc, AttachmentFetchFailed),
                    )
                    inc_counter("importer.attachment.failed")
                    self._failed(EntityKind.POST, post, remote_url, exc)
                    self._release_aliases(marker, None)
                return
        inc_counter("importer.attachment.fetched")
        async with self._lock:
            guid = local.url if self.options.update_attachment_guids else post.guid
            try:
                new_id = await self._insert_post(post, guid=guid, attachment=local)
            except Exception as exc:
                log.error("importer.attachment.store_failed", title=post.title, url=remote_url, exc_info=True)
                self._failed(EntityKind.POST, post, remote_url, exc)
                new_id = None
            if new_id is not None:
                self.url_remap.add(remote_url, local.url)
            self._release_aliases(marker, new_id)

    def _release_aliases(self, marker: str, new_id: int | None) -> None:
        """Map items that shared a download onto its result."""
        for alias in self._inflight.pop(marker, []):
            if new_id is None:
                self._skipped(EntityKind.POST, alias, "attachment download failed")
                continue
            self.registry.record_mapping(EntityKind.POST, alias.old_id, new_id)
            self._already_imported(EntityKind.POST, alias, new_id)

    async def _insert_post(
        self, post: PostRecord, *, guid: str, attachment: LocalFile | None = None
    ) -> int | None:
        r = self.registry
        sentinels: list[tuple[str, Any]] = []

        parent_id = 0
        if post.parent:
            parent_id = r.map_old(EntityKind.POST, post.parent) or 0
            if not parent_id:
                sentinels.append((META_PARENT, post.parent))

        author_id: int | None = self.options.default_author
        slug = post.author.strip()
        if slug:
            author_id = r.map_user_slug(slug)
            if author_id is None:
                sentinels.append((META_USER_SLUG, slug))

        if has_attachment_refs(post.content):
            sentinels.append((META_HAS_ATTACHMENT_REFS, True))

        try:
            post_id = await self.store.create_post(
                post, parent_id=parent_id, author_id=author_id, guid=guid, attachment=attachment
            )
        except StoreRejected as exc:
            log.error("importer.post.failed", title=post.title, post_type=post.post_type, error=str(exc))
            self._failed(EntityKind.POST, post, post.title or post.guid, exc)
            return None

        if post.is_sticky:
            try:
                await self.store.stick_post(post_id)
            except StoreRejected as exc:
                log.warning("importer.post.sticky_failed", post_id=post_id, error=str(exc))
        r.record_mapping(EntityKind.POST, post.old_id, post_id)
        if guid:
            r.record_exists(EntityKind.POST, guid, post_id)
        if post.guid and post.guid != guid:
            r.record_exists(EntityKind.POST, post.guid, post_id)
        log.info(
            "importer.post.imported",
            title=post.title,
            post_type=post.post_type,
            old_id=post.old_id,
            new_id=post_id,
        )

        sentinels.extend(await self._assign_terms(post_id, post.terms))
        await self._process_comments(post.comments, post_id, post_exists=False)
        await self._process_post_meta(post_id, post.meta)
        if post.post_type == "nav_menu_item":
            sentinels.extend(await self._process_menu_item(post_id, post))
        await self._attach_meta(EntityKind.POST, post_id, sentinels)
        if sentinels:
            r.flag(EntityKind.POST, post_id)

        self._processed(EntityKind.POST, post_id, post)
        return post_id

    async def _assign_terms(self, post_id: int, terms: list[TermRef]) -> list[tuple[str, Any]]:
        """Attach known terms; return sentinels for the ones not yet known."""
        by_taxonomy: dict[str, list[int]] = {}
        sentinels: list[tuple[str, Any]] = []
        for ref in terms:
            try:
                term_id = await self._find_term(ref.taxonomy, ref.slug)
            except StoreRejected as exc:
                log.warning("importer.post.term_lookup_failed", post_id=post_id, slug=ref.slug, error=str(exc))
                term_id = None
            if term_id:
                by_taxonomy.setdefault(ref.taxonomy, []).append(term_id)
            else:
                sentinels.append(
                    (META_TERM, {"taxonomy": ref.taxonomy, "slug": ref.slug, "name": ref.name})
                )
        for taxonomy, ids in by_taxonomy.items():
            try:
                await self.store.set_post_terms(post_id, taxonomy, ids)
            except StoreRejected as exc:
                log.warning("importer.post.terms_failed", post_id=post_id, taxonomy=taxonomy, error=str(exc))
        return sentinels

    async def _process_post_meta(self, post_id: int, meta: list[MetaRecord]) -> None:
        items: list[tuple[str, Any]] = []
        for item in meta:
            if item.key in SKIPPED_META_KEYS:
                continue
            if item.key == "_edit_last":
                user_id = self.registry.map_old(EntityKind.USER, _as_int(item.value))
                if user_id is None:
                    continue
                items.append((item.key, user_id))
                continue
            value = item.decoded()
            items.append((item.key, value))
            if item.key == "_thumbnail_id" and _as_int(value):
                self._featured_images[post_id] = _as_int(value)
        await self._attach_meta(EntityKind.POST, post_id, items)

    async def _process_menu_item(self, post_id: int, post: PostRecord) -> list[tuple[str, Any]]:
        item_type = post.meta_value("_menu_item_type")
        original = _as_int(post.meta_value("_menu_item_object_id"))
        if item_type == "custom":
            object_id: int | None = post_id
        elif item_type == "taxonomy":
            object_id = self.registry.map_old(EntityKind.TERM, original)
        elif item_type == "post_type":
            object_id = self.registry.map_old(EntityKind.POST, original)
        else:
            log.debug("importer.menu_item.unknown_type", post_id=post_id, item_type=item_type)
            return []
        if object_id is None:
            return [(META_MENU_ITEM, original)]
        await self._update_meta(EntityKind.POST, post_id, "_menu_item_object_id", object_id)
        return []

    # --- comments ---

    async def _process_comments(
        self, comments: list[CommentRecord], post_id: int, *, post_exists: bool
    ) -> None:
        # Ascending id keeps most parents ahead of their replies
        for comment in sorted(comments, key=lambda c: (c.old_id == 0, c.old_id)):
            comment = self._pre_process(EntityKind.COMMENT, comment)
            if comment is None:
                continue
            try:
                await self._process_comment(comment, post_id, post_exists=post_exists)
            except StoreRejected as exc:
                log.error("importer.comment.failed", post_id=post_id, old_id=comment.old_id, error=str(exc))
                self._failed(EntityKind.COMMENT, comment, f"comment {comment.old_id}", exc)

    async def _process_comment(
        self, comment: CommentRecord, post_id: int, *, post_exists: bool
    ) -> None:
        r = self.registry
        if post_exists:
            existing = await r.exists_by_key(
                EntityKind.COMMENT, comment.fingerprint, comment.author, comment.date
            )
            if existing:
                r.record_mapping(EntityKind.COMMENT, comment.old_id, existing)
                self._already_imported(EntityKind.COMMENT, comment, existing)
                return

        sentinels: list[tuple[str, Any]] = []
        parent_id = 0
        if comment.parent:
            parent_id = r.map_old(EntityKind.COMMENT, comment.parent) or 0
            if not parent_id:
                sentinels.append((META_PARENT, comment.parent))
        user_id = None
        if comment.user_id:
            user_id = r.map_old(EntityKind.USER, comment.user_id)
            if user_id is None:
                sentinels.append((META_USER, comment.user_id))

        comment_id = await self.store.create_comment(
            comment, post_id=post_id, parent_id=parent_id, user_id=user_id
        )
        r.record_mapping(EntityKind.COMMENT, comment.old_id, comment_id)
        r.record_exists(EntityKind.COMMENT, comment.fingerprint, comment_id)
        await self._attach_meta(
            EntityKind.COMMENT, comment_id, [(m.key, m.decoded()) for m in comment.meta]
        )
        await self._attach_meta(EntityKind.COMMENT, comment_id, sentinels)
        if sentinels:
            r.flag(EntityKind.COMMENT, comment_id)
        log.debug("importer.comment.imported", old_id=comment.old_id, new_id=comment_id, post_id=post_id)
        self._processed(EntityKind.COMMENT, comment_id, comment)

    # --- meta helpers ---

    async def _attach_meta(
        self, kind: EntityKind, object_id: int, items: list[tuple[str, Any]]
    ) -> None:
        for key, value in items:
            try:
                await self.store.attach_meta(kind, object_id, key, value)
            except StoreRejected as exc:
                log.warning("importer.meta.failed", kind=kind.value, object_id=object_id, key=key, error=str(exc))

    async def _update_meta(self, kind: EntityKind, object_id: int, key: str, value: Any) -> bool:
        try:
            await self.store.update_meta(kind, object_id, key, value)
        except StoreRejected as exc:
            log.warning("importer.meta.failed", kind=kind.value, object_id=object_id, key=key, error=str(exc))
            return False
        return True

    async def _clear_meta(self, kind: EntityKind, object_id: int, key: str, value: Any = None) -> None:
        try:
            await self.store.delete_meta(kind, object_id, key, value)
        except StoreRejected as exc:
            log.warning("importer.meta.clear_failed", kind=kind.value, object_id=object_id, key=key, error=str(exc))

    # --- deferred pass ---

    async def _post_process(self) -> None:
        """Resolve flagged entities until nothing changes or the pass limit is hit."""
        r = self.registry
        for pass_no in range(1, self.options.max_remap_passes + 1):
            pending = sum(len(r.pending(kind)) for kind in EntityKind)
            if not pending:
                break
            self.report.remap_passes = pass_no
            changed = 0
            changed += await self._post_process_terms()
            changed += await self._post_process_posts()
            changed += await self._post_process_comments()
            log.info("importer.remap.pass", number=pass_no, pending=pending, changed=changed)
            if not changed:
                break
        await self._remap_featured_images()
        await self._report_gaps()

    def _resolved(self, count: int = 1) -> None:
        self.report.resolved += count
        inc_counter("importer.remap.resolved", count)

    async def _post_process_terms(self) -> int:
        changed = 0
        for term_id in self.registry.pending(EntityKind.TERM):
            try:
                changed += await self._remap_term(term_id)
            except StoreRejected as exc:
                log.warning("importer.remap.update_failed", kind="term", object_id=term_id, error=str(exc))
        return changed

    async def _remap_term(self, term_id: int) -> int:
        parents = await self.store.get_meta(EntityKind.TERM, term_id, META_PARENT)
        if not parents:
            self.registry.unflag(EntityKind.TERM, term_id)
            return 0
        parent_id = await self._resolve_term_parent(parents[0])
        if not parent_id:
            return 0
        await self.store.update_term(term_id, parent_id=parent_id)
        await self._clear_meta(EntityKind.TERM, term_id, META_PARENT)
        self.registry.unflag(EntityKind.TERM, term_id)
        self._resolved()
        return 1

    async def _resolve_term_parent(self, ref: Any) -> int | None:
        if isinstance(ref, dict):
            return await self._find_term(str(ref.get("taxonomy", "")), str(ref.get("slug", "")))
        return self.registry.map_old(EntityKind.TERM, _as_int(ref))

    async def _post_process_posts(self) -> int:
        changed = 0
        for post_id in self.registry.pending(EntityKind.POST):
            try:
                changed += await self._remap_post(post_id)
            except StoreRejected as exc:
                log.warning("importer.remap.update_failed", kind="post", object_id=post_id, error=str(exc))
        return changed

    async def _remap_post(self, post_id: int) -> int:
        r, s = self.registry, self.store
        log.debug("importer.remap.post", post_id=post_id)
        updates: dict[str, Any] = {}
        cleared: list[str] = []
        remaining = False

        parents = await s.get_meta(EntityKind.POST, post_id, META_PARENT)
        if parents:
            mapped = r.map_old(EntityKind.POST, _as_int(parents[0]))
            if mapped:
                updates["parent_id"] = mapped
                cleared.append(META_PARENT)
            else:
                remaining = True

        slugs = await s.get_meta(EntityKind.POST, post_id, META_USER_SLUG)
        if slugs:
            mapped = r.map_user_slug(str(slugs[0]))
            if mapped:
                updates["author_id"] = mapped
                cleared.append(META_USER_SLUG)
            else:
                remaining = True

        if await s.get_meta(EntityKind.POST, post_id, META_HAS_ATTACHMENT_REFS):
            post = await s.get_post(post_id)
            if post is not None:
                new_content = self.url_remap.apply(post.content)
                if new_content != post.content:
                    updates["content"] = new_content
            cleared.append(META_HAS_ATTACHMENT_REFS)

        if updates:
            await s.update_post(post_id, **updates)
        for key in cleared:
            await self._clear_meta(EntityKind.POST, post_id, key)

        resolved_terms, terms_left = await self._remap_post_terms(post_id)
        resolved_menu, menu_left = await self._remap_menu_item(post_id)
        remaining = remaining or terms_left or menu_left

        resolved = len(updates) + resolved_terms + resolved_menu
        if resolved:
            self._resolved(resolved)
        if not remaining:
            r.unflag(EntityKind.POST, post_id)
        return 1 if updates or cleared or resolved_terms or resolved_menu else 0

    async def _remap_post_terms(self, post_id: int) -> tuple[int, bool]:
        refs = await self.store.get_meta(EntityKind.POST, post_id, META_TERM)
        by_taxonomy: dict[str, list[int]] = {}
        done: list[Any] = []
        for ref in refs:
            if not isinstance(ref, dict):
                continue
            taxonomy = str(ref.get("taxonomy", ""))
            term_id = await self._find_term(taxonomy, str(ref.get("slug", "")))
            if term_id:
                by_taxonomy.setdefault(taxonomy, []).append(term_id)
                done.append(ref)
        for taxonomy, ids in by_taxonomy.items():
            try:
                await self.store.set_post_terms(post_id, taxonomy, ids, append=True)
            except StoreRejected as exc:
                log.warning("importer.post.terms_failed", post_id=post_id, taxonomy=taxonomy, error=str(exc))
                return 0, True
        for ref in done:
            await self._clear_meta(EntityKind.POST, post_id, META_TERM, ref)
        return len(done), len(done) < len(refs)

    async def _remap_menu_item(self, post_id: int) -> tuple[int, bool]:
        s = self.store
        targets = await s.get_meta(EntityKind.POST, post_id, META_MENU_ITEM)
        if not targets:
            return 0, False
        item_types = await s.get_meta(EntityKind.POST, post_id, "_menu_item_type")
        item_type = item_types[0] if item_types else ""
        original = _as_int(targets[0])
        if item_type == "taxonomy":
            object_id = self.registry.map_old(EntityKind.TERM, original)
        elif item_type == "post_type":
            object_id = self.registry.map_old(EntityKind.POST, original)
        else:
            object_id = None
        if object_id is None:
            return 0, True
        if not await self._update_meta(EntityKind.POST, post_id, "_menu_item_object_id", object_id):
            return 0, True
        await self._clear_meta(EntityKind.POST, post_id, META_MENU_ITEM)
        return 1, False

    async def _post_process_comments(self) -> int:
        changed = 0
        for comment_id in self.registry.pending(EntityKind.COMMENT):
            try:
                changed += await self._remap_comment(comment_id)
            except StoreRejected as exc:
                log.warning("importer.remap.update_failed", kind="comment", object_id=comment_id, error=str(exc))
        return changed

    async def _remap_comment(self, comment_id: int) -> int:
        r, s = self.registry, self.store
        updates: dict[str, Any] = {}
        cleared: list[str] = []
        remaining = False

        parents = await s.get_meta(EntityKind.COMMENT, comment_id, META_PARENT)
        if parents:
            mapped = r.map_old(EntityKind.COMMENT, _as_int(parents[0]))
            if mapped:
                updates["parent_id"] = mapped
                cleared.append(META_PARENT)
            else:
                remaining = True

        users = await s.get_meta(EntityKind.COMMENT, comment_id, META_USER)
        if users:
            mapped = r.map_old(EntityKind.USER, _as_int(users[0]))
            if mapped:
                updates["user_id"] = mapped
                cleared.append(META_USER)
            else:
                remaining = True

        if not remaining:
            r.unflag(EntityKind.COMMENT, comment_id)
        if not updates:
            return 0
        await s.update_comment(comment_id, **updates)
        for key in cleared:
            await self._clear_meta(EntityKind.COMMENT, comment_id, key)
        self._resolved(len(updates))
        return 1

    async def _remap_featured_images(self) -> None:
        for post_id, old_thumbnail in self._featured_images.items():
            new_id = self.registry.map_old(EntityKind.POST, old_thumbnail)
            if new_id and new_id != old_thumbnail:
                await self._update_meta(EntityKind.POST, post_id, "_thumbnail_id", new_id)

    async def _report_gaps(self) -> None:
        """Apply last-resort fallbacks, then record whatever is still unresolved."""
        r = self.registry
        for kind in (EntityKind.POST, EntityKind.COMMENT, EntityKind.TERM):
            for object_id in r.pending(kind):
                try:
                    await self._report_entity_gaps(kind, object_id)
                except StoreRejected as exc:
                    log.warning("importer.remap.gap_check_failed", kind=kind.value, object_id=object_id, error=str(exc))

    async def _report_entity_gaps(self, kind: EntityKind, object_id: int) -> None:
        s = self.store
        if kind is EntityKind.POST:
            slugs = await s.get_meta(kind, object_id, META_USER_SLUG)
            if slugs and self.options.default_author is not None:
                await s.update_post(object_id, author_id=self.options.default_author)
                await self._clear_meta(kind, object_id, META_USER_SLUG)
                slugs = []
            for value in slugs:
                self._gap(kind, object_id, "author", value)
        fields = _GAP_FIELDS[kind]
        for key, field_name in fields:
            for value in await s.get_meta(kind, object_id, key):
                self._gap(kind, object_id, field_name, value)

    def _gap(self, kind: EntityKind, object_id: int, field_name: str, old_value: Any) -> None:
        log.warning(
            "importer.remap.gap",
            kind=kind.value,
            object_id=object_id,
            field=field_name,
            old_value=old_value,
        )
        self.report.add_gap(UnresolvedReference(kind, object_id, field_name, old_value))

    # --- aggressive URL pass ---

    async def _replace_attachment_urls(self) -> None:
        if not len(self.url_remap):
            return
        try:
            self.report.rewritten = await self.store.rewrite_content(self.url_remap.apply)
        except StoreRejected as exc:
            log.error("importer.rewrite.failed", error=str(exc))
            return
        log.info("importer.rewrite.completed", changed=self.report.rewritten, urls=len(self.url_remap))


__all__ = ["ImportHooks", "ImportReport", "WXRImporter"]
