"""End-to-end runs against the in-memory store: counts, idempotence, bad input."""

import io

import pytest

from Siteporter.config import ImportOptions
from Siteporter.errors import CannotOpenSource
from Siteporter.importer import WXRImporter
from Siteporter.metrics import get_counter
from Siteporter.records import EntityKind
from Siteporter.store import MemoryContentStore


def _site(wxr):
    return (
        wxr.author("admin", 1),
        wxr.author("editor", 2),
        wxr.category("news", old_id=3),
        wxr.tag("python", old_id=4),
        wxr.item(
            10,
            title="Hello",
            author="admin",
            sticky=True,
            categories=(("category", "news"), ("post_tag", "python")),
            meta=(
                ("_color", "blue"),
                ("_layout", 'a:1:{s:4:"cols";i:2;}'),
                ("_edit_last", "2"),
                ("_edit_lock", "1700000000:1"),
            ),
            comments=(
                wxr.comment(1, author="Ann", date="2020-01-01 10:00:00"),
                wxr.comment(2, author="Bob", date="2020-01-02 10:00:00", parent=1),
            ),
        ),
        wxr.item(11, title="About", post_type="page", author="editor"),
    )


async def _run(stream, store, **opts):
    importer = WXRImporter(store, ImportOptions(**opts))
    report = await importer.import_file(stream)
    return importer, report


@pytest.mark.asyncio
async def test_full_import_creates_everything(wxr):
    store = MemoryContentStore()
    importer, report = await _run(wxr.stream(*_site(wxr)), store)
    r = importer.registry

    assert {u.login for u in store.users.values()} == {"admin", "editor"}
    assert len(store.terms) == 2
    assert len(store.posts) == 2
    assert len(store.comments) == 2

    admin = r.map_user_slug("admin")
    editor = r.map_user_slug("editor")
    post_id = r.map_old(EntityKind.POST, 10)
    post = store.posts[post_id]
    assert post.title == "Hello"
    assert post.author_id == admin
    assert post.is_sticky is True
    assert store.posts[r.map_old(EntityKind.POST, 11)].author_id == editor

    news = await store.find_term("category", "news")
    python = await store.find_term("post_tag", "python")
    assert await store.get_post_terms(post_id, "category") == [news]
    assert await store.get_post_terms(post_id, "post_tag") == [python]

    assert await store.get_meta(EntityKind.POST, post_id, "_color") == ["blue"]
    assert await store.get_meta(EntityKind.POST, post_id, "_layout") == [{"cols": 2}]
    assert await store.get_meta(EntityKind.POST, post_id, "_edit_last") == [editor]
    assert await store.get_meta(EntityKind.POST, post_id, "_edit_lock") == []

    first = r.map_old(EntityKind.COMMENT, 1)
    reply = r.map_old(EntityKind.COMMENT, 2)
    assert store.comments[reply].parent_id == first
    assert store.comments[first].post_id == post_id

    assert report.count(EntityKind.POST, "created") == 2
    assert report.count(EntityKind.COMMENT, "created") == 2
    assert report.count(EntityKind.TERM, "created") == 2
    assert report.count(EntityKind.USER, "created") == 2
    assert report.gaps == []
    assert report.failures == []
    assert report.version == "1.2"
    assert report.base_url == "http://old.example.com"
    assert get_counter("importer.post.created") == 2
    assert report.summary()["counts"]["post"]["created"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("prefill", [True, False])
async def test_second_run_is_idempotent(wxr, prefill):
    store = MemoryContentStore()
    flags = dict(
        prefill_existing_posts=prefill,
        prefill_existing_comments=prefill,
        prefill_existing_terms=prefill,
        prefill_existing_users=prefill,
    )
    await _run(wxr.stream(*_site(wxr)), store, **flags)
    snapshot = (len(store.posts), len(store.comments), len(store.terms), len(store.users))

    _, report = await _run(wxr.stream(*_site(wxr)), store, **flags)

    assert (len(store.posts), len(store.comments), len(store.terms), len(store.users)) == snapshot
    for kind in EntityKind:
        assert report.count(kind, "created") == 0
    assert report.count(EntityKind.POST, "duplicate") == 2
    assert report.count(EntityKind.COMMENT, "duplicate") == 2
    assert report.count(EntityKind.TERM, "duplicate") == 2
    assert report.count(EntityKind.USER, "duplicate") == 2


@pytest.mark.asyncio
async def test_bad_items_do_not_stop_the_run(wxr):
    store = MemoryContentStore()
    _, report = await _run(
        wxr.stream(
            wxr.item(10, status="auto-draft"),
            wxr.item(11, post_type=""),
            "<wp:category><wp:cat_name>No slug</wp:cat_name></wp:category>",
            wxr.item(12, title="Survivor"),
        ),
        store,
    )
    assert [p.title for p in store.posts.values()] == ["Survivor"]
    assert report.count(EntityKind.POST, "skipped") == 1
    assert report.count(EntityKind.POST, "failed") == 1
    assert report.count(EntityKind.TERM, "failed") == 1
    assert len(report.failures) == 2


@pytest.mark.asyncio
async def test_truncated_document_keeps_earlier_entities(wxr):
    data = wxr.document(wxr.item(10, title="Kept")).replace(
        b"</channel></rss>", b"<item><title>cut off"
    )
    store = MemoryContentStore()
    importer = WXRImporter(store)

    report = await importer.import_file(io.BytesIO(data))
    assert [p.title for p in store.posts.values()] == ["Kept"]
    assert report.aborted is not None


@pytest.mark.asyncio
async def test_missing_file_is_fatal(tmp_path):
    importer = WXRImporter(MemoryContentStore())
    with pytest.raises(CannotOpenSource):
        await importer.import_file(tmp_path / "missing.xml")


@pytest.mark.asyncio
async def test_newer_version_still_imports(wxr):
    wxr.version = "1.3"
    store = MemoryContentStore()
    _, report = await _run(wxr.stream(wxr.item(10)), store)
    assert report.version == "1.3"
    assert len(store.posts) == 1


@pytest.mark.asyncio
async def test_import_from_path(wxr, tmp_path):
    path = tmp_path / "export.xml"
    path.write_bytes(wxr.document(wxr.item(10)))
    store = MemoryContentStore()
    _, report = await _run(path, store)
    assert report.source == str(path)
    assert len(store.posts) == 1
