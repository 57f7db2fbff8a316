import pytest
from sqlalchemy import func, select

from Siteporter import models
from Siteporter.config import ImportOptions
from Siteporter.importer import WXRImporter
from Siteporter.records import EntityKind
from Siteporter.store import SqlContentStore


def _blocks(wxr):
    return (
        wxr.author("admin", 1),
        wxr.category("news", old_id=3),
        wxr.category("world", parent="news", old_id=5),
        wxr.item(
            20,
            title="Child",
            post_type="page",
            parent=10,
            author="admin",
            categories=(("category", "world"),),
            meta=(("_layout", 'a:1:{s:4:"cols";i:2;}'),),
            comments=(
                wxr.comment(3, author="Bob", date="2020-01-02 10:00:00", parent=4),
                wxr.comment(4, author="Ann", date="2020-01-01 10:00:00", user_id=1),
            ),
        ),
        wxr.item(10, title="Parent", post_type="page", author="admin"),
    )


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_import_into_sql_store(db, wxr):
    store = SqlContentStore(db)
    importer = WXRImporter(store)
    report = await importer.import_file(wxr.stream(*_blocks(wxr)))
    r = importer.registry

    assert report.gaps == []
    assert report.failures == []
    assert await _count(db, models.Post) == 2
    assert await _count(db, models.Comment) == 2
    assert await _count(db, models.Term) == 2
    assert await _count(db, models.User) == 1

    child = await store.get_post(r.map_old(EntityKind.POST, 20))
    assert child is not None
    assert child.parent_id == r.map_old(EntityKind.POST, 10)
    assert child.author_id == r.map_user_slug("admin")
    assert await store.get_meta(EntityKind.POST, child.id, "_layout") == [{"cols": 2}]
    assert await store.get_meta(EntityKind.POST, child.id, "_wxr_import_parent") == []

    world = await store.get_term(await store.find_term("category", "world"))
    assert world is not None and world.parent_id == await store.find_term("category", "news")
    assert await store.get_post_terms(child.id, "category") == [world.id]

    reply = await store.get_comment(r.map_old(EntityKind.COMMENT, 3))
    assert reply is not None and reply.parent_id == r.map_old(EntityKind.COMMENT, 4)
    ann = await store.get_comment(r.map_old(EntityKind.COMMENT, 4))
    assert ann is not None and ann.user_id == r.map_user_slug("admin")


@pytest.mark.asyncio
@pytest.mark.parametrize("prefill", [True, False])
async def test_sql_rerun_adds_nothing(db, wxr, prefill):
    options = ImportOptions(
        prefill_existing_posts=prefill,
        prefill_existing_comments=prefill,
        prefill_existing_terms=prefill,
        prefill_existing_users=prefill,
    )
    store = SqlContentStore(db)
    await WXRImporter(store, options).import_file(wxr.stream(*_blocks(wxr)))
    report = await WXRImporter(store, options).import_file(wxr.stream(*_blocks(wxr)))

    assert await _count(db, models.Post) == 2
    assert await _count(db, models.Comment) == 2
    assert await _count(db, models.Term) == 2
    assert await _count(db, models.User) == 1
    assert report.count(EntityKind.POST, "created") == 0
    assert report.count(EntityKind.COMMENT, "duplicate") == 2
