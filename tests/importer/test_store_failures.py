"""Store rejections outside entity creation stay local to one entity."""

import pytest

from Siteporter.config import ImportOptions
from Siteporter.errors import StoreRejected
from Siteporter.importer import META_PARENT, WXRImporter
from Siteporter.records import EntityKind, UnresolvedReference
from Siteporter.store import MemoryContentStore


class _StickyRefused(MemoryContentStore):
    async def stick_post(self, post_id):
        raise StoreRejected("sticky refused")


class _LookupRefused(MemoryContentStore):
    async def find_term(self, taxonomy, slug):
        if slug == "bad":
            raise StoreRejected("term lookup failed")
        return await super().find_term(taxonomy, slug)

    async def find_post_by_guid(self, guid):
        if guid.endswith("?p=10"):
            raise StoreRejected("guid lookup failed")
        return await super().find_post_by_guid(guid)


class _MetaReadRefused(MemoryContentStore):
    async def get_meta(self, kind, object_id, key):
        if kind is EntityKind.POST and key == META_PARENT:
            raise StoreRejected("meta read failed")
        return await super().get_meta(kind, object_id, key)


@pytest.mark.asyncio
async def test_rejected_sticky_flag_keeps_post_and_mapping(wxr):
    store = _StickyRefused()
    importer = WXRImporter(store)
    report = await importer.import_file(
        wxr.stream(wxr.item(10, title="Pinned", sticky=True), wxr.item(11, title="After"))
    )
    assert sorted(p.title for p in store.posts.values()) == ["After", "Pinned"]
    assert importer.registry.map_old(EntityKind.POST, 10) is not None
    assert report.count(EntityKind.POST, "created") == 2
    assert report.failures == []


@pytest.mark.asyncio
async def test_rejected_lookups_fail_one_entity_each(wxr):
    store = _LookupRefused()
    options = ImportOptions(prefill_existing_posts=False, prefill_existing_terms=False)
    importer = WXRImporter(store, options)
    report = await importer.import_file(
        wxr.stream(
            wxr.category("bad"),
            wxr.category("good"),
            wxr.item(10, title="Unreachable"),
            wxr.item(11, title="Tagged", categories=(("category", "bad"), ("category", "good"))),
        )
    )

    assert [t.slug for t in store.terms.values()] == ["good"]
    assert [p.title for p in store.posts.values()] == ["Tagged"]
    assert report.count(EntityKind.TERM, "failed") == 1
    assert report.count(EntityKind.POST, "failed") == 1
    assert {f["entity"] for f in report.failures} == {"category:bad", "Unreachable"}

    post_id = importer.registry.map_old(EntityKind.POST, 11)
    good = await store.find_term("category", "good")
    assert await store.get_post_terms(post_id, "category") == [good]
    assert report.gaps == [
        UnresolvedReference(
            EntityKind.POST, post_id, "terms", {"taxonomy": "category", "slug": "bad", "name": "bad"}
        )
    ]


@pytest.mark.asyncio
async def test_rejected_reads_in_deferred_pass_do_not_end_the_run(wxr):
    store = _MetaReadRefused()
    importer = WXRImporter(store)
    report = await importer.import_file(
        wxr.stream(
            wxr.item(20, title="Child", post_type="page", parent=10),
            wxr.item(10, title="Parent", post_type="page"),
        )
    )
    child = store.posts[importer.registry.map_old(EntityKind.POST, 20)]
    assert child.parent_id == 0
    assert report.count(EntityKind.POST, "created") == 2
    assert report.remap_passes == 1
    assert importer.registry.is_flagged(EntityKind.POST, child.id)
