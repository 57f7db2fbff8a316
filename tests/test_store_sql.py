import pytest

from Siteporter.errors import StoreRejected
from Siteporter.records import CommentRecord, EntityKind, PostRecord, TermRecord, UserRecord
from Siteporter.store import SqlContentStore


@pytest.mark.asyncio
async def test_create_and_find_entities(db):
    store = SqlContentStore(db)
    user_id = await store.create_user(UserRecord(login="admin", email="a@x"), login="admin")
    post_id = await store.create_post(
        PostRecord(old_id=5, title="Hello", content="<p>Hi</p>"),
        parent_id=0,
        author_id=user_id,
        guid="http://old.example.com/?p=5",
    )
    comment_id = await store.create_comment(
        CommentRecord(author="Ann", date="2020-01-01 10:00:00"),
        post_id=post_id,
        parent_id=0,
        user_id=None,
    )
    term_id = await store.create_term(TermRecord(taxonomy="category", slug="news"), parent_id=0)

    assert await store.find_user("admin") == user_id
    assert await store.find_post_by_guid("http://old.example.com/?p=5") == post_id
    assert await store.find_comment("Ann", "2020-01-01 10:00:00") == comment_id
    assert await store.find_term("category", "news") == term_id
    assert await store.find_term("category", "missing") is None

    assert await store.get_existing_posts() == [("http://old.example.com/?p=5", post_id)]
    assert await store.get_existing_comments() == [("Ann", "2020-01-01 10:00:00", comment_id)]
    assert await store.get_existing_terms() == [("category", "news", term_id)]
    assert await store.get_existing_users() == [("admin", user_id)]

    post = await store.get_post(post_id)
    assert post is not None
    assert (post.title, post.author_id, post.parent_id) == ("Hello", user_id, 0)
    term = await store.get_term(term_id)
    assert term is not None and term.name == "news"


@pytest.mark.asyncio
async def test_meta_round_trips_structured_values(db):
    store = SqlContentStore(db)
    post_id = await store.create_post(PostRecord(old_id=1), parent_id=0, author_id=None, guid="g1")
    await store.attach_meta(EntityKind.POST, post_id, "_settings", {"size": "large", "count": 3})
    await store.attach_meta(EntityKind.POST, post_id, "_wxr_import_term", {"slug": "a"})
    await store.attach_meta(EntityKind.POST, post_id, "_wxr_import_term", {"slug": "b"})

    assert await store.get_meta(EntityKind.POST, post_id, "_settings") == [{"size": "large", "count": 3}]

    await store.delete_meta(EntityKind.POST, post_id, "_wxr_import_term", {"slug": "a"})
    assert await store.get_meta(EntityKind.POST, post_id, "_wxr_import_term") == [{"slug": "b"}]

    await store.update_meta(EntityKind.POST, post_id, "_settings", 7)
    assert await store.get_meta(EntityKind.POST, post_id, "_settings") == [7]

    await store.delete_meta(EntityKind.POST, post_id, "_wxr_import_term")
    assert await store.get_meta(EntityKind.POST, post_id, "_wxr_import_term") == []


@pytest.mark.asyncio
async def test_set_post_terms_replace_and_append(db):
    store = SqlContentStore(db)
    post_id = await store.create_post(PostRecord(old_id=1), parent_id=0, author_id=None, guid="g1")
    a = await store.create_term(TermRecord(taxonomy="category", slug="a"), parent_id=0)
    b = await store.create_term(TermRecord(taxonomy="category", slug="b"), parent_id=0)
    c = await store.create_term(TermRecord(taxonomy="post_tag", slug="c"), parent_id=0)

    await store.set_post_terms(post_id, "category", [a, b])
    await store.set_post_terms(post_id, "post_tag", [c])
    await store.set_post_terms(post_id, "category", [b])
    assert await store.get_post_terms(post_id, "category") == [b]
    await store.set_post_terms(post_id, "category", [a], append=True)
    assert await store.get_post_terms(post_id, "category") == sorted([a, b])
    assert await store.get_post_terms(post_id) == sorted([a, b, c])


@pytest.mark.asyncio
async def test_rejection_keeps_earlier_writes(db):
    store = SqlContentStore(db)
    first = await store.create_term(TermRecord(taxonomy="category", slug="news"), parent_id=0)
    with pytest.raises(StoreRejected):
        await store.create_term(TermRecord(taxonomy="category", slug="news"), parent_id=0)
    with pytest.raises(StoreRejected):
        await store.create_user(UserRecord(login="x"), login="dup")
        await store.create_user(UserRecord(login="y"), login="dup")
    # The session is usable again and the first term is still there
    assert await store.find_term("category", "news") == first
    assert await store.find_user("dup") is not None


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(db):
    store = SqlContentStore(db)
    post_id = await store.create_post(PostRecord(old_id=1), parent_id=0, author_id=None, guid="g1")
    with pytest.raises(StoreRejected):
        await store.update_post(post_id, title="nope")
    await store.update_post(post_id, parent_id=9, content="new")
    post = await store.get_post(post_id)
    assert post is not None
    assert (post.parent_id, post.content) == (9, "new")


@pytest.mark.asyncio
async def test_rewrite_content_covers_bodies_and_enclosures(db):
    store = SqlContentStore(db)
    p1 = await store.create_post(
        PostRecord(old_id=1, content='<a href="http://old/a.mp3">a</a>'),
        parent_id=0,
        author_id=None,
        guid="g1",
    )
    await store.create_post(PostRecord(old_id=2, content="plain"), parent_id=0, author_id=None, guid="g2")
    await store.attach_meta(EntityKind.POST, p1, "enclosure", "http://old/a.mp3\n1234\naudio/mpeg")

    changed = await store.rewrite_content(lambda text: text.replace("http://old/", "/uploads/"))
    assert changed == 2
    post = await store.get_post(p1)
    assert post is not None and post.content == '<a href="/uploads/a.mp3">a</a>'
    assert await store.get_meta(EntityKind.POST, p1, "enclosure") == ["/uploads/a.mp3\n1234\naudio/mpeg"]
    await store.stick_post(p1)
    post = await store.get_post(p1)
    assert post is not None and post.is_sticky is True
