import pytest

from Siteporter.metrics import get_counter
from Siteporter.records import EntityKind
from Siteporter.registry import IdentityRegistry, RegistryMode


def test_first_mapping_wins_and_zero_is_ignored():
    r = IdentityRegistry()
    r.record_mapping(EntityKind.POST, 10, 1)
    r.record_mapping(EntityKind.POST, 10, 2)
    r.record_mapping(EntityKind.POST, 0, 3)
    assert r.map_old(EntityKind.POST, 10) == 1
    assert r.map_old(EntityKind.POST, 0) is None
    assert r.map_old(EntityKind.COMMENT, 10) is None
    assert r.mapped_count(EntityKind.POST) == 1


def test_user_slug_aliases():
    r = IdentityRegistry()
    r.record_user_slug("admin", 5)
    r.record_user_slug("admin", 6)
    r.record_user_slug("", 7)
    assert r.map_user_slug("admin") == 5
    assert r.map_user_slug("") is None


@pytest.mark.asyncio
async def test_lazy_lookup_caches_negative_answers():
    calls: list[tuple] = []

    async def lookup(*parts):
        calls.append(parts)
        return 42 if parts == ("known",) else None

    r = IdentityRegistry()
    r.use_lookup(EntityKind.POST, lookup)
    assert r.mode(EntityKind.POST) is RegistryMode.LAZY
    assert await r.exists_by_key(EntityKind.POST, "known") == 42
    assert await r.exists_by_key(EntityKind.POST, "missing") is None
    assert await r.exists_by_key(EntityKind.POST, "missing") is None
    assert calls == [("known",), ("missing",)]
    assert get_counter("registry.post.lookup") == 2

    # A later creation replaces the cached miss
    r.record_exists(EntityKind.POST, "missing", 7)
    assert await r.exists_by_key(EntityKind.POST, "missing") == 7


@pytest.mark.asyncio
async def test_lazy_lookup_receives_natural_key_parts():
    seen = []

    async def lookup(author, date):
        seen.append((author, date))
        return None

    r = IdentityRegistry()
    r.use_lookup(EntityKind.COMMENT, lookup)
    await r.exists_by_key(EntityKind.COMMENT, "fingerprint", "Ann", "2020-01-01 00:00:00")
    assert seen == [("Ann", "2020-01-01 00:00:00")]


@pytest.mark.asyncio
async def test_prefilled_mode_never_queries():
    async def lookup(*parts):  # pragma: no cover - must not run
        raise AssertionError("lookup called in prefilled mode")

    r = IdentityRegistry()
    r.use_lookup(EntityKind.TERM, lookup)
    assert r.prefill(EntityKind.TERM, [("a", 1), ("b", 2)]) == 2
    assert r.mode(EntityKind.TERM) is RegistryMode.PREFILLED
    assert await r.exists_by_key(EntityKind.TERM, "a") == 1
    assert await r.exists_by_key(EntityKind.TERM, "zzz") is None


def test_pending_keeps_flag_order():
    r = IdentityRegistry()
    for new_id in (5, 2, 9):
        r.flag(EntityKind.POST, new_id)
    r.flag(EntityKind.POST, 2)
    r.unflag(EntityKind.POST, 9)
    assert r.pending(EntityKind.POST) == [5, 2]
    assert r.is_flagged(EntityKind.POST, 5)
    assert not r.is_flagged(EntityKind.POST, 9)


def test_seed_users_skips_incomplete_entries():
    r = IdentityRegistry()
    applied = r.seed_users(
        [
            {"old_slug": "admin", "old_id": 1, "new_id": 40},
            {"old_slug": "editor", "old_id": "2", "new_id": "41"},
            {"old_slug": "nobody", "old_id": 3},
            {"old_slug": "bad", "old_id": "x", "new_id": 5},
        ]
    )
    assert applied == 2
    assert r.map_old(EntityKind.USER, 1) == 40
    assert r.map_user_slug("editor") == 41
    assert r.map_user_slug("nobody") is None
    assert r.map_user_slug("bad") is None
