"""Run-scoped identity and existence registry.

Two kinds of question are answered here:

* "what new id did old id N become?" (``map_old`` / ``record_mapping``), plus
  the user login alias table used to resolve post authors;
* "does an entity with this natural key already exist in the target?"
  (``exists_by_key`` / ``record_exists``).

Existence checks run in one of two modes per kind. ``PREFILLED`` loads every
natural key from the store once before the run and never asks the store
again. ``LAZY`` asks the kind's lookup coroutine the first time a key is seen
and caches the answer, negative answers included. Both modes give the same
outcomes; prefill trades memory for fewer queries.

The registry also holds the ordered "requires remapping" sets that the
deferred pass walks after the stream ends.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import structlog

from Siteporter.metrics import inc_counter
from Siteporter.records import EntityKind

log = structlog.get_logger()

# Called with the natural key parts, e.g. (guid,) or (author, date)
Lookup = Callable[..., Awaitable[int | None]]


class RegistryMode(str, enum.Enum):
    PREFILLED = "prefilled"
    LAZY = "lazy"


class IdentityRegistry:
    def __init__(self) -> None:
        self._mapping: dict[EntityKind, dict[int, int]] = {kind: {} for kind in EntityKind}
        self._user_slugs: dict[str, int] = {}
        self._exists: dict[EntityKind, dict[str, int | None]] = {kind: {} for kind in EntityKind}
        self._modes: dict[EntityKind, RegistryMode] = {kind: RegistryMode.LAZY for kind in EntityKind}
        self._lookups: dict[EntityKind, Lookup] = {}
        # dicts as ordered sets
        self._pending: dict[EntityKind, dict[int, None]] = {kind: {} for kind in EntityKind}

    # --- old -> new ---

    def map_old(self, kind: EntityKind, old_id: int) -> int | None:
        if not old_id:
            return None
        return self._mapping[kind].get(old_id)

    def record_mapping(self, kind: EntityKind, old_id: int, new_id: int) -> None:
        """Record old -> new; the first mapping for an old id wins."""
        if not old_id:
            return
        self._mapping[kind].setdefault(old_id, new_id)

    def map_user_slug(self, login: str) -> int | None:
        if not login:
            return None
        return self._user_slugs.get(login)

    def record_user_slug(self, login: str, new_id: int) -> None:
        if login:
            self._user_slugs.setdefault(login, new_id)

    def mapped_count(self, kind: EntityKind) -> int:
        return len(self._mapping[kind])

    # --- existence ---

    def mode(self, kind: EntityKind) -> RegistryMode:
        return self._modes[kind]

    def prefill(self, kind: EntityKind, entries: Iterable[tuple[str, int]]) -> int:
        """Bulk-load natural keys for ``kind`` and switch it to PREFILLED mode.

        Args:
            kind: Entity kind the keys belong to
            entries: ``(natural_key, existing_id)`` pairs

        Returns:
            Number of keys loaded
        """
        table = self._exists[kind]
        count = 0
        for key, existing_id in entries:
            table.setdefault(key, existing_id)
            count += 1
        self._modes[kind] = RegistryMode.PREFILLED
        log.info("registry.prefill", kind=kind.value, count=count)
        return count

    def use_lookup(self, kind: EntityKind, lookup: Lookup) -> None:
        """Resolve existence for ``kind`` lazily through ``lookup``."""
        self._lookups[kind] = lookup
        self._modes[kind] = RegistryMode.LAZY

    async def exists_by_key(self, kind: EntityKind, key: str, *natural: str) -> int | None:
        """Existing id for a natural key, or None.

        Args:
            kind: Entity kind
            key: Cache key (guid, login, or a fingerprint)
            natural: Parts passed to the LAZY lookup; defaults to ``(key,)``
        """
        table = self._exists[kind]
        if key in table:
            return table[key]
        if self._modes[kind] is RegistryMode.PREFILLED:
            return None
        lookup = self._lookups.get(kind)
        if lookup is None:
            return None
        found = await lookup(*(natural or (key,)))
        inc_counter(f"registry.{kind.value}.lookup")
        table[key] = found
        return found

    def record_exists(self, kind: EntityKind, key: str, new_id: int) -> None:
        self._exists[kind][key] = new_id

    # --- deferred pass bookkeeping ---

    def flag(self, kind: EntityKind, new_id: int) -> None:
        self._pending[kind][new_id] = None

    def unflag(self, kind: EntityKind, new_id: int) -> None:
        self._pending[kind].pop(new_id, None)

    def is_flagged(self, kind: EntityKind, new_id: int) -> bool:
        return new_id in self._pending[kind]

    def pending(self, kind: EntityKind) -> list[int]:
        """Snapshot of flagged ids, in the order they were flagged."""
        return list(self._pending[kind])

    # --- operator-provided users ---

    def seed_users(self, mapping: Iterable[Mapping[str, Any]]) -> int:
        """Seed user mappings supplied by the operator.

        Each entry needs ``old_slug``, ``old_id`` and ``new_id``; incomplete
        entries are logged and ignored.

        Returns:
            Number of entries applied
        """
        applied = 0
        for entry in mapping:
            old_slug = entry.get("old_slug")
            old_id = entry.get("old_id")
            new_id = entry.get("new_id")
            if not old_slug or not old_id or not new_id:
                log.warning("registry.user_mapping.invalid", entry=dict(entry))
                continue
            try:
                old_id, new_id = int(old_id), int(new_id)
            except (TypeError, ValueError):
                log.warning("registry.user_mapping.invalid", entry=dict(entry))
                continue
            self._mapping[EntityKind.USER][old_id] = new_id
            self._user_slugs[str(old_slug)] = new_id
            applied += 1
        return applied


__all__ = ["IdentityRegistry", "Lookup", "RegistryMode"]
