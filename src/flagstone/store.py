from __future__ import annotations
import time
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Literal

from .model import ConfigSnapshot, FlagConfiguration, Segment


logger = logging.getLogger(__name__)

type ItemKind = Literal["flag", "segment"]
type EntryState = Literal["ABSENT", "LOADING", "FRESH", "STALE"]
type Item = FlagConfiguration | Segment


def kind_of(item: Item) -> ItemKind:
    if isinstance(item, FlagConfiguration):
        return "flag"
    if isinstance(item, Segment):
        return "segment"
    raise TypeError(f"expected a flag or a segment, not {type(item).__name__}")


@dataclass(frozen=True, slots=True)
class _Entry:
    # item is None while LOADING and for deletion tombstones.
    item: Item | None
    version: int
    received_at: float
    deleted: bool = False


class _State:
    """
    Immutable pair of the entry table and the snapshot derived from it. The
    store publishes a new _State on every write; readers grab one reference
    and never see a half-applied update.
    """

    __slots__ = ("entries", "snapshot")
    entries: dict[tuple[ItemKind, str], _Entry]
    snapshot: ConfigSnapshot

    def __init__(self, environment_id: str, entries: dict[tuple[ItemKind, str], _Entry]):
        self.entries = entries
        flags = {}
        segments = {}
        for (kind, key), e in entries.items():
            if e.item is None:
                continue
            if kind == "flag":
                flags[key] = e.item
            else:
                segments[key] = e.item
        self.snapshot = ConfigSnapshot(environment_id, flags, segments)


class VersionedConfigStore:
    """
    In-memory copy of one environment's flags and segments, each entry tagged
    with the version it was received at.

    Entry lifecycle: ABSENT -> LOADING -> FRESH -> STALE -> ABSENT (evicted).
    An update is accepted only when its version is strictly greater than the
    cached one, so duplicate and out of order notifications are no-ops. STALE
    entries (older than ttl without a confirmed refresh) are still served.

    Writers are serialized by a lock and publish a fresh immutable state with a
    single reference assignment. Readers never lock.
    """

    def __init__(self, environment_id: str = "", ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._environment_id = environment_id
        self._ttl = ttl
        self._clock = clock
        self._write_mu = threading.Lock()
        self._state = _State(environment_id, {})

    @property
    def environment_id(self) -> str:
        return self._environment_id

    @property
    def ttl(self) -> float:
        return self._ttl

    def now(self) -> float:
        return self._clock()

    def snapshot(self) -> ConfigSnapshot:
        return self._state.snapshot

    def get_flag(self, key: str) -> FlagConfiguration | None:
        return self._state.snapshot.flags.get(key)

    def get_segment(self, key: str) -> Segment | None:
        return self._state.snapshot.segments.get(key)

    def version(self, kind: ItemKind, key: str) -> int | None:
        """
        The version last received for the item, including deletions. None when
        nothing was ever received.
        """
        e = self._state.entries.get((kind, key))
        if e is None or (e.item is None and not e.deleted):
            return None
        return e.version

    def state(self, kind: ItemKind, key: str) -> EntryState:
        e = self._state.entries.get((kind, key))
        if e is None or e.deleted:
            return "ABSENT"
        if e.item is None:
            return "LOADING"
        if self._clock() - e.received_at >= self._ttl:
            return "STALE"
        return "FRESH"

    def stale_items(self) -> list[tuple[ItemKind, str]]:
        now = self._clock()
        return [
            k
            for k, e in self._state.entries.items()
            if e.item is not None and now - e.received_at >= self._ttl
        ]

    def loading_items(self) -> list[tuple[ItemKind, str]]:
        return [k for k, e in self._state.entries.items() if e.item is None and not e.deleted]

    def _write(self, fn: Callable[[dict[tuple[ItemKind, str], _Entry], float], bool]) -> bool:
        with self._write_mu:
            entries = dict(self._state.entries)
            changed = fn(entries, self._clock())
            if changed:
                self._state = _State(self._environment_id, entries)
        return changed

    def begin_load(self, kind: ItemKind, key: str) -> bool:
        """
        Mark an ABSENT item as LOADING. Returns False if the item is already
        present or loading.
        """

        def fn(entries, now):
            e = entries.get((kind, key))
            if e is not None and not e.deleted:
                return False
            entries[(kind, key)] = _Entry(None, e.version if e is not None else -1, now)
            return True

        return self._write(fn)

    @staticmethod
    def _apply_one(entries: dict[tuple[ItemKind, str], _Entry], item: Item, now: float) -> bool:
        k = (kind_of(item), item.key)
        e = entries.get(k)
        if e is not None and (e.item is not None or e.deleted) and item.version <= e.version:
            logger.debug("ignoring %s %s version %d, have %d", k[0], k[1], item.version, e.version)
            return False
        entries[k] = _Entry(item, item.version, now)
        return True

    def apply(self, item: Item) -> bool:
        """
        Install item if its version is newer than the cached one. Returns
        whether the store changed.
        """
        return self._write(lambda entries, now: self._apply_one(entries, item, now))

    def apply_many(self, items: Iterable[Item]) -> list[tuple[ItemKind, str]]:
        """
        Apply a batch of items in a single swap. Returns the (kind, key) pairs
        that were installed.
        """
        applied: list[tuple[ItemKind, str]] = []

        def fn(entries, now):
            for item in items:
                if self._apply_one(entries, item, now):
                    applied.append((kind_of(item), item.key))
            return bool(applied)

        self._write(fn)
        return applied

    def _adopt_environment(self, snapshot: ConfigSnapshot):
        # A store created without an environment takes the one of the first
        # snapshot it is given.
        if not self._environment_id:
            with self._write_mu:
                self._environment_id = snapshot.environment_id

    def load(self, snapshot: ConfigSnapshot) -> list[tuple[ItemKind, str]]:
        self._adopt_environment(snapshot)
        return self.apply_many([*snapshot.segments.values(), *snapshot.flags.values()])

    def replace_all(self, snapshot: ConfigSnapshot, fetched_at: float | None = None) -> list[tuple[ItemKind, str]]:
        """
        Make the store mirror a complete snapshot: newer items are applied and
        items missing from the snapshot are evicted. Used for full polls.

        fetched_at is the clock value (see now) taken before the snapshot was
        requested. Entries received since then are newer than the snapshot and
        survive even when it lacks them. When None, every missing entry goes.
        """
        self._adopt_environment(snapshot)
        applied: list[tuple[ItemKind, str]] = []
        present = set(("flag", k) for k in snapshot.flags) | set(("segment", k) for k in snapshot.segments)

        def fn(entries, now):
            changed = False
            for item in [*snapshot.segments.values(), *snapshot.flags.values()]:
                k = (kind_of(item), item.key)
                if self._apply_one(entries, item, now):
                    applied.append(k)
                elif entries[k].version == item.version and not entries[k].deleted:
                    # Source confirmed the version we hold.
                    entries[k] = replace(entries[k], received_at=now)
                    changed = True
            for k in list(entries):
                e = entries[k]
                if k in present or e.deleted:
                    continue
                if fetched_at is None or e.received_at < fetched_at:
                    del entries[k]
                    changed = True
            return changed or bool(applied)

        self._write(fn)
        return applied

    def remove(self, kind: ItemKind, key: str, version: int) -> bool:
        """
        Record a deletion at version. The tombstone keeps older updates from
        bringing the item back.
        """

        def fn(entries, now):
            e = entries.get((kind, key))
            if e is not None and (e.item is not None or e.deleted) and version <= e.version:
                return False
            entries[(kind, key)] = _Entry(None, version, now, deleted=True)
            return True

        return self._write(fn)

    def touch(self, kind: ItemKind, key: str) -> bool:
        """
        The source confirmed the cached version is current: reset its TTL.
        """

        def fn(entries, now):
            e = entries.get((kind, key))
            if e is None or e.item is None:
                return False
            entries[(kind, key)] = replace(e, received_at=now)
            return True

        return self._write(fn)

    def mark_stale(self, kind: ItemKind, key: str) -> bool:
        def fn(entries, now):
            e = entries.get((kind, key))
            if e is None or e.item is None:
                return False
            entries[(kind, key)] = replace(e, received_at=float("-inf"))
            return True

        return self._write(fn)

    def evict(self, kind: ItemKind, key: str) -> bool:
        def fn(entries, now):
            return entries.pop((kind, key), None) is not None

        return self._write(fn)
