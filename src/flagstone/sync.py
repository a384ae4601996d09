from __future__ import annotations
import random
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from prometheus_client import Counter

from .errors import NotFoundError, TransientCacheError
from .model import DictConfig
from .repository import ChangeEvent, ConfigurationRepository, Subscription
from .settings import Settings
from .store import Item, ItemKind, VersionedConfigStore


logger = logging.getLogger(__name__)

_prom_refresh_failures = Counter(
    "flagstone_cache_refresh_failures",
    "Failed attempts to fetch configuration from the system of record",
    labelnames=["kind"],
)


class Backoff:
    """
    Exponential backoff: base * multiplier ** attempt, capped at ceiling. With
    jitter j, each delay is shortened by a random fraction of at most j.
    """

    __slots__ = ("base", "ceiling", "multiplier", "jitter")

    def __init__(self, base: float = 1.0, ceiling: float = 60.0, multiplier: float = 2.0, jitter: float = 0.0):
        if base < 0 or ceiling < base:
            raise ValueError("backoff requires 0 <= base <= ceiling")
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        self.base = base
        self.ceiling = ceiling
        self.multiplier = multiplier
        self.jitter = jitter

    @staticmethod
    def from_settings(settings: Settings, jitter: float = 0.0) -> Backoff:
        return Backoff(settings.backoff_base, settings.backoff_ceiling, jitter=jitter)

    def delay(self, attempt: int) -> float:
        """
        Delay before retry number attempt, counting from 0.
        """
        d = min(self.ceiling, self.base * self.multiplier ** min(attempt, 64))
        if self.jitter:
            d -= d * self.jitter * random.random()
        return d


@dataclass(frozen=True, slots=True)
class PushMessage:
    """
    Message sent over a push connection.

    put: data is the complete environment document, sent first on connect.
    patch: data is the document of one flag or segment at version.
    delete: the item was deleted at version. A None version means the item
    vanished from the source without a change event and must be evicted.
    """

    type: Literal["put", "patch", "delete"]
    environment_id: str
    kind: ItemKind | None = None
    key: str | None = None
    version: int | None = None
    data: DictConfig | None = None


type PushListener = Callable[[PushMessage], None]


class PushConnection:
    """
    One downstream subscriber of a CacheSynchronizer. A listener that raises
    is considered gone and its connection is closed.
    """

    __slots__ = ("_owner", "_listener", "_on_close", "_closed")

    def __init__(self, owner: CacheSynchronizer, listener: PushListener, on_close: Callable[[], None] | None = None):
        self._owner = owner
        self._listener = listener
        self._on_close = on_close
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def send(self, message: PushMessage) -> bool:
        if self._closed:
            return False
        try:
            self._listener(message)
        except Exception:
            logger.exception("push listener failed on %s message, closing connection", message.type)
            self.close()
            return False
        return True

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._owner._disconnect(self)
        if self._on_close is not None:
            try:
                self._on_close()
            except Exception:
                logger.exception("error in push connection close callback")


def _item_message(environment_id: str, kind: ItemKind, item: Item) -> PushMessage:
    return PushMessage("patch", environment_id, kind, item.key, item.version, item.to_dict())


class CacheSynchronizer:
    """
    Keeps a VersionedConfigStore consistent with a ConfigurationRepository and
    fans changes out to push connections (typically SDK clients).

    Change events are consumed in order on one background thread. An event is
    dropped when the store already holds its version or newer; otherwise the
    item is fetched, applied and pushed. Fetch failures are retried with
    backoff, after which the entry is marked STALE and keeps being served
    until the periodic refresh succeeds.
    """

    def __init__(
        self,
        repository: ConfigurationRepository,
        environment_id: str,
        store: VersionedConfigStore | None = None,
        settings: Settings | None = None,
        backoff: Backoff | None = None,
        max_fetch_attempts: int = 3,
    ):
        settings = settings or Settings()
        self._repository = repository
        self._environment_id = environment_id
        self._store = store if store is not None else VersionedConfigStore(environment_id, ttl=settings.cache_ttl)
        self._backoff = backoff or Backoff.from_settings(settings, jitter=0.1)
        self._max_fetch_attempts = max(1, max_fetch_attempts)
        self._refresh_interval = min(self._store.ttl, settings.poll_interval)
        self._connections_mu = threading.RLock()
        self._connections: list[PushConnection] = []
        self._subscription: Subscription | None = None
        self._stop_wait = threading.Event()

    @property
    def store(self) -> VersionedConfigStore:
        return self._store

    @property
    def environment_id(self) -> str:
        return self._environment_id

    def start(self):
        """
        Subscribe to changes, load the whole environment and start the
        consumer and refresh threads. Subscribing first guarantees no change
        between the load and the subscription is lost.
        """
        self._subscription = self._repository.subscribe_to_changes(self._environment_id)
        self.load_all()
        threading.Thread(target=self._consume, name="flagstone-sync-consumer", daemon=True).start()
        threading.Thread(target=self._refresh, name="flagstone-sync-refresh", daemon=True).start()

    def stop(self):
        self._stop_wait.set()
        if self._subscription is not None:
            self._subscription.close()
        with self._connections_mu:
            connections = list(self._connections)
        for conn in connections:
            conn.close()

    def _fetch[T](self, kind: str, what: str, fn: Callable[[], T]) -> T:
        last: Exception | None = None
        for attempt in range(self._max_fetch_attempts):
            try:
                return fn()
            except NotFoundError:
                raise
            except Exception as e:
                last = e
                _prom_refresh_failures.labels(kind=kind).inc()
                logger.warning("fetching %s failed (attempt %d/%d): %s", what, attempt + 1, self._max_fetch_attempts, e)
            if attempt + 1 < self._max_fetch_attempts and self._stop_wait.wait(self._backoff.delay(attempt)):
                break
        raise TransientCacheError(f"could not fetch {what}") from last

    def _fetch_item(self, kind: ItemKind, key: str) -> Item:
        if kind == "flag":
            return self._fetch(kind, f"flag {key}", lambda: self._repository.get_flag(self._environment_id, key))
        return self._fetch(kind, f"segment {key}", lambda: self._repository.get_segment(self._environment_id, key))

    def load_all(self):
        """
        Replace the store content with the repository's full snapshot and push
        it to every connection.
        """
        fetched_at = self._store.now()
        snapshot = self._fetch("snapshot", "snapshot", lambda: self._repository.get_snapshot(self._environment_id))
        applied = self._store.replace_all(snapshot, fetched_at)
        logger.info(
            "loaded %d flags and %d segments of environment %s (%d changed)",
            len(snapshot.flags),
            len(snapshot.segments),
            self._environment_id,
            len(applied),
        )
        self._broadcast(PushMessage("put", self._environment_id, data=self._store.snapshot().to_dict()))

    def handle_event(self, event: ChangeEvent) -> bool:
        """
        Process one change event. Returns whether the store changed.
        """
        if event.environment_id != self._environment_id:
            return False
        cached = self._store.version(event.kind, event.key)
        if cached is not None and event.version <= cached:
            logger.debug("ignoring %s %s version %d, have %d", event.kind, event.key, event.version, cached)
            return False

        if event.deleted:
            if not self._store.remove(event.kind, event.key, event.version):
                return False
            self._broadcast(PushMessage("delete", self._environment_id, event.kind, event.key, event.version))
            return True

        self._store.begin_load(event.kind, event.key)
        try:
            item = self._fetch_item(event.kind, event.key)
        except NotFoundError:
            # Deleted again before we got to it; its deletion event follows.
            logger.debug("%s %s vanished before it could be fetched", event.kind, event.key)
            if self._store.state(event.kind, event.key) == "LOADING":
                self._store.evict(event.kind, event.key)
            return False
        except TransientCacheError as e:
            logger.warning("%s, serving the cached %s %s as stale", e, event.kind, event.key)
            self._store.mark_stale(event.kind, event.key)
            return False

        if not self._store.apply(item):
            return False
        self._broadcast(_item_message(self._environment_id, event.kind, item))
        return True

    def refresh_stale(self) -> int:
        """
        Re-fetch every STALE or LOADING entry. Returns how many entries were
        confirmed or updated.
        """
        refreshed = 0
        for kind, key in self._store.stale_items() + self._store.loading_items():
            try:
                item = self._fetch_item(kind, key)
            except NotFoundError:
                # Deleted at the source without us seeing the event.
                if self._store.evict(kind, key):
                    self._broadcast(PushMessage("delete", self._environment_id, kind, key))
                continue
            except TransientCacheError as e:
                logger.warning("%s, still serving stale", e)
                continue
            if self._store.apply(item):
                self._broadcast(_item_message(self._environment_id, kind, item))
            else:
                self._store.touch(kind, key)
            refreshed += 1
        return refreshed

    def connect(self, listener: PushListener, on_close: Callable[[], None] | None = None) -> PushConnection:
        """
        Register a push listener. It first receives a put of the complete
        current snapshot, then every subsequent change in order.
        """
        conn = PushConnection(self, listener, on_close)
        with self._connections_mu:
            # Holding the lock keeps patches from overtaking the initial put.
            if conn.send(PushMessage("put", self._environment_id, data=self._store.snapshot().to_dict())):
                self._connections.append(conn)
        return conn

    def _disconnect(self, conn: PushConnection):
        with self._connections_mu:
            if conn in self._connections:
                self._connections.remove(conn)

    def _broadcast(self, message: PushMessage):
        with self._connections_mu:
            for conn in list(self._connections):
                conn.send(message)

    def _consume(self):
        assert self._subscription is not None
        for event in self._subscription:
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("error handling change event %s", event)

    def _refresh(self):
        while not self._stop_wait.wait(self._refresh_interval):
            try:
                self.refresh_stale()
            except Exception:
                logger.exception("error refreshing stale entries")
