from __future__ import annotations
import queue
import logging
import datetime
import threading
from abc import abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace

from .errors import NotFoundError
from .model import ConfigSnapshot, DictConfig, FlagConfiguration, Segment, check_references
from .store import ItemKind


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    Emitted by the system of record for every committed mutation.
    """

    kind: ItemKind
    key: str
    environment_id: str
    version: int
    deleted: bool = False


class Subscription:
    """
    Ordered, reliable stream of change events for one environment. Iterating
    blocks until the next event and stops once the subscription is closed.
    """

    def __init__(self, environment_id: str, on_close: Callable[[Subscription], None] | None = None):
        self.environment_id = environment_id
        self._queue: queue.Queue[ChangeEvent | None] = queue.Queue()
        self._closed = threading.Event()
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, event: ChangeEvent):
        if not self._closed.is_set():
            self._queue.put(event)

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """
        Next event, or None on timeout or once the subscription is closed.
        """
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        # Wake up a blocked consumer.
        self._queue.put(None)
        if self._on_close is not None:
            self._on_close(self)

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class ConfigurationRepository:
    """
    The system of record as seen by the cache layers. Implementations wrap
    whatever store actually owns the canonical configuration.
    """

    @abstractmethod
    def get_flag(self, environment_id: str, key: str) -> FlagConfiguration:
        """
        Raises NotFoundError if the flag does not exist.
        """

    @abstractmethod
    def list_flags(self, environment_id: str) -> list[FlagConfiguration]: ...

    @abstractmethod
    def get_segment(self, environment_id: str, key: str) -> Segment:
        """
        Raises NotFoundError if the segment does not exist.
        """

    @abstractmethod
    def list_segments(self, environment_id: str) -> list[Segment]: ...

    @abstractmethod
    def subscribe_to_changes(self, environment_id: str) -> Subscription: ...

    def get_snapshot(self, environment_id: str) -> ConfigSnapshot:
        return ConfigSnapshot(
            environment_id,
            {f.key: f for f in self.list_flags(environment_id)},
            {s.key: s for s in self.list_segments(environment_id)},
        )


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class InMemoryRepository(ConfigurationRepository):
    """
    Reference system of record. Every mutation validates the whole resulting
    environment (unknown segments, segment cycles), assigns the next version of
    the item and publishes a ChangeEvent to every subscriber of the
    environment, in commit order.
    """

    def __init__(self, clock: Callable[[], datetime.datetime] = _utcnow):
        self._clock = clock
        self._mu = threading.RLock()
        self._environments: dict[str, ConfigSnapshot] = {}
        # Versions survive deletion so a re-created item keeps increasing.
        self._versions: dict[tuple[str, ItemKind, str], int] = {}
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)

    def _environment(self, environment_id: str) -> ConfigSnapshot:
        return self._environments.get(environment_id) or ConfigSnapshot(environment_id)

    def _next_version(self, environment_id: str, kind: ItemKind, key: str) -> int:
        return self._versions.get((environment_id, kind, key), 0) + 1

    def _commit(self, candidate: ConfigSnapshot, events: list[ChangeEvent]):
        check_references(candidate.flags, candidate.segments)
        self._environments[candidate.environment_id] = candidate
        for e in events:
            self._versions[(e.environment_id, e.kind, e.key)] = e.version
        for sub in list(self._subscriptions[candidate.environment_id]):
            for e in events:
                sub.publish(e)

    def put_flag(self, environment_id: str, key: str, flag: DictConfig | FlagConfiguration) -> FlagConfiguration:
        """
        Create or replace a flag. Any version in the input is ignored: the
        repository assigns the next one.
        """
        with self._mu:
            if not isinstance(flag, FlagConfiguration):
                flag = FlagConfiguration.from_dict(key, flag)
            flag.validate()
            version = self._next_version(environment_id, "flag", key)
            flag = replace(flag, key=key, version=version, last_modified=self._clock())
            env = self._environment(environment_id)
            candidate = ConfigSnapshot(environment_id, {**env.flags, key: flag}, env.segments)
            self._commit(candidate, [ChangeEvent("flag", key, environment_id, version)])
            logger.info("flag %s/%s is now at version %d", environment_id, key, version)
            return flag

    def put_segment(self, environment_id: str, key: str, segment: DictConfig | Segment) -> Segment:
        with self._mu:
            if not isinstance(segment, Segment):
                segment = Segment.from_dict(key, segment)
            version = self._next_version(environment_id, "segment", key)
            segment = replace(segment, key=key, version=version, last_modified=self._clock())
            env = self._environment(environment_id)
            candidate = ConfigSnapshot(environment_id, env.flags, {**env.segments, key: segment})
            self._commit(candidate, [ChangeEvent("segment", key, environment_id, version)])
            logger.info("segment %s/%s is now at version %d", environment_id, key, version)
            return segment

    def delete_flag(self, environment_id: str, key: str) -> int:
        with self._mu:
            env = self._environment(environment_id)
            if key not in env.flags:
                raise NotFoundError(f"flag {key} does not exist in environment {environment_id}")
            version = self._next_version(environment_id, "flag", key)
            flags = {k: f for k, f in env.flags.items() if k != key}
            self._commit(
                ConfigSnapshot(environment_id, flags, env.segments),
                [ChangeEvent("flag", key, environment_id, version, deleted=True)],
            )
            return version

    def delete_segment(self, environment_id: str, key: str) -> int:
        """
        Delete a segment. Fails with ConfigurationError while anything still
        references it.
        """
        with self._mu:
            env = self._environment(environment_id)
            if key not in env.segments:
                raise NotFoundError(f"segment {key} does not exist in environment {environment_id}")
            version = self._next_version(environment_id, "segment", key)
            segments = {k: s for k, s in env.segments.items() if k != key}
            self._commit(
                ConfigSnapshot(environment_id, env.flags, segments),
                [ChangeEvent("segment", key, environment_id, version, deleted=True)],
            )
            return version

    def import_config(self, environment_id: str, c: DictConfig) -> ConfigSnapshot:
        """
        Create or replace every flag and segment of an environment document in
        one commit. Segments are announced before the flags that use them.
        """
        with self._mu:
            compiled = ConfigSnapshot.from_dict(c)
            env = self._environment(environment_id)
            now = self._clock()
            events: list[ChangeEvent] = []
            segments = dict(env.segments)
            for key, s in compiled.segments.items():
                version = self._next_version(environment_id, "segment", key)
                segments[key] = replace(s, version=version, last_modified=now)
                events.append(ChangeEvent("segment", key, environment_id, version))
            flags = dict(env.flags)
            for key, f in compiled.flags.items():
                version = self._next_version(environment_id, "flag", key)
                flags[key] = replace(f, version=version, last_modified=now)
                events.append(ChangeEvent("flag", key, environment_id, version))
            candidate = ConfigSnapshot(environment_id, flags, segments)
            self._commit(candidate, events)
            return candidate

    def get_flag(self, environment_id: str, key: str) -> FlagConfiguration:
        flag = self._environment(environment_id).flags.get(key)
        if flag is None:
            raise NotFoundError(f"flag {key} does not exist in environment {environment_id}")
        return flag

    def list_flags(self, environment_id: str) -> list[FlagConfiguration]:
        return list(self._environment(environment_id).flags.values())

    def get_segment(self, environment_id: str, key: str) -> Segment:
        segment = self._environment(environment_id).segments.get(key)
        if segment is None:
            raise NotFoundError(f"segment {key} does not exist in environment {environment_id}")
        return segment

    def list_segments(self, environment_id: str) -> list[Segment]:
        return list(self._environment(environment_id).segments.values())

    def get_snapshot(self, environment_id: str) -> ConfigSnapshot:
        return self._environment(environment_id)

    def subscribe_to_changes(self, environment_id: str) -> Subscription:
        with self._mu:
            sub = Subscription(environment_id, on_close=self._unsubscribe)
            self._subscriptions[environment_id].append(sub)
            return sub

    def _unsubscribe(self, sub: Subscription):
        with self._mu:
            subs = self._subscriptions[sub.environment_id]
            if sub in subs:
                subs.remove(sub)
