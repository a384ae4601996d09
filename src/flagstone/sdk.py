from __future__ import annotations
import time
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Literal

from .engine import ENGINE_DEFAULT, AnalyticsSink, Evaluator
from .model import ConfigSnapshot, Context, DictConfig, EvaluationResult, FlagConfiguration, Segment
from .settings import Settings
from .store import VersionedConfigStore
from .sync import Backoff, PushConnection, PushListener, PushMessage


logger = logging.getLogger(__name__)

type Status = Literal["INITIALIZING", "VALID", "DEGRADED"]
type StreamConnector = Callable[[PushListener, Callable[[], None]], PushConnection]
type Fetcher = Callable[[], ConfigSnapshot | DictConfig]


class SDKClient:
    """
    Client-side cache of one environment. Evaluations are served from memory
    and never wait on the network.

    The client prefers a push stream (`connect`, e.g. CacheSynchronizer.connect)
    and falls back to polling (`fetch`) whenever the stream is down, retrying
    the stream with exponential backoff. After
    settings.max_consecutive_failures failed syncs in a row the status turns
    DEGRADED; the last known good snapshot keeps being served regardless.
    """

    def __init__(
        self,
        environment_id: str = "",
        connect: StreamConnector | None = None,
        fetch: Fetcher | None = None,
        settings: Settings | None = None,
        bootstrap: bytes | ConfigSnapshot | None = None,
        sink: AnalyticsSink | None = None,
        backoff: Backoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or Settings()
        self._environment_id = environment_id
        self._connect = connect
        self._fetch = fetch
        self._backoff = backoff or Backoff.from_settings(self._settings, jitter=0.1)
        self._store = VersionedConfigStore(environment_id, ttl=self._settings.cache_ttl, clock=clock)
        self._evaluator = Evaluator(
            self._store,
            sink,
            export_interval=self._settings.export_interval,
            export_buffer_size=self._settings.export_buffer_size,
        )

        self._mu = threading.Lock()
        self._status: Status = "INITIALIZING"
        self._failures = 0
        self._connection: PushConnection | None = None
        self._stop_wait = threading.Event()
        self._wake = threading.Event()

        if bootstrap is not None:
            snapshot = ConfigSnapshot.from_bytes(bootstrap) if isinstance(bootstrap, bytes) else bootstrap
            self._store.load(snapshot)
            logger.info("bootstrapped %d flags from a saved snapshot", len(snapshot.flags))

    @property
    def status(self) -> Status:
        return self._status

    @property
    def store(self) -> VersionedConfigStore:
        return self._store

    @property
    def streaming(self) -> bool:
        conn = self._connection
        return conn is not None and conn.is_open

    def start(self):
        """
        Perform the initial sync and start the background worker.
        """
        if not (self._settings.stream and self._try_connect()):
            self.poll_once()
        threading.Thread(target=self._worker, name="flagstone-sdk", daemon=True).start()

    def close(self):
        self._stop_wait.set()
        self._wake.set()
        with self._mu:
            conn, self._connection = self._connection, None
        if conn is not None:
            conn.close()
        self._evaluator.stop_exporter()

    def _record_success(self):
        with self._mu:
            self._failures = 0
            if self._status != "VALID":
                logger.info("environment %s is in sync", self._environment_id)
            self._status = "VALID"

    def _record_failure(self, msg: str, *args: Any):
        logger.warning(msg, *args)
        with self._mu:
            self._failures += 1
            if self._failures >= self._settings.max_consecutive_failures and self._status != "DEGRADED":
                logger.error(
                    "%d consecutive sync failures, serving the last known good snapshot of %s",
                    self._failures,
                    self._environment_id,
                )
                self._status = "DEGRADED"

    def _try_connect(self) -> bool:
        if self._connect is None:
            return False
        try:
            conn = self._connect(self._on_push, self._on_stream_closed)
        except Exception as e:
            self._record_failure("could not open stream: %s", e)
            return False
        with self._mu:
            self._connection = conn
        return conn.is_open

    def _on_push(self, message: PushMessage):
        """
        Apply one push message. Raising closes the stream, which sends the
        client back to polling.
        """
        match message.type:
            case "put":
                # A cache copy may lack segments still loading upstream.
                snapshot = ConfigSnapshot.from_dict(message.data or {}, strict=False)
                self._store.replace_all(snapshot)
            case "patch":
                assert message.key is not None and message.data is not None
                if message.kind == "flag":
                    self._store.apply(FlagConfiguration.from_dict(message.key, message.data))
                else:
                    self._store.apply(Segment.from_dict(message.key, message.data))
            case "delete":
                assert message.kind is not None and message.key is not None
                if message.version is None:
                    self._store.evict(message.kind, message.key)
                else:
                    self._store.remove(message.kind, message.key, message.version)
        self._record_success()

    def _on_stream_closed(self):
        with self._mu:
            self._connection = None
        if not self._stop_wait.is_set():
            logger.warning("stream of %s closed, falling back to polling", self._environment_id)
            self._wake.set()

    def poll_once(self) -> bool:
        """
        Fetch the complete environment once. Returns whether it succeeded.
        """
        if self._fetch is None:
            return False
        fetched_at = self._store.now()
        try:
            data = self._fetch()
            snapshot = data if isinstance(data, ConfigSnapshot) else ConfigSnapshot.from_dict(data, strict=False)
        except Exception as e:
            self._record_failure("poll of %s failed: %s", self._environment_id, e)
            return False
        self._store.replace_all(snapshot, fetched_at)
        self._record_success()
        return True

    def _next_delay(self) -> float:
        with self._mu:
            failures = self._failures
        if failures:
            return self._backoff.delay(failures - 1)
        if self.streaming:
            return self._store.ttl
        return self._settings.poll_interval

    def _sync(self):
        if self._settings.stream and not self.streaming:
            self._try_connect()
        # While streaming, polls only serve to refresh entries past their TTL.
        if not self.streaming or self._store.stale_items():
            self.poll_once()

    def _worker(self):
        while not self._stop_wait.is_set():
            self._wake.wait(self._next_delay())
            self._wake.clear()
            if self._stop_wait.is_set():
                return
            try:
                self._sync()
            except Exception:
                logger.exception("error syncing environment %s", self._environment_id)

    def last_known_good(self) -> bytes:
        """
        Serialized current snapshot, suitable as `bootstrap` for a new client.
        """
        return self._store.snapshot().to_bytes()

    def set_default_attributes(self, attributes: dict[str, Any] = {}):
        self._evaluator.set_default_attributes(attributes)

    def evaluate(self, flag_key: str, context: Context | Mapping[str, Any], default: Any = ENGINE_DEFAULT) -> EvaluationResult:
        return self._evaluator.evaluate(flag_key, context, default)

    def evaluate_all(
        self,
        flag_keys: Iterable[str] | None,
        context: Context | Mapping[str, Any],
        default: Any = ENGINE_DEFAULT,
    ) -> dict[str, EvaluationResult]:
        return self._evaluator.evaluate_all(flag_keys, context, default)

    def variation(self, flag_key: str, context: Context | Mapping[str, Any], default: Any = ENGINE_DEFAULT) -> Any:
        return self._evaluator.variation(flag_key, context, default)

    def flush(self) -> int:
        return self._evaluator.flush()
