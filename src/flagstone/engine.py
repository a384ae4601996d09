from __future__ import annotations
import time
import logging
import threading
from abc import abstractmethod
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from prometheus_client import Counter, Histogram

from .bucketing import BUCKET_SCALE, bucket, select_variation
from .errors import ConfigurationError, FlagstoneError
from .matcher import matches
from .model import Attributes, ConfigSnapshot, Context, EvaluationResult, FlagConfiguration, Reason, Rollout, Segment
from .segments import SegmentResolver
from .store import VersionedConfigStore


logger = logging.getLogger(__name__)

# Served when the flag itself is unknown and the caller supplied no default.
ENGINE_DEFAULT = None


def rollout_salt(flag: FlagConfiguration, rollout: Rollout, position: str) -> str:
    """
    Salt used to bucket a rollout. Unless the rollout pins its own salt, it is
    derived from the flag (or its salt override) and the rule position, so two
    rollout rules on one flag bucket independently.
    """
    if rollout.salt is not None:
        return rollout.salt
    return f"{flag.salt if flag.salt is not None else flag.key}.{position}"


def _serve(flag: FlagConfiguration, variation: str, reason: Reason, rule_index: int | None = None, rule_id: str = "") -> EvaluationResult:
    if variation not in flag.variations:
        raise ConfigurationError(f"flag {flag.key} has no variation {variation!r}")
    return EvaluationResult(flag.key, flag.variations[variation], variation, flag.version, reason, rule_index, rule_id or None)


def _evaluate(flag: FlagConfiguration, context: Context, resolver: SegmentResolver) -> EvaluationResult:
    if not flag.enabled:
        return EvaluationResult(flag.key, flag.default, None, flag.version, "FLAG_DISABLED")

    for i, rule in enumerate(flag.rules):
        if not rule.enabled or not matches(rule, context, resolver):
            continue
        if rule.variation is not None:
            return _serve(flag, rule.variation, "RULE_MATCH", i, rule.id)
        if rule.rollout is not None:
            distribution = rule.rollout.distribution
            if len(distribution) == 1 and distribution[0][1] == BUCKET_SCALE:
                # A 100% rollout is a fixed variation; no need to hash.
                return _serve(flag, distribution[0][0], "RULE_MATCH", i, rule.id)
            b = bucket(flag.key, context.key, rollout_salt(flag, rule.rollout, str(i)))
            return _serve(flag, select_variation(distribution, b), "PERCENTAGE_ROLLOUT", i, rule.id)
        raise ConfigurationError(f"rule {i} of flag {flag.key} has no target")

    if flag.rollout is not None:
        b = bucket(flag.key, context.key, rollout_salt(flag, flag.rollout, "default"))
        return _serve(flag, select_variation(flag.rollout.distribution, b), "PERCENTAGE_ROLLOUT")

    return EvaluationResult(flag.key, flag.default, None, flag.version, "DEFAULT")


def _evaluate_guarded(flag: FlagConfiguration, context: Context, resolver: SegmentResolver) -> EvaluationResult:
    try:
        return _evaluate(flag, context, resolver)
    except FlagstoneError as e:
        logger.warning("flag %s served its default: %s", flag.key, e)
        return EvaluationResult(flag.key, flag.default, None, flag.version, "ERROR", error=e.code)
    except Exception:
        # A broken flag must degrade to its default, never break the caller.
        logger.exception("unexpected error evaluating flag %s", flag.key)
        return EvaluationResult(flag.key, flag.default, None, flag.version, "ERROR", error="EXCEPTION")


def evaluate_flag(flag: FlagConfiguration, context: Context, segments: Mapping[str, Segment] | None = None) -> EvaluationResult:
    """
    Decide which variation of flag to serve to context. Pure, reentrant and
    never raises: configuration problems come back as reason ERROR with the
    flag's default value.

    1. A disabled flag serves its default (FLAG_DISABLED).
    2. Rules are tried in order and the first match wins (RULE_MATCH, or
       PERCENTAGE_ROLLOUT for a rollout target).
    3. Otherwise the flag-level rollout applies if there is one, else the
       default is served (DEFAULT).
    """
    return _evaluate_guarded(flag, context, SegmentResolver(segments or {}))


def missing_flag_result(flag_key: str, default: Any = ENGINE_DEFAULT) -> EvaluationResult:
    return EvaluationResult(flag_key, default, None, None, "ERROR", error="NOT_FOUND")


@dataclass(frozen=True, slots=True)
class EvaluationEvent:
    flag_key: str
    environment_id: str
    context_key: str
    variation: str | None
    value: Any
    timestamp: float


class AnalyticsSink:
    """
    Receives evaluation events for analytics. Export is fire-and-forget: it
    runs on a background thread and its failures are only logged.
    """

    @abstractmethod
    def export(self, events: list[EvaluationEvent]) -> None: ...


_prom_eval_duration = Histogram(
    "flagstone_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "reason"],
)
_prom_dropped_events = Counter(
    "flagstone_analytics_dropped_events",
    "Evaluation events dropped because the export buffer was full",
)


class Evaluator:
    """
    The evaluator evaluates flags against the current snapshot of a
    VersionedConfigStore and optionally exports evaluation events to an
    analytics sink. The evaluator is thread-safe and never performs I/O on the
    evaluation path.
    """

    def __init__(
        self,
        store: VersionedConfigStore | None = None,
        sink: AnalyticsSink | None = None,
        export_interval: float = 60.0,
        export_buffer_size: int = 10000,
    ):
        self._store = store if store is not None else VersionedConfigStore()
        self._default_attributes_mu = threading.RLock()
        self._default_attributes: Attributes = {}

        if sink:
            self._sink = sink
            self._export_interval = export_interval
            self._export_buffer_size = export_buffer_size
            self._events_mu = threading.Lock()
            self._events: list[EvaluationEvent] = []
            self._stop_wait = threading.Event()
            self._start_exporter()

    @property
    def store(self) -> VersionedConfigStore:
        return self._store

    def _start_exporter(self):
        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self._export_interval)
                self.flush()

        threading.Thread(target=_worker, name="flagstone-exporter", daemon=True).start()

    def stop_exporter(self):
        if hasattr(self, "_sink"):
            self._stop_wait.set()
            self.flush()

    def flush(self) -> int:
        """
        Export buffered evaluation events now. Returns the number of events
        handed to the sink.
        """
        if not hasattr(self, "_sink"):
            return 0
        with self._events_mu:
            events, self._events = self._events, []
        if not events:
            return 0
        try:
            self._sink.export(events)
        except Exception:
            logger.exception("Error exporting evaluation events")
        return len(events)

    def _record(self, environment_id: str, context: Context, results: dict[str, EvaluationResult]):
        if not hasattr(self, "_sink"):
            return
        now = time.time()
        events = [EvaluationEvent(r.flag_key, environment_id, context.key, r.variation, r.value, now) for r in results.values()]
        with self._events_mu:
            room = self._export_buffer_size - len(self._events)
            if room < len(events):
                _prom_dropped_events.inc(len(events) - max(room, 0))
                events = events[: max(room, 0)]
            self._events.extend(events)

    def _get_default_attributes(self) -> Attributes:
        with self._default_attributes_mu:
            attrs = self._default_attributes
        return attrs

    def set_default_attributes(self, attributes: Attributes = {}):
        """
        Set the default attributes to use when evaluating flags. Attributes
        of the evaluated context override these values. This is useful for
        global values that are always present such as region or host.
        set_default_attributes is thread-safe.
        """
        Context.validate_attributes(attributes)
        attributes = deepcopy(attributes)
        with self._default_attributes_mu:
            self._default_attributes = attributes

    def load_config(self, snapshot: ConfigSnapshot):
        """
        Apply every item of snapshot to the store. Items whose version is not
        greater than what the store holds are ignored, so reloading documents
        that leave out "version" (which defaults to 0) changes nothing; bump the
        versions to replace a configuration. load_config is thread-safe.
        """
        applied = self._store.load(snapshot)
        if not applied and (snapshot.flags or snapshot.segments):
            logger.warning(
                "load_config applied none of %d flags and %d segments: versions are not newer than the loaded ones",
                len(snapshot.flags),
                len(snapshot.segments),
            )

    @staticmethod
    def _coerce_context(context: Context | Mapping[str, Any]) -> Context:
        if isinstance(context, Context):
            return context
        return Context.from_dict(context)

    def evaluate_all(
        self,
        flag_keys: Iterable[str] | None,
        context: Context | Mapping[str, Any],
        default: Any = ENGINE_DEFAULT,
    ) -> dict[str, EvaluationResult]:
        """
        Evaluate the given flags, or every flag when flag_keys is None, for
        one context against a single snapshot. evaluate_all is thread-safe.

        Raises only for a malformed context (TypeError, InvalidContextError).
        """
        ctx = self._coerce_context(context).with_defaults(self._get_default_attributes())
        snapshot = self._store.snapshot()
        keys = list(snapshot.flags) if flag_keys is None else list(dict.fromkeys(flag_keys))
        resolver = SegmentResolver(snapshot.segments)

        results: dict[str, EvaluationResult] = {}
        for key in keys:
            start = time.perf_counter()
            flag = snapshot.flags.get(key)
            if flag is None:
                r = missing_flag_result(key, default)
            else:
                r = _evaluate_guarded(flag, ctx, resolver)
            # Unknown keys come from callers; they share one label.
            label = key if flag is not None else ""
            _prom_eval_duration.labels(flag=label, reason=r.reason).observe(time.perf_counter() - start)
            results[key] = r

        self._record(snapshot.environment_id, ctx, results)
        return results

    def evaluate(self, flag_key: str, context: Context | Mapping[str, Any], default: Any = ENGINE_DEFAULT) -> EvaluationResult:
        """
        Evaluate the given flag. evaluate is thread-safe.

        flag_key: The key of the flag.
        context: The context, either a Context or a mapping with a "key".
        default: Value served if the flag does not exist.
        """
        return self.evaluate_all([flag_key], context, default)[flag_key]

    def variation(self, flag_key: str, context: Context | Mapping[str, Any], default: Any = ENGINE_DEFAULT) -> Any:
        return self.evaluate(flag_key, context, default).value
