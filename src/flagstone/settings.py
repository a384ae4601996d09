from __future__ import annotations
import re
import datetime
from dataclasses import dataclass
from typing import Any

from .errors import ConfigurationError
from .model import DictConfig, validate_document


def _seconds_from_human_duration(s: str) -> float:
    """
    Parse the given human readable duration string such as "1d 2h", "5m" or
    "30s" and return the number of seconds.
    """
    m = re.match(
        r"^\s*(?:(?P<days>\d+)\s*d)?\s*(?:(?P<hours>\d+)\s*h)?\s*(?:(?P<minutes>\d+)\s*m)?\s*(?:(?P<seconds>\d+)\s*s)?\s*$",
        s,
    )
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid timedelta {s}")
    return datetime.timedelta(
        days=int(m.group("days") or 0),
        hours=int(m.group("hours") or 0),
        minutes=int(m.group("minutes") or 0),
        seconds=int(m.group("seconds") or 0),
    ).total_seconds()


def _duration(v: Any) -> float:
    if isinstance(v, str):
        return _seconds_from_human_duration(v)
    return float(v)


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Tunables of the cache layers and the evaluator. Durations are seconds.
    """

    # Age after which a cached entry is STALE and refreshed in the background.
    cache_ttl: float = 300.0
    # SDK polling interval when streaming is off or unavailable.
    poll_interval: float = 30.0
    stream: bool = True
    backoff_base: float = 1.0
    backoff_ceiling: float = 60.0
    # After this many failed polls/reconnects in a row the SDK reports DEGRADED
    # and keeps serving its last known good snapshot.
    max_consecutive_failures: int = 5
    export_interval: float = 60.0
    export_buffer_size: int = 10000

    @staticmethod
    def from_dict(d: DictConfig) -> Settings:
        validate_document(d, "settings")
        kwargs: dict[str, Any] = {}
        for k, v in d.items():
            if k in {"stream", "max_consecutive_failures", "export_buffer_size"}:
                kwargs[k] = v
            else:
                try:
                    kwargs[k] = _duration(v)
                except ValueError as e:
                    raise ConfigurationError(f"invalid duration for {k}: {e}") from e
        settings = Settings(**kwargs)
        if settings.backoff_base > settings.backoff_ceiling:
            raise ConfigurationError("backoff_base must not exceed backoff_ceiling")
        if settings.cache_ttl <= 0:
            raise ConfigurationError("cache_ttl must be positive")
        return settings
