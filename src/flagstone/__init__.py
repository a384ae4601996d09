from .bucketing import BUCKET_SCALE, bucket, select_variation
from .engine import ENGINE_DEFAULT, AnalyticsSink, EvaluationEvent, Evaluator, evaluate_flag
from .errors import (
    ConfigurationError,
    FlagstoneError,
    InvalidContextError,
    NotFoundError,
    SegmentCycleError,
    TransientCacheError,
)
from .matcher import match_condition, matches
from .model import (
    Condition,
    ConfigSnapshot,
    Context,
    EvaluationResult,
    FlagConfiguration,
    Rollout,
    Rule,
    Segment,
    check_references,
    merge_configs,
)
from .repository import ChangeEvent, ConfigurationRepository, InMemoryRepository, Subscription
from .sdk import SDKClient
from .segments import SegmentResolver, is_member
from .settings import Settings
from .store import VersionedConfigStore
from .sync import Backoff, CacheSynchronizer, PushConnection, PushMessage

__all__ = [
    "BUCKET_SCALE",
    "ENGINE_DEFAULT",
    "AnalyticsSink",
    "Backoff",
    "CacheSynchronizer",
    "ChangeEvent",
    "Condition",
    "ConfigSnapshot",
    "ConfigurationError",
    "ConfigurationRepository",
    "Context",
    "EvaluationEvent",
    "EvaluationResult",
    "Evaluator",
    "FlagConfiguration",
    "FlagstoneError",
    "InMemoryRepository",
    "InvalidContextError",
    "NotFoundError",
    "PushConnection",
    "PushMessage",
    "Rollout",
    "Rule",
    "SDKClient",
    "Segment",
    "SegmentCycleError",
    "SegmentResolver",
    "Settings",
    "Subscription",
    "TransientCacheError",
    "VersionedConfigStore",
    "bucket",
    "check_references",
    "evaluate_flag",
    "is_member",
    "match_condition",
    "matches",
    "merge_configs",
    "select_variation",
]
