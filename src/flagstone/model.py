from __future__ import annotations
import re
import os
import json
import math
import logging
import datetime
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Literal

import dill
import jsonschema
from packaging.version import InvalidVersion, Version

from .bucketing import BUCKET_SCALE
from .errors import ConfigurationError, InvalidContextError, SegmentCycleError


logger = logging.getLogger(__name__)

type ValueKind = Literal["boolean", "string", "number", "json"]
type Operator = Literal[
    "equals",
    "not-equals",
    "in",
    "not-in",
    "contains",
    "greater-than",
    "less-than",
    "regex-match",
    "segment-match",
    "semver-compare",
]
type Reason = Literal["RULE_MATCH", "PERCENTAGE_ROLLOUT", "DEFAULT", "FLAG_DISABLED", "ERROR"]
type AttributeValue = (
    None | str | int | float | bool | list | tuple | set | frozenset | dict | datetime.datetime | datetime.date
)
type Attributes = dict[str, AttributeValue]
type DictConfig = dict[str, Any]


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _schema_defs = json.load(f)["$defs"]


def validate_document(instance: Any, definition: str):
    """
    Validate instance against one of the definitions in config_schema.json.
    Schema violations surface as ConfigurationError.
    """
    schema = {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "$ref": f"#/$defs/{definition}",
        "$defs": _schema_defs,
    }
    try:
        jsonschema.validate(instance, schema)
    except jsonschema.ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path)
        raise ConfigurationError(f"invalid {definition} at '{path}': {e.message}") from e


def parse_timestamp(s: str) -> datetime.datetime:
    """
    Parse the given ISO 8601 time string. A timezone is mandatory since naive
    times mean different instants on different nodes.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ValueError("Timezone missing")
    return t


def value_kind(v: Any) -> ValueKind:
    # bool is a subclass of int so it must be checked first.
    if isinstance(v, bool):
        return "boolean"
    if isinstance(v, (int, float)):
        return "number"
    if isinstance(v, str):
        return "string"
    return "json"


_semver_constraint_re = re.compile(r"^\s*(?P<op>==|=|!=|>=|<=|>|<)?\s*v?(?P<version>\S+)\s*$")


@lru_cache(maxsize=1024)
def parse_semver_constraint(s: str) -> tuple[str, Version]:
    """
    Parse a comparator such as ">=1.2.0" into ("GE", Version("1.2.0")). A bare
    version means equality.
    """
    m = _semver_constraint_re.match(s)
    if not m:
        raise ConfigurationError(f"invalid semver constraint {s!r}")
    op = {None: "EQ", "=": "EQ", "==": "EQ", "!=": "NE", ">=": "GE", "<=": "LE", ">": "GT", "<": "LT"}[m.group("op")]
    try:
        return op, Version(m.group("version"))
    except InvalidVersion as e:
        raise ConfigurationError(f"invalid version in semver constraint {s!r}") from e


@dataclass(frozen=True, slots=True)
class Condition:
    operator: Operator
    value: Any
    attribute: str = ""

    @staticmethod
    def from_dict(d: DictConfig) -> Condition:
        op = d["operator"]
        value = d["value"]
        attribute = d.get("attribute", "")
        if op != "segment-match" and not attribute:
            raise ConfigurationError(f"operator {op} requires an attribute")
        match op:
            case "in" | "not-in":
                if not isinstance(value, list):
                    raise ConfigurationError(f"operator {op} requires a list value")
                value = tuple(value)
            case "segment-match":
                if not isinstance(value, str) or not value:
                    raise ConfigurationError("segment-match requires a segment key")
            case "regex-match":
                if not isinstance(value, str):
                    raise ConfigurationError("regex-match requires a string pattern")
                try:
                    re.compile(value)
                except re.error as e:
                    raise ConfigurationError(f"invalid regex {value!r}: {e}") from e
            case "semver-compare":
                if not isinstance(value, str):
                    raise ConfigurationError("semver-compare requires a string constraint")
                parse_semver_constraint(value)
            case "greater-than" | "less-than":
                if value_kind(value) not in {"number", "string"}:
                    raise ConfigurationError(f"operator {op} requires a number or a date string")
            case "contains":
                if value_kind(value) == "json":
                    raise ConfigurationError("contains requires a scalar value")
        return Condition(op, value, attribute)

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"operator": self.operator, "value": list(self.value) if isinstance(self.value, tuple) else self.value}
        if self.attribute:
            d["attribute"] = self.attribute
        return d


@dataclass(frozen=True, slots=True)
class Rollout:
    """
    Percentage rollout. distribution holds (variation id, width) pairs whose
    widths are basis points summing to exactly 10000.
    """

    distribution: tuple[tuple[str, int], ...]
    salt: str | None = None

    @staticmethod
    def from_dict(d: DictConfig) -> Rollout:
        entries = d["variations"]
        # The epsilon keeps values like 0.29 * 100 = 28.999999999999996 from
        # losing a basis point.
        widths = [math.floor(e["percentage"] * 100 + 1e-9) for e in entries]
        total = sum(widths)
        # Each entry can lose at most one basis point to flooring.
        if total > BUCKET_SCALE or total < BUCKET_SCALE - len(widths):
            raise ConfigurationError(f"rollout percentages must sum to 100, got {sum(e['percentage'] for e in entries)!r}")
        # The remainder always goes to the last declared variation.
        widths[-1] += BUCKET_SCALE - total
        return Rollout(tuple((e["variation"], w) for e, w in zip(entries, widths)), d.get("salt"))

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"variations": [{"variation": v, "percentage": w / 100} for v, w in self.distribution]}
        if self.salt is not None:
            d["salt"] = self.salt
        return d


@dataclass(frozen=True, slots=True)
class Rule:
    """
    Conditions are AND-combined. Flag rules carry exactly one target, either a
    fixed variation or a rollout. Segment rules carry no target.
    """

    conditions: tuple[Condition, ...] = ()
    variation: str | None = None
    rollout: Rollout | None = None
    id: str = ""
    enabled: bool = True

    @staticmethod
    def from_dict(d: DictConfig) -> Rule:
        return Rule(
            conditions=tuple(Condition.from_dict(c) for c in d.get("conditions", [])),
            variation=d.get("variation"),
            rollout=Rollout.from_dict(d["rollout"]) if "rollout" in d else None,
            id=d.get("id", ""),
            enabled=d.get("enabled", True),
        )

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"conditions": [c.to_dict() for c in self.conditions]}
        if self.id:
            d["id"] = self.id
        if not self.enabled:
            d["enabled"] = False
        if self.variation is not None:
            d["variation"] = self.variation
        if self.rollout is not None:
            d["rollout"] = self.rollout.to_dict()
        return d


def _segment_refs(rules: tuple[Rule, ...]) -> set[str]:
    return set(c.value for r in rules for c in r.conditions if c.operator == "segment-match")


@dataclass(frozen=True, slots=True)
class FlagConfiguration:
    """
    One flag within one environment. Instances are immutable and replaced
    wholesale on every change; version strictly increases per mutation.
    """

    key: str
    default: Any
    variations: dict[str, Any]
    enabled: bool = True
    rules: tuple[Rule, ...] = ()
    rollout: Rollout | None = None
    version: int = 0
    last_modified: datetime.datetime | None = None
    salt: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ValueKind:
        return value_kind(self.default)

    def segment_refs(self) -> set[str]:
        return _segment_refs(self.rules)

    def validate(self):
        """
        Check everything the schema cannot: value kinds, variation references
        and rule targets.
        """
        for vid, v in self.variations.items():
            if value_kind(v) != self.kind:
                raise ConfigurationError(f"variation {vid} of flag {self.key} is a {value_kind(v)} but the default is a {self.kind}")
        if self.default not in self.variations.values():
            raise ConfigurationError(f"default value of flag {self.key} must be one of the variations")
        for i, rule in enumerate(self.rules):
            if (rule.variation is None) == (rule.rollout is None):
                raise ConfigurationError(f"rule {i} of flag {self.key} must have exactly one of variation or rollout")
            targets = [rule.variation] if rule.variation is not None else [v for v, _ in rule.rollout.distribution]
            unknown = set(targets) - self.variations.keys()
            if unknown:
                raise ConfigurationError(f"unknown variations {sorted(unknown)} in rule {i} of flag {self.key}")
        if self.rollout is not None:
            unknown = set(v for v, _ in self.rollout.distribution) - self.variations.keys()
            if unknown:
                raise ConfigurationError(f"unknown variations {sorted(unknown)} in default rollout of flag {self.key}")

    @staticmethod
    def from_dict(key: str, d: DictConfig) -> FlagConfiguration:
        validate_document(d, "flag")
        variations = d.get("variations")
        if variations is None:
            if not isinstance(d["default"], bool):
                raise ConfigurationError(f"flag {key} must declare variations")
            variations = {"true": True, "false": False}
        try:
            last_modified = parse_timestamp(d["last_modified"]) if "last_modified" in d else None
        except ValueError as e:
            raise ConfigurationError(f"invalid last_modified of flag {key}: {e}") from e
        flag = FlagConfiguration(
            key=key,
            default=d["default"],
            variations=dict(variations),
            enabled=d.get("enabled", True),
            rules=tuple(Rule.from_dict(r) for r in d.get("rules", [])),
            rollout=Rollout.from_dict(d["rollout"]) if "rollout" in d else None,
            version=d.get("version", 0),
            last_modified=last_modified,
            salt=d.get("salt"),
            metadata=dict(d.get("metadata", {})),
        )
        flag.validate()
        return flag

    def to_dict(self) -> DictConfig:
        d: DictConfig = {
            "enabled": self.enabled,
            "default": self.default,
            "variations": dict(self.variations),
            "rules": [r.to_dict() for r in self.rules],
            "version": self.version,
        }
        if self.rollout is not None:
            d["rollout"] = self.rollout.to_dict()
        if self.last_modified is not None:
            d["last_modified"] = self.last_modified.isoformat()
        if self.salt is not None:
            d["salt"] = self.salt
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d


@dataclass(frozen=True, slots=True)
class Segment:
    """
    Named reusable set of rules. A context is a member when any rule matches.
    """

    key: str
    rules: tuple[Rule, ...] = ()
    version: int = 0
    last_modified: datetime.datetime | None = None
    description: str = ""

    def segment_refs(self) -> set[str]:
        return _segment_refs(self.rules)

    @staticmethod
    def from_dict(key: str, d: DictConfig) -> Segment:
        validate_document(d, "segment")
        try:
            last_modified = parse_timestamp(d["last_modified"]) if "last_modified" in d else None
        except ValueError as e:
            raise ConfigurationError(f"invalid last_modified of segment {key}: {e}") from e
        return Segment(
            key=key,
            rules=tuple(Rule.from_dict(r) for r in d["rules"]),
            version=d.get("version", 0),
            last_modified=last_modified,
            description=d.get("description", ""),
        )

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"rules": [r.to_dict() for r in self.rules], "version": self.version}
        if self.last_modified is not None:
            d["last_modified"] = self.last_modified.isoformat()
        if self.description:
            d["description"] = self.description
        return d


def check_references(flags: Mapping[str, FlagConfiguration], segments: Mapping[str, Segment]):
    """
    Ensure every segment reference resolves and the segment graph has no
    cycles. This runs at write time so that cycles never reach evaluation
    through the validated path.
    """
    for flag in flags.values():
        unknown = flag.segment_refs() - segments.keys()
        if unknown:
            raise ConfigurationError(f"flag {flag.key} references unknown segments {sorted(unknown)}")

    done: set[str] = set()

    def visit(key: str, path: list[str]):
        if key in path:
            raise SegmentCycleError(path[path.index(key) :] + [key])
        if key in done:
            return
        segment = segments.get(key)
        if segment is None:
            raise ConfigurationError(f"segment {path[-1]} references unknown segment {key}")
        for ref in sorted(segment.segment_refs()):
            visit(ref, path + [key])
        done.add(key)

    for key in segments:
        visit(key, [])


class ConfigSnapshot:
    """
    Immutable view of every flag and segment of one environment. Snapshots are
    never modified after construction; a newer configuration is a new snapshot.
    """

    __slots__ = ("environment_id", "flags", "segments")
    environment_id: str
    flags: dict[str, FlagConfiguration]
    segments: dict[str, Segment]

    def __init__(
        self,
        environment_id: str = "",
        flags: Mapping[str, FlagConfiguration] | None = None,
        segments: Mapping[str, Segment] | None = None,
    ):
        self.environment_id = environment_id
        self.flags = dict(flags or {})
        self.segments = dict(segments or {})

    def validate(self):
        for flag in self.flags.values():
            flag.validate()
        check_references(self.flags, self.segments)

    @staticmethod
    def from_dict(c: DictConfig, strict: bool = True) -> ConfigSnapshot:
        """
        Compile an environment document into a snapshot. The canonical way of
        ensuring a valid configuration.

        With strict=False segment references are not resolved, for copies of a
        cache that may be missing segments still being loaded. Evaluating a
        flag whose segment is missing yields an ERROR result.
        """
        validate_document(c, "config")
        snapshot = ConfigSnapshot(
            c.get("environment", ""),
            {k: FlagConfiguration.from_dict(k, f) for k, f in c.get("flags", {}).items()},
            {k: Segment.from_dict(k, s) for k, s in c.get("segments", {}).items()},
        )
        if strict:
            check_references(snapshot.flags, snapshot.segments)
        return snapshot

    def to_dict(self) -> DictConfig:
        return {
            "environment": self.environment_id,
            "flags": {k: f.to_dict() for k, f in self.flags.items()},
            "segments": {k: s.to_dict() for k, s in self.segments.items()},
        }

    @staticmethod
    def from_bytes(b: bytes) -> ConfigSnapshot:
        obj = dill.loads(b)
        assert isinstance(obj, ConfigSnapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    def __getstate__(self):
        return (self.environment_id, self.flags, self.segments)

    def __setstate__(self, state):
        self.environment_id, self.flags, self.segments = state


def merge_configs(*configs: DictConfig) -> DictConfig:
    """
    Merge the given environment documents into a single one. Order is not
    important. Values are shallow copied.

    This merge function is naive and does not check for validity of keys and
    types. The canonical way of ensuring a valid configuration is compiling it
    with ConfigSnapshot.from_dict.
    """
    merged: DictConfig = defaultdict(dict)
    for config in configs:
        for key, value in config.items():
            if key == "environment":
                if merged.get(key, value) != value:
                    raise ValueError(f"Conflicting environments: {merged[key]!r} and {value!r}")
                merged[key] = value
                continue
            d = merged[key]
            intersection = d.keys() & value.keys()
            if intersection:
                raise ValueError(f"Duplicate keys: {intersection}")
            d.update(value)
    return dict(merged)


_context_value_types = (str, int, float, bool, list, tuple, set, frozenset, dict, datetime.date, type(None))


class Context:
    """
    Caller supplied attributes plus the stable key used for bucketing. The
    attribute name "key" always resolves to the context key.
    """

    __slots__ = ("key", "attributes")
    key: str
    attributes: Attributes

    def __init__(self, key: str, attributes: Attributes | None = None):
        if not isinstance(key, str):
            raise TypeError(f"context key must be a string, not {type(key).__name__}")
        if not key:
            raise InvalidContextError("context key must not be empty")
        attributes = dict(attributes or {})
        self.validate_attributes(attributes)
        self.key = key
        self.attributes = attributes

    @staticmethod
    def validate_attributes(attributes: Attributes):
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            # datetime.datetime is a subclass of datetime.date.
            if not isinstance(v, _context_value_types):
                raise TypeError(f"attribute {k} has unsupported type {type(v).__name__}")

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> Context:
        if not isinstance(d, Mapping):
            raise TypeError(f"context must be a mapping, not {type(d).__name__}")
        if "key" not in d:
            raise InvalidContextError("context key is required")
        attributes = dict(d)
        key = attributes.pop("key")
        return Context(key, attributes)

    def get(self, name: str) -> AttributeValue:
        if name == "key":
            return self.key
        return self.attributes.get(name)

    def with_defaults(self, defaults: Attributes) -> Context:
        if not defaults:
            return self
        c = Context.__new__(Context)
        c.key = self.key
        c.attributes = {**defaults, **self.attributes}
        return c

    def __repr__(self):
        return f"Context(key={self.key!r}, attributes={self.attributes!r})"


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    """
    The result of evaluating a flag. variation is None whenever the static
    default was served.
    """

    flag_key: str
    value: Any
    variation: str | None
    version: int | None
    reason: Reason
    rule_index: int | None = None
    rule_id: str | None = None
    error: str | None = None
