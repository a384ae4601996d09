from __future__ import annotations
from collections.abc import Mapping

from .errors import NotFoundError, SegmentCycleError
from .matcher import matches
from .model import Context, Segment


class SegmentResolver:
    """
    Resolves segment membership against one immutable set of segments. The
    set of segment keys visited on the current resolution path is threaded
    through every nested segment-match so that a cycle fails fast instead of
    recursing forever.
    """

    __slots__ = ("_segments",)

    def __init__(self, segments: Mapping[str, Segment]):
        self._segments = segments

    def is_member(self, segment_key: str, context: Context, visited: frozenset[str] = frozenset()) -> bool:
        if segment_key in visited:
            raise SegmentCycleError(sorted(visited) + [segment_key])
        segment = self._segments.get(segment_key)
        if segment is None:
            raise NotFoundError(f"segment {segment_key} does not exist")
        # Sibling references share the parent's path, not each other's, so a
        # segment referenced twice without a loop is not a cycle.
        path = visited | {segment_key}
        return any(matches(rule, context, self, path) for rule in segment.rules if rule.enabled)


def is_member(
    segment_key: str,
    context: Context,
    segments: Mapping[str, Segment],
    visited: frozenset[str] = frozenset(),
) -> bool:
    return SegmentResolver(segments).is_member(segment_key, context, visited)
