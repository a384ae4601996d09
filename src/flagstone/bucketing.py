from __future__ import annotations
from collections.abc import Sequence
from hashlib import md5

from .errors import ConfigurationError

# Buckets are basis points: 10000 slots of 0.01% each.
BUCKET_SCALE = 10000


def bucket(flag_key: str, context_key: str, salt: str = "") -> int:
    """
    Hashes the flag key, context key and salt to an integer in [0, 10000).

    This is not the most efficient hash function but it's stable. Stability of
    this function is crucial: every evaluation node and every SDK instance must
    put the same context in the same bucket without coordinating, across
    processes, python versions and restarts. Changing anything here reshuffles
    every running rollout.
    """
    digest = md5(f"{salt}:{flag_key}:{context_key}".encode("utf-8")).digest()
    return (
        int.from_bytes(
            digest,
            byteorder="big",  # Being explicit to survive default changes.
            signed=False,  # Being explicit to survive default changes.
        )
        % BUCKET_SCALE
    )


def select_variation(distribution: Sequence[tuple[str, int]], b: int) -> str:
    """
    Return the variation whose cumulative basis point range contains bucket b.
    Ranges are laid out in declared order, so reordering the distribution
    changes which contexts land on which variation.
    """
    total = sum(width for _, width in distribution)
    if total != BUCKET_SCALE:
        raise ConfigurationError(f"rollout widths must sum to {BUCKET_SCALE}, got {total}")
    if not 0 <= b < BUCKET_SCALE:
        raise ValueError(f"bucket {b} out of range")
    end = 0
    for variation, width in distribution:
        end += width
        if b < end:
            return variation
    assert False, "unreachable"  # pragma: no cover
