"""Deterministic bucketing primitives.

Every decision here is a pure function of its inputs: the same
(experiment key, subject id) pair always lands in the same bucket, in any
process, with no stored state and no coordination between requests.

The hash scheme below is part of the contract with every subject already
assigned. Changing the digest, the truncation or the composite key format
silently re-buckets all of them.
"""

import hashlib
from typing import Any, Mapping, Optional, Protocol, Sequence, TypeVar


class Weighted(Protocol):
    weight: int


W = TypeVar("W", bound=Weighted)


def stable_hash(value: str) -> int:
    """Maps a string to an unsigned 32-bit integer.

    MD5 of the UTF-8 bytes; the first 8 hex characters of the digest are
    parsed as a base-16 integer.
    """
    digest = hashlib.md5(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def matches_targeting(
    rules: Optional[Mapping[str, Any]], attributes: Optional[Mapping[str, Any]]
) -> bool:
    """Equality-only targeting: every rule key must be present with an equal value."""
    # No rules means all traffic matches
    if not rules:
        return True

    if attributes is None:
        return False

    for key, expected in rules.items():
        if key not in attributes or attributes[key] != expected:
            return False

    return True


def is_in_traffic_allocation(
    experiment_key: str, traffic_allocation: int, subject_id: str
) -> bool:
    """Whether the subject falls inside the experiment's traffic percentage.

    The bucket is fixed per (experiment, subject), so raising the percentage
    only ever admits new subjects and lowering it only drops the highest buckets.
    """
    if traffic_allocation >= 100:
        return True

    bucket = stable_hash(f"{experiment_key}:traffic:{subject_id}") % 100
    return bucket < traffic_allocation


def select_variant(variants: Sequence[W], experiment_key: str, subject_id: str) -> W:
    """Picks a variant by weight. ``variants`` must be in their stable creation order."""
    if not variants:
        raise ValueError("Cannot select a variant from an empty list")

    total_weight = sum(v.weight for v in variants)
    bucket = stable_hash(f"{experiment_key}:variant:{subject_id}") % total_weight

    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if bucket < cumulative:
            return variant

    # Unreachable while bucket < total_weight; kept as a defensive fallback
    return variants[-1]
