# src/keypool/pool.py
"""
Helpers for working with a whole pool snapshot. Membership (adding or
deleting keys) belongs to whoever stores the pool; nothing here does either.
"""

import random
import re
from typing import List, Mapping, Optional, Sequence, Tuple

from .models import KeyPolicy, KeyRecord, ProbeOutcome, SelectionResult, current_time_ms
from .selector import select_key
from .usage_tracker import record_outcome

_SPLIT_KEY_REGEX = re.compile(r"[\s,]+")


def find_key(pool: Sequence[KeyRecord], key_id: str) -> Optional[KeyRecord]:
    for key in pool:
        if key.id == key_id:
            return key
    return None


def replace_key(pool: Sequence[KeyRecord], updated: KeyRecord) -> List[KeyRecord]:
    """Writes an updated record back into the pool by id."""
    return [updated if key.id == updated.id else key for key in pool]


def apply_results(
    pool: Sequence[KeyRecord],
    results: Mapping[str, ProbeOutcome],
    policy: Optional[KeyPolicy] = None,
    now: Optional[int] = None,
) -> List[KeyRecord]:
    """Folds a mapping of key id -> outcome into the pool."""
    now = current_time_ms() if now is None else now
    return [
        record_outcome(key, results[key.id], policy, now) if key.id in results else key
        for key in pool
    ]


def split_keys(raw: str) -> List[str]:
    """
    Splits a legacy single-string key list on whitespace and commas,
    dropping blanks and duplicates while keeping the original order.
    """
    seen = []
    for part in _SPLIT_KEY_REGEX.split(raw or ""):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


def next_legacy_key(raw: str, rng: Optional[random.Random] = None) -> str:
    keys = split_keys(raw)
    if not keys:
        return raw
    return (rng or random).choice(keys)


def effective_api_key(
    raw: str,
    pool: Optional[Sequence[KeyRecord]],
    policy: Optional[KeyPolicy],
    multi_key_enabled: bool,
    rng: Optional[random.Random] = None,
    now: Optional[int] = None,
) -> Tuple[str, Optional[SelectionResult]]:
    """
    Resolves the secret for one request: pool selection when multi-key mode
    is on and the pool has keys, otherwise a random pick from the legacy
    key string. Falls back to the legacy string if selection finds nothing.

    Returns the secret and the SelectionResult it came from (None for a
    legacy pick). The caller writes back `selection.key` with `replace_key`
    and persists `selection.next_round_robin_cursor`; without that, round
    robin keeps returning the same key.
    """
    if multi_key_enabled and pool:
        result = select_key(pool, policy, now=now, rng=rng)
        if result.key is not None:
            return result.key.secret, result
    return next_legacy_key(raw, rng), None
