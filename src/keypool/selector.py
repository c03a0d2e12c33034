# src/keypool/selector.py

import logging
import random
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .error_handler import mask_credential
from .models import (
    KeyPolicy,
    KeyRecord,
    KeyStatus,
    LoadBalanceStrategy,
    SelectionResult,
    current_time_ms,
)
from .usage_tracker import is_recovery_due, try_recover

lib_logger = logging.getLogger("keypool")

NO_KEYS = "no_keys"
NO_AVAILABLE_KEYS = "no_available_keys"

# (record, needs_recovery)
Candidate = Tuple[KeyRecord, bool]


def _pick_priority(candidates: List[Candidate], policy: KeyPolicy, rng) -> Tuple[int, int]:
    # min() keeps the first of equal priorities, so ties follow input order
    index = min(range(len(candidates)), key=lambda i: candidates[i][0].priority)
    return index, policy.round_robin_cursor


def _pick_least_used(candidates: List[Candidate], policy: KeyPolicy, rng) -> Tuple[int, int]:
    index = min(
        range(len(candidates)), key=lambda i: candidates[i][0].usage.total_requests
    )
    return index, policy.round_robin_cursor


def _pick_random(candidates: List[Candidate], policy: KeyPolicy, rng) -> Tuple[int, int]:
    return rng.randrange(len(candidates)), policy.round_robin_cursor


def _pick_round_robin(candidates: List[Candidate], policy: KeyPolicy, rng) -> Tuple[int, int]:
    """
    Orders candidates by id and takes the one under the caller's cursor.
    The cursor is the only rotation state; the next value is handed back for
    the caller to persist.
    """
    order = sorted(range(len(candidates)), key=lambda i: candidates[i][0].id)
    position = policy.round_robin_cursor % len(order)
    return order[position], (position + 1) % len(order)


_STRATEGY_MAP: Dict[LoadBalanceStrategy, Callable] = {
    LoadBalanceStrategy.PRIORITY: _pick_priority,
    LoadBalanceStrategy.LEAST_USED: _pick_least_used,
    LoadBalanceStrategy.RANDOM: _pick_random,
    LoadBalanceStrategy.ROUND_ROBIN: _pick_round_robin,
}


def _collect_candidates(
    enabled: Sequence[KeyRecord], policy: KeyPolicy, now: int
) -> List[Candidate]:
    candidates = []
    for key in enabled:
        if key.status == KeyStatus.ACTIVE:
            candidates.append((key, False))
        elif is_recovery_due(key, policy, now):
            candidates.append((key, True))
    return candidates


def select_key(
    pool: Sequence[KeyRecord],
    policy: Optional[KeyPolicy] = None,
    now: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> SelectionResult:
    """
    Picks the next credential from a pool snapshot.

    Only enabled keys are considered. ACTIVE keys are always candidates;
    ERROR and RATE_LIMITED keys are candidates once their cooldown has
    elapsed, and the one handed out is returned already recovered. DISABLED
    keys are never selected.

    An empty result is a value, not an exception: the reason is `no_keys`
    when nothing is enabled and `no_available_keys` when everything enabled
    is cooling down.

    Args:
        pool: The keys for one upstream target.
        policy: Selection policy; defaults apply when None.
        now: Epoch milliseconds used for cooldown checks.
        rng: Random source for the random strategy.

    Returns:
        A SelectionResult carrying the chosen key (possibly recovered), the
        reason code and the round-robin cursor to persist.
    """
    policy = policy or KeyPolicy()
    now = current_time_ms() if now is None else now

    enabled = [key for key in pool if key.enabled]
    if not enabled:
        return SelectionResult(None, NO_KEYS, policy.round_robin_cursor)

    candidates = _collect_candidates(enabled, policy, now)
    if not candidates:
        lib_logger.warning(
            f"All {len(enabled)} enabled keys are on cooldown. No key available."
        )
        return SelectionResult(None, NO_AVAILABLE_KEYS, policy.round_robin_cursor)

    strategy = policy.strategy
    pick = _STRATEGY_MAP.get(strategy, _pick_round_robin)
    index, next_cursor = pick(candidates, policy, rng or random)

    chosen, needs_recovery = candidates[index]
    if needs_recovery:
        chosen = try_recover(chosen, policy, now)

    lib_logger.debug(
        f"Selected key {mask_credential(chosen.secret)} "
        f"(strategy: {strategy.value}, candidates: {len(candidates)}, recovered: {needs_recovery})"
    )
    return SelectionResult(chosen, f"strategy_{strategy.value}", next_cursor)
