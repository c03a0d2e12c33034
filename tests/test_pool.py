"""
Tests for pool helpers and legacy key strings.
"""

import random

from keypool.models import KeyPolicy, KeyStatus, LoadBalanceStrategy, ProbeError, ProbeRateLimited, ProbeSuccess
from keypool.pool import (
    apply_results,
    effective_api_key,
    find_key,
    next_legacy_key,
    replace_key,
    split_keys,
)

from conftest import MINUTE_MS, NOW, make_key


class TestPoolUpdates:
    def test_replace_key_by_id(self):
        pool = [make_key("a"), make_key("b")]
        updated = make_key("b", status=KeyStatus.ERROR)
        result = replace_key(pool, updated)
        assert result[1] is updated
        assert result[0] is pool[0]

    def test_replace_unknown_id_is_noop(self):
        pool = [make_key("a")]
        assert replace_key(pool, make_key("zzz")) == pool

    def test_find_key(self):
        pool = [make_key("a"), make_key("b")]
        assert find_key(pool, "b") is pool[1]
        assert find_key(pool, "c") is None

    def test_apply_results(self):
        pool = [make_key("a"), make_key("b"), make_key("c")]
        results = {
            "a": ProbeSuccess(10),
            "b": ProbeRateLimited(5),
            "zzz": ProbeError("ignored"),
        }
        updated = apply_results(pool, results, KeyPolicy(), now=NOW)

        assert updated[0].usage.successful_requests == 1
        assert updated[1].status == KeyStatus.RATE_LIMITED
        assert updated[2] is pool[2]
        assert len(updated) == 3


class TestLegacyKeys:
    def test_split_on_commas_and_whitespace(self):
        assert split_keys("sk-1, sk-2\nsk-3  sk-1,,") == ["sk-1", "sk-2", "sk-3"]

    def test_split_empty(self):
        assert split_keys("") == []
        assert split_keys(" , \n") == []

    def test_next_legacy_key_picks_from_list(self):
        rng = random.Random(3)
        picks = {next_legacy_key("a,b,c", rng) for _ in range(50)}
        assert picks == {"a", "b", "c"}

    def test_next_legacy_key_falls_back_to_raw(self):
        assert next_legacy_key("") == ""


class TestEffectiveApiKey:
    def test_uses_pool_when_multi_key_enabled(self):
        pool = [make_key("a", priority=3, secret="sk-pool-a"), make_key("b", priority=1, secret="sk-pool-b")]
        policy = KeyPolicy(strategy=LoadBalanceStrategy.PRIORITY)
        secret, selection = effective_api_key("sk-legacy", pool, policy, True)
        assert secret == "sk-pool-b"
        assert selection.key is pool[1]
        assert selection.reason == "strategy_priority"

    def test_round_robin_rotates_when_cursor_is_persisted(self):
        pool = [make_key(k, secret=f"sk-pool-{k}") for k in "abc"]
        policy = KeyPolicy()

        picks = []
        for _ in range(4):
            secret, selection = effective_api_key("", pool, policy, True)
            picks.append(secret)
            policy = policy.with_cursor(selection.next_round_robin_cursor)

        assert picks == ["sk-pool-a", "sk-pool-b", "sk-pool-c", "sk-pool-a"]

    def test_recovered_record_is_returned_for_write_back(self):
        stale = make_key("a", status=KeyStatus.ERROR, consecutive_failures=3, updated_at=NOW - 10 * MINUTE_MS)
        pool = [stale]
        secret, selection = effective_api_key("", pool, KeyPolicy(), True, now=NOW)

        assert secret == stale.secret
        pool = replace_key(pool, selection.key)
        assert pool[0].status == KeyStatus.ACTIVE
        assert pool[0].usage.consecutive_failures == 0

    def test_legacy_when_multi_key_disabled(self):
        pool = [make_key("a", secret="sk-pool-a")]
        assert effective_api_key("sk-legacy", pool, KeyPolicy(), False) == ("sk-legacy", None)

    def test_legacy_when_pool_unavailable(self):
        pool = [make_key("a", status=KeyStatus.DISABLED)]
        assert effective_api_key("sk-legacy", pool, KeyPolicy(), True) == ("sk-legacy", None)

    def test_legacy_when_pool_empty(self):
        assert effective_api_key("sk-legacy", [], KeyPolicy(), True) == ("sk-legacy", None)
