"""
Tests for the keypool-check application: pool file storage and the check run.
"""

import asyncio
import json

from rich.console import Console

from keypool.models import KeyPolicy, KeyStatus, LoadBalanceStrategy, ProbeError, ProbeRateLimited, ProbeSuccess
from keypool_app import main as app_main
from keypool_app.pool_file import load_pool_file, save_pool_file

from conftest import FakeTransport, make_key


def run_async(coro):
    return asyncio.run(coro)


class TestPoolFile:
    def test_save_then_load(self, tmp_path):
        path = str(tmp_path / "state" / "pool.json")
        pool = [make_key("a", priority=2), make_key("b", status=KeyStatus.ERROR)]
        policy = KeyPolicy(strategy=LoadBalanceStrategy.PRIORITY, round_robin_cursor=1)

        run_async(save_pool_file(path, pool, policy))
        loaded, loaded_policy = run_async(load_pool_file(path))

        assert loaded == pool
        assert loaded_policy == policy

    def test_missing_file(self, tmp_path):
        pool, policy = run_async(load_pool_file(str(tmp_path / "nope.json")))
        assert pool == []
        assert policy == KeyPolicy()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text("{not json")
        pool, policy = run_async(load_pool_file(str(path)))
        assert pool == []
        assert policy == KeyPolicy()

    def test_malformed_entries_skipped(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text(
            json.dumps(
                {
                    "policy": {"strategy": "random"},
                    "keys": [{"id": "key_1", "secret": "sk-1"}, {"name": "no id"}],
                }
            )
        )
        pool, policy = run_async(load_pool_file(str(path)))
        assert [key.id for key in pool] == ["key_1"]
        assert policy.strategy == LoadBalanceStrategy.RANDOM


    def test_non_finite_numbers_fall_back(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text(
            '{"policy": {"cooldown_minutes": 1e400, "round_robin_cursor": Infinity},'
            ' "keys": [{"id": "k1", "secret": "sk-1", "priority": 1e400}]}'
        )
        pool, policy = run_async(load_pool_file(str(path)))

        assert policy == KeyPolicy()
        assert [key.id for key in pool] == ["k1"]
        assert pool[0].priority == 5


class TestRendering:
    def test_describe_outcome(self):
        assert app_main.describe_outcome(None) == "-"
        assert app_main.describe_outcome(ProbeSuccess(42)) == "ok (42 ms)"
        assert app_main.describe_outcome(ProbeRateLimited()) == "rate limited"
        assert app_main.describe_outcome(ProbeRateLimited(3)) == "rate limited (retry after 3s)"
        assert app_main.describe_outcome(ProbeError("bad key")) == "bad key"

    def test_results_table(self):
        pool = [make_key("a"), make_key("b", status=KeyStatus.ERROR, consecutive_failures=3)]
        table = app_main.render_results_table(pool, {"b": ProbeError("bad key")})

        console = Console(record=True, width=200)
        console.print(table)
        text = console.export_text()
        assert "error" in text
        assert "bad key" in text
        assert pool[0].secret not in text

    def test_keys_from_string(self):
        keys = app_main.keys_from_string("sk-aaaa1111, sk-bbbb2222 sk-aaaa1111")
        assert [key.secret for key in keys] == ["sk-aaaa1111", "sk-bbbb2222"]
        assert [key.name for key in keys] == ["key-1", "key-2"]
        assert keys[0].id < keys[1].id


class TestRunCheck:
    def parse(self, *argv):
        return app_main.build_parser().parse_args(list(argv))

    def test_probes_and_writes_pool(self, tmp_path, monkeypatch):
        path = str(tmp_path / "pool.json")
        good = make_key("a")
        bad = make_key("b")
        run_async(save_pool_file(path, [good, bad], KeyPolicy(max_consecutive_failures=1)))

        transport = FakeTransport(errors={bad.secret: RuntimeError("invalid api key")})
        monkeypatch.setattr(app_main, "build_transport", lambda args: transport)

        args = self.parse("--pool", path, "--model", "openai/gpt-4o-mini", "--delay-ms", "0", "--write")
        exit_code = run_async(app_main.run_check(args))

        assert exit_code == 0
        pool, policy = run_async(load_pool_file(path))
        assert policy.max_consecutive_failures == 1
        statuses = {key.id: key.status for key in pool}
        assert statuses == {"a": KeyStatus.ACTIVE, "b": KeyStatus.ERROR}
        assert pool[1].last_error == "invalid api key"

    def test_write_commits_next_selection(self, tmp_path, monkeypatch):
        path = str(tmp_path / "pool.json")
        run_async(save_pool_file(path, [make_key("a"), make_key("b")], KeyPolicy()))
        monkeypatch.setattr(app_main, "build_transport", lambda args: FakeTransport())

        args = self.parse("--pool", path, "--model", "m", "--delay-ms", "0", "--write")
        assert run_async(app_main.run_check(args)) == 0

        _, policy = run_async(load_pool_file(path))
        assert policy.round_robin_cursor == 1

    def test_selection_is_preview_without_write(self, tmp_path, monkeypatch, capsys):
        path = str(tmp_path / "pool.json")
        run_async(save_pool_file(path, [make_key("a"), make_key("b")], KeyPolicy()))
        monkeypatch.setattr(app_main, "build_transport", lambda args: FakeTransport())

        args = self.parse("--pool", path, "--model", "m", "--delay-ms", "0")
        assert run_async(app_main.run_check(args)) == 0

        assert "preview" in capsys.readouterr().out
        _, policy = run_async(load_pool_file(path))
        assert policy.round_robin_cursor == 0

    def test_keys_from_argument_all_failing(self, monkeypatch):
        transport = FakeTransport(
            errors={"sk-one-111111": RuntimeError("401"), "sk-two-222222": RuntimeError("401")}
        )
        monkeypatch.setattr(app_main, "build_transport", lambda args: transport)

        args = self.parse("--keys", "sk-one-111111,sk-two-222222", "--model", "m", "--delay-ms", "0")
        assert run_async(app_main.run_check(args)) == 1
        assert len(transport.requests) == 2

    def test_disabled_keys_are_not_probed(self, tmp_path, monkeypatch):
        path = str(tmp_path / "pool.json")
        run_async(save_pool_file(path, [make_key("a"), make_key("b", enabled=False)], KeyPolicy()))
        transport = FakeTransport()
        monkeypatch.setattr(app_main, "build_transport", lambda args: transport)

        args = self.parse("--pool", path, "--model", "m", "--delay-ms", "0")
        assert run_async(app_main.run_check(args)) == 0
        assert len(transport.requests) == 1

    def test_no_keys(self, monkeypatch):
        monkeypatch.delenv("KEYPOOL_KEYS", raising=False)
        args = self.parse("--model", "m")
        assert run_async(app_main.run_check(args)) == 2

    def test_no_model(self):
        args = self.parse("--keys", "sk-1234", "--model", "")
        assert run_async(app_main.run_check(args)) == 2
