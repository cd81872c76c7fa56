"""
Tests for the expiring store, configuration persistence and debouncing.
"""
import os
import sqlite3
import threading
import time

from vram_calculator.configs import EngineConfig, GPUConfig, ModelConfig, QuantizationConfig
from vram_calculator.storage import (
    CONFIG_NAMESPACE,
    CONFIG_STORAGE_KEY,
    CONFIG_TTL,
    Debouncer,
    ExpiringStore,
    config_store,
    load_configuration,
    save_configuration,
)


def _records():
    return (
        GPUConfig(vram_gb=85.9, num_gpus=4, utilization=0.92),
        ModelConfig(
            weights_gb=140.0,
            num_layers=80,
            kv_heads=8,
            head_dim=128,
            attn_heads=64,
            name="meta-llama/Llama-3.1-70B",
            max_context_length=131072,
        ),
        QuantizationConfig(method="none", bits=16, base_params=70.0, group_size=128),
        EngineConfig(
            max_model_len=32768,
            max_num_seqs=64,
            max_batched_tokens=16384,
            kv_cache_dtype="fp8",
            cuda_graphs=False,
            overhead_padding=1.5,
        ),
    )


class TestExpiringStore:
    def test_set_and_get(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=60, db_path=db_path, clock=clock)
        store.set("a", {"x": 1})
        assert store.get("a") == {"x": 1}
        assert store.get("missing") is None

    def test_entries_expire(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=60, db_path=db_path, clock=clock)
        store.set("a", 1)
        clock.advance(60)
        assert store.get("a") == 1
        clock.advance(1)
        assert store.get("a") is None
        assert store.keys() == []

    def test_keeps_most_recent_entries(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=600, max_entries=3, db_path=db_path, clock=clock)
        for i in range(5):
            store.set(f"k{i}", i)
            clock.advance(1)
        assert store.keys() == ["k4", "k3", "k2"]
        assert store.get("k0") is None

    def test_rewrite_refreshes_entry(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=600, max_entries=2, db_path=db_path, clock=clock)
        store.set("a", 1)
        clock.advance(1)
        store.set("b", 2)
        clock.advance(1)
        store.set("a", 3)
        clock.advance(1)
        store.set("c", 4)
        assert set(store.keys()) == {"a", "c"}
        assert store.get("a") == 3

    def test_namespaces_are_isolated(self, db_path, clock):
        first = ExpiringStore("one", ttl_seconds=60, max_entries=1, db_path=db_path, clock=clock)
        second = ExpiringStore("two", ttl_seconds=60, max_entries=1, db_path=db_path, clock=clock)
        first.set("k", "first")
        second.set("k", "second")
        assert first.get("k") == "first"
        assert second.get("k") == "second"
        first.clear()
        assert first.get("k") is None
        assert second.get("k") == "second"

    def test_corrupt_entry_is_dropped(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=60, db_path=db_path, clock=clock)
        con = sqlite3.connect(db_path)
        con.execute(
            "INSERT INTO entries(namespace, key, value_json, updated_at) VALUES(?, ?, ?, ?)",
            ("test", "bad", "{not json", clock()),
        )
        con.commit()
        con.close()

        assert store.get("bad") is None
        assert store.keys() == []

    def test_unserializable_value_is_skipped(self, db_path, clock):
        store = ExpiringStore("test", ttl_seconds=60, db_path=db_path, clock=clock)
        store.set("obj", object())
        assert store.get("obj") is None

    def test_env_var_sets_default_path(self, tmp_path, monkeypatch):
        path = tmp_path / "nested" / "env.db"
        monkeypatch.setenv("VRAM_CALC_CACHE_DB", str(path))
        store = ExpiringStore("test", ttl_seconds=60)
        store.set("a", 1)
        assert path.exists()


    def test_unreadable_database_is_recreated(self, db_path, clock):
        with open(db_path, "wb") as f:
            f.write(b"this is not a sqlite database" * 100)
        store = ExpiringStore("test", ttl_seconds=60, db_path=db_path, clock=clock)
        assert store.enabled
        assert store.get("a") is None
        store.set("a", 1)
        assert store.get("a") == 1
        assert os.path.exists(db_path + ".corrupt")

    def test_unusable_path_disables_store(self, tmp_path, clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = ExpiringStore(
            "test", ttl_seconds=60, db_path=str(blocker / "cache.db"), clock=clock
        )
        assert not store.enabled
        store.set("a", 1)
        store.delete("a")
        store.clear()
        assert store.get("a") is None
        assert store.keys() == []


class TestConfigurationPersistence:
    def test_save_then_load(self, db_path, clock):
        store = ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path, clock=clock)
        records = _records()
        save_configuration(*records, store=store)
        assert load_configuration(store) == records

    def test_expires_after_thirty_days(self, db_path, clock):
        store = ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path, clock=clock)
        save_configuration(*_records(), store=store)
        clock.advance(30 * 24 * 60 * 60 + 1)
        assert load_configuration(store) is None

    def test_unreadable_database_loads_nothing(self, db_path, clock):
        with open(db_path, "wb") as f:
            f.write(b"this is not a sqlite database" * 100)
        store = ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path, clock=clock)
        assert load_configuration(store) is None
        records = _records()
        save_configuration(*records, store=store)
        assert load_configuration(store) == records

    def test_unreadable_default_database(self, tmp_path, monkeypatch):
        path = tmp_path / "env.db"
        path.write_bytes(b"this is not a sqlite database" * 100)
        monkeypatch.setenv("VRAM_CALC_CACHE_DB", str(path))
        assert load_configuration(config_store()) is None


    def test_nothing_saved(self, db_path, clock):
        store = ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path, clock=clock)
        assert load_configuration(store) is None

    def test_partial_payload_is_normalized(self, db_path, clock):
        store = ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path, clock=clock)
        store.set(
            CONFIG_STORAGE_KEY,
            {"gpu": {"vram_gb": "oops", "num_gpus": 0}, "model": "garbage", "timestamp": clock()},
        )
        gpu, model, quant, engine = load_configuration(store)
        assert gpu.vram_gb == 0.0
        assert gpu.num_gpus == 1
        assert model.num_layers >= 1
        assert engine.max_model_len >= 1


class TestDebouncer:
    def test_only_last_call_runs(self):
        calls = []
        done = threading.Event()

        def record(value):
            calls.append(value)
            done.set()

        debouncer = Debouncer(0.05, record)
        for i in range(5):
            debouncer.call(i)
        assert debouncer.pending
        assert done.wait(2.0)
        time.sleep(0.1)
        assert calls == [4]
        assert not debouncer.pending

    def test_flush_runs_immediately(self):
        calls = []
        debouncer = Debouncer(10.0, calls.append)
        debouncer.call("a")
        debouncer.flush()
        assert calls == ["a"]
        assert not debouncer.pending

    def test_cancel_drops_pending_call(self):
        calls = []
        debouncer = Debouncer(0.05, calls.append)
        debouncer.call("a")
        debouncer.cancel()
        time.sleep(0.15)
        assert calls == []

    def test_failure_does_not_propagate(self):
        def boom():
            raise RuntimeError("disk full")

        debouncer = Debouncer(10.0, boom)
        debouncer.call()
        debouncer.flush()
        assert not debouncer.pending

    def test_separate_debouncers_do_not_cancel_each_other(self):
        calls = []
        first = Debouncer(10.0, lambda *records: calls.append("first"))
        second = Debouncer(10.0, lambda *records: calls.append("second"))
        first.call(*_records())
        second.call(*_records())
        assert first.pending and second.pending
        first.flush()
        second.flush()
        assert calls == ["first", "second"]
