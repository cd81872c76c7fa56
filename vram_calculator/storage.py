import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import asdict
from typing import Any, Callable, List, Optional, Tuple

from vram_calculator.configs import (
    EngineConfig,
    GPUConfig,
    ModelConfig,
    QuantizationConfig,
    normalize_engine_config,
    normalize_gpu_config,
    normalize_model_config,
    normalize_quant_config,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join("datasets", "vram_calc_cache.db")

CONFIG_NAMESPACE = "config"
CONFIG_STORAGE_KEY = "vllm_calc_config_v1"
CONFIG_TTL = 30 * 24 * 60 * 60


def get_db_path() -> str:
    return os.environ.get("VRAM_CALC_CACHE_DB", DEFAULT_DB_PATH)


class ExpiringStore:
    """
    sqlite-backed key/value map with a max age and an optional entry cap.

    Values are stored as JSON together with their write time. Expired or
    undecodable entries are dropped on read. Database errors are logged and
    treated as a miss (reads) or a no-op (writes).
    """

    def __init__(
        self,
        namespace: str,
        ttl_seconds: float,
        max_entries: Optional[int] = None,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.db_path = db_path or get_db_path()
        self.clock = clock
        self.enabled = True
        try:
            self._init_db()
        except sqlite3.DatabaseError as e:
            logger.warning("cache database %s is unreadable (%s), recreating it", self.db_path, e)
            self._recreate_db()
        except (sqlite3.Error, OSError) as e:
            logger.warning("cache disabled, cannot open %s: %s", self.db_path, e)
            self.enabled = False

    def _connect(self) -> sqlite3.Connection:
        if not self.enabled:
            raise sqlite3.OperationalError("cache is disabled")
        return sqlite3.connect(self.db_path)

    def _recreate_db(self):
        # 损坏的文件改名保留，重新建库
        try:
            os.replace(self.db_path, self.db_path + ".corrupt")
            self._init_db()
        except (sqlite3.Error, OSError) as e:
            logger.warning("cache disabled, cannot recreate %s: %s", self.db_path, e)
            self.enabled = False

    def _init_db(self):
        dirname = os.path.dirname(self.db_path)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        con = sqlite3.connect(self.db_path)
        try:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            con.commit()
        finally:
            con.close()

    def get(self, key: str) -> Any:
        try:
            con = self._connect()
            try:
                row = con.execute(
                    "SELECT value_json, updated_at FROM entries WHERE namespace=? AND key=?",
                    (self.namespace, key),
                ).fetchone()
            finally:
                con.close()
        except sqlite3.Error as e:
            logger.warning("cache read failed for %s/%s: %s", self.namespace, key, e)
            return None
        if not row:
            return None

        value_json, updated_at = row
        if self.clock() - updated_at > self.ttl_seconds:
            logger.debug("cache entry %s/%s expired", self.namespace, key)
            self.delete(key)
            return None
        try:
            return json.loads(value_json)
        except ValueError:
            logger.warning("dropping corrupt cache entry %s/%s", self.namespace, key)
            self.delete(key)
            return None

    def set(self, key: str, value: Any):
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.warning("value for %s/%s is not serializable: %s", self.namespace, key, e)
            return
        try:
            con = self._connect()
            try:
                con.execute(
                    "REPLACE INTO entries(namespace, key, value_json, updated_at) VALUES(?, ?, ?, ?)",
                    (self.namespace, key, payload, self.clock()),
                )
                if self.max_entries is not None:
                    # 只保留最近写入的 max_entries 条
                    con.execute(
                        """
                        DELETE FROM entries WHERE namespace=? AND key NOT IN (
                            SELECT key FROM entries WHERE namespace=?
                            ORDER BY updated_at DESC LIMIT ?
                        )
                        """,
                        (self.namespace, self.namespace, self.max_entries),
                    )
                con.commit()
            finally:
                con.close()
        except sqlite3.Error as e:
            logger.warning("cache write failed for %s/%s: %s", self.namespace, key, e)

    def delete(self, key: str):
        try:
            con = self._connect()
            try:
                con.execute(
                    "DELETE FROM entries WHERE namespace=? AND key=?", (self.namespace, key)
                )
                con.commit()
            finally:
                con.close()
        except sqlite3.Error as e:
            logger.warning("cache delete failed for %s/%s: %s", self.namespace, key, e)

    def clear(self):
        try:
            con = self._connect()
            try:
                con.execute("DELETE FROM entries WHERE namespace=?", (self.namespace,))
                con.commit()
            finally:
                con.close()
        except sqlite3.Error as e:
            logger.warning("cache clear failed for %s: %s", self.namespace, e)

    def keys(self) -> List[str]:
        try:
            con = self._connect()
            try:
                rows = con.execute(
                    "SELECT key FROM entries WHERE namespace=? ORDER BY updated_at DESC",
                    (self.namespace,),
                ).fetchall()
            finally:
                con.close()
        except sqlite3.Error as e:
            logger.warning("cache listing failed for %s: %s", self.namespace, e)
            return []
        return [r[0] for r in rows]


def config_store(db_path: Optional[str] = None) -> ExpiringStore:
    return ExpiringStore(CONFIG_NAMESPACE, CONFIG_TTL, db_path=db_path)


def save_configuration(
    gpu: GPUConfig,
    model: ModelConfig,
    quant: QuantizationConfig,
    engine: EngineConfig,
    store: Optional[ExpiringStore] = None,
):
    store = store or config_store()
    store.set(
        CONFIG_STORAGE_KEY,
        {
            "gpu": asdict(gpu),
            "model": asdict(model),
            "quant": asdict(quant),
            "engine": asdict(engine),
            "timestamp": store.clock(),
        },
    )


def load_configuration(
    store: Optional[ExpiringStore] = None,
) -> Optional[Tuple[GPUConfig, ModelConfig, QuantizationConfig, EngineConfig]]:
    store = store or config_store()
    saved = store.get(CONFIG_STORAGE_KEY)
    if not isinstance(saved, dict):
        return None

    def _section(name: str) -> dict:
        section = saved.get(name)
        return section if isinstance(section, dict) else {}

    return (
        normalize_gpu_config(_section("gpu")),
        normalize_model_config(_section("model")),
        normalize_quant_config(_section("quant")),
        normalize_engine_config(_section("engine")),
    )


class Debouncer:
    """Coalesce rapid calls: only the last call within ``wait_seconds`` runs."""

    def __init__(self, wait_seconds: float, func: Callable[..., Any]):
        self.wait_seconds = wait_seconds
        self.func = func
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._args: Tuple = ()
        self._kwargs: dict = {}
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def call(self, *args, **kwargs):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._args, self._kwargs = args, kwargs
            self._generation += 1
            self._timer = threading.Timer(
                self.wait_seconds, self._fire, args=(self._generation,)
            )
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, generation: Optional[int] = None):
        with self._lock:
            if self._timer is None:
                return
            # 被后续调用取代的定时器不再执行
            if generation is not None and generation != self._generation:
                return
            self._timer = None
            args, kwargs = self._args, self._kwargs
        try:
            self.func(*args, **kwargs)
        except Exception:
            logger.exception("debounced call to %r failed", self.func)

    def flush(self):
        with self._lock:
            if self._timer is None:
                return
            self._timer.cancel()
        self._fire()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
