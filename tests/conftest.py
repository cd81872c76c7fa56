"""
Shared fixtures for the VRAM calculator tests.
"""
import pytest

from vram_calculator.configs import EngineConfig, GPUConfig, ModelConfig, QuantizationConfig


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cache.db")


@pytest.fixture
def quant():
    return QuantizationConfig(method="none", bits=16, base_params=8.0, group_size=128)


@pytest.fixture
def hypernova():
    """Two RTX 5090s serving a 36.3 GB model at 128K context."""
    gpu = GPUConfig(vram_gb=34.2, num_gpus=2, utilization=0.90)
    model = ModelConfig(weights_gb=36.3, num_layers=32, kv_heads=8, head_dim=64, attn_heads=64)
    engine = EngineConfig(
        max_model_len=131072,
        max_num_seqs=8,
        max_batched_tokens=65536,
        kv_cache_dtype="auto",
        cuda_graphs=True,
        overhead_padding=1.0,
    )
    return gpu, model, engine


@pytest.fixture
def llama_8b():
    """Llama-3.1-8B on a single 80 GB card."""
    gpu = GPUConfig(vram_gb=80.0, num_gpus=1, utilization=0.90)
    model = ModelConfig(weights_gb=16.0, num_layers=32, kv_heads=8, head_dim=128, attn_heads=32)
    engine = EngineConfig(
        max_model_len=8192,
        max_num_seqs=16,
        max_batched_tokens=8192,
        kv_cache_dtype="auto",
        cuda_graphs=True,
        overhead_padding=1.0,
    )
    return gpu, model, engine
