import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, List, Optional, Tuple

from vram_calculator.common import (
    ACTIVATION_DTYPES,
    DEFAULT_ENGINE_CONFIG,
    DEFAULT_GPU_CONFIG,
    DEFAULT_MODEL_CONFIG,
    DEFAULT_QUANT_CONFIG,
    KV_CACHE_DTYPES,
)


@dataclass(frozen=True)
class GPUConfig:
    vram_gb: float
    num_gpus: int
    utilization: float


@dataclass(frozen=True)
class ModelConfig:
    weights_gb: float
    num_layers: int
    kv_heads: int
    head_dim: int
    attn_heads: int
    name: Optional[str] = None
    max_context_length: Optional[int] = None


@dataclass(frozen=True)
class QuantizationConfig:
    # 目前只用于标注，权重大小推导见 memory.derive_weights_gb
    method: str
    bits: int
    base_params: float
    group_size: int


@dataclass(frozen=True)
class EngineConfig:
    max_model_len: int
    max_num_seqs: int
    max_batched_tokens: int
    kv_cache_dtype: str = "auto"
    cuda_graphs: bool = True
    overhead_padding: float = 1.0
    activation_dtype: str = "auto"


@dataclass(frozen=True)
class CalculationResult:
    """Per-GPU capacity breakdown. GB fields are decimal gigabytes."""

    available_vram_per_gpu: float
    weights_per_gpu: float
    cuda_graphs_memory: float
    overhead_memory: float
    kv_heads_per_gpu: int
    kv_bytes_per_token: int
    kv_bytes_per_seq: int
    total_kv_cache_memory: float
    max_tokens_for_kv: int
    max_concurrent_sequences: int
    total_batched_tokens: int
    used_memory: float
    free_memory: float
    memory_usage_percent: float
    is_over_capacity: bool
    warnings: Tuple[str, ...] = ()
    command: str = ""


@dataclass(frozen=True)
class ModelMetadata:
    model_id: str
    name: Optional[str] = None
    weights_gb: Optional[float] = None
    num_layers: Optional[int] = None
    kv_heads: Optional[int] = None
    head_dim: Optional[int] = None
    attn_heads: Optional[int] = None
    max_context_length: Optional[int] = None
    quant_method: Optional[str] = None
    quant_bits: Optional[int] = None
    base_params: Optional[float] = None
    total_params: Optional[int] = None
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelMetadata":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# --- 输入归一化：调用方在进入估算前完成 ---


def parse_float(value: Any, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(v) or math.isinf(v):
        return default
    return v


def parse_int(value: Any, default: int) -> int:
    v = parse_float(value, float("nan"))
    if math.isnan(v):
        return default
    return int(v)


def clamp(value, lo=None, hi=None):
    if lo is not None and value < lo:
        return lo
    if hi is not None and value > hi:
        return hi
    return value


def _get(raw: Any, key: str, default=None):
    if isinstance(raw, dict):
        return raw.get(key, default)
    return getattr(raw, key, default)


def normalize_gpu_config(raw: Any) -> GPUConfig:
    utilization = parse_float(_get(raw, "utilization"), DEFAULT_GPU_CONFIG["utilization"])
    if utilization <= 0:
        utilization = 0.01
    vram = _get(raw, "vram_gb")
    # 无法解析的显存按 0 处理，缺省时使用默认值
    vram_gb = DEFAULT_GPU_CONFIG["vram_gb"] if vram is None else parse_float(vram, 0.0)
    return GPUConfig(
        vram_gb=clamp(vram_gb, lo=0.0),
        num_gpus=clamp(parse_int(_get(raw, "num_gpus"), 1), lo=1),
        utilization=clamp(utilization, hi=1.0),
    )


def normalize_model_config(raw: Any) -> ModelConfig:
    d = DEFAULT_MODEL_CONFIG
    name = _get(raw, "name")
    max_ctx = _get(raw, "max_context_length")
    return ModelConfig(
        weights_gb=clamp(parse_float(_get(raw, "weights_gb"), d["weights_gb"]), lo=0.0),
        num_layers=clamp(parse_int(_get(raw, "num_layers"), d["num_layers"]), lo=1),
        kv_heads=clamp(parse_int(_get(raw, "kv_heads"), d["kv_heads"]), lo=1),
        head_dim=clamp(parse_int(_get(raw, "head_dim"), d["head_dim"]), lo=1),
        attn_heads=clamp(parse_int(_get(raw, "attn_heads"), d["attn_heads"]), lo=1),
        name=(str(name).strip() or None) if name else None,
        max_context_length=clamp(parse_int(max_ctx, 1), lo=1) if max_ctx else None,
    )


def normalize_quant_config(raw: Any) -> QuantizationConfig:
    d = DEFAULT_QUANT_CONFIG
    return QuantizationConfig(
        method=str(_get(raw, "method") or d["method"]),
        bits=clamp(parse_int(_get(raw, "bits"), d["bits"]), lo=1),
        base_params=clamp(parse_float(_get(raw, "base_params"), d["base_params"]), lo=0.0),
        group_size=clamp(parse_int(_get(raw, "group_size"), d["group_size"]), lo=1),
    )


def normalize_engine_config(raw: Any) -> EngineConfig:
    d = DEFAULT_ENGINE_CONFIG
    kv_dtype = str(_get(raw, "kv_cache_dtype") or d["kv_cache_dtype"])
    act_dtype = str(_get(raw, "activation_dtype") or d["activation_dtype"])
    cuda_graphs = _get(raw, "cuda_graphs")
    return EngineConfig(
        max_model_len=clamp(parse_int(_get(raw, "max_model_len"), d["max_model_len"]), lo=1),
        max_num_seqs=clamp(parse_int(_get(raw, "max_num_seqs"), d["max_num_seqs"]), lo=1),
        max_batched_tokens=clamp(
            parse_int(_get(raw, "max_batched_tokens"), d["max_batched_tokens"]), lo=1
        ),
        kv_cache_dtype=kv_dtype if kv_dtype in KV_CACHE_DTYPES else d["kv_cache_dtype"],
        cuda_graphs=cuda_graphs if isinstance(cuda_graphs, bool) else d["cuda_graphs"],
        overhead_padding=clamp(
            parse_float(_get(raw, "overhead_padding"), d["overhead_padding"]), lo=0.0
        ),
        activation_dtype=act_dtype if act_dtype in ACTIVATION_DTYPES else d["activation_dtype"],
    )
