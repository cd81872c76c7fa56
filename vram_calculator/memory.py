import math
from dataclasses import replace
from typing import Iterable, Optional, Tuple

import pandas as pd

from vram_calculator.common import (
    ACTIVATION_BUFFERS,
    ACTIVATION_DTYPE_BYTES,
    CUDA_GRAPH_MULTIPLIER,
    CUDA_GRAPHS_GB,
    DECIMAL_GB,
    HIGH_USAGE_PERCENT,
    QUANT_PRESETS,
    get_kv_cache_dtype_bytes,
)
from vram_calculator.configs import (
    CalculationResult,
    EngineConfig,
    GPUConfig,
    ModelConfig,
    QuantizationConfig,
)

OVER_CAPACITY_WARNING = (
    "Model weights exceed available VRAM. Reduce model size or increase GPU count."
)


def estimate(
    gpu: GPUConfig,
    model: ModelConfig,
    quant: QuantizationConfig,
    engine: EngineConfig,
    cuda_graphs_gb: float = CUDA_GRAPHS_GB,
    high_usage_percent: float = HIGH_USAGE_PERCENT,
) -> CalculationResult:
    """
    Estimate per-GPU VRAM usage for serving ``model`` with tensor parallelism.

    The KV cache is costed as a pool fully reserved at startup: every
    admitted sequence gets ``max_model_len`` tokens whether it uses them or
    not. A configuration that does not fit is a normal result with
    ``is_over_capacity`` set, never an exception.

    Inputs must already be normalized (``num_gpus >= 1``,
    ``max_model_len >= 1``, ``0 < utilization <= 1``).
    """
    available_vram_bytes = gpu.vram_gb * DECIMAL_GB * gpu.utilization
    available_vram_gb = available_vram_bytes / DECIMAL_GB

    # 张量并行下权重按卡均分
    weights_per_gpu_gb = model.weights_gb / gpu.num_gpus
    weights_per_gpu_bytes = weights_per_gpu_gb * DECIMAL_GB

    graphs_gb = cuda_graphs_gb if engine.cuda_graphs else 0.0
    graphs_bytes = graphs_gb * DECIMAL_GB
    overhead_bytes = engine.overhead_padding * DECIMAL_GB

    # KV 头不能拆分，向上取整
    kv_heads_per_gpu = math.ceil(model.kv_heads / gpu.num_gpus)
    dtype_bytes = get_kv_cache_dtype_bytes(engine.kv_cache_dtype)
    bytes_per_token = 2 * kv_heads_per_gpu * model.head_dim * dtype_bytes * model.num_layers
    bytes_per_seq = bytes_per_token * engine.max_model_len

    kv_available_bytes = (
        available_vram_bytes - weights_per_gpu_bytes - graphs_bytes - overhead_bytes
    )

    if kv_available_bytes <= 0:
        return CalculationResult(
            available_vram_per_gpu=available_vram_gb,
            weights_per_gpu=weights_per_gpu_gb,
            cuda_graphs_memory=graphs_gb,
            overhead_memory=engine.overhead_padding,
            kv_heads_per_gpu=kv_heads_per_gpu,
            kv_bytes_per_token=bytes_per_token,
            kv_bytes_per_seq=bytes_per_seq,
            total_kv_cache_memory=0.0,
            max_tokens_for_kv=0,
            max_concurrent_sequences=0,
            total_batched_tokens=0,
            used_memory=(weights_per_gpu_bytes + graphs_bytes + overhead_bytes) / DECIMAL_GB,
            free_memory=kv_available_bytes / DECIMAL_GB,
            memory_usage_percent=100.0,
            is_over_capacity=True,
            warnings=(OVER_CAPACITY_WARNING,),
            command="",
        )

    max_tokens_for_kv = int(kv_available_bytes // bytes_per_token)
    max_concurrent_seqs = max_tokens_for_kv // engine.max_model_len
    effective_max_seqs = min(max_concurrent_seqs, engine.max_num_seqs)

    total_kv_bytes = effective_max_seqs * bytes_per_seq
    used_bytes = weights_per_gpu_bytes + graphs_bytes + overhead_bytes + total_kv_bytes
    free_bytes = available_vram_bytes - used_bytes
    memory_usage_percent = used_bytes / available_vram_bytes * 100

    total_batched_tokens = min(
        engine.max_batched_tokens, effective_max_seqs * engine.max_model_len
    )

    warnings = []
    if effective_max_seqs < engine.max_num_seqs:
        warnings.append(
            f"KV cache can only fit {effective_max_seqs} sequences "
            f"(you requested {engine.max_num_seqs}). "
            "Consider reducing max_model_len or increasing GPU memory."
        )
    if memory_usage_percent > high_usage_percent:
        warnings.append(
            f"Memory usage is very high (>{high_usage_percent:g}%). "
            "Consider reducing batch size or context length."
        )
    if kv_heads_per_gpu * gpu.num_gpus > model.kv_heads:
        warnings.append(
            f"With {gpu.num_gpus} GPUs, some GPUs will have {kv_heads_per_gpu} KV heads "
            f"while the model has {model.kv_heads}. This may cause slight imbalance."
        )

    command = generate_command(
        gpu, model, engine, effective_max_seqs, total_batched_tokens
    )

    return CalculationResult(
        available_vram_per_gpu=available_vram_gb,
        weights_per_gpu=weights_per_gpu_gb,
        cuda_graphs_memory=graphs_gb,
        overhead_memory=engine.overhead_padding,
        kv_heads_per_gpu=kv_heads_per_gpu,
        kv_bytes_per_token=bytes_per_token,
        kv_bytes_per_seq=bytes_per_seq,
        total_kv_cache_memory=total_kv_bytes / DECIMAL_GB,
        max_tokens_for_kv=max_tokens_for_kv,
        max_concurrent_sequences=effective_max_seqs,
        total_batched_tokens=total_batched_tokens,
        used_memory=used_bytes / DECIMAL_GB,
        free_memory=free_bytes / DECIMAL_GB,
        memory_usage_percent=memory_usage_percent,
        is_over_capacity=False,
        warnings=tuple(warnings),
        command=command,
    )


def generate_command(
    gpu: GPUConfig,
    model: ModelConfig,
    engine: EngineConfig,
    max_num_seqs: int,
    total_batched_tokens: int,
) -> str:
    """Build a ``vllm serve`` invocation that only spells out non-default options."""
    parts = [f"vllm serve {model.name or '<model-name>'}"]
    parts.append(f"--max-model-len {engine.max_model_len}")
    parts.append(f"--max-num-seqs {max_num_seqs}")
    if total_batched_tokens != engine.max_batched_tokens:
        parts.append(f"--max-num-batched-tokens {total_batched_tokens}")
    if engine.kv_cache_dtype != "auto":
        parts.append(f"--kv-cache-dtype {engine.kv_cache_dtype}")
    if gpu.num_gpus > 1:
        parts.append(f"--tensor-parallel-size {gpu.num_gpus}")
    if not engine.cuda_graphs:
        parts.append("--enforce-eager")
    parts.append(f"--gpu-memory-utilization {gpu.utilization:.2f}")
    return " \\\n  ".join(parts)


def estimate_activation_overhead(
    model: ModelConfig,
    engine: EngineConfig,
    num_gpus: int = 1,
    activation_buffers: int = ACTIVATION_BUFFERS,
    cuda_graph_multiplier: float = CUDA_GRAPH_MULTIPLIER,
) -> Tuple[float, float]:
    """
    Empirical activation and graph-capture estimate, in GB per GPU.

    Returns ``(activation_overhead_gb, cuda_graphs_gb)``. Calibrated against
    a single vLLM deployment; shown as a suggestion for ``overhead_padding``
    and not used by :func:`estimate`.
    """
    attn_heads_per_gpu = math.ceil(model.attn_heads / num_gpus)
    hidden_per_gpu = attn_heads_per_gpu * model.head_dim
    dtype_bytes = ACTIVATION_DTYPE_BYTES.get(engine.activation_dtype, 2)
    tokens = engine.max_batched_tokens + engine.max_num_seqs
    activation_bytes = tokens * hidden_per_gpu * dtype_bytes

    overhead_gb = activation_bytes * activation_buffers / DECIMAL_GB
    graphs_gb = (
        activation_bytes / DECIMAL_GB * cuda_graph_multiplier if engine.cuda_graphs else 0.0
    )
    return overhead_gb, graphs_gb


def derive_weights_gb(quant: QuantizationConfig) -> float:
    scale_overhead = QUANT_PRESETS.get(quant.method, {}).get("scale_overhead", 0.0)
    weight_bytes = quant.base_params * DECIMAL_GB * quant.bits / 8
    return weight_bytes * (1 + scale_overhead) / DECIMAL_GB


def memory_breakdown(result: CalculationResult) -> pd.DataFrame:
    rows = [
        {"Component": "Model Weights", "GB": result.weights_per_gpu},
        {"Component": "KV Cache Pool", "GB": result.total_kv_cache_memory},
        {"Component": "CUDA Graphs", "GB": result.cuda_graphs_memory},
        {"Component": "Overhead", "GB": result.overhead_memory},
        {"Component": "Free", "GB": max(0.0, result.free_memory)},
    ]
    df = pd.DataFrame(rows)
    total = result.available_vram_per_gpu
    df["Percentage"] = (df["GB"] / total * 100).round(2) if total > 0 else 0.0
    return df


def capacity_sweep(
    gpu: GPUConfig,
    model: ModelConfig,
    quant: QuantizationConfig,
    engine: EngineConfig,
    max_num_seqs_values: Optional[Iterable[int]] = None,
    num_gpus_values: Optional[Iterable[int]] = None,
) -> pd.DataFrame:
    """
    Re-run :func:`estimate` across several ``max_num_seqs`` or ``num_gpus``
    values and tabulate the capacity-related fields.
    """
    runs = []
    if num_gpus_values is not None:
        for n in num_gpus_values:
            runs.append(("num_gpus", n, replace(gpu, num_gpus=int(n)), engine))
    else:
        for s in max_num_seqs_values or [1, 8, 16, 64, 256]:
            runs.append(("max_num_seqs", s, gpu, replace(engine, max_num_seqs=int(s))))

    rows = []
    for key, value, g, e in runs:
        r = estimate(g, model, quant, e)
        rows.append(
            {
                key: int(value),
                "weights_gb": r.weights_per_gpu,
                "kv_pool_gb": r.total_kv_cache_memory,
                "max_tokens": r.max_tokens_for_kv,
                "max_seqs": r.max_concurrent_sequences,
                "avg_context_per_seq": r.max_tokens_for_kv // max(1, e.max_num_seqs),
                "free_gb": r.free_memory,
                "usage_percent": round(r.memory_usage_percent, 2),
                "over_capacity": r.is_over_capacity,
            }
        )
    return pd.DataFrame(rows)
