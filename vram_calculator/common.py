# 显存统一使用十进制 GB，与显卡厂商标注一致
DECIMAL_GB = 1_000_000_000

# 校准参数：经验值，随 vLLM 版本变化需要重新标定
CUDA_GRAPHS_GB = 2.5
HIGH_USAGE_PERCENT = 95
ACTIVATION_BUFFERS = 2
CUDA_GRAPH_MULTIPLIER = 10

KV_CACHE_DTYPE_BYTES = {"auto": 2, "fp8": 1}

ACTIVATION_DTYPE_BYTES = {"auto": 2, "float16": 2, "bfloat16": 2}


def format_number(num: int) -> str:
    if num >= 1_000_000_000:
        return f"{num / 1_000_000_000:.2f} B"
    elif num >= 1_000_000:
        return f"{num / 1_000_000:.2f} M"
    else:
        return f"{num:,}"


def format_bytes(num_bytes: float, decimals: int = 2) -> str:
    if num_bytes == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    value = float(num_bytes)
    while abs(value) >= 1000 and i < len(units) - 1:
        value /= 1000
        i += 1
    value = round(value, max(0, decimals))
    # 去掉多余的小数 0，例如 1.50 -> 1.5
    return f"{value:g} {units[i]}"


def format_gb(gb: float, decimals: int = 2) -> str:
    return f"{gb:.{decimals}f} GB"


def get_dtype_size(dtype: str) -> float:
    dtype_map = {"fp32": 4, "fp16": 2, "bf16": 2, "fp8": 1, "int8": 1, "int4": 0.5}
    return dtype_map.get(dtype.lower(), 2)


def get_kv_cache_dtype_bytes(kv_cache_dtype: str) -> int:
    return KV_CACHE_DTYPE_BYTES.get(str(kv_cache_dtype).lower(), 2)


GPU_PRESETS = {
    "consumer": [
        {"name": "RTX 4070 Ti", "vram": 12.9},
        {"name": "RTX 4080", "vram": 17.2},
        {"name": "RTX 4090", "vram": 25.8},
        {"name": "RTX 5090", "vram": 34.2},
    ],
    "professional": [
        {"name": "RTX 6000 Ada", "vram": 51.5},
        {"name": "L40", "vram": 51.5},
        {"name": "L40S", "vram": 51.5},
        {"name": "A40", "vram": 51.5},
        {"name": "A100 (40GB)", "vram": 42.5},
        {"name": "A100 (80GB)", "vram": 85.9},
        {"name": "H100 (80GB)", "vram": 85.9},
        {"name": "H200 (141GB)", "vram": 150.5},
    ],
}

MODEL_PRESETS = [
    {
        "name": "Llama-3.1-8B",
        "weights": 16,
        "layers": 32,
        "kv_heads": 8,
        "head_dim": 128,
        "attn_heads": 32,
        "context": 131072,
        "quant": "none",
        "bits": 16,
        "base_params": 8,
    },
    {
        "name": "Llama-3.1-70B",
        "weights": 140,
        "layers": 80,
        "kv_heads": 8,
        "head_dim": 128,
        "attn_heads": 64,
        "context": 131072,
        "quant": "none",
        "bits": 16,
        "base_params": 70,
    },
    {
        "name": "Qwen2.5-72B",
        "weights": 144,
        "layers": 80,
        "kv_heads": 8,
        "head_dim": 128,
        "attn_heads": 64,
        "context": 131072,
        "quant": "none",
        "bits": 16,
        "base_params": 72,
    },
    {
        "name": "HyperNova-60B",
        "weights": 42,
        "layers": 80,
        "kv_heads": 8,
        "head_dim": 128,
        "attn_heads": 64,
        "context": 131072,
        "quant": "awq",
        "bits": 4,
        "base_params": 80,
    },
]

QUANT_PRESETS = {
    "none": {"bits": 16, "has_scales": False, "scale_overhead": 0.0},
    "awq": {"bits": 4, "has_scales": True, "scale_overhead": 0.1},
    "gptq": {"bits": 4, "has_scales": True, "scale_overhead": 0.1},
    "gptq-marlin": {"bits": 4, "has_scales": True, "scale_overhead": 0.05},
    "squeezellm": {"bits": 4, "has_scales": True, "scale_overhead": 0.08},
    "fp8": {"bits": 8, "has_scales": False, "scale_overhead": 0.0},
}

KV_CACHE_DTYPES = {"auto": "Auto (FP16/BF16)", "fp8": "FP8 (2x capacity)"}

ACTIVATION_DTYPES = {"auto": "Auto", "float16": "FP16", "bfloat16": "BF16"}

DEFAULT_GPU_CONFIG = {"vram_gb": 34.2, "num_gpus": 2, "utilization": 0.90}

DEFAULT_MODEL_CONFIG = {
    "weights_gb": 42.0,
    "num_layers": 80,
    "kv_heads": 8,
    "head_dim": 128,
    "attn_heads": 64,
}

DEFAULT_QUANT_CONFIG = {"method": "awq", "bits": 4, "base_params": 80.0, "group_size": 128}

DEFAULT_ENGINE_CONFIG = {
    "max_model_len": 16384,
    "max_num_seqs": 256,
    "max_batched_tokens": 8192,
    "kv_cache_dtype": "auto",
    "activation_dtype": "auto",
    "cuda_graphs": True,
    "overhead_padding": 1.0,
}


# 字段别名映射（集中管理）
ALIASES = {
    "num_layers": ["num_hidden_layers", "n_layer", "num_layers", "n_layers"],
    "kv_heads": [
        "num_key_value_heads",
        "num_kv_heads",
        "kv_heads",
        "num_attention_heads",
    ],
    "attn_heads": ["num_attention_heads", "n_head", "num_heads"],
    "max_context": [
        "max_position_embeddings",
        "max_seq_len",
        "n_positions",
        "model_max_length",
    ],
    "quant_method": ["quant_method", "method"],
    "quant_bits": ["bits", "w_bit"],
}
