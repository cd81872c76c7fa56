import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from typing import Any, Optional, Tuple

import numpy as np
import torch
from accelerate import init_empty_weights
from modelscope import AutoConfig, AutoModel
from modelscope.hub.api import HubApi

from vram_calculator.common import ALIASES, DECIMAL_GB, get_dtype_size
from vram_calculator.configs import ModelConfig, ModelMetadata
from vram_calculator.storage import ExpiringStore

logger = logging.getLogger(__name__)

METADATA_NAMESPACE = "model_metadata"
METADATA_TTL = 7 * 24 * 60 * 60
METADATA_MAX_ENTRIES = 50
DEFAULT_TIMEOUT = 10.0

_TORCH_DTYPE_NAMES = {
    "float32": "fp32",
    "float16": "fp16",
    "bfloat16": "bf16",
    "float8_e4m3fn": "fp8",
    "int8": "int8",
}

_WEIGHT_SUFFIXES = (".safetensors", ".bin")


def metadata_store(db_path: Optional[str] = None) -> ExpiringStore:
    return ExpiringStore(
        METADATA_NAMESPACE, METADATA_TTL, max_entries=METADATA_MAX_ENTRIES, db_path=db_path
    )


# 别名映射解析
def _alias_get(config: dict, keys_or_group, default=None):
    keys = keys_or_group
    if isinstance(keys_or_group, str):
        keys = ALIASES.get(keys_or_group, [])
    for k in keys:
        v = config.get(k)
        if v:
            return v
    return default


def _jsonable(obj):
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (list, tuple, set)):
        return [_jsonable(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.dtype):
        return str(obj)
    if isinstance(obj, torch.dtype):
        return str(obj).replace("torch.", "")
    return str(obj)


def _config_to_dict(cfg: Any) -> dict:
    # huggingface PretrainedConfig has to_dict
    if hasattr(cfg, "to_dict"):
        cfg_dict = cfg.to_dict()
    else:
        cfg_dict = {k: v for k, v in cfg.__dict__.items() if not k.startswith("_")}
    return _jsonable(cfg_dict)


def count_parameters(config: Any, trust_remote_code: bool) -> Optional[int]:
    """Count parameters on meta tensors; nothing is downloaded or allocated."""
    try:
        with init_empty_weights():
            model = AutoModel.from_config(config, trust_remote_code=trust_remote_code)
    except Exception as e:
        logger.warning("could not build empty model for parameter count: %s", e)
        return None
    return int(sum(p.numel() for p in model.parameters()))


def weights_file_bytes(model_id: str) -> Optional[int]:
    """Total size of the checkpoint's weight files on the hub, or None."""
    try:
        files = HubApi().get_model_files(model_id, recursive=True)
    except Exception as e:
        logger.warning("could not list files for %s: %s", model_id, e)
        return None
    sizes = {}
    for f in files or []:
        name = str(f.get("Path") or f.get("Name") or "")
        for suffix in _WEIGHT_SUFFIXES:
            if name.endswith(suffix):
                sizes.setdefault(suffix, 0)
                sizes[suffix] += int(f.get("Size") or 0)
    # 优先 safetensors，没有时再看 .bin
    for suffix in _WEIGHT_SUFFIXES:
        if sizes.get(suffix):
            return sizes[suffix]
    return None


def _bytes_per_param(config_dict: dict, quant_bits: Optional[int]) -> float:
    if quant_bits:
        return quant_bits / 8
    dtype = config_dict.get("torch_dtype") or config_dict.get("dtype") or "bfloat16"
    dtype = str(dtype).replace("torch.", "")
    return get_dtype_size(_TORCH_DTYPE_NAMES.get(dtype, dtype))


def extract_model_metadata(
    model_id: str,
    config_dict: Optional[dict],
    total_params: Optional[int] = None,
    weights_bytes: Optional[int] = None,
) -> ModelMetadata:
    if not config_dict:
        return ModelMetadata(model_id=model_id, name=model_id, missing=["config"])

    text_config = config_dict.get("text_config")
    if isinstance(text_config, dict) and not _alias_get(config_dict, "num_layers"):
        # 多模态模型的语言部分配置在 text_config 中
        config_dict = {**config_dict, **text_config}

    num_layers = _alias_get(config_dict, "num_layers")
    kv_heads = _alias_get(config_dict, "kv_heads")
    attn_heads = _alias_get(config_dict, "attn_heads")
    head_dim = config_dict.get("head_dim")
    hidden_size = config_dict.get("hidden_size")
    if not head_dim and hidden_size and attn_heads:
        head_dim = hidden_size // attn_heads
    max_context = _alias_get(config_dict, "max_context")

    quant_method = None
    quant_bits = None
    qconfig = config_dict.get("quantization_config")
    if isinstance(qconfig, dict):
        quant_method = _alias_get(qconfig, "quant_method")
        quant_bits = _alias_get(qconfig, "quant_bits")

    weights_gb = None
    base_params = None
    if total_params:
        base_params = total_params / DECIMAL_GB
        weights_gb = total_params * _bytes_per_param(config_dict, quant_bits) / DECIMAL_GB
    elif config_dict.get("num_parameters"):
        base_params = config_dict["num_parameters"] / DECIMAL_GB
    if weights_bytes:
        # 权重文件实际大小比按参数量估算更准
        weights_gb = weights_bytes / DECIMAL_GB

    found = {
        "num_layers": num_layers,
        "kv_heads": kv_heads,
        "head_dim": head_dim,
        "attn_heads": attn_heads,
        "weights_gb": weights_gb,
    }
    return ModelMetadata(
        model_id=model_id,
        name=model_id,
        weights_gb=weights_gb,
        num_layers=int(num_layers) if num_layers else None,
        kv_heads=int(kv_heads) if kv_heads else None,
        head_dim=int(head_dim) if head_dim else None,
        attn_heads=int(attn_heads) if attn_heads else None,
        max_context_length=int(max_context) if max_context else None,
        quant_method=str(quant_method) if quant_method else None,
        quant_bits=int(quant_bits) if quant_bits else None,
        base_params=base_params,
        total_params=total_params,
        missing=[k for k, v in found.items() if not v],
    )


def _describe_fetch_error(model_id: str, error: Exception) -> str:
    msg = str(error)
    lower = msg.lower()
    if "404" in msg or "not found" in lower or "not exist" in lower:
        return f'Model "{model_id}" not found. Please check the spelling and try again.'
    if "403" in msg or "401" in msg or "gated" in lower or "private" in lower:
        return f'Model "{model_id}" is private or gated. You may need to authenticate.'
    if "trust_remote_code" in msg:
        return f"Model requires trust_remote_code: {msg}"
    return f"Failed to fetch model config: {msg}"


def _fetch(model_id: str, trust_remote_code: bool, count_params: bool) -> ModelMetadata:
    cfg = AutoConfig.from_pretrained(model_id, trust_remote_code=trust_remote_code)
    total_params = count_parameters(cfg, trust_remote_code) if count_params else None
    weights_bytes = weights_file_bytes(model_id)
    return extract_model_metadata(model_id, _config_to_dict(cfg), total_params, weights_bytes)


def fetch_model_metadata(
    model_id: str,
    trust_remote_code: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
    store: Optional[ExpiringStore] = None,
    count_params: bool = False,
) -> Tuple[bool, Optional[ModelMetadata], str]:
    """
    Look up architecture fields for ``model_id``.

    Returns ``(ok, metadata, error_msg)``. Cached results are served for
    seven days. The remote fetch is abandoned after ``timeout`` seconds.
    Nothing is raised; failures come back as ``(False, None, message)``.
    """
    model_id = (model_id or "").strip()
    if not model_id:
        return False, None, "Please enter a model ID"

    store = store or metadata_store()
    cached = store.get(model_id)
    if isinstance(cached, dict):
        try:
            metadata = ModelMetadata.from_dict(cached)
        except TypeError:
            logger.warning("ignoring malformed cached metadata for %s", model_id)
            store.delete(model_id)
        else:
            logger.debug("metadata cache hit for %s", model_id)
            return True, metadata, ""

    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(_fetch, model_id, trust_remote_code, count_params)
    try:
        metadata = future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("metadata lookup for %s timed out after %.1fs", model_id, timeout)
        return False, None, "Request timed out. Please check your connection and try again."
    except Exception as e:
        logger.warning("metadata lookup for %s failed: %s", model_id, e)
        return False, None, _describe_fetch_error(model_id, e)
    finally:
        executor.shutdown(wait=False)

    store.set(model_id, metadata.to_dict())
    return True, metadata, ""


def metadata_to_model_config(metadata: ModelMetadata, base: ModelConfig) -> ModelConfig:
    """Overlay the fields the lookup found onto ``base``."""
    updates = {"name": metadata.name or base.name}
    for field_name in ("weights_gb", "num_layers", "kv_heads", "head_dim", "attn_heads"):
        value = getattr(metadata, field_name)
        if value:
            updates[field_name] = value
    if metadata.max_context_length:
        updates["max_context_length"] = metadata.max_context_length
    return replace(base, **updates)
