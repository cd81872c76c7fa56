from .common import format_bytes, format_gb, format_number, get_dtype_size
from .configs import (
    CalculationResult,
    EngineConfig,
    GPUConfig,
    ModelConfig,
    ModelMetadata,
    QuantizationConfig,
)
from .memory import (
    capacity_sweep,
    derive_weights_gb,
    estimate,
    estimate_activation_overhead,
    generate_command,
    memory_breakdown,
)

__all__ = [
    "format_number",
    "format_bytes",
    "format_gb",
    "get_dtype_size",
    "GPUConfig",
    "ModelConfig",
    "QuantizationConfig",
    "EngineConfig",
    "CalculationResult",
    "ModelMetadata",
    "estimate",
    "generate_command",
    "estimate_activation_overhead",
    "derive_weights_gb",
    "memory_breakdown",
    "capacity_sweep",
]
