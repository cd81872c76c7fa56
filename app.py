import logging
import time
from dataclasses import asdict

import plotly.express as px
import streamlit as st
import pandas as pd
from vram_calculator.analysis import (
    fetch_model_metadata,
    metadata_store,
    metadata_to_model_config,
)
from vram_calculator.common import (
    ACTIVATION_DTYPES,
    DEFAULT_ENGINE_CONFIG,
    DEFAULT_GPU_CONFIG,
    DEFAULT_MODEL_CONFIG,
    DEFAULT_QUANT_CONFIG,
    GPU_PRESETS,
    KV_CACHE_DTYPES,
    MODEL_PRESETS,
    QUANT_PRESETS,
    format_bytes,
    format_gb,
    format_number,
)
from vram_calculator.configs import (
    normalize_engine_config,
    normalize_gpu_config,
    normalize_model_config,
    normalize_quant_config,
)
from vram_calculator.memory import (
    capacity_sweep,
    derive_weights_gb,
    estimate,
    estimate_activation_overhead,
    memory_breakdown,
)
from vram_calculator.storage import Debouncer, config_store, load_configuration, save_configuration

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# --- 页面配置 ---
st.set_page_config(page_title="vLLM VRAM Calculator", page_icon="🧮", layout="wide")

SAVE_DEBOUNCE_SECONDS = 1.0
CUSTOM = "自定义"
MODEL_KEYS = list(DEFAULT_MODEL_CONFIG) + ["name", "max_context_length"]


@st.cache_resource(show_spinner=False)
def get_config_store():
    return config_store()


@st.cache_resource(show_spinner=False)
def get_metadata_store():
    return metadata_store()


def get_save_debouncer():
    # 每个会话各自一个，避免不同会话互相取消待保存的配置
    if "save_debouncer" not in st.session_state:
        store = get_config_store()
        st.session_state["save_debouncer"] = Debouncer(
            SAVE_DEBOUNCE_SECONDS,
            lambda gpu, model, quant, engine: save_configuration(gpu, model, quant, engine, store),
        )
    return st.session_state["save_debouncer"]


def _set_section(prefix: str, values: dict):
    for k, v in values.items():
        if v is not None:
            st.session_state[f"{prefix}_{k}"] = v


def _read_section(prefix: str, keys) -> dict:
    return {k: st.session_state.get(f"{prefix}_{k}") for k in keys}


def init_state():
    if st.session_state.get("initialized"):
        return
    loaded = load_configuration(get_config_store())
    if loaded:
        gpu, model, quant, engine = loaded
        _set_section("gpu", asdict(gpu))
        _set_section("model", asdict(model))
        _set_section("quant", asdict(quant))
        _set_section("engine", asdict(engine))
    else:
        _set_section("gpu", DEFAULT_GPU_CONFIG)
        _set_section("model", DEFAULT_MODEL_CONFIG)
        _set_section("quant", DEFAULT_QUANT_CONFIG)
        _set_section("engine", DEFAULT_ENGINE_CONFIG)
    st.session_state.setdefault("model_name", "")
    if st.session_state["quant_method"] not in QUANT_PRESETS:
        st.session_state["quant_method"] = "none"
    st.session_state["initialized"] = True


# --- 回调：预设、查询、推导 ---
ALL_GPUS = {g["name"]: g["vram"] for group in GPU_PRESETS.values() for g in group}


def on_gpu_preset():
    name = st.session_state["gpu_preset"]
    if name in ALL_GPUS:
        st.session_state["gpu_vram_gb"] = ALL_GPUS[name]


def on_model_preset():
    name = st.session_state["model_preset"]
    preset = next((m for m in MODEL_PRESETS if m["name"] == name), None)
    if preset is None:
        return
    _set_section(
        "model",
        {
            "name": preset["name"],
            "weights_gb": float(preset["weights"]),
            "num_layers": preset["layers"],
            "kv_heads": preset["kv_heads"],
            "head_dim": preset["head_dim"],
            "attn_heads": preset["attn_heads"],
            "max_context_length": preset["context"],
        },
    )
    _set_section(
        "quant",
        {"method": preset["quant"], "bits": preset["bits"], "base_params": float(preset["base_params"])},
    )


def on_quant_method():
    preset = QUANT_PRESETS.get(st.session_state["quant_method"])
    if preset:
        st.session_state["quant_bits"] = preset["bits"]


def on_derive_weights():
    quant = normalize_quant_config(_read_section("quant", DEFAULT_QUANT_CONFIG))
    st.session_state["model_weights_gb"] = round(derive_weights_gb(quant), 2)


def on_lookup():
    model_id = st.session_state.get("model_name", "")
    start_time = time.time()
    ok, metadata, error_msg = fetch_model_metadata(
        model_id,
        trust_remote_code=st.session_state.get("trust_remote", True),
        store=get_metadata_store(),
        count_params=st.session_state.get("count_params", False),
    )
    if not ok:
        st.session_state["lookup_message"] = ("error", error_msg)
        return
    current = normalize_model_config(_read_section("model", MODEL_KEYS))
    merged = metadata_to_model_config(metadata, current)
    _set_section("model", asdict(merged))
    st.session_state["model_name"] = merged.name or model_id
    if metadata.quant_method:
        st.session_state["quant_method"] = (
            metadata.quant_method if metadata.quant_method in QUANT_PRESETS else "none"
        )
    if metadata.quant_bits:
        st.session_state["quant_bits"] = metadata.quant_bits
    if metadata.base_params:
        st.session_state["quant_base_params"] = round(metadata.base_params, 2)
    if metadata.max_context_length:
        st.session_state["engine_max_model_len"] = min(
            st.session_state["engine_max_model_len"], metadata.max_context_length
        )
    elapsed = time.time() - start_time
    if metadata.missing:
        st.session_state["lookup_message"] = (
            "warning",
            f"已获取 {model_id}（{elapsed:.2f}秒），以下字段未找到，请手动填写：{', '.join(metadata.missing)}",
        )
    else:
        st.session_state["lookup_message"] = ("success", f"✅ 已获取 {model_id}（{elapsed:.2f}秒）")


init_state()

# --- UI 布局 ---
st.title("🧮 vLLM 显存计算器")
st.markdown(
    """
根据 **GPU / 模型 / 量化 / vLLM 引擎** 配置估算单卡显存占用：权重、CUDA Graph、预留开销与 **KV Cache 池**，
以及剩余显存可支撑的并发序列数。所有 GB 均为十进制（10^9 字节），与显卡厂商标注一致。
"""
)

with st.sidebar:
    st.header("GPU 配置")
    st.selectbox(
        "GPU 预设",
        options=[CUSTOM] + list(ALL_GPUS.keys()),
        key="gpu_preset",
        on_change=on_gpu_preset,
    )
    st.number_input("单卡显存 (GB)", min_value=0.0, step=0.1, key="gpu_vram_gb")
    st.number_input(
        "GPU 数量 (张量并行度)", min_value=1, step=1, key="gpu_num_gpus", help="--tensor-parallel-size"
    )
    st.slider(
        "显存利用率",
        min_value=0.01,
        max_value=1.0,
        step=0.01,
        key="gpu_utilization",
        help="--gpu-memory-utilization，为其他进程预留余量",
    )

    st.divider()
    st.header("模型配置")
    st.text_input(
        "ModelScope / HuggingFace 模型 ID",
        key="model_name",
        help="格式：组织名/模型名，如 Qwen/Qwen2.5-72B-Instruct",
    )
    st.checkbox("Trust Remote Code", value=True, key="trust_remote")
    st.checkbox(
        "统计参数量以推导权重大小",
        value=False,
        key="count_params",
        help="使用 Meta Tensor 构建模型结构，无需下载权重",
    )
    st.button("🔍 获取模型配置", on_click=on_lookup, width="stretch")
    st.selectbox(
        "模型预设",
        options=[CUSTOM] + [m["name"] for m in MODEL_PRESETS],
        key="model_preset",
        on_change=on_model_preset,
    )
    st.number_input("权重总大小 (GB)", min_value=0.0, step=0.1, key="model_weights_gb")
    st.number_input("层数", min_value=1, step=1, key="model_num_layers")
    st.number_input("KV 头数", min_value=1, step=1, key="model_kv_heads")
    st.number_input("每个头的维度", min_value=1, step=1, key="model_head_dim")
    st.number_input("注意力头数", min_value=1, step=1, key="model_attn_heads")

    st.divider()
    st.header("量化配置")
    st.selectbox(
        "量化方法", options=list(QUANT_PRESETS.keys()), key="quant_method", on_change=on_quant_method
    )
    st.number_input("位宽", min_value=1, step=1, key="quant_bits")
    st.number_input("参数量 (B)", min_value=0.0, step=1.0, key="quant_base_params")
    st.number_input("Group Size", min_value=1, step=1, key="quant_group_size")
    st.button("⚖️ 按量化推导权重大小", on_click=on_derive_weights, width="stretch")

    st.divider()
    st.header("vLLM 引擎配置")
    st.number_input("max-model-len", min_value=1, step=1024, key="engine_max_model_len")
    st.number_input("max-num-seqs", min_value=1, step=1, key="engine_max_num_seqs")
    st.number_input("max-num-batched-tokens", min_value=1, step=1024, key="engine_max_batched_tokens")
    st.selectbox(
        "KV Cache 数据类型",
        options=list(KV_CACHE_DTYPES.keys()),
        format_func=KV_CACHE_DTYPES.get,
        key="engine_kv_cache_dtype",
    )
    st.selectbox(
        "激活数据类型",
        options=list(ACTIVATION_DTYPES.keys()),
        format_func=ACTIVATION_DTYPES.get,
        key="engine_activation_dtype",
    )
    st.checkbox("CUDA Graphs", key="engine_cuda_graphs", help="关闭时等价于 --enforce-eager")
    st.number_input("预留开销 (GB)", min_value=0.0, step=0.1, key="engine_overhead_padding")

message = st.session_state.pop("lookup_message", None)
if message:
    level, text = message
    getattr(st, level)(text)
    if level == "error" and "not found" in text:
        st.markdown("🔍 你可以在 [ModelScope](https://modelscope.cn/models) 搜索模型")

# --- 归一化输入并估算 ---
gpu = normalize_gpu_config(_read_section("gpu", DEFAULT_GPU_CONFIG))
model = normalize_model_config(_read_section("model", MODEL_KEYS))
quant = normalize_quant_config(_read_section("quant", DEFAULT_QUANT_CONFIG))
engine = normalize_engine_config(_read_section("engine", DEFAULT_ENGINE_CONFIG))

get_save_debouncer().call(gpu, model, quant, engine)

result = estimate(gpu, model, quant, engine)

tab_overview, tab_formula, tab_capacity, tab_command = st.tabs(
    ["📊 概览", "🧮 计算过程", "📈 容量分析", "🚀 启动命令"]
)

with tab_overview:
    if result.is_over_capacity:
        st.error("❌ 配置无法放下：" + result.warnings[0])
    else:
        for w in result.warnings:
            st.warning(f"⚠️ {w}")

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("单卡可用显存", format_gb(result.available_vram_per_gpu))
    col2.metric("单卡权重", format_gb(result.weights_per_gpu))
    col3.metric("KV Cache 池", format_gb(result.total_kv_cache_memory))
    col4.metric("剩余显存", format_gb(result.free_memory))

    col5, col6, col7, col8 = st.columns(4)
    col5.metric("最大并发序列", result.max_concurrent_sequences)
    col6.metric("KV 可容纳 Token", format_number(result.max_tokens_for_kv))
    col7.metric("批处理 Token", format_number(result.total_batched_tokens))
    col8.metric("显存使用率", f"{result.memory_usage_percent:.1f}%")

    st.progress(min(1.0, max(0.0, result.memory_usage_percent / 100)))

    st.subheader("💾 单卡显存分布")
    df_mem = memory_breakdown(result)
    c1, c2 = st.columns(2)
    with c1:
        fig = px.pie(df_mem, values="GB", names="Component", title="显存组成", hole=0.3)
        st.plotly_chart(fig, width="stretch")
    with c2:
        st.dataframe(df_mem, width="stretch")

    act_gb, graphs_gb = estimate_activation_overhead(model, engine, gpu.num_gpus)
    st.info(
        f"💡 经验估算：激活开销约 {act_gb:.3f} GB，CUDA Graph 约 {graphs_gb:.3f} GB，"
        f"可作为「预留开销」的参考值（当前 {engine.overhead_padding:.2f} GB）。"
    )

with tab_formula:
    st.subheader("🧮 KV Cache 计算过程")
    col_formula, col_explanation = st.columns([1, 1])
    with col_formula:
        st.markdown("**计算公式:**")
        st.latex(r"""\text{Bytes/Token} = 2 \times \lceil H_{kv} / TP \rceil \times D \times S \times L""")
        st.latex(r"""\text{Max Seqs} = \min\left(\left\lfloor \frac{V \cdot u - W/TP - G - O}{\text{Bytes/Token} \times C} \right\rfloor, N\right)""")
    with col_explanation:
        st.markdown("**变量说明:**")
        st.markdown("- $H_{kv}$ = KV 头数，$TP$ = GPU 数量")
        st.markdown("- $D$ = 每个头的维度，$L$ = 层数")
        st.markdown("- $S$ = KV Cache 数据类型字节数 (auto=2, fp8=1)")
        st.markdown("- $V$ = 单卡显存，$u$ = 显存利用率")
        st.markdown("- $W$ = 权重总大小，$G$ = CUDA Graph，$O$ = 预留开销")
        st.markdown("- $C$ = max-model-len，$N$ = max-num-seqs")

    st.write("**计算步骤:**")
    steps = {
        "单卡可用显存": format_gb(result.available_vram_per_gpu),
        "单卡权重": format_gb(result.weights_per_gpu),
        "CUDA Graph": format_gb(result.cuda_graphs_memory),
        "预留开销": format_gb(result.overhead_memory),
        "每卡 KV 头数": result.kv_heads_per_gpu,
        "每 Token KV 字节": format_bytes(result.kv_bytes_per_token),
        "每序列 KV 字节": format_bytes(result.kv_bytes_per_seq),
        "KV 可容纳 Token": format_number(result.max_tokens_for_kv),
        "实际并发序列": result.max_concurrent_sequences,
    }
    df_steps = pd.DataFrame([{"项目": k, "值": str(v)} for k, v in steps.items()])
    st.dataframe(df_steps, width=1000)
    st.caption(
        "KV Cache 按启动时整体预分配的池计算：每个序列均按 max-model-len 计费。"
        "调整 max-num-seqs 只影响容量分析，不会改变显存分布，除非其低于显存可容纳的上限。"
    )

with tab_capacity:
    st.subheader("📈 max-num-seqs 对容量的影响")
    seq_values = sorted({1, 8, 16, 64, 256, engine.max_num_seqs})
    df_seqs = capacity_sweep(gpu, model, quant, engine, max_num_seqs_values=seq_values)
    st.dataframe(df_seqs, width="stretch")

    st.subheader("📈 GPU 数量对容量的影响")
    gpu_values = sorted({1, 2, 4, 8, gpu.num_gpus})
    df_gpus = capacity_sweep(gpu, model, quant, engine, num_gpus_values=gpu_values)
    fig2 = px.bar(
        df_gpus,
        x="num_gpus",
        y="max_seqs",
        title="各 GPU 数量下的最大并发序列",
        labels={"num_gpus": "GPU 数量", "max_seqs": "最大并发序列"},
    )
    st.plotly_chart(fig2, width="stretch")
    st.dataframe(df_gpus, width="stretch")

with tab_command:
    st.subheader("🚀 vLLM 启动命令")
    if result.command:
        st.code(result.command, language="bash")
    else:
        st.warning("配置无法放下，未生成启动命令。")

# 添加页脚
st.divider()
st.caption(
    """
**💡 使用提示:**
- 本工具为预测性估算，不会访问真实 GPU，也不模拟调度与分配器行为
- CUDA Graph（2.5 GB）与激活开销均为经验值，随 vLLM 版本可能需要重新标定
- 配置会自动保存 30 天，模型信息缓存 7 天
"""
)
