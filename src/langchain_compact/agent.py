"""
Compaction session wiring

把 CompactionSession 和 LangChain 模型连接起来：
- get_credentials: 读取 API 认证信息（.env 优先）
- create_summary_llm: 用 init_chat_model 创建生成快照用的模型
- create_session: 按环境变量配置创建会话（含磁盘上的 snapshot / archive）

快照生成只需要一个能 invoke / ainvoke 的 chat model；
渲染、命令分发等 UI 逻辑不在这里。
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .memory import (
    CompactionConfig,
    CompactionSession,
    SnapshotStore,
    SnapshotSynthesizer,
)

logger = logging.getLogger(__name__)


# 加载环境变量（override=True 确保 .env 文件覆盖系统环境变量）
load_dotenv(override=True)


# 默认配置
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
SUMMARY_TEMPERATURE = 0.0  # 快照需要稳定、可解析的 JSON
SUMMARY_MAX_TOKENS = 4000


def get_credentials() -> tuple[str | None, str | None]:
    """
    获取 API 认证信息

    支持通用和 Anthropic 专属环境变量（通用优先）：
    - API Key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL

    Returns:
        (api_key, base_url) 元组
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def create_summary_llm(model_name: Optional[str] = None, timeout: Optional[float] = None):
    """
    创建快照生成用的 chat model

    MODEL_PROVIDER 指定 provider（如 openai、anthropic），未设置时由
    init_chat_model 自动推断。
    """
    model_name = model_name or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
    api_key, base_url = get_credentials()

    init_kwargs = {
        "temperature": SUMMARY_TEMPERATURE,
        "max_tokens": SUMMARY_MAX_TOKENS,
    }
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url
    if timeout:
        init_kwargs["timeout"] = timeout

    # model_provider 参数（未设置时不传，保持自动推断）
    model_provider = os.getenv("MODEL_PROVIDER")
    provider_kwargs = {}
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    return init_chat_model(model_name, **provider_kwargs, **init_kwargs)


def create_session(
    model: Optional[str] = None,
    system_prompt: str = "",
    session_dir: Optional[Path] = None,
    config: Optional[CompactionConfig] = None,
    llm=None,
) -> CompactionSession:
    """
    创建 CompactionSession

    Args:
        model: 模型名称，决定 context window（默认 CLAUDE_MODEL 或 claude-sonnet-4-5）
        system_prompt: 会话的 system prompt（计入 persisted tokens）
        session_dir: session.json 和 archive/ 所在目录
        config: 压缩配置，默认从环境变量读取
        llm: 快照生成用的模型，默认用 create_summary_llm 创建
    """
    config = config or CompactionConfig.from_env()
    model_name = model or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
    store = SnapshotStore(session_dir or Path(config.session_dir))

    if llm is None:
        try:
            llm = create_summary_llm(model_name)
        except Exception as e:
            # 没有可用模型时仍可计量 token；需要生成快照时才会报 SynthesisError
            logger.warning("Failed to create summary LLM: %s", e)

    # 上次压缩留下的快照作为下一次压缩的 prior
    snapshot = store.load_snapshot()
    if snapshot is not None:
        logger.info("Loaded snapshot from %s (task: %s)", store.snapshot_path, snapshot.task)

    return CompactionSession(
        config=config,
        synthesizer=SnapshotSynthesizer(llm, timeout=config.synthesis_timeout),
        store=store,
        system_prompt=system_prompt,
        model_name=model_name,
        snapshot=snapshot,
    )
