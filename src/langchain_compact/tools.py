"""
LangChain Tools 定义

使用 LangChain 1.0 的 @tool 装饰器和 ToolRuntime 定义工具：
- web_search: 网页搜索，结果经 ToolPayloadBudgeter 压缩为 ToolSummary

原始网页内容只计入本轮的 transient tokens，永远不会写入持久化历史；
写入历史的只有带引用的要点摘要。

ToolRuntime 提供访问运行时信息的统一接口：
- context: 不可变的配置（如 session、search_backend）
"""

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from langchain.tools import tool, ToolRuntime

from .memory import CompactionSession, ToolBudgetConfig, ToolPayloadBudgeter
from .memory.token_budget import estimate_tokens

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL = "web_search"


@dataclass
class CompactAgentContext:
    """
    Agent 运行时上下文

    通过 ToolRuntime[CompactAgentContext] 在 tool 中访问
    """
    session: CompactionSession
    # (query, max_results) -> [{"title", "url", "content"}, ...]
    search_backend: Callable[[str, int], list]
    tool_config: ToolBudgetConfig = field(default_factory=ToolBudgetConfig.from_env)
    diagnostics: Optional[Callable[[str, str], None]] = None


def _raw_tokens(results) -> int:
    """Size of the raw payload, counted against this turn only."""
    if not isinstance(results, (list, tuple)):
        return estimate_tokens(str(results))
    total = 0
    for item in results:
        if isinstance(item, dict):
            content = item.get("content") or item.get("raw_content") or item.get("snippet") or ""
            total += estimate_tokens(content if isinstance(content, str) else str(content))
        else:
            total += estimate_tokens(str(item))
    return total


def _fetch(backend, query: str, limit: int, timeout: float):
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(backend, query, limit)
    try:
        return future.result(timeout=timeout if timeout > 0 else None)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def run_web_search(ctx: CompactAgentContext, query: str, provider_id: Optional[str] = None) -> str:
    """Search, budget the payload, persist the summary, return the summary text."""
    config = ctx.tool_config
    budgeter = ToolPayloadBudgeter(config, diagnostics=ctx.diagnostics)

    if not config.enabled:
        return f"[{WEB_SEARCH_TOOL}] disabled"

    # Ask for a few extra so duplicates do not starve the result slots
    limit = config.max_results * 2
    try:
        results = _fetch(ctx.search_backend, query, limit, config.timeout)
    except concurrent.futures.TimeoutError:
        logger.warning("web_search timed out after %ss: %s", config.timeout, query)
        summary = budgeter.empty(WEB_SEARCH_TOOL, query, f"timed out after {config.timeout:g}s")
    except Exception as e:
        logger.warning("web_search backend failed: %s", e)
        summary = budgeter.empty(WEB_SEARCH_TOOL, query, f"search failed: {e}")
    else:
        ctx.session.add_transient_tokens(_raw_tokens(results))
        summary = budgeter.budget(WEB_SEARCH_TOOL, query, results)

    if config.persist_tool_summary:
        ctx.session.append_tool_summary(summary, provider_id=provider_id)
    return summary.to_text()


@tool
def web_search(query: str, runtime: ToolRuntime[CompactAgentContext]) -> str:
    """
    Search the web and return a short, cited summary of the top results.

    Use this for documentation, error messages, library versions or anything
    not available in the working directory. Results are condensed to the
    passages that match the query; full pages are not returned.

    Args:
        query: What to search for (keywords work best)
    """
    tool_call_id = getattr(runtime, "tool_call_id", None)
    return run_web_search(runtime.context, query, provider_id=tool_call_id)


ALL_TOOLS = [web_search]
