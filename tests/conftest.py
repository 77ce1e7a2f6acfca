"""
1. conftest.py 会在测试运行时被 Pytest 自动加载，对同级及子目录下的测试文件全局生效。
2. 这里把 src 目录加入 sys.path，测试文件可以直接 `from langchain_compact...` 绝对导入，
    不需要先 pip install -e .
3. 共享的 fixture（会话目录、假的 chat model）也放在这里。
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))


VALID_SNAPSHOT_JSON = (
    '{"task": "Fix the failing login test", '
    '"decisions": ["Use bcrypt for hashing"], '
    '"todo": ["Rerun tests/test_auth.py"], '
    '"files_in_scope": [{"path": "src/auth.py", "why": "login handler"}]}'
)


@pytest.fixture
def snapshot_llm():
    """Chat model stub that always returns a valid snapshot."""
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content=VALID_SNAPSHOT_JSON)
    return llm


@pytest.fixture
def session_dir(tmp_path):
    return tmp_path / ".compact"
