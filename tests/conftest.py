import json
from pathlib import Path
from typing import Any, Dict, Iterable

import pytest

from ai_usage_cost import config, pricing
from ai_usage_cost.models import TokenBreakdown, UnifiedMessage
from ai_usage_cost.pricing import PricedEntry, PricingResolver

# 2025-01-15T12:00:00Z
DAY_MS = 1736942400000


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """缓存目录、用户配置目录指向临时目录，并清空进程内的定价解析器"""
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setattr(config, "USER_CONFIG_DIR", tmp_path / "user-config")
    monkeypatch.setattr(pricing, "_resolver", None)
    yield


@pytest.fixture
def catalog() -> Dict[str, PricedEntry]:
    return {
        "claude-sonnet-4-20250514": PricedEntry(3e-6, 15e-6, 0.3e-6, 3.75e-6),
        "anthropic/sonnet-4-5": PricedEntry(3e-6, 15e-6, 0.3e-6, 3.75e-6),
        "gpt-5": PricedEntry(1.25e-6, 10e-6, 0.125e-6, 0.0),
        "gpt-5-codex": PricedEntry(1.25e-6, 10e-6, 0.125e-6, 0.0),
        "openai/gpt-4o": PricedEntry(2.5e-6, 10e-6, 1.25e-6, 0.0),
        "gemini-2.5-pro": PricedEntry(1.25e-6, 10e-6, 0.31e-6, 0.0),
        "glm-4.7": PricedEntry(0.4e-6, 1.5e-6, 0.0, 0.0),
    }


@pytest.fixture
def resolver(catalog) -> PricingResolver:
    return PricingResolver(catalog)


def make_message(
    source: str = "claude",
    model_id: str = "claude-sonnet-4-20250514",
    timestamp: int = DAY_MS,
    cost: float = 0.0,
    session_id: str = "session-1",
    **tokens: int,
) -> UnifiedMessage:
    return UnifiedMessage.create(
        source=source,
        model_id=model_id,
        provider_id=None,
        session_id=session_id,
        timestamp=timestamp,
        tokens=TokenBreakdown(**tokens) if tokens else TokenBreakdown(input=100, output=50),
        cost=cost,
    )


def write_jsonl(path: Path, records: Iterable[Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(record if isinstance(record, str) else json.dumps(record))
            f.write("\n")
    return path


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path
