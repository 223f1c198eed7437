"""配置加载"""

from pathlib import Path

import pytest

from ai_usage_cost.config import (
    deep_merge,
    get_cache_dir,
    get_default_config,
    load_currency_config,
    load_full_config,
    load_pricing_config,
    resolve_source_root,
)


class TestDeepMerge:
    def test_nested_values_merged(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        result = deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert result == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base["a"]["y"] == 2


class TestLoadFullConfig:
    def test_packaged_defaults(self, tmp_path):
        config = load_full_config(user_config_dir=tmp_path)
        assert config["currency"]["display_unit"] == "USD"
        assert config["pricing"]["cache_ttl_seconds"] == 3600
        assert config["engine"]["mode"] == "local"
        assert config["cursor"]["fetch_timeout_seconds"] == 30

    def test_user_config_overrides(self, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "currency:\n  display_unit: CNY\npricing:\n  overrides:\n    my-model:\n      input_per_million: 1\n",
            encoding="utf-8",
        )
        config = load_full_config(user_config_dir=tmp_path)
        assert load_currency_config(config) == {"usd_to_cny": 7.0, "display_unit": "CNY"}
        pricing = load_pricing_config(config)
        assert pricing["overrides"]["my-model"]["input_per_million"] == 1
        assert pricing["cache_ttl_seconds"] == 3600

    def test_broken_user_config_ignored(self, tmp_path):
        (tmp_path / "config.yaml").write_text("currency: [unclosed\n", encoding="utf-8")
        config = load_full_config(user_config_dir=tmp_path)
        assert config["currency"] == get_default_config()["currency"]


class TestPaths:
    def test_cache_dir_follows_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        assert get_cache_dir() == tmp_path / "ai-usage-cost"

    def test_configured_root_wins(self, tmp_path):
        config = {"sources": {"claude": str(tmp_path / "claude")}}
        assert resolve_source_root("claude", config) == tmp_path / "claude"

    def test_codex_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CODEX_HOME", str(tmp_path / "codex"))
        assert resolve_source_root("codex") == tmp_path / "codex" / "sessions"

    def test_opencode_data_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        assert resolve_source_root("opencode") == tmp_path / "opencode" / "storage" / "message"

    def test_cursor_cache(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        assert resolve_source_root("cursor") == tmp_path / "ai-usage-cost" / "cursor-cache"

    def test_defaults_under_home(self):
        assert resolve_source_root("claude") == Path.home() / ".claude" / "projects"
        assert resolve_source_root("amp") == Path.home() / ".local" / "share" / "amp" / "threads"
        assert resolve_source_root("droid") == Path.home() / ".factory" / "sessions"

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            resolve_source_root("vscode")
