"""定价解析与定价目录缓存"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from ai_usage_cost.errors import UpstreamFailure
from ai_usage_cost.pricing import (
    CACHE_FILENAME,
    MatchStrategy,
    PricedEntry,
    PricingCatalogLoader,
    PricingResolver,
    build_resolver,
    is_word_boundary_match,
    normalize_model_name,
    parse_catalog,
    strip_tier_suffix,
)


class TestNormalizeModelName:
    @pytest.mark.parametrize(
        "model_id, expected",
        [
            ("claude-sonnet-4-5-20250101", "sonnet-4-5"),
            ("claude-sonnet-4.5", "sonnet-4-5"),
            ("claude-opus-4-20250514", "opus-4"),
            ("claude-3-7-sonnet-latest", "sonnet-3-7"),
            ("claude-3-5-sonnet-20241022", "sonnet-3-5"),
            ("claude-3-7-sonnet-20250219", "sonnet-3-7"),
            ("claude-3-5-haiku-20241022", "haiku-3-5"),
            ("claude-3-opus-20240229", None),
            ("gpt-4o-2024-08-06", "gpt-4o"),
            ("gemini-2.5-pro-preview", "gemini-2.5-pro"),
            ("o3", "o3"),
            ("mystery-model", None),
        ],
    )
    def test_families(self, model_id, expected):
        assert normalize_model_name(model_id) == expected


class TestMatchHelpers:
    def test_word_boundary(self):
        assert is_word_boundary_match("openai/gpt-5-codex", "gpt-5")
        assert not is_word_boundary_match("gpt-50", "gpt-5")
        assert is_word_boundary_match("gpt-50 gpt-5", "gpt-5")

    def test_strip_tier_suffix(self):
        assert strip_tier_suffix("gpt-5-high") == "gpt-5"
        assert strip_tier_suffix("glm-4.7:free") == "glm-4.7"
        assert strip_tier_suffix("gpt-5") is None


class TestPricingResolver:
    def test_exact_match(self, resolver):
        resolution = resolver.resolve("gpt-5")
        assert resolution.matched_key == "gpt-5"
        assert resolution.strategy == MatchStrategy.EXACT

    def test_exact_match_is_case_insensitive(self, resolver):
        assert resolver.resolve("GPT-5").matched_key == "gpt-5"

    def test_provider_prefix(self, resolver):
        resolution = resolver.resolve("gpt-4o")
        assert resolution.matched_key == "openai/gpt-4o"
        assert resolution.strategy == MatchStrategy.PROVIDER_PREFIX

    def test_normalized_with_prefix(self, resolver):
        resolution = resolver.resolve("claude-sonnet-4-5-20250101")
        assert resolution.matched_key == "anthropic/sonnet-4-5"
        assert resolution.strategy == MatchStrategy.NORMALIZED

    def test_claude_3_date_stamp_is_not_read_as_version_4(self):
        resolver = PricingResolver({"sonnet-4": PricedEntry(3e-6, 15e-6), "sonnet-3-5": PricedEntry(3e-6, 15e-6)})
        resolution = resolver.resolve("claude-3-5-sonnet-20241022-custom")
        assert resolution.matched_key == "sonnet-3-5"
        assert resolution.strategy == MatchStrategy.NORMALIZED

    def test_fuzzy_catalog_key_inside_query(self, resolver):
        resolution = resolver.resolve("gpt-5-codex-preview")
        assert resolution.strategy == MatchStrategy.FUZZY
        # 按字典序遍历，gpt-5 先于 gpt-5-codex
        assert resolution.matched_key == "gpt-5"

    def test_reverse_fuzzy_query_inside_catalog_key(self):
        resolver = PricingResolver({"vendor/deepseek-chat-v3": PricedEntry(1e-6, 2e-6)})
        resolution = resolver.resolve("deepseek-chat")
        assert resolution.matched_key == "vendor/deepseek-chat-v3"
        assert resolution.strategy == MatchStrategy.REVERSE_FUZZY

    def test_short_or_generic_names_never_fuzzy_match(self):
        resolver = PricingResolver({"gpt-4o-mini": PricedEntry(1e-6, 2e-6), "auto-router": PricedEntry(1e-6, 2e-6)})
        assert resolver.resolve("mini") is None
        assert resolver.resolve("auto") is None

    def test_tier_suffix_retry(self, resolver):
        resolution = resolver.resolve("glm-4.7-free")
        assert resolution.matched_key == "glm-4.7"

    def test_alias(self, resolver):
        assert resolver.resolve("big-pickle").matched_key == "glm-4.7"

    def test_miss_is_cached_and_recorded(self, resolver, caplog):
        assert resolver.resolve("totally-unknown-model") is None
        assert resolver.resolve("totally-unknown-model") is None
        assert resolver.misses == {"totally-unknown-model"}
        warnings = [r for r in caplog.records if "totally-unknown-model" in r.getMessage()]
        assert len(warnings) == 1

    def test_resolution_keeps_original_model_id(self, resolver):
        assert resolver.resolve("GPT-5").model_id == "GPT-5"


class TestParseCatalog:
    def test_skips_entries_without_rates(self):
        catalog = parse_catalog(
            {
                "sample_spec": {"max_tokens": "set to max"},
                "gpt-5": {"input_cost_per_token": 1.25e-6, "output_cost_per_token": 1e-5},
                "broken": "not-a-dict",
            }
        )
        assert list(catalog) == ["gpt-5"]
        assert catalog["gpt-5"].cache_read_input_token_cost == 0.0

    def test_negative_rates_become_zero(self):
        catalog = parse_catalog({"m": {"input_cost_per_token": -1, "output_cost_per_token": 2e-6}})
        assert catalog["m"].input_cost_per_token == 0.0


RAW_CATALOG = {"gpt-5": {"input_cost_per_token": 1.25e-6, "output_cost_per_token": 1e-5}}


def _response(data):
    response = MagicMock()
    response.json.return_value = data
    response.raise_for_status.return_value = None
    return response


class TestPricingCatalogLoader:
    def make_loader(self, tmp_path, now=10_000.0):
        return PricingCatalogLoader(url="https://example.invalid/prices.json", cache_dir=tmp_path, clock=lambda: now)

    def write_cache(self, tmp_path, timestamp, data=None):
        (tmp_path / CACHE_FILENAME).write_text(json.dumps({"timestamp": timestamp, "data": data or RAW_CATALOG}))

    @patch("ai_usage_cost.pricing.requests.get")
    def test_fetch_writes_cache_envelope(self, mock_get, tmp_path):
        mock_get.return_value = _response(RAW_CATALOG)
        catalog = self.make_loader(tmp_path).load()

        assert "gpt-5" in catalog
        mock_get.assert_called_once()
        envelope = json.loads((tmp_path / CACHE_FILENAME).read_text())
        assert envelope == {"timestamp": 10_000.0, "data": RAW_CATALOG}

    @patch("ai_usage_cost.pricing.requests.get")
    def test_fresh_cache_skips_network(self, mock_get, tmp_path):
        self.write_cache(tmp_path, timestamp=10_000.0 - 60)
        catalog = self.make_loader(tmp_path).load()
        assert "gpt-5" in catalog
        mock_get.assert_not_called()

    @patch("ai_usage_cost.pricing.requests.get")
    def test_expired_cache_refetches(self, mock_get, tmp_path):
        self.write_cache(tmp_path, timestamp=10_000.0 - 3601, data={"old": {"input_cost_per_token": 1e-6}})
        mock_get.return_value = _response(RAW_CATALOG)
        catalog = self.make_loader(tmp_path).load()
        assert list(catalog) == ["gpt-5"]

    @patch("ai_usage_cost.pricing.requests.get")
    def test_future_timestamp_treated_as_missing(self, mock_get, tmp_path):
        self.write_cache(tmp_path, timestamp=20_000.0, data={"old": {"input_cost_per_token": 1e-6}})
        mock_get.return_value = _response(RAW_CATALOG)
        catalog = self.make_loader(tmp_path).load()
        assert list(catalog) == ["gpt-5"]
        mock_get.assert_called_once()

    @patch("ai_usage_cost.pricing.requests.get")
    def test_fetch_failure_falls_back_to_stale_cache(self, mock_get, tmp_path):
        self.write_cache(tmp_path, timestamp=1.0)
        mock_get.side_effect = requests.ConnectionError("offline")
        catalog = self.make_loader(tmp_path).load()
        assert "gpt-5" in catalog

    @patch("ai_usage_cost.pricing.requests.get")
    def test_fetch_failure_without_cache_raises(self, mock_get, tmp_path):
        mock_get.side_effect = requests.Timeout("slow")
        with pytest.raises(UpstreamFailure) as exc_info:
            self.make_loader(tmp_path).load()
        assert exc_info.value.stage == "resolve"

    @patch("ai_usage_cost.pricing.requests.get")
    def test_non_object_payload_raises(self, mock_get, tmp_path):
        mock_get.return_value = _response(["not", "a", "dict"])
        with pytest.raises(UpstreamFailure):
            self.make_loader(tmp_path).fetch()

    def test_corrupt_cache_ignored(self, tmp_path):
        (tmp_path / CACHE_FILENAME).write_text("{not json")
        assert self.make_loader(tmp_path).load_cached() is None


class TestBuildResolver:
    def test_overrides_per_million(self, tmp_path):
        loader = PricingCatalogLoader(cache_dir=tmp_path, clock=lambda: 100.0)
        (tmp_path / CACHE_FILENAME).write_text(json.dumps({"timestamp": 50.0, "data": RAW_CATALOG}))
        resolver = build_resolver(
            {"overrides": {"in-house": {"input_per_million": 2, "output_per_million": 8}}}, loader=loader
        )
        entry = resolver.resolve("in-house").entry
        assert entry.input_cost_per_token == pytest.approx(2e-6)
        assert entry.output_cost_per_token == pytest.approx(8e-6)
        assert resolver.resolve("gpt-5") is not None
