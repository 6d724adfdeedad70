"""Tests for coder-stream config."""

import logging

import yaml

from coder_stream.config import (
    RetrySpec,
    StreamConfig,
    UpstreamSpec,
    load_config,
)


class TestUpstreamSpec:
    def test_defaults(self):
        u = UpstreamSpec()
        assert u.temperature == 0.2
        assert u.max_tokens == 9000
        assert u.models == ["openai", "openai-large"]
        assert u.title_model == "openai"

    def test_model_for_quality(self):
        u = UpstreamSpec(models=["small", "large"])
        assert u.model_for_quality("low") == "small"
        assert u.model_for_quality("high") == "large"

    def test_single_model(self):
        u = UpstreamSpec(models=["only"])
        assert u.model_for_quality("high") == "only"


class TestStreamConfig:
    def test_defaults(self):
        cfg = StreamConfig()
        assert cfg.retry == RetrySpec(max_retries=2, base_delay=1.0, max_delay=10.0, attempt_timeout=65.0)
        assert cfg.detector.length_threshold == 15000
        assert cfg.detector.bracket_threshold == 3
        assert cfg.continuation.max_continuations == 0
        assert cfg.auth.cache_ttl == 30.0
        assert cfg.auth.cache_max_entries == 500
        assert cfg.max_history == 10


class TestLoadConfig:
    def test_defaults_when_no_file(self, tmp_path):
        cfg = load_config(tmp_path / "does_not_exist.yaml")
        assert cfg == StreamConfig()

    def test_load_sections(self, tmp_path):
        path = tmp_path / "coder_stream.yaml"
        path.write_text(yaml.dump({
            "upstream": {"url": "http://localhost:1234/v1", "models": ["a", "b"]},
            "retry": {"max_retries": 4, "base_delay": 0.5},
            "detector": {"bracket_threshold": 5},
            "continuation": {"max_continuations": 3},
            "storage": {"db_path": str(tmp_path / "x.db")},
            "auth": {"verify": True},
            "max_history": 20,
        }))

        cfg = load_config(path)

        assert cfg.upstream.url == "http://localhost:1234/v1"
        assert cfg.upstream.temperature == 0.2
        assert cfg.retry.max_retries == 4
        assert cfg.retry.base_delay == 0.5
        assert cfg.retry.max_delay == 10.0
        assert cfg.detector.bracket_threshold == 5
        assert cfg.continuation.max_continuations == 3
        assert cfg.auth.verify is True
        assert cfg.max_history == 20

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == StreamConfig()

    def test_null_values_use_defaults(self, tmp_path):
        path = tmp_path / "nulls.yaml"
        path.write_text("retry:\n  max_retries: null\n")
        assert load_config(path).retry.max_retries == 2

    def test_unknown_keys_warned(self, tmp_path, caplog):
        path = tmp_path / "typo.yaml"
        path.write_text("retry:\n  max_retry: 5\n")
        with caplog.at_level(logging.WARNING, logger="coder_stream.config"):
            cfg = load_config(path)
        assert cfg.retry.max_retries == 2
        assert "max_retry" in caplog.text

    def test_search_path(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "coder_stream.yaml").write_text("max_history: 4\n")
        assert load_config().max_history == 4
