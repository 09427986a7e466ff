"""
tests/test_config.py — YAML Configuration Loading
===================================================
"""

from __future__ import annotations

from pathlib import Path

import pytest

from agora.config import load_config

EXAMPLE = Path(__file__).resolve().parent.parent / "config.yaml.example"


class TestLoadConfig:
    def test_example_file_loads(self):
        cfg = load_config(EXAMPLE)
        assert cfg.app_name == "Agora"
        assert cfg.ai_service_url == "http://localhost:8001"
        assert cfg.community_ttl == 300

    def test_defaults_and_normalisation(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "app_name: Test\n"
            "ai_service_url: http://ai.local/\n"
            "log_level: debug\n"
            "cache_ttl:\n"
            "  post: 5\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.ai_service_url == "http://ai.local"
        assert cfg.log_level == "DEBUG"
        assert cfg.post_ttl == 5
        assert cfg.post_list_ttl == 30
        assert cfg.max_login_attempts == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_config(tmp_path / "absent.yaml")

    def test_missing_required_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("app_name: Test\n", encoding="utf-8")
        with pytest.raises(KeyError):
            load_config(path)
