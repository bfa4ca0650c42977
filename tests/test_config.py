import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from agent.config import load_config
from agent.exceptions import ConfigError


_ENV_KEYS = (
    "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_AI_API_KEY", "OLLAMA_BASE_URL",
    "LLM_PROVIDER_PRIORITY", "TOOL_APPROVAL_MODE", "ANTHROPIC_MODEL", "OPENAI_MODEL",
    "GEMINI_MODEL", "OLLAMA_MODEL", "LOG_LEVEL",
)


def _clean_env(**overrides):
    env = {k: v for k, v in os.environ.items() if k not in _ENV_KEYS}
    env.update(overrides)
    return mock.patch.dict(os.environ, env, clear=True)


class TestConfig(unittest.TestCase):
    def _load(self, tmpdir, data, **env):
        config_path = Path(tmpdir) / "config.json"
        config_path.write_text(json.dumps({"data_dir": str(Path(tmpdir) / "data"), **data}))
        with _clean_env(**env):
            return load_config(str(config_path), env_file=None)

    def test_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = self._load(tmpdir, {})

            self.assertEqual(config.provider_priority, ["anthropic", "openai", "ollama"])
            self.assertEqual(config.providers["anthropic"].model, "claude-3-5-sonnet-20241022")
            self.assertEqual(config.providers["ollama"].base_url, "http://localhost:11434")
            self.assertEqual(config.providers["openai"].api_key, "")
            self.assertEqual(config.agent.max_context_tokens, 100000)
            self.assertEqual(config.agent.max_response_tokens, 4096)
            self.assertEqual(config.agent.max_iterations, 10)
            self.assertEqual(config.agent.code_max_iterations, 20)
            self.assertFalse(config.agent.strict_context_budget)
            self.assertEqual(config.tool_approval.mode, "balanced")
            self.assertFalse(config.tiering.enabled)
            self.assertEqual(config.tiering.local_provider, "ollama")
            self.assertIsNone(config.tiering.cloud_provider)
            self.assertEqual(config.tiering.simple_threshold, 30)
            self.assertEqual(config.tiering.complex_threshold, 60)
            self.assertEqual(config.retry.max_retries, 3)
            self.assertEqual(config.retry.base_delay, 1.0)
            self.assertEqual(config.retry.max_delay, 60.0)
            self.assertEqual(config.rate_limit.per_minute, 30)
            self.assertIn("~/.ssh/*", config.security.blocked_paths)
            self.assertFalse(config.telemetry.enabled)
            self.assertEqual(config.telemetry.log_dir, str(Path(tmpdir) / "data" / "metrics"))
            self.assertEqual(config.telemetry.otel_service_name, "tiered-agents")
            self.assertTrue(os.path.isdir(config.log_dir))

    def test_missing_file_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cwd = os.getcwd()
            os.chdir(tmpdir)
            try:
                with _clean_env():
                    config = load_config("does-not-exist.json", env_file=None)
            finally:
                os.chdir(cwd)
            self.assertEqual(config.variant, "balanced")

    def test_env_overrides(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = self._load(
                tmpdir,
                {},
                ANTHROPIC_API_KEY="sk-ant-test",
                OLLAMA_BASE_URL="http://ollama:11434",
                LLM_PROVIDER_PRIORITY="ollama, gemini",
                TOOL_APPROVAL_MODE="trust",
            )
            self.assertEqual(config.providers["anthropic"].api_key, "sk-ant-test")
            self.assertEqual(config.providers["ollama"].base_url, "http://ollama:11434")
            self.assertEqual(config.provider_priority, ["ollama", "gemini"])
            self.assertEqual(config.tool_approval.mode, "trust")

    def test_productivity_variant_tightens_approval_and_enables_tiering(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = self._load(tmpdir, {"variant": "productivity"})
            self.assertEqual(config.tool_approval.mode, "conservative")
            self.assertTrue(config.tiering.enabled)

    def test_productivity_variant_keeps_explicit_trust(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = self._load(tmpdir, {"variant": "productivity", "tool_approval": {"mode": "trust"}})
            self.assertEqual(config.tool_approval.mode, "trust")

    def test_invalid_values_raise(self):
        bad = [
            {"provider_priority": ["anthropic", "anthropic"]},
            {"provider_priority": ["mystery"]},
            {"provider_priority": []},
            {"providers": {"mystery": {}}},
            {"tool_approval": {"mode": "yolo"}},
            {"agent": {"temperature": 1.5}},
            {"agent": {"max_iterations": 0}},
            {"agent": {"max_context_tokens": "lots"}},
            {"tiering": {"always_use_cloud": True, "always_use_local": True}},
            {"tiering": {"simple_threshold": 60, "complex_threshold": 30}},
            {"tiering": {"local_provider": "ollama", "cloud_provider": "ollama"}},
            {"retry": {"connect_timeout": -1}},
            {"retry": {"base_delay": 10, "max_delay": 1}},
            {"rate_limit": {"per_minute": 0}},
            {"security": {"blocked_paths": "/etc"}},
            {"telemetry": {"enabled": "yes"}},
            {"variant": "chaos"},
        ]
        for data in bad:
            with self.subTest(data=data):
                with tempfile.TemporaryDirectory() as tmpdir:
                    with self.assertRaises(ConfigError):
                        self._load(tmpdir, data)

    def test_malformed_json_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            config_path.write_text("{not json")
            with _clean_env():
                with self.assertRaises(ConfigError):
                    load_config(str(config_path), env_file=None)
