"""Tests for configuration loading, env placeholders and overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from medical_mcp.config import MedicalMcpConfig, ServerSettings, load_config
from medical_mcp.config.env import apply_env_overrides, expand_env_vars
from medical_mcp.constants import DEFAULT_PORT, PBS_CACHE_TTL, PBS_MIN_INTERVAL
from medical_mcp.display.logging_config import (
    SecretRedactionFilter,
    build_log_config,
    secret_redaction_filter,
)
from medical_mcp.errors import ConfigurationError


def _write(tmp_path: Path, text: str, name: str = "config.yaml") -> str:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


# ════════════════════════════════════════════════════════════════════════
#  Defaults and files
# ════════════════════════════════════════════════════════════════════════


class TestLoadConfig:
    def test_defaults_without_file(self) -> None:
        config = load_config(environ={})
        assert isinstance(config, MedicalMcpConfig)
        assert config.server.port == DEFAULT_PORT
        assert config.pbs.min_interval == PBS_MIN_INTERVAL
        assert config.pbs.cache_ttl == PBS_CACHE_TTL
        assert config.server.legacy_sse is True
        assert config.server.dns_rebinding_protection is False

    def test_yaml_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "server:\n"
            "  port: 4100\n"
            "  allowed_origins: [\"http://localhost:6274\"]\n"
            "pbs:\n"
            "  min_interval: 5\n"
            "  base_url: https://pbs.test/api/v3/\n",
        )
        config = load_config(path, environ={})
        assert config.server.port == 4100
        assert config.server.allowed_origins == ["http://localhost:6274"]
        assert config.pbs.min_interval == 5.0
        assert config.pbs.base_url == "https://pbs.test/api/v3"

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_config(_write(tmp_path, ""), environ={}).server.port == DEFAULT_PORT

    def test_env_placeholders_expanded(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_PBS_KEY", "pbs-key-from-env")
        path = _write(tmp_path, "pbs:\n  subscription_key: ${TEST_PBS_KEY}\n")
        config = load_config(path, environ={})
        assert config.pbs.subscription_key == "pbs-key-from-env"

    def test_secrets_registered_for_redaction(self) -> None:
        load_config(environ={"SERPAPI_KEY": "serp-secret-123"})
        assert "serp-secret-123" not in secret_redaction_filter.redact("key=serp-secret-123")

    def test_bad_extension(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Unsupported config file extension"):
            load_config(_write(tmp_path, "{}", name="config.json"), environ={})

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Error reading configuration file"):
            load_config(str(tmp_path / "absent.yaml"), environ={})

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_config(_write(tmp_path, "server: [unclosed\n"), environ={})

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="must be a YAML mapping"):
            load_config(_write(tmp_path, "- a\n- b\n"), environ={})

    def test_validation_error_names_field(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "server:\n  port: 70000\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(path, environ={})
        assert "server → port" in str(exc_info.value)

    def test_non_http_url_rejected(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "upstreams:\n  fda_base: ftp://fda.test\n")
        with pytest.raises(ConfigurationError, match="must start with http"):
            load_config(path, environ={})


# ════════════════════════════════════════════════════════════════════════
#  Environment
# ════════════════════════════════════════════════════════════════════════


class TestEnvironment:
    def test_overrides_beat_file_values(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "server:\n  port: 4100\n")
        config = load_config(path, environ={"PORT": "4200"})
        assert config.server.port == 4200

    def test_first_matching_variable_wins(self) -> None:
        raw = apply_env_overrides({}, {"PORT": "4200", "MCP_PORT": "4300"})
        assert raw == {"server": {"port": "4200"}}
        raw = apply_env_overrides({}, {"MCP_PORT": "4300"})
        assert raw == {"server": {"port": "4300"}}

    def test_empty_values_ignored(self) -> None:
        assert apply_env_overrides({"pbs": {"cache_ttl": 10}}, {"PBS_CACHE_TTL": ""}) == {
            "pbs": {"cache_ttl": 10}
        }

    def test_input_not_mutated(self) -> None:
        raw = {"server": {"port": 1}}
        apply_env_overrides(raw, {"PORT": "2"})
        assert raw == {"server": {"port": 1}}

    def test_csv_and_bool_coercion(self) -> None:
        config = load_config(
            environ={
                "MCP_ALLOWED_ORIGINS": "http://a.test, http://b.test",
                "MCP_DNS_REBINDING_PROTECTION": "true",
                "MCP_JSON_RESPONSE": "1",
            }
        )
        assert config.server.allowed_origins == ["http://a.test", "http://b.test"]
        assert config.server.dns_rebinding_protection is True
        assert config.server.json_response is True

    def test_unset_placeholder_left_unchanged(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_UNSET_VAR", raising=False)
        assert expand_env_vars({"a": ["${TEST_UNSET_VAR}", 3]}) == {"a": ["${TEST_UNSET_VAR}", 3]}

    def test_server_settings_accept_csv(self) -> None:
        assert ServerSettings(allowed_hosts="a:*, b").allowed_hosts == ["a:*", "b"]


# ════════════════════════════════════════════════════════════════════════
#  Secret redaction
# ════════════════════════════════════════════════════════════════════════


class TestSecretRedaction:
    def test_short_values_ignored(self) -> None:
        f = SecretRedactionFilter()
        f.register("abc")
        assert f.redact("abc") == "abc"

    def test_record_args_redacted(self) -> None:
        f = SecretRedactionFilter()
        f.register("top-secret")
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "url=%s", ("x?api_key=top-secret",), None)
        assert f.filter(record) is True
        assert "top-secret" not in record.getMessage()

    def test_log_handler_carries_the_shared_filter(self, tmp_path: Path) -> None:
        cfg = build_log_config(str(tmp_path / "server.log"), "INFO")
        assert cfg["handlers"]["logfile"]["filters"] == ["redact"]
        assert cfg["filters"]["redact"]["()"]() is secret_redaction_filter
        assert cfg["loggers"]["medical_mcp"]["level"] == "INFO"
        assert cfg["loggers"]["httpx"]["level"] == "WARNING"
        assert cfg["root"]["level"] == "WARNING"

    def test_debug_opens_up_request_logging(self, tmp_path: Path) -> None:
        cfg = build_log_config(str(tmp_path / "server.log"), "DEBUG")
        assert cfg["loggers"]["httpx"]["level"] == "INFO"
        assert cfg["root"]["level"] == "DEBUG"
