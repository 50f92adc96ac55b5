"""Tests for config loading and repo overrides."""

import pytest

from patchbay.config_loader import ConfigError, _deep_merge, load_config, validate_credentials


def _write_repo_config(root, text):
    target = root / ".patchbay" / "config.yaml"
    target.parent.mkdir(parents=True)
    target.write_text(text)


def test_defaults():
    config = load_config()
    assert config.write.enabled is False
    assert config.write.allow_paths == []
    assert ".github/workflows/" in config.write.deny_paths
    assert config.write.secret_scan.enabled is True
    assert config.confirmation.timeout_minutes == 15
    assert config.confirmation.timeout_seconds == 900.0
    assert config.github.bot_handles == ["patchbay"]


def test_missing_repo_config_keeps_defaults(tmp_path):
    assert load_config(tmp_path) == load_config()


def test_repo_override_is_deep_merged(tmp_path):
    _write_repo_config(tmp_path, "write:\n  enabled: true\n  allowPaths:\n    - src/\n")
    config = load_config(tmp_path)
    assert config.write.enabled is True
    assert config.write.allow_paths == ["src/"]
    assert "*.pem" in config.write.deny_paths
    assert config.limits.max_agent_steps == 15


def test_empty_repo_config_is_allowed(tmp_path):
    _write_repo_config(tmp_path, "")
    assert load_config(tmp_path).write.enabled is False


def test_invalid_yaml_raises_config_error(tmp_path):
    _write_repo_config(tmp_path, "write: [unclosed\n")
    with pytest.raises(ConfigError, match="YAML parse error"):
        load_config(tmp_path)


def test_non_mapping_raises_config_error(tmp_path):
    _write_repo_config(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigError, match="top level must be a mapping"):
        load_config(tmp_path)


def test_schema_violation_raises_config_error(tmp_path):
    _write_repo_config(tmp_path, "confirmation:\n  timeout_minutes: 0\n")
    with pytest.raises(ConfigError, match="confirmation.timeout_minutes"):
        load_config(tmp_path)


def test_deep_merge_does_not_mutate_base():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 3}})
    assert merged == {"a": {"b": 3, "c": 2}}
    assert base == {"a": {"b": 1, "c": 2}}


def test_validate_credentials(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GH_TOKEN", "x")
    monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
    creds = validate_credentials()
    assert creds["GITHUB_TOKEN"] is True
    assert creds["SLACK_BOT_TOKEN"] is False
