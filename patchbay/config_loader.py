"""
Configuration loader for PATCHBAY.
Merges defaults with per-repo .patchbay/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class SecretScanConfig(BaseModel):
    enabled: bool = True


class WriteConfig(BaseModel):
    """Repository write-mode switch and the path/secret policy applied to it."""
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    allow_paths: list[str] = Field(default_factory=list, alias="allowPaths")
    deny_paths: list[str] = Field(default_factory=list, alias="denyPaths")
    secret_scan: SecretScanConfig = Field(default_factory=SecretScanConfig, alias="secretScan")


class ConfirmationConfig(BaseModel):
    timeout_minutes: int = Field(default=15, ge=1)

    @property
    def timeout_seconds(self) -> float:
        return float(self.timeout_minutes * 60)


class RoutingConfig(BaseModel):
    implementer: str = "anthropic/claude-sonnet-4-20250514"
    planner: str = "anthropic/claude-sonnet-4-20250514"


class LimitsConfig(BaseModel):
    max_tokens_per_task: int = 150_000
    max_dollars_per_task: float = 10.0
    max_agent_steps: int = 15
    execution_timeout_seconds: float = 600.0


class GitConfig(BaseModel):
    bot_name: str = "patchbay[bot]"
    bot_email: str = "patchbay[bot]@users.noreply.github.com"
    clone_depth: int = Field(default=50, ge=1)
    marker_scan_depth: int = Field(default=50, ge=1)


class GitHubConfig(BaseModel):
    installation_id: int = 0
    bot_handles: list[str] = Field(default_factory=lambda: ["patchbay"])


class SlackConfig(BaseModel):
    default_repo: str = ""


class PatchbayConfig(BaseModel):
    write: WriteConfig = Field(default_factory=WriteConfig)
    confirmation: ConfirmationConfig = Field(default_factory=ConfirmationConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)


class ConfigError(Exception):
    """Raised when a config file cannot be parsed or fails validation."""
    pass


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

REPO_CONFIG_RELPATH = Path(".patchbay") / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid {path.name} ({path}): YAML parse error: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid {path.name} ({path}): top level must be a mapping")
    return data


def load_config(repo_path: Path | None = None) -> PatchbayConfig:
    """
    Load config by merging:
      1. Built-in defaults (patchbay/config.yaml)
      2. Repo-level overrides (<repo>/.patchbay/config.yaml)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if repo_path:
        repo_config = Path(repo_path) / REPO_CONFIG_RELPATH
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    try:
        return PatchbayConfig(**base)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid {REPO_CONFIG_RELPATH}: {issues}") from e


def validate_credentials() -> dict[str, bool]:
    """Check which credentials are available in the environment."""
    return {
        "GITHUB_TOKEN":      bool(os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")),
        "SLACK_BOT_TOKEN":   bool(os.environ.get("SLACK_BOT_TOKEN")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
