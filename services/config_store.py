"""
Router configuration.

The config is a YAML file mapping model names to endpoints and two routing
tables (agent -> model, tier -> model). It is re-read on every call so edits
take effect without a restart.
"""

import logging
import os
import pathlib
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from services.errors import ConfigInvariantError

logger = logging.getLogger("agent-router.config")

CONFIG_FILENAME = "router_config.yaml"

DEFAULT_CONFIG = """\
# =============================================================================
# MODEL CONFIGURATION
# =============================================================================
# Available models with their API endpoint and credentials.
# Each model needs: url, api_key and context_window (in tokens).
# An empty api_key forwards the caller's own bearer token.
models:
  claude-opus-4-6:
    url: https://api.anthropic.com
    api_key: ""
    context_window: 200000
  claude-sonnet-4-6:
    url: https://api.anthropic.com
    api_key: ""
    context_window: 200000
  claude-haiku-4-5:
    url: https://api.anthropic.com
    api_key: ""
    context_window: 200000

# =============================================================================
# AGENT MODEL MAPPING
# =============================================================================
# Model used when a sub-agent is detected in the transcript.
agent_model_map:
  analyst: claude-opus-4-6
  architect: claude-opus-4-6
  build-fixer: claude-sonnet-4-6
  code-reviewer: claude-opus-4-6
  code-simplifier: claude-sonnet-4-6
  critic: claude-opus-4-6
  debugger: claude-sonnet-4-6
  deep-executor: claude-opus-4-6
  designer: claude-sonnet-4-6
  document-specialist: claude-sonnet-4-6
  executor: claude-sonnet-4-6
  explore: claude-haiku-4-5
  git-master: claude-sonnet-4-6
  planner: claude-opus-4-6
  qa-tester: claude-sonnet-4-6
  quality-reviewer: claude-opus-4-6
  scientist: claude-sonnet-4-6
  security-reviewer: claude-opus-4-6
  test-engineer: claude-sonnet-4-6
  verifier: claude-sonnet-4-6
  writer: claude-haiku-4-5

# =============================================================================
# ORCHESTRATOR MODEL MAPPING (FALLBACK)
# =============================================================================
# Used when no agent is detected, by tier found in the requested model name:
# haiku (fast/cheap), sonnet (balanced), opus (powerful).
orchestrator_model_map:
  haiku: claude-haiku-4-5
  sonnet: claude-sonnet-4-6
  opus: claude-opus-4-6
"""


class ModelConfig(BaseModel):
    url: str
    api_key: str = ""
    context_window: int = 200000


class RouterConfig(BaseModel):
    models: Dict[str, ModelConfig] = Field(default_factory=dict)
    agent_model_map: Dict[str, str] = Field(default_factory=dict)
    orchestrator_model_map: Dict[str, str] = Field(default_factory=dict)


def validate_config(config: RouterConfig) -> None:
    """Every routing-table value must name a defined model."""
    errors: List[str] = []
    for agent, model in config.agent_model_map.items():
        if model not in config.models:
            errors.append(f"agent_model_map.{agent} references undefined model: {model}")
    for tier, model in config.orchestrator_model_map.items():
        if model not in config.models:
            errors.append(f"orchestrator_model_map.{tier} references undefined model: {model}")
    if errors:
        raise ConfigInvariantError(errors)


def default_config_path() -> pathlib.Path:
    return pathlib.Path.home() / ".claude" / CONFIG_FILENAME


def candidate_paths() -> List[pathlib.Path]:
    """Search order: $ROUTER_CONFIG, working directory, home directory."""
    paths = []
    if os.getenv("ROUTER_CONFIG"):
        paths.append(pathlib.Path(os.environ["ROUTER_CONFIG"]))
    paths.append(pathlib.Path.cwd() / CONFIG_FILENAME)
    paths.append(default_config_path())
    return paths


class ConfigStore:
    """File-backed config provider with hot reload."""

    def __init__(self, path: Optional[os.PathLike] = None):
        self._path = pathlib.Path(path) if path else None

    @property
    def path(self) -> pathlib.Path:
        if self._path is not None:
            return self._path
        for candidate in candidate_paths():
            if candidate.exists():
                return candidate
        return default_config_path()

    def _ensure_exists(self, path: pathlib.Path) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG, encoding="utf-8")
        logger.warning(f"Created default config at {path}. Edit it and add your API keys.")

    def _read_raw(self) -> Dict[str, Any]:
        path = self.path
        self._ensure_exists(path)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _parse(raw: Mapping[str, Any]) -> RouterConfig:
        try:
            return RouterConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigInvariantError([f"malformed config: {err['loc']} {err['msg']}" for err in e.errors()]) from e

    def get_config(self) -> RouterConfig:
        """Load, parse and validate the config file. Called once per request."""
        config = self._parse(self._read_raw())
        validate_config(config)
        return config

    def save_config(self, partial: Mapping[str, Any]) -> RouterConfig:
        """
        Merge ``partial`` into the stored config and persist it.

        Top-level tables are merged key by key so that updating one agent
        mapping leaves the others alone. The merged result is validated
        before anything is written.
        """
        raw = self._read_raw()
        for key in ("models", "agent_model_map", "orchestrator_model_map"):
            if key in partial:
                merged = dict(raw.get(key) or {})
                merged.update(partial[key])
                raw[key] = merged

        config = self._parse(raw)
        validate_config(config)

        self.path.write_text(
            yaml.safe_dump(config.model_dump(), sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        logger.info(f"Config saved to {self.path}")
        return config
