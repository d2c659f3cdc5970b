"""Configuration loading for contentflow.

Reads ``contentflow.yaml``: server and storage settings, default retry
policy, collaborator references, quality gates and workflow definitions.
Pydantic models validate the file; environment variables override the
deployment-specific values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from contentflow.workflow.exceptions import ConfigurationError
from contentflow.workflow.models import QualityGate, RetryPolicy, WorkflowDefinition

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "contentflow.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class StorageConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    db_path: str = ".contentflow/executions.db"


class DefaultsConfig(BaseModel):
    """Defaults applied to stages that leave a field unset."""

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class CollaboratorsConfig(BaseModel):
    """``module:attribute`` references resolved at startup.

    A referenced class is instantiated with no arguments.
    """

    generator: str | None = None
    reviewer: str | None = None
    cache: str | None = None
    deployment_target: str | None = None
    metrics_sink: str | None = None
    notification_gateways: list[str] = Field(default_factory=list)


class ContentflowConfig(BaseModel):
    """Top-level configuration (matches contentflow.yaml)."""

    log_level: str = "INFO"
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig)
    validator_plugins: list[str] = Field(default_factory=list)
    load_builtin_templates: bool = True

    quality_gates: list[QualityGate] = Field(default_factory=list)
    # Raw definitions: stage defaults are applied by build_workflows()
    workflows: list[dict[str, Any]] = Field(default_factory=list)

    def build_workflows(self) -> list[WorkflowDefinition]:
        """Validate workflow definitions, filling in the default retry policy.

        Raises:
            ConfigurationError: a definition does not match the schema.
        """
        default_policy = self.defaults.retry_policy.model_dump()
        definitions = []
        for index, raw in enumerate(self.workflows):
            data = dict(raw)
            data["stages"] = [
                _with_default_policy(stage, default_policy) for stage in raw.get("stages", [])
            ]
            try:
                definitions.append(WorkflowDefinition.model_validate(data))
            except ValidationError as exc:
                name = raw.get("id", f"#{index}")
                msg = f"Invalid workflow '{name}': {exc}"
                raise ConfigurationError(msg) from exc
        return definitions


def _with_default_policy(stage: Any, default_policy: dict[str, Any]) -> Any:
    if not isinstance(stage, dict):
        return stage
    stage = dict(stage)
    stage.setdefault("retry_policy", default_policy)
    fallback = stage.get("fallback")
    if isinstance(fallback, dict):
        stage["fallback"] = _with_default_policy(fallback, default_policy)
    return stage


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(config_path: Path) -> ContentflowConfig:
    """Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ConfigurationError: If the YAML or the schema validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"contentflow config not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        msg = f"Malformed YAML in {config_path}: {exc}"
        raise ConfigurationError(msg) from exc

    if not isinstance(raw, dict):
        msg = f"{config_path} must contain a mapping at the top level"
        raise ConfigurationError(msg)

    try:
        config = ContentflowConfig.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid configuration in {config_path}: {exc}"
        raise ConfigurationError(msg) from exc

    apply_env_overrides(config)
    logger.info(
        "Loaded contentflow config: %d workflow(s), %d quality gate(s)",
        len(config.workflows),
        len(config.quality_gates),
    )
    return config


def apply_env_overrides(config: ContentflowConfig) -> ContentflowConfig:
    """Environment variable overrides for deployment."""
    db_path = os.environ.get("CONTENTFLOW_DB_PATH")
    if db_path:
        config.storage.db_path = db_path

    backend = os.environ.get("CONTENTFLOW_STORAGE")
    if backend:
        if backend not in ("memory", "sqlite"):
            msg = f"CONTENTFLOW_STORAGE must be 'memory' or 'sqlite', got '{backend}'"
            raise ConfigurationError(msg)
        config.storage.backend = backend  # type: ignore[assignment]

    log_level = os.environ.get("CONTENTFLOW_LOG_LEVEL")
    if log_level:
        config.log_level = log_level.upper()
    return config


SAMPLE_CONFIG = """\
# contentflow configuration
log_level: INFO

server:
  host: 127.0.0.1
  port: 8000

storage:
  backend: sqlite          # memory | sqlite
  db_path: .contentflow/executions.db

defaults:
  retry_policy:
    max_attempts: 2
    backoff_strategy: exponential
    base_delay: 1s
    max_delay: 30s

# module:attribute references; classes are instantiated with no arguments
collaborators:
  generator: null
  reviewer: null
  notification_gateways: []

load_builtin_templates: true

quality_gates:
  - id: outline_structure
    name: Outline Structure
    threshold: 80
    mandatory: false
    criteria:
      - name: Structure
        weight: 1
        threshold: 90
        validator:
          type: rule_based
          configuration:
            min_length: 200
            required_fields: [title, objectives]

workflows:
  - id: quick_outline
    name: Quick Outline
    stages:
      - id: generate
        type: ai_generation
        configuration:
          content_type: outline
          topic: "{{ input.topic }}"
        timeout: 5m
      - id: check
        type: quality_check
        dependencies: [generate]
        configuration:
          gate_id: outline_structure
      - id: review
        type: human_review
        dependencies: [check]
        timeout: 24h
        configuration:
          previous_stage_id: generate
          timeout_action: fail
"""
