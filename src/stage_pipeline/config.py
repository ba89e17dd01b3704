"""Configuration dataclasses and loader for the stage pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from src.pipeline_shared.constants import (
    DEFAULT_PER_CLIENT_DAY_USD,
    DEFAULT_PER_CLIENT_TOTAL_USD,
    DEFAULT_PER_RUN_USD,
    DEFAULT_PER_STAGE_USD,
    DEFAULT_CLIENTS_DIR,
    DEFAULT_MAX_CONCURRENT_TASKS,
    DEFAULT_OUTPUT_ROOT,
    DEFAULT_PIPELINES,
    DEFAULT_STAGE_TASKS,
    DEFAULT_TASK_TIMEOUT,
    PRESALES_TERMINAL_STAGE,
    PRODUCTION_STAGES,
)
from src.stage_pipeline.exceptions import ConfigurationError


@dataclass
class PathsConfig:
    """Where client records are read and outputs are written."""

    clients_dir: str = DEFAULT_CLIENTS_DIR
    output_root: str = DEFAULT_OUTPUT_ROOT


@dataclass
class BudgetConfig:
    """Spend ceilings in USD.  ``None`` means unbounded."""

    per_run_usd: float | None = DEFAULT_PER_RUN_USD
    per_stage_usd: float | None = DEFAULT_PER_STAGE_USD
    per_client_total_usd: float | None = DEFAULT_PER_CLIENT_TOTAL_USD
    per_client_day_usd: float | None = DEFAULT_PER_CLIENT_DAY_USD


@dataclass
class GatesConfig:
    """Gate policy knobs."""

    unknown_stage_policy: str = "allow"  # "allow" or "deny"
    presales_terminal_stage: str = PRESALES_TERMINAL_STAGE
    production_tokens: list[str] = field(
        default_factory=lambda: list(PRODUCTION_STAGES)
    )
    production_prefixes: list[str] = field(
        default_factory=lambda: ["deploy", "release", "production"]
    )


@dataclass
class ExecutorConfig:
    """Task execution limits."""

    max_concurrent: int = DEFAULT_MAX_CONCURRENT_TASKS
    task_timeout_s: float = DEFAULT_TASK_TIMEOUT


@dataclass
class AlertsConfig:
    """Alert sink settings."""

    enabled: bool = True
    webhook_url: str = ""
    timeout_s: float = 10.0


@dataclass
class MeteredConfig:
    """Metered HTTP client settings."""

    base_url: str = ""
    model: str = "claude-sonnet-4"
    max_retries: int = 3
    backoff_base: float = 1.0
    max_backoff: float = 30.0
    timeout_s: float = 60.0
    max_tokens: int = 1024
    # Held against the ceilings while a call is in flight; None prices
    # the prompt plus max_tokens from the pricing table.
    estimate_usd: float | None = None


@dataclass
class PipelineConfig:
    """Top-level configuration composing all sub-configs."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    metered: MeteredConfig = field(default_factory=MeteredConfig)
    stages: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_STAGE_TASKS.items()}
    )
    pipelines: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_PIPELINES.items()}
    )


class PipelineSettings(BaseSettings):
    """Environment overrides for values that should not live in YAML."""

    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")
    alert_webhook_url: str = Field(
        default="", validation_alias="PIPELINE_ALERT_WEBHOOK_URL"
    )
    metered_api_key: str = Field(
        default="", validation_alias="PIPELINE_METERED_API_KEY"
    )
    config_path: str = Field(default="", validation_alias="PIPELINE_CONFIG")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


_SECTIONS: dict[str, type] = {
    "paths": PathsConfig,
    "budget": BudgetConfig,
    "gates": GatesConfig,
    "executor": ExecutorConfig,
    "alerts": AlertsConfig,
    "metered": MeteredConfig,
}


def _pick(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter *data* to only keys accepted by *cls*."""
    valid = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in valid}


def _string_lists(raw: Any, section: str) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"'{section}' must be a mapping")
    return {str(k): [str(v) for v in (vals or [])] for k, vals in raw.items()}


def load_pipeline_config(path: Path | str | None = None) -> PipelineConfig:
    """Load pipeline configuration from a YAML file.

    Missing sections fall back to defaults.  Unknown keys are silently
    ignored so that forward-compatible config files work.  ``stages``
    entries are merged over the built-in stage map.

    Args:
        path: Path to config YAML.  If ``None`` or the file does not
              exist, returns full defaults.

    Returns:
        Populated configuration dataclass.

    Raises:
        ConfigurationError: If the YAML is malformed or a section has the
            wrong shape.
    """
    if path is None:
        return PipelineConfig()

    path = Path(path)
    if not path.exists():
        return PipelineConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root in {path} must be a mapping")

    sections: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        section_raw = raw.get(name) or {}
        if not isinstance(section_raw, dict):
            raise ConfigurationError(f"'{name}' must be a mapping")
        try:
            sections[name] = cls(**_pick(section_raw, cls))
        except TypeError as exc:
            raise ConfigurationError(f"Invalid '{name}' section: {exc}") from exc

    cfg = PipelineConfig(**sections)
    if "stages" in raw:
        cfg.stages.update(_string_lists(raw["stages"], "stages"))
    if "pipelines" in raw:
        cfg.pipelines.update(_string_lists(raw["pipelines"], "pipelines"))

    policy = cfg.gates.unknown_stage_policy
    if policy not in ("allow", "deny"):
        raise ConfigurationError(
            f"gates.unknown_stage_policy must be 'allow' or 'deny', got '{policy}'"
        )
    return cfg


def apply_settings(cfg: PipelineConfig, settings: PipelineSettings) -> PipelineConfig:
    """Overlay environment settings onto *cfg* (env wins when set)."""
    if settings.alert_webhook_url:
        cfg.alerts.webhook_url = settings.alert_webhook_url
    return cfg
