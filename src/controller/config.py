from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from src.common import names
from src.common.components import DEFAULT_REGISTRY
from src.common.errors import ConfigError

ENV_PREFIX = "INTRUSION_OPERATOR_"


class OperatorConfig(BaseModel):
    namespace: str = Field(names.OPERATOR_NAMESPACE, description="Namespace holding operator-owned inputs")
    default_registry: str = Field(DEFAULT_REGISTRY, description="Registry used when the Installation names none")
    resync_seconds: float = Field(300.0, gt=0, description="Periodic full reconcile interval")
    watch_interval_seconds: float = Field(5.0, gt=0, description="Polling interval for API and change watchers")
    license_requeue_seconds: float = Field(10.0, ge=0, description="Requeue delay while the license is missing")
    secret_wait_requeue_seconds: float = Field(0.0, ge=0, description="Requeue delay while data-store secrets are missing")
    backoff_base_seconds: float = Field(1.0, gt=0, description="First retry delay after a failed pass")
    backoff_max_seconds: float = Field(300.0, gt=0, description="Upper bound for retry delay")
    api_server: Optional[str] = Field(None, description="Kubernetes API server URL; in-cluster config when unset")
    token_file: Optional[str] = Field(None, description="Bearer token file for the API server")
    ca_file: Optional[str] = Field(None, description="CA bundle for the API server")
    request_timeout_seconds: float = Field(10.0, gt=0)
    request_retries: int = Field(2, ge=0)
    probe_port: int = Field(8081, ge=0, le=65535, description="Health probe port; 0 disables probes")


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for field_name in OperatorConfig.model_fields:
        value = env.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is not None and value != "":
            overrides[field_name] = value
    return overrides


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> OperatorConfig:
    """Load the YAML config at ``path`` (if any) and apply INTRUSION_OPERATOR_* overrides."""

    data: Dict[str, Any] = {}
    if path is not None:
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError("Config file must contain a mapping")
        data.update(loaded)
    data.update(_env_overrides(os.environ if env is None else env))
    try:
        return OperatorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid operator configuration: {exc}") from exc


__all__ = ["ENV_PREFIX", "OperatorConfig", "load_config"]
