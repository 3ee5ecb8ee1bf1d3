"""
Configuration loading and validation.

Loads the dispatcher configuration, including the subscription schema, from
a YAML file. Webhook credentials are read from the environment, never from
the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .dispatcher import FaultPolicy
from .schema import SubscriptionSchema


class StoreConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    db_path: str = "./data/subscriptions.db"


class DispatchOptions(BaseModel):
    fault_policy: FaultPolicy = FaultPolicy.ABORT
    trigger_timeout_seconds: float | None = None


class SinkConfig(BaseModel):
    kind: Literal["memory", "webhook"] = "memory"
    url: str = "http://localhost:8080"
    verify_tls: bool = True
    request_timeout_seconds: float = 30
    token_env: str = "SUB_DISPATCH_WEBHOOK_TOKEN"

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class LoggingConfig(BaseModel):
    level: Literal["critical", "error", "warning", "info", "debug"] = "info"
    format: Literal["json", "text"] = "json"

    @field_validator("level", mode="before")
    @classmethod
    def _lower_level(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class MetricsConfig(BaseModel):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


class DispatchConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_schema: SubscriptionSchema = Field(
        default_factory=SubscriptionSchema, alias="schema"
    )
    store: StoreConfig = Field(default_factory=StoreConfig)
    dispatch: DispatchOptions = Field(default_factory=DispatchOptions)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> DispatchConfig:
    """Load and validate dispatcher configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return DispatchConfig.model_validate(raw)
