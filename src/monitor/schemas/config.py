from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from src.monitor.schemas.common import Severity, parse_duration


class TargetSpec(BaseModel):
    """A scrape endpoint as written in the engine config file."""

    url: str = Field(..., description="HTTP(S) URL exposing Prometheus text format.")
    interval_sec: Optional[float] = Field(
        default=None, description="Scrape interval (seconds or duration string); engine default when unset."
    )
    timeout_sec: Optional[float] = Field(
        default=None, description="Per-scrape timeout; engine default when unset, capped at the interval."
    )
    labels: Dict[str, str] = Field(default_factory=dict, description="Labels attached to every scraped sample.")

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v

    @field_validator("interval_sec", "timeout_sec", mode="before")
    @classmethod
    def _parse_duration(cls, v):
        if v is None:
            return None
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("must be positive")
        return seconds


class RuleSpec(BaseModel):
    """An alert rule as written in the engine config file."""

    expr: str = Field(..., description="Alert expression, e.g. 'cpu_usage > 0.8'.")
    for_sec: float = Field(
        0.0,
        alias="for",
        description="How long the expression must hold before the alert fires (seconds or '5m').",
    )
    severity: Severity = Field(Severity.warning, description="Severity carried on notifications.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Static labels added to each alert.")
    annotations: Dict[str, str] = Field(
        default_factory=dict,
        description="Templated strings; supports {{ $labels.<name> }} and {{ $value }}.",
    )

    model_config = {"populate_by_name": True}

    @field_validator("for_sec", mode="before")
    @classmethod
    def _parse_for(cls, v):
        return parse_duration(0 if v is None else v)


class EngineFileConfig(BaseModel):
    """Top-level shape of the YAML configuration file."""

    targets: Dict[str, TargetSpec] = Field(default_factory=dict)
    rules: Dict[str, RuleSpec] = Field(default_factory=dict)

    @field_validator("targets", "rules", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return v or {}
