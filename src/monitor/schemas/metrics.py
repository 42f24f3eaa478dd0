from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class MetricValue(BaseModel):
    """A single metric data point."""

    ts: datetime = Field(..., description="UTC timestamp for the data point.")
    value: float = Field(..., description="Numeric value at the timestamp.")


class SeriesOut(BaseModel):
    """One series and its samples in the requested range."""

    metric: str = Field(..., description="Metric name.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Series labels (without the metric name).")
    points: List[MetricValue] = Field(..., description="Samples ordered by timestamp.")


class QueryResponse(BaseModel):
    """Response model for range queries."""

    match: str = Field(..., description="Selector that was evaluated.")
    start: datetime = Field(..., description="UTC start time (inclusive).")
    end: datetime = Field(..., description="UTC end time (inclusive).")
    series: List[SeriesOut] = Field(..., description="Matching series with at least one sample in range.")
    total: int = Field(..., ge=0, description="Number of series returned.")


class SeriesKeyOut(BaseModel):
    """A known series identifier."""

    metric: str = Field(..., description="Metric name.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Series labels.")


class SeriesListResponse(BaseModel):
    """Envelope for listing series."""

    items: List[SeriesKeyOut] = Field(..., description="Known series.")
    total: int = Field(..., ge=0, description="Number of series returned.")


class TargetHealthOut(BaseModel):
    """Scrape health of a target."""

    name: str = Field(..., description="Target name from the config file.")
    url: str = Field(..., description="Scrape URL.")
    status: Literal["unknown", "up", "down"] = Field(..., description="Current scrape health.")
    consecutive_failures: int = Field(..., ge=0, description="Failed scrapes since the last success.")
    last_scrape: Optional[datetime] = Field(default=None, description="UTC time of the last scrape attempt.")
    last_duration_sec: Optional[float] = Field(default=None, description="Duration of the last scrape attempt.")
    last_error: Optional[str] = Field(default=None, description="Error from the last failed scrape.")
    samples_last_scrape: int = Field(0, ge=0, description="Samples ingested by the last successful scrape.")


class TargetListResponse(BaseModel):
    """Envelope for listing targets."""

    items: List[TargetHealthOut] = Field(..., description="Configured targets with health.")
    total: int = Field(..., ge=0, description="Number of targets.")
