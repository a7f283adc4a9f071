"""Pydantic models for the collector ingestion payload."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .utils import ensure_utc


class UsageMetricsPayload(BaseModel):
    """Metrics for resource usage across different compute resources."""

    cpu_time_seconds: int = Field(
        ..., description="Total CPU time consumed in seconds", ge=0, strict=True
    )
    gpu_time_seconds: Optional[int] = Field(
        None, description="Total GPU time consumed in seconds", ge=0, strict=True
    )
    ram_bytes_allocated: Optional[int] = Field(
        None, description="RAM allocated in bytes", ge=0, strict=True
    )
    ram_bytes_used: Optional[int] = Field(
        None, description="RAM actually used in bytes", ge=0, strict=True
    )
    storage_bytes_allocated: Optional[int] = Field(
        None, description="Storage allocated in bytes", ge=0, strict=True
    )
    vcpus_allocated: Optional[int] = Field(
        None, description="Virtual CPUs allocated", ge=0, strict=True
    )
    used_cpu_percent: Optional[int] = Field(
        None, description="Average CPU utilization percent", ge=0, strict=True
    )
    walltime_allocated: Optional[int] = Field(
        None, description="Requested walltime in seconds", ge=0, strict=True
    )
    walltime_used: Optional[int] = Field(
        None, description="Actual walltime consumed in seconds", ge=0, strict=True
    )


class IdentityPayload(BaseModel):
    """Identity the usage belongs to."""

    scheme: str = Field(..., min_length=1, description="Identifier scheme, e.g. oidc_sub")
    value: str = Field(..., min_length=1, description="Identifier value")
    authority: Optional[str] = Field(
        None, description="Authority issuing the identity"
    )


class UsageEventPayload(BaseModel):
    """A single resource usage event from a specific source."""

    schema_version: str = Field(
        default="1.0", description="Schema version for compatibility"
    )
    source: Literal["pbs", "pbs_cumulative", "openstack"] = Field(
        ..., description="Data source identifier"
    )
    time_window_start: datetime = Field(
        ..., description="Start of the measurement window"
    )
    time_window_end: datetime = Field(..., description="End of the measurement window")
    collected_at: datetime = Field(
        ..., description="Timestamp when data was collected"
    )
    project_slug: Optional[str] = Field(
        None, description="Project name; takes precedence over the context keys"
    )
    is_personal: Optional[bool] = Field(
        None, description="Personal project flag; takes precedence over context.is_personal"
    )
    metrics: UsageMetricsPayload = Field(
        ..., description="Resource usage metrics"
    )
    identities: list[IdentityPayload] = Field(
        default_factory=list,
        description="List of identities the usage belongs to",
    )
    context: dict[str, Any] = Field(
        default_factory=dict, description="Additional contextual information"
    )
    extra: Optional[dict[str, Any]] = Field(
        None, description="Extra data for debugging or future use"
    )

    @model_validator(mode="after")
    def check_window(self) -> "UsageEventPayload":
        if ensure_utc(self.time_window_end) < ensure_utc(self.time_window_start):
            raise ValueError("time_window_end must not be before time_window_start")
        return self


class UsageEventsEnvelope(BaseModel):
    """Batch of events sent by a collector."""

    events: list[UsageEventPayload] = Field(..., description="Resource usage events")
    is_last_batch: bool = Field(
        default=False, description="Set on the final batch of a sync run to trigger aggregation"
    )
