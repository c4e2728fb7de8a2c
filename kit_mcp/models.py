"""Parameter and report models for the account audit."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DateRange(BaseModel):
    start_date: str
    end_date: str


class AuditParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include_performance: bool | None = None
    date_range: DateRange | None = None
    detailed_segments: bool | None = None


class _Report(BaseModel):
    model_config = ConfigDict(frozen=True)


class EngagementMetrics(_Report):
    open_rate: float = 0
    click_rate: float = 0
    unsubscribe_rate: float = 0
    complaint_rate: float = 0
    engagement_score: float = 0


class TagUsage(_Report):
    tag: dict[str, Any]
    subscriber_count: int = 0
    engagement_metrics: EngagementMetrics = EngagementMetrics()
    usage_frequency: float = 0


class AutomationPerformance(_Report):
    automation_id: Any
    triggers_fired: int = 0
    subscribers_entered: int = 0
    completion_rate: float = 0
    goal_completion_rate: float = 0
    avg_time_to_complete: float = 0


class Automation(_Report):
    id: Any
    name: str
    status: str
    trigger_type: str = "manual"
    subscriber_count: int = 0
    conversion_rate: float = 0
    performance_data: AutomationPerformance


class AutomationMetrics(_Report):
    automation: Automation
    performance: AutomationPerformance
    optimization_score: float


class ConversionData(_Report):
    form_id: Any
    conversion_rate: float = 0
    subscriber_quality_score: float = 50


class CustomField(_Report):
    id: Any = None
    name: str = ""
    key: str | None = None
    type: str = "text"
    created_at: str | None = None


class CustomFieldAnalysis(_Report):
    field: CustomField
    usage_percentage: float = 0
    data_quality_score: float
    personalization_opportunity: str


class AccountSummary(_Report):
    total_subscribers: int = 0
    active_subscribers: int = 0
    unsubscribed_count: int = 0
    growth_rate_30d: float = 0
    list_health_score: float = 0


class SegmentationAnalysis(_Report):
    total_tags: int = 0
    active_segments: list[dict[str, Any]] = Field(default_factory=list)
    tag_usage_distribution: list[TagUsage] = Field(default_factory=list)
    behavioral_tracking_status: str = "None"


class AutomationOverview(_Report):
    total_sequences: int = 0
    active_sequences: list[dict[str, Any]] = Field(default_factory=list)
    total_automations: int = 0
    active_automations: list[dict[str, Any]] = Field(default_factory=list)
    automation_performance: list[AutomationMetrics] = Field(default_factory=list)


class LeadCaptureAnalysis(_Report):
    total_forms: int = 0
    form_performance: list[dict[str, Any]] = Field(default_factory=list)
    conversion_rates: list[ConversionData] = Field(default_factory=list)


class AccountAudit(_Report):
    """Read-only snapshot produced by one account audit run."""

    account_summary: AccountSummary
    segmentation_analysis: SegmentationAnalysis
    automation_overview: AutomationOverview
    lead_capture_analysis: LeadCaptureAnalysis
    custom_fields_usage: list[CustomFieldAnalysis] = Field(default_factory=list)
    strategic_recommendations: list[str] = Field(default_factory=list)
