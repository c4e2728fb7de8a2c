"""Account audit: a complete Kit account overview for strategic analysis."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Mapping

from pydantic import ValidationError

from kit_mcp.cache import ApiCache
from kit_mcp.client import KitApiClient
from kit_mcp.concurrency import gather_settled
from kit_mcp.models import (
    AccountAudit,
    AccountSummary,
    Automation,
    AutomationMetrics,
    AutomationOverview,
    AutomationPerformance,
    AuditParams,
    ConversionData,
    CustomField,
    CustomFieldAnalysis,
    LeadCaptureAnalysis,
    SegmentationAnalysis,
    TagUsage,
)

logger = logging.getLogger(__name__)

CACHE_PREFIX = "account_audit"
PAGE_SIZE = 100

MAX_TAGS_ANALYZED = 20
MAX_SEQUENCES_ANALYZED = 10
MAX_FORMS_ANALYZED = 10
ACTIVE_SEGMENT_DAYS = 90

BEHAVIORAL_KEYWORDS = ("clicked", "opened", "purchased", "engaged", "visited")

HEALTH_SCORE_THRESHOLD = 70
MIN_TAGS = 5
MIN_ACTIVE_SEQUENCES = 3
MIN_FORMS = 2


class AuditError(RuntimeError):
    """Raised when the account audit cannot be generated at all."""


class AccountAuditFunction:
    def __init__(self, api_client: KitApiClient, cache: ApiCache) -> None:
        self._api_client = api_client
        self._cache = cache

    async def execute(self, params: AuditParams | Mapping[str, Any] | None = None) -> AccountAudit:
        """
        Build an account audit, serving it from cache when possible.

        Every remote read is isolated: a failed read leaves its section empty
        instead of failing the audit. Only a failure before any data
        collection starts (such as invalid parameters) raises ``AuditError``.
        """
        try:
            audit_params = self._coerce_params(params)
            cache_key = ApiCache.generate_key(CACHE_PREFIX, audit_params.model_dump(exclude_none=True))

            # Real-time requests skip the cache read but still refresh it.
            if not audit_params.include_performance:
                cached = self._cache.get(cache_key)
                if cached is not None:
                    return cached

            audit = await self._collect()
        except Exception as exc:
            logger.exception("Account audit failed")
            raise AuditError(f"Failed to generate account audit: {exc}") from exc

        self._cache.set_with_strategy(cache_key, audit, "medium")
        return audit

    @staticmethod
    def _coerce_params(params: AuditParams | Mapping[str, Any] | None) -> AuditParams:
        if isinstance(params, AuditParams):
            return params
        try:
            return AuditParams.model_validate(dict(params or {}))
        except ValidationError as exc:
            raise ValueError(f"Invalid audit parameters: {exc}") from exc

    async def _collect(self) -> AccountAudit:
        client = self._api_client
        results = await gather_settled(
            [
                ("account", client.get_account),
                ("email stats", client.get_email_stats),
                ("growth stats", client.get_growth_stats),
                ("subscribers", partial(client.get_subscribers, per_page=PAGE_SIZE, include_total_count=True)),
                ("tags", partial(client.get_tags, per_page=PAGE_SIZE, include_total_count=True)),
                ("sequences", partial(client.get_sequences, per_page=PAGE_SIZE, include_total_count=True)),
                ("forms", partial(client.get_forms, per_page=PAGE_SIZE, include_total_count=True)),
                ("custom fields", client.get_custom_fields),
            ]
        )
        (
            _account,
            _email_stats,
            growth_stats,
            subscribers,
            tags_data,
            sequences_data,
            forms_data,
            custom_fields_data,
        ) = (result.value_or_none() for result in results)

        tags = _items(tags_data, "tags")
        sequences = _items(sequences_data, "sequences")
        forms = _items(forms_data, "forms")
        custom_fields = _items(custom_fields_data, "custom_fields")

        summary = self._build_account_summary(growth_stats, _total_count(subscribers, "subscribers"))
        segmentation = await self._build_segmentation_analysis(tags)
        automation = await self._build_automation_overview(sequences)
        lead_capture = await self._build_lead_capture_analysis(forms)

        return AccountAudit(
            account_summary=summary,
            segmentation_analysis=segmentation,
            automation_overview=automation,
            lead_capture_analysis=lead_capture,
            custom_fields_usage=[self._analyze_custom_field(field) for field in custom_fields],
            strategic_recommendations=self._generate_recommendations(summary, tags, sequences, forms),
        )

    def _build_account_summary(
        self,
        growth_stats: Mapping[str, Any] | None,
        total_subscribers: int,
    ) -> AccountSummary:
        # Subscribers returned by the list endpoint are active ones; bounce and
        # complaint counts are not exposed by the account endpoints.
        active_subscribers = total_subscribers
        return AccountSummary(
            total_subscribers=total_subscribers,
            active_subscribers=active_subscribers,
            unsubscribed_count=0,
            growth_rate_30d=_growth_rate(growth_stats),
            list_health_score=calculate_list_health_score(
                total=total_subscribers,
                active=active_subscribers,
                bounced=0,
                complained=0,
            ),
        )

    async def _build_segmentation_analysis(self, tags: list[dict[str, Any]]) -> SegmentationAnalysis:
        analyzed = tags[:MAX_TAGS_ANALYZED]
        results = await gather_settled(
            [
                (f"tag {tag.get('id')}", partial(self._api_client.get_tag_subscribers, tag.get("id"), per_page=10))
                for tag in analyzed
            ]
        )

        distribution = [
            TagUsage(
                tag=tag,
                subscriber_count=_total_count(result.value, None),
                usage_frequency=calculate_tag_usage_frequency(tag),
            )
            for tag, result in zip(analyzed, results)
            if result.ok
        ]

        cutoff = datetime.now(timezone.utc) - timedelta(days=ACTIVE_SEGMENT_DAYS)
        active_segments = [tag for tag in tags if (_parse_date(tag.get("created_at")) or cutoff) > cutoff]

        return SegmentationAnalysis(
            total_tags=len(tags),
            active_segments=active_segments,
            tag_usage_distribution=distribution,
            behavioral_tracking_status=assess_behavioral_tracking(tags),
        )

    async def _build_automation_overview(self, sequences: list[dict[str, Any]]) -> AutomationOverview:
        active = _active_sequences(sequences)
        analyzed = active[:MAX_SEQUENCES_ANALYZED]
        results = await gather_settled(
            [
                (f"sequence {seq.get('id')}", partial(self._api_client.get_sequence_subscribers, seq.get("id"), per_page=1))
                for seq in analyzed
            ]
        )

        performance: list[AutomationMetrics] = []
        for sequence, result in zip(analyzed, results):
            if not result.ok:
                continue
            entered = _total_count(result.value, None)
            stats = AutomationPerformance(automation_id=sequence.get("id"), subscribers_entered=entered)
            performance.append(
                AutomationMetrics(
                    automation=Automation(
                        id=sequence.get("id"),
                        name=_as_text(sequence.get("name")) or "",
                        status="archived" if sequence.get("hold") else "active",
                        subscriber_count=entered,
                        performance_data=stats,
                    ),
                    performance=stats,
                    optimization_score=calculate_optimization_score(sequence),
                )
            )

        return AutomationOverview(
            total_sequences=len(sequences),
            active_sequences=active,
            total_automations=len(sequences),
            active_automations=active,
            automation_performance=performance,
        )

    async def _build_lead_capture_analysis(self, forms: list[dict[str, Any]]) -> LeadCaptureAnalysis:
        analyzed = forms[:MAX_FORMS_ANALYZED]
        results = await gather_settled(
            [
                (f"form {form.get('id')}", partial(self._api_client.get_form_subscribers, form.get("id"), per_page=1))
                for form in analyzed
            ]
        )

        conversion_rates = [
            ConversionData(
                form_id=form.get("id"),
                conversion_rate=_as_number(form.get("conversion_rate")),
                subscriber_quality_score=calculate_subscriber_quality_score(form),
            )
            for form, result in zip(analyzed, results)
            if result.ok
        ]
        return LeadCaptureAnalysis(total_forms=len(forms), conversion_rates=conversion_rates)

    @staticmethod
    def _analyze_custom_field(field: Mapping[str, Any]) -> CustomFieldAnalysis:
        custom_field = CustomField(
            id=field.get("id"),
            name=_field_name(field),
            key=_as_text(field.get("key")),
            type=_as_text(field.get("type")) or "text",
            created_at=_as_text(field.get("created_at")),
        )
        return CustomFieldAnalysis(
            field=custom_field,
            data_quality_score=calculate_data_quality_score(custom_field),
            personalization_opportunity=assess_personalization_opportunity(custom_field.name),
        )

    @staticmethod
    def _generate_recommendations(
        summary: AccountSummary,
        tags: list[dict[str, Any]],
        sequences: list[dict[str, Any]],
        forms: list[dict[str, Any]],
    ) -> list[str]:
        recommendations: list[str] = []

        if summary.list_health_score < HEALTH_SCORE_THRESHOLD:
            recommendations.append(
                "List health is below optimal. Consider implementing re-engagement campaigns "
                "and improving signup quality."
            )
        if len(tags) < MIN_TAGS:
            recommendations.append(
                "Limited segmentation detected. Implement behavioral tags to improve targeting "
                "and personalization."
            )
        if len(_active_sequences(sequences)) < MIN_ACTIVE_SEQUENCES:
            recommendations.append(
                "Expand automation strategy. Consider welcome series, nurture sequences, "
                "and re-engagement campaigns."
            )
        if len(forms) < MIN_FORMS:
            recommendations.append(
                "Diversify lead capture strategy. Test multiple form types and placements "
                "to maximize conversions."
            )

        recommendations.append(
            "Ensure all automation content maintains consistent brand positioning and messaging."
        )
        recommendations.append(
            "Implement advanced segment tracking (Customer type, engagement level, lifecycle stage) "
            "for targeted messaging."
        )
        return recommendations


# Scoring


def calculate_list_health_score(*, total: int, active: int, bounced: int, complained: int) -> float:
    total = total or 1
    health_ratio = active / total
    negative_ratio = (bounced + complained) / total
    return max(0.0, min(100.0, health_ratio * 100 - negative_ratio * 50))


def calculate_tag_usage_frequency(tag: Mapping[str, Any], now: datetime | None = None) -> float:
    days = _days_since(tag.get("created_at"), now)
    return 1 / days if days > 0 else 1


def assess_behavioral_tracking(tags: list[dict[str, Any]]) -> str:
    behavioral = [
        tag
        for tag in tags
        if any(keyword in str(tag.get("name") or "").lower() for keyword in BEHAVIORAL_KEYWORDS)
    ]
    if len(behavioral) >= 5:
        return "Advanced"
    if len(behavioral) >= 2:
        return "Basic"
    return "None"


def calculate_optimization_score(sequence: Mapping[str, Any]) -> float:
    name = str(sequence.get("name") or "").lower()
    score = 50
    if "welcome" in name:
        score += 10
    if "nurture" in name:
        score += 10
    if not sequence.get("hold"):
        score += 20
    if sequence.get("repeat"):
        score += 10
    return min(100, score)


def calculate_subscriber_quality_score(form: Mapping[str, Any]) -> float:
    conversion_rate = _as_number(form.get("conversion_rate"))
    return min(100, conversion_rate * 10) if conversion_rate else 50


def calculate_data_quality_score(field: CustomField) -> float:
    score = 50
    if len(field.name) > 3:
        score += 20
    if field.key:
        score += 20
    if field.type == "text":
        score += 10
    return min(100, score)


def assess_personalization_opportunity(field_name: str) -> str:
    name = field_name.lower()
    if "name" in name:
        return "High - Use for email personalization"
    if "location" in name or "state" in name:
        return "Medium - Geographic targeting"
    if "specialty" in name or "industry" in name:
        return "High - Professional/industry segmentation"
    return "Low - General data field"


# Helpers


def _as_number(value: Any) -> float:
    """Coerce a remote numeric field, treating anything unparseable as 0."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return number if math.isfinite(number) else 0


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (Mapping, list)):
        return None
    return str(value)


def _items(payload: Mapping[str, Any] | None, key: str) -> list[dict[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    items = payload.get(key)
    if not isinstance(items, list):
        return []
    return [dict(item) for item in items if isinstance(item, Mapping)]


def _total_count(payload: Mapping[str, Any] | None, key: str | None) -> int:
    if not isinstance(payload, Mapping):
        return 0
    pagination = payload.get("pagination")
    total = _as_number(pagination.get("total_count")) if isinstance(pagination, Mapping) else 0
    if total > 0:
        return int(total)
    if key is not None:
        items = payload.get(key)
        return len(items) if isinstance(items, list) else 0
    return 0


def _active_sequences(sequences: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [seq for seq in sequences if not seq.get("hold")]


def _growth_rate(growth_stats: Mapping[str, Any] | None) -> float:
    if not isinstance(growth_stats, Mapping):
        return 0
    rate = growth_stats.get("growth_rate")
    if rate is None and isinstance(growth_stats.get("stats"), Mapping):
        rate = growth_stats["stats"].get("growth_rate")
    return _as_number(rate)


def _field_name(field: Mapping[str, Any]) -> str:
    return str(field.get("name") or field.get("label") or "")


def _parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _days_since(value: Any, now: datetime | None = None) -> int:
    created = _parse_date(value)
    if created is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return (now - created).days
