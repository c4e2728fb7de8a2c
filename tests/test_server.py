"""Tests for the MCP tool handlers."""

import json
from unittest.mock import AsyncMock

import pytest
from mcp import types

from kit_mcp import server as kit_server
from kit_mcp.audit import AccountAuditFunction, AuditError
from kit_mcp.cache import ApiCache
from kit_mcp.client import KitApiClient, KitApiError
from kit_mcp.config import CacheConfig, KitSettings, RateLimitConfig
from kit_mcp.models import (
    AccountAudit,
    AccountSummary,
    AutomationOverview,
    LeadCaptureAnalysis,
    SegmentationAnalysis,
)
from kit_mcp.rate_limiter import RateLimiter


def _empty_audit():
    return AccountAudit(
        account_summary=AccountSummary(total_subscribers=250, active_subscribers=250, list_health_score=100),
        segmentation_analysis=SegmentationAnalysis(),
        automation_overview=AutomationOverview(),
        lead_capture_analysis=LeadCaptureAnalysis(),
        strategic_recommendations=["Diversify lead capture strategy."],
    )


@pytest.fixture
def client():
    client = AsyncMock(spec=KitApiClient)
    client.auth_mode = "oauth"
    return client


@pytest.fixture
def context(client, monkeypatch):
    cache = ApiCache(CacheConfig())
    account_audit = AsyncMock(spec=AccountAuditFunction)
    account_audit.execute.return_value = _empty_audit()
    context = kit_server.KitContext(
        settings=KitSettings(access_token="token"),
        cache=cache,
        rate_limiter=RateLimiter(RateLimitConfig(requests_per_minute=10)),
        client=client,
        account_audit=account_audit,
    )
    monkeypatch.setattr(kit_server.server, "context", context, raising=False)
    return context


def _error_text(result):
    assert isinstance(result, types.CallToolResult)
    assert result.isError is True
    return result.content[0].text


class TestDefinitions:
    @pytest.mark.asyncio
    async def test_list_tools(self):
        result = await kit_server.list_tools()
        names = [tool.name for tool in result.tools]
        assert names[0] == "kit_account_audit"
        assert {"kit_rate_limit_status", "kit_cache_status", "kit_connection_test"} <= set(names)

    @pytest.mark.asyncio
    async def test_read_resource(self):
        contents = await kit_server.read_resource("document:kit/audit-scoring")
        assert contents[0].text.startswith("# Account Audit Scoring")

    @pytest.mark.asyncio
    async def test_read_unknown_resource(self):
        with pytest.raises(ValueError, match="Unknown resource URI"):
            await kit_server.read_resource("document:kit/missing")

    @pytest.mark.asyncio
    async def test_get_prompt(self):
        result = await kit_server.get_prompt("audit-account")
        assert "kit_account_audit" in result.messages[0].content.text

    @pytest.mark.asyncio
    async def test_get_unknown_prompt(self):
        with pytest.raises(ValueError):
            await kit_server.get_prompt("nope")


class TestCallTool:
    @pytest.mark.asyncio
    async def test_account_audit(self, context):
        content, payload = await kit_server.call_tool("kit_account_audit", {"detailed_segments": True})

        context.account_audit.execute.assert_awaited_once_with({"detailed_segments": True})
        assert payload["account_summary"]["list_health_score"] == 100
        assert set(payload) == {
            "account_summary",
            "segmentation_analysis",
            "automation_overview",
            "lead_capture_analysis",
            "custom_fields_usage",
            "strategic_recommendations",
        }
        assert json.loads(content[0].text) == payload

    @pytest.mark.asyncio
    async def test_audit_failure_is_reported(self, context):
        context.account_audit.execute.side_effect = AuditError("Failed to generate account audit: boom")
        text = _error_text(await kit_server.call_tool("kit_account_audit", {}))
        assert text == "Tool execution error: Failed to generate account audit: boom"

    @pytest.mark.asyncio
    async def test_subscriber_lookup_by_id(self, context, client):
        client.get_subscriber.return_value = {"subscriber": {"id": 7}}
        _, payload = await kit_server.call_tool("kit_subscriber_lookup", {"subscriber_id": 7})
        client.get_subscriber.assert_awaited_once_with("7")
        assert payload == {"subscriber": {"id": 7}}

    @pytest.mark.asyncio
    async def test_subscriber_lookup_by_email(self, context, client):
        client.get_subscribers.return_value = {"subscribers": []}
        await kit_server.call_tool("kit_subscriber_lookup", {"email": "jane@example.com"})
        client.get_subscribers.assert_awaited_once_with(email_address="jane@example.com")

    @pytest.mark.asyncio
    async def test_subscriber_lookup_requires_argument(self, context):
        text = _error_text(await kit_server.call_tool("kit_subscriber_lookup", {}))
        assert "Provide either 'subscriber_id' or 'email'" in text

    @pytest.mark.asyncio
    async def test_tag_listing_is_cached(self, context, client):
        client.get_all_pages.return_value = [{"id": 1}, {"id": 2}]

        _, first = await kit_server.call_tool("kit_tag_management", {})
        _, second = await kit_server.call_tool("kit_tag_management", {})

        assert first == {"tags": [{"id": 1}, {"id": 2}], "total": 2}
        assert second == first
        client.get_all_pages.assert_awaited_once_with(client.get_tags, "tags", per_page=1000)

    @pytest.mark.asyncio
    async def test_broadcast_stats_requires_id(self, context):
        text = _error_text(await kit_server.call_tool("kit_broadcast_stats", {}))
        assert "Missing required argument 'broadcast_id'" in text

    @pytest.mark.asyncio
    async def test_broadcast_stats(self, context, client):
        client.get_broadcast_stats.return_value = {"broadcast": {"id": 3, "stats": {"recipients": 10}}}
        _, payload = await kit_server.call_tool("kit_broadcast_stats", {"broadcast_id": 3})
        await kit_server.call_tool("kit_broadcast_stats", {"broadcast_id": 3})
        client.get_broadcast_stats.assert_awaited_once_with(3)
        assert payload["broadcast"]["stats"]["recipients"] == 10

    @pytest.mark.asyncio
    async def test_kit_api_error_is_reported(self, context, client):
        client.get_broadcasts.side_effect = KitApiError("Rate limit exceeded", status=429, code="RATE_LIMIT_EXCEEDED")
        text = _error_text(await kit_server.call_tool("kit_list_broadcasts", {"per_page": 10}))
        assert text == "Kit API error: Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_connection_test(self, context, client):
        client.test_connection.return_value = True
        _, payload = await kit_server.call_tool("kit_connection_test", {})
        assert payload["connected"] is True
        assert payload["auth_mode"] == "oauth"
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_rate_limit_status(self, context):
        context.rate_limiter.record(count=3)
        _, payload = await kit_server.call_tool("kit_rate_limit_status", {})
        assert payload["requests_in_last_minute"] == 3
        assert payload["remaining_requests"] == 7

    @pytest.mark.asyncio
    async def test_cache_status_clears(self, context):
        context.cache.set("key1", "value")
        _, before = await kit_server.call_tool("kit_cache_status", {})
        assert before["key_count"] == 1
        assert before["cache_cleared"] is False

        _, after = await kit_server.call_tool("kit_cache_status", {"clear_cache": True})
        assert after["key_count"] == 0
        assert after["cache_cleared"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool(self, context):
        assert _error_text(await kit_server.call_tool("kit_nope", {})) == "Unknown tool: kit_nope"

    @pytest.mark.asyncio
    async def test_missing_context(self, monkeypatch):
        monkeypatch.setattr(kit_server.server, "context", None, raising=False)
        text = _error_text(await kit_server.call_tool("kit_cache_status", {}))
        assert "Kit context not initialised" in text
