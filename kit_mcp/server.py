"""Model Context Protocol server exposing Kit marketing automation tools."""

from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any

import anyio
from dotenv import load_dotenv
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from kit_mcp.audit import AccountAuditFunction
from kit_mcp.cache import STRATEGY_TTLS, ApiCache
from kit_mcp.client import KitApiClient, KitApiError
from kit_mcp.config import VERSION, ConfigurationError, KitSettings, describe
from kit_mcp.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class KitContext:
    """Process-wide services shared by every tool call."""

    settings: KitSettings
    cache: ApiCache
    rate_limiter: RateLimiter
    client: KitApiClient
    account_audit: AccountAuditFunction

    @classmethod
    def from_settings(cls, settings: KitSettings) -> "KitContext":
        cache = ApiCache(settings.cache)
        rate_limiter = RateLimiter(settings.rate_limit)
        client = KitApiClient(settings, rate_limiter)
        return cls(
            settings=settings,
            cache=cache,
            rate_limiter=rate_limiter,
            client=client,
            account_audit=AccountAuditFunction(client, cache),
        )

    async def close(self) -> None:
        await self.client.close()


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, default=str)


@asynccontextmanager
async def lifespan(app: Server):
    """Configure the Kit services for the server lifecycle."""
    load_dotenv(override=True)

    try:
        settings = KitSettings.from_env()
    except ConfigurationError as e:
        raise RuntimeError(f"Failed to load configuration: {e}") from e

    context = KitContext.from_settings(settings)
    app.context = context  # type: ignore[attr-defined]
    logger.info("Kit MCP server configured: %s", describe(settings))

    try:
        yield
    finally:
        await context.close()


server = Server(
    name="kit-mcp",
    version=VERSION,
    instructions=(
        "Use these tools to analyse a Kit (ConvertKit) account: subscribers, tags, sequences, forms, "
        "broadcasts and custom fields.\n"
        "\n"
        "Start with kit_account_audit for a full overview with a list health score and strategic "
        "recommendations. Audits are cached for 15 minutes; pass include_performance=true to force "
        "fresh data.\n"
        "\n"
        "Requests are rate limited per minute. Check kit_rate_limit_status before running many calls, "
        "and use kit_cache_status to inspect or clear cached responses. Read document:kit/audit-scoring "
        "to understand how audit scores are derived."
    ),
    lifespan=lifespan,
)


RESOURCE_DEFINITIONS: dict[str, dict[str, str]] = {
    "kit-audit-scoring": {
        "name": "kit-audit-scoring",
        "title": "Kit Account Audit Scoring",
        "uri": "document:kit/audit-scoring",
        "description": "How kit_account_audit derives its scores and recommendations.",
        "mime_type": "text/markdown",
        "content": (
            "# Account Audit Scoring\n"
            "\n"
            "- **List health score**: `100 * active/total - 50 * (bounced + complained)/total`, "
            "clamped to 0-100.\n"
            "- **Tag usage frequency**: `1 / days since the tag was created` (1 for tags created today). "
            "The first 20 tags are analysed individually.\n"
            "- **Behavioral tracking**: Advanced with 5+ tags mentioning clicked/opened/purchased/"
            "engaged/visited, Basic with 2+, otherwise None.\n"
            "- **Sequence optimization score**: starts at 50; +10 for 'welcome', +10 for 'nurture', "
            "+20 when not on hold, +10 when repeat is enabled; max 100. The first 10 active sequences "
            "are analysed.\n"
            "- **Form subscriber quality**: `conversion_rate * 10` (max 100), 50 when unknown. The first "
            "10 forms are analysed.\n"
            "- **Custom field data quality**: starts at 50; +20 for names longer than 3 characters, +20 "
            "when a key exists, +10 for text fields; max 100.\n"
            "\n"
            "Sections whose data could not be fetched are returned empty rather than failing the audit.\n"
        ),
    },
}

RESOURCE_DEFINITIONS_BY_URI = {info["uri"]: info for info in RESOURCE_DEFINITIONS.values()}

PROMPT_DEFINITIONS: dict[str, types.Prompt] = {
    "audit-account": types.Prompt(
        name="audit-account",
        description="Run a full account audit and summarise the most important next steps.",
    ),
    "review-segmentation": types.Prompt(
        name="review-segmentation",
        description="Review tags and custom fields for segmentation and personalization gaps.",
    ),
}

PROMPT_MESSAGES: dict[str, str] = {
    "audit-account": (
        "Run kit_account_audit and summarise the list health score, growth rate, automation coverage "
        "and lead capture setup. Finish with the three most impactful recommendations."
    ),
    "review-segmentation": (
        "List my Kit tags with kit_tag_management and my custom fields with kit_custom_field_analysis. "
        "Point out missing behavioral tags and custom fields that could drive personalization."
    ),
}

TOOL_DEFINITIONS: list[types.Tool] = [
    types.Tool(
        name="kit_account_audit",
        title="Account Audit",
        description=(
            "Complete Kit account overview for strategic analysis including subscribers, tags, sequences, "
            "forms, and strategic recommendations."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "include_performance": {
                    "type": "boolean",
                    "description": "Bypass the cached audit and fetch fresh data.",
                },
                "date_range": {
                    "type": "object",
                    "properties": {
                        "start_date": {"type": "string", "format": "date"},
                        "end_date": {"type": "string", "format": "date"},
                    },
                    "required": ["start_date", "end_date"],
                    "description": "Date range for performance data analysis.",
                },
                "detailed_segments": {
                    "type": "boolean",
                    "description": "Include detailed segmentation analysis.",
                },
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="kit_subscriber_lookup",
        title="Subscriber Lookup",
        description="Look up an individual subscriber by ID or email address.",
        inputSchema={
            "type": "object",
            "properties": {
                "subscriber_id": {"type": "string", "description": "Subscriber ID for lookup."},
                "email": {"type": "string", "format": "email", "description": "Email address for lookup."},
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="kit_tag_management",
        title="Tag Management",
        description="List every tag in the account for segmentation review.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_list_sequences",
        title="List Sequences",
        description="List every email sequence with its hold and repeat settings.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_custom_field_analysis",
        title="Custom Field Analysis",
        description="List custom fields to review personalization opportunities.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_form_optimization_analysis",
        title="Form Optimization Analysis",
        description="List lead capture forms to review conversion performance.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_list_broadcasts",
        title="List Broadcasts",
        description="List broadcasts one page at a time using cursor pagination.",
        inputSchema={
            "type": "object",
            "properties": {
                "per_page": {"type": "integer", "description": "Results per page (max 1000)."},
                "after": {"type": "string", "description": "Cursor returned as pagination.end_cursor."},
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="kit_broadcast_stats",
        title="Broadcast Stats",
        description="Get recipients, open, click and unsubscribe stats for a broadcast.",
        inputSchema={
            "type": "object",
            "properties": {
                "broadcast_id": {"type": "integer", "description": "ID of the broadcast."},
            },
            "required": ["broadcast_id"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="kit_connection_test",
        title="Connection Test",
        description="Test Kit API connection and authentication.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_rate_limit_status",
        title="Rate Limit Status",
        description="Get current API rate limit status and usage.",
        inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
    types.Tool(
        name="kit_cache_status",
        title="Cache Status",
        description="Get cache statistics, optionally clearing all cached data first.",
        inputSchema={
            "type": "object",
            "properties": {
                "clear_cache": {"type": "boolean", "description": "Clear all cached data."},
            },
            "additionalProperties": False,
        },
    ),
]


@server.list_tools()
async def list_tools(_req: types.ListToolsRequest | None = None) -> types.ListToolsResult:
    return types.ListToolsResult(tools=TOOL_DEFINITIONS)


@server.list_resources()
async def list_resources(_req: types.ListResourcesRequest | None = None) -> types.ListResourcesResult:
    resources = [
        types.Resource(
            name=info["name"],
            uri=info["uri"],
            description=info["description"],
            mimeType=info["mime_type"],
            title=info["title"],
        )
        for info in RESOURCE_DEFINITIONS.values()
    ]
    return types.ListResourcesResult(resources=resources)


@server.read_resource()
async def read_resource(uri: str):
    info = RESOURCE_DEFINITIONS_BY_URI.get(str(uri))
    if not info:
        raise ValueError(f"Unknown resource URI: {uri}")
    return [
        types.TextResourceContents(
            uri=info["uri"],
            text=info["content"],
            mimeType=info["mime_type"],
        )
    ]


@server.list_prompts()
async def list_prompts(_req: types.ListPromptsRequest | None = None) -> types.ListPromptsResult:
    return types.ListPromptsResult(prompts=list(PROMPT_DEFINITIONS.values()))


@server.get_prompt()
async def get_prompt(name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
    prompt = PROMPT_DEFINITIONS.get(name)
    if not prompt:
        raise ValueError(f"Prompt '{name}' not found.")
    return types.GetPromptResult(
        description=prompt.description,
        messages=[
            types.PromptMessage(
                role="user",
                content=types.TextContent(type="text", text=PROMPT_MESSAGES[name]),
            )
        ],
    )


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value in (None, "", [], {}):
        raise ValueError(f"Missing required argument '{key}'.")
    return value


def _get_context() -> KitContext:
    context = getattr(server, "context", None)  # type: ignore[attr-defined]
    if context is None:
        raise RuntimeError("Kit context not initialised.")
    return context


def _result(payload: dict[str, Any]) -> tuple[list[types.TextContent], dict[str, Any]]:
    return (
        [types.TextContent(type="text", text=_json(payload))],
        payload,
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _cached_listing(context: KitContext, key: str, fetch: Any) -> dict[str, Any]:
    """Collect every page of a listing, reusing a cached copy for a few minutes."""

    async def _all_pages() -> dict[str, Any]:
        items = await context.client.get_all_pages(fetch, key, per_page=1000)
        return {key: items, "total": len(items)}

    cache_key = ApiCache.generate_key(f"listing_{key}")
    return await context.cache.get_or_compute(cache_key, _all_pages, STRATEGY_TTLS["short"])


@server.call_tool()
async def call_tool(tool_name: str, arguments: dict[str, Any]) -> types.CallToolResult | tuple[Any, Any]:
    arguments = dict(arguments or {})
    logger.info("Tool called: %s", tool_name)
    try:
        context = _get_context()
        client = context.client

        if tool_name == "kit_account_audit":
            audit = await context.account_audit.execute(arguments)
            return _result(audit.model_dump(mode="json"))

        if tool_name == "kit_subscriber_lookup":
            subscriber_id = arguments.get("subscriber_id")
            email = arguments.get("email")
            if subscriber_id:
                payload = await client.get_subscriber(str(subscriber_id))
            elif email:
                payload = await client.get_subscribers(email_address=str(email))
            else:
                raise ValueError("Provide either 'subscriber_id' or 'email'.")
            return _result(payload)

        if tool_name == "kit_tag_management":
            return _result(await _cached_listing(context, "tags", client.get_tags))

        if tool_name == "kit_list_sequences":
            return _result(await _cached_listing(context, "sequences", client.get_sequences))

        if tool_name == "kit_form_optimization_analysis":
            return _result(await _cached_listing(context, "forms", client.get_forms))

        if tool_name == "kit_custom_field_analysis":
            payload = await context.cache.get_or_compute(
                ApiCache.generate_key("listing_custom_fields"),
                client.get_custom_fields,
                STRATEGY_TTLS["short"],
            )
            return _result(payload)

        if tool_name == "kit_list_broadcasts":
            per_page = arguments.get("per_page")
            payload = await client.get_broadcasts(
                per_page=int(per_page) if per_page else None,
                after=arguments.get("after"),
                include_total_count=True,
            )
            return _result(payload)

        if tool_name == "kit_broadcast_stats":
            broadcast_id = int(_require(arguments, "broadcast_id"))
            fetch = partial(client.get_broadcast_stats, broadcast_id)
            payload = await context.cache.get_or_compute(
                ApiCache.generate_key("broadcast_stats", {"broadcast_id": broadcast_id}),
                fetch,
                STRATEGY_TTLS["short"],
            )
            return _result(payload)

        if tool_name == "kit_connection_test":
            connected = await client.test_connection()
            return _result(
                {
                    "connected": connected,
                    "timestamp": _timestamp(),
                    "auth_mode": client.auth_mode,
                }
            )

        if tool_name == "kit_rate_limit_status":
            return _result(dict(context.rate_limiter.get_status()))

        if tool_name == "kit_cache_status":
            clear_cache = bool(arguments.get("clear_cache"))
            if clear_cache:
                context.cache.clear()
            payload = dict(context.cache.get_stats())
            payload["cache_cleared"] = clear_cache
            payload["timestamp"] = _timestamp()
            return _result(payload)

        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"Unknown tool: {tool_name}")],
            isError=True,
        )
    except KitApiError as exc:
        logger.warning("Kit API error in %s: %s", tool_name, exc)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"Kit API error: {exc}")],
            isError=True,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error executing tool %s", tool_name)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"Tool execution error: {exc}")],
            isError=True,
        )


def configure_logging() -> None:
    # stdout carries the MCP protocol, so logs go to stderr.
    logging.basicConfig(
        stream=sys.stderr,
        level=os.getenv("KIT_MCP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run() -> None:
    initialization_options = server.create_initialization_options()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, initialization_options)


def main() -> None:
    load_dotenv(override=True)
    configure_logging()
    anyio.run(_run)


if __name__ == "__main__":
    main()
