from __future__ import annotations

# Kit (ConvertKit) v4 REST client with rate limiting and error classification.

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from pydantic import BaseModel

from kit_mcp.config import KitSettings
from kit_mcp.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

_STATUS_ERRORS: dict[int, tuple[str, str]] = {
    401: ("AUTH_FAILED", "Authentication failed - Invalid API credentials"),
    403: ("ACCESS_FORBIDDEN", "Access forbidden - Check plan limits or permissions"),
    404: ("NOT_FOUND", "Resource not found"),
    413: ("REQUEST_TOO_LARGE", "Request too large - Exceeds bulk operation limits"),
    422: ("VALIDATION_ERROR", "Validation error - Invalid request data"),
    429: ("RATE_LIMIT_EXCEEDED", "Rate limit exceeded"),
    500: ("SERVER_ERROR", "Internal server error"),
}


class KitApiError(RuntimeError):
    """Raised when a Kit API request fails."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 500,
        code: Optional[str] = None,
        details: Any = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details
        self.retry_after = retry_after


class KitPagination(BaseModel):
    has_previous_page: bool = False
    has_next_page: bool = False
    start_cursor: Optional[str] = None
    end_cursor: Optional[str] = None
    per_page: Optional[int] = None
    total_count: Optional[int] = None


class KitApiClient:
    """Async client for the Kit v4 REST API."""

    def __init__(
        self,
        settings: KitSettings,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._rate_limiter = rate_limiter or RateLimiter(settings.rate_limit)
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            headers=settings.auth_headers(),
            timeout=settings.timeout,
            transport=transport,
        )

    @property
    def auth_mode(self) -> str:
        return self._settings.auth_mode

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Wait for rate limit admission, execute the request and raise KitApiError on failure."""
        await self._rate_limiter.await_admission()

        query: Dict[str, Any] = self._prepare_query(params or {})
        query.update(self._settings.auth_params())

        logger.debug("API %s: %s", method.upper(), path)
        try:
            response = await self._client.request(
                method,
                path,
                params=query or None,
                json=json_body,
            )
        except httpx.TransportError as exc:
            raise KitApiError(
                "Network error - No response received",
                code="NETWORK_ERROR",
                details=str(exc),
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise KitApiError(f"Request setup error: {exc}", code="REQUEST_ERROR") from exc

        logger.debug("API Response: %s %s", response.status_code, path)
        if response.status_code >= 400:
            raise self._error_from_response(response)
        if response.headers.get("Content-Type", "").startswith("application/json"):
            try:
                return response.json()
            except ValueError as exc:
                raise KitApiError(
                    "Invalid response - Body is not valid JSON",
                    status=response.status_code,
                    code="INVALID_RESPONSE",
                    details=response.text or None,
                ) from exc
        return response.text

    @staticmethod
    def _error_from_response(response: httpx.Response) -> KitApiError:
        try:
            details: Any = response.json()
        except ValueError:
            details = response.text or None

        code, message = _STATUS_ERRORS.get(
            response.status_code,
            (None, f"HTTP {response.status_code}: {response.reason_phrase}"),
        )
        retry_after: Optional[int] = None
        if response.status_code == 429:
            header = response.headers.get("Retry-After")
            if header and header.strip().isdigit():
                retry_after = int(header)
        return KitApiError(
            message,
            status=response.status_code,
            code=code,
            details=details,
            retry_after=retry_after,
        )

    @staticmethod
    def _serialize_param_value(value: Any) -> Any:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (list, tuple, set)):
            return ",".join(str(item) for item in value)
        return value

    def _prepare_query(self, base: Mapping[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for key, value in base.items():
            if value is None or value == "":
                continue
            params[key] = self._serialize_param_value(value)
        return params

    @staticmethod
    def _page_params(
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> Dict[str, Any]:
        return {
            "after": after,
            "before": before,
            "per_page": per_page,
            "include_total_count": include_total_count,
        }

    # Account

    async def get_account(self) -> dict[str, Any]:
        return await self.request("GET", "/account")

    async def get_email_stats(self) -> dict[str, Any]:
        return await self.request("GET", "/account/email_stats")

    async def get_growth_stats(self) -> dict[str, Any]:
        return await self.request("GET", "/account/growth_stats")

    # Subscribers

    async def get_subscribers(
        self,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
        email_address: Optional[str] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        params["email_address"] = email_address
        return await self.request("GET", "/subscribers", params=params)

    async def get_subscriber(self, subscriber_id: int | str) -> dict[str, Any]:
        return await self.request("GET", f"/subscribers/{subscriber_id}")

    # Tags

    async def get_tags(
        self,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", "/tags", params=params)

    async def get_tag_subscribers(
        self,
        tag_id: int | str,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", f"/tags/{tag_id}/subscribers", params=params)

    # Sequences

    async def get_sequences(
        self,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", "/sequences", params=params)

    async def get_sequence_subscribers(
        self,
        sequence_id: int | str,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", f"/sequences/{sequence_id}/subscribers", params=params)

    # Forms

    async def get_forms(
        self,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", "/forms", params=params)

    async def get_form_subscribers(
        self,
        form_id: int | str,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", f"/forms/{form_id}/subscribers", params=params)

    # Custom fields

    async def get_custom_fields(self) -> dict[str, Any]:
        return await self.request("GET", "/custom_fields")

    # Broadcasts

    async def get_broadcasts(
        self,
        *,
        after: Optional[str] = None,
        before: Optional[str] = None,
        per_page: Optional[int] = None,
        include_total_count: Optional[bool] = None,
    ) -> dict[str, Any]:
        params = self._page_params(
            after=after,
            before=before,
            per_page=per_page,
            include_total_count=include_total_count,
        )
        return await self.request("GET", "/broadcasts", params=params)

    async def get_broadcast_stats(self, broadcast_id: int | str) -> dict[str, Any]:
        return await self.request("GET", f"/broadcasts/{broadcast_id}/stats")

    # Utilities

    async def get_all_pages(
        self,
        fetch: Callable[..., Awaitable[dict[str, Any]]],
        key: str,
        **params: Any,
    ) -> list[dict[str, Any]]:
        """Follow cursor pagination and collect every item under ``key``."""
        items: list[dict[str, Any]] = []
        cursor = params.pop("after", None)
        while True:
            payload = await fetch(after=cursor, **params)
            items.extend(payload.get(key) or [])
            pagination = KitPagination.model_validate(payload.get("pagination") or {})
            if not (pagination.has_next_page and pagination.end_cursor):
                return items
            cursor = pagination.end_cursor

    async def test_connection(self) -> bool:
        try:
            await self.get_account()
        except KitApiError as exc:
            logger.error("Connection test failed: %s", exc)
            return False
        return True
