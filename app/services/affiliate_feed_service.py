"""
Impact.com Media Partner API client.

Documentation: https://integrations.impact.com/impact-publisher/reference

Every HTTP attempt goes through the shared AffiliateRateLimiter; every
logical request goes through the shared RequestCoalescer, so concurrent
callers asking for the same page trigger one upstream call.

Error mapping:
    401 / 403            -> AuthError (never retried)
    429                  -> RateLimitError (retried, honours Retry-After)
    5xx, transport error -> NetworkError (retried with exponential backoff)
    400 / 422            -> RequestRejectedError
    bad JSON / no Actions -> MalformedResponseError
"""
import asyncio
import logging
import math
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.config import settings
from app.core.dates import format_impact_date
from app.core.exceptions import (
    AuthError,
    ConfigurationError,
    EarningsSyncError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    RequestRejectedError,
    ValidationError,
)
from app.schemas.affiliate import ActionFilters, DateRange, FeedPage, parse_action
from app.services.rate_limiter import AffiliateRateLimiter
from app.services.request_cache import RequestCoalescer, TTLClass, make_cache_key

logger = logging.getLogger(__name__)

DATE_PARAMS = ("StartDate", "EndDate")


class AffiliateFeedClient:
    """Paginated, rate-limited reader for affiliate Actions and reports."""

    def __init__(
        self,
        rate_limiter: AffiliateRateLimiter,
        cache: RequestCoalescer,
        http_client: Optional[httpx.AsyncClient] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.account_sid = settings.IMPACT_ACCOUNT_SID if account_sid is None else account_sid
        self.auth_token = settings.IMPACT_AUTH_TOKEN if auth_token is None else auth_token
        self.base_url = (base_url or settings.IMPACT_API_BASE_URL).rstrip("/")
        self.max_retries = settings.FEED_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.FEED_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.IMPACT_REQUEST_TIMEOUT)
        self.request_count = 0  # actual HTTP attempts

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    @property
    def actions_url(self) -> str:
        return f"{self.base_url}/Mediapartners/{self.account_sid}/Actions"

    def report_url(self, report_id: str) -> str:
        return f"{self.base_url}/Mediapartners/{self.account_sid}/Reports/{report_id}"

    def ensure_configured(self) -> None:
        if not self.is_configured:
            raise ConfigurationError(
                "Affiliate API credentials are not configured",
                {"setting": "IMPACT_ACCOUNT_SID/IMPACT_AUTH_TOKEN"},
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ==================== Transport ====================

    def _classify(self, response: httpx.Response, context: Dict[str, Any]) -> Optional[EarningsSyncError]:
        """Map a response to an error, or None for 2xx."""
        status = response.status_code
        if status < 400:
            return None
        context = {**context, "status_code": status}
        if status in (401, 403):
            return AuthError("Affiliate API rejected credentials", context)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            return RateLimitError("Affiliate API rate limit exceeded", retry_after, context)
        if status >= 500:
            return NetworkError(f"Affiliate API server error {status}", context)
        return RequestRejectedError(
            f"Affiliate API rejected request: {response.text[:200]}", status, context
        )

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        """GET with rate limiting and bounded retries for retryable errors."""
        context = {"url": url, "page": params.get("Page")}
        attempt = 0
        while True:
            attempt += 1
            await self.rate_limiter.acquire()
            self.request_count += 1
            try:
                response = await self._client.get(
                    url,
                    params=params,
                    auth=(self.account_sid, self.auth_token),
                    headers={"Accept": "application/json"},
                )
                error = self._classify(response, context)
            except httpx.TimeoutException as e:
                error = NetworkError(f"Affiliate API timeout: {e}", context)
            except httpx.TransportError as e:
                error = NetworkError(f"Affiliate API transport error: {e}", context)

            if error is None:
                try:
                    return response.json()
                except ValueError as e:
                    raise MalformedResponseError("Affiliate API returned invalid JSON", context) from e

            if not error.retryable or attempt > self.max_retries:
                raise error

            delay = self.backoff_seconds * (2 ** (attempt - 1))
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, error.retry_after)
            logger.warning(
                f"Affiliate API attempt {attempt} failed ({error}); retrying in {delay:.1f}s"
            )
            await self._sleep(delay)

    # ==================== Actions ====================

    def _action_params(
        self,
        date_range: Optional[DateRange],
        filters: Optional[ActionFilters],
        page: int,
        page_size: int,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"Page": page, "PageSize": page_size}
        if date_range is not None:
            params["StartDate"] = format_impact_date(date_range.start)
            params["EndDate"] = format_impact_date(date_range.end)
        if filters is not None:
            if filters.status:
                params["ActionStatus"] = filters.status
            if filters.action_type:
                params["ActionType"] = filters.action_type
            if filters.tracking_id:
                params["SubId1"] = filters.tracking_id
        return params

    async def fetch_actions(
        self,
        date_range: Optional[DateRange] = None,
        filters: Optional[ActionFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> FeedPage:
        """Fetch one page of Actions."""
        self.ensure_configured()
        page_size = page_size or settings.SYNC_PAGE_SIZE
        params = self._action_params(date_range, filters, page, page_size)
        key = make_cache_key("actions", params)
        return await self.cache.get_or_fetch(
            key,
            TTLClass.EARNINGS,
            lambda: self._fetch_actions_page(params, page, page_size),
        )

    async def _fetch_actions_page(self, params: Dict[str, Any], page: int, page_size: int) -> FeedPage:
        degraded = False
        try:
            data = await self._get_json(self.actions_url, params)
        except RequestRejectedError as e:
            has_dates = any(p in params for p in DATE_PARAMS)
            if not has_dates or e.status_code not in (400, 422):
                raise
            logger.warning(
                f"Affiliate API rejected date filters {params.get('StartDate')}-"
                f"{params.get('EndDate')} (HTTP {e.status_code}); retrying page {page} "
                f"without them. Results are not date-bounded."
            )
            unbounded = {k: v for k, v in params.items() if k not in DATE_PARAMS}
            data = await self._get_json(self.actions_url, unbounded)
            degraded = True

        return self._parse_actions_page(data, page, page_size, degraded)

    def _parse_actions_page(self, data: Any, page: int, page_size: int, degraded: bool) -> FeedPage:
        if not isinstance(data, dict) or not isinstance(data.get("Actions"), list):
            raise MalformedResponseError("Response has no Actions list", {"page": page})

        items = []
        invalid: List[ValidationError] = []
        for raw in data["Actions"]:
            try:
                items.append(parse_action(raw))
            except ValidationError as e:
                invalid.append(e)

        if invalid:
            logger.warning(f"Page {page}: {len(invalid)} invalid actions skipped")

        total_results = _as_int(data.get("@total", data.get("TotalResults")), len(data["Actions"]))
        total_pages = _as_int(data.get("@numpages", data.get("TotalPages")), None)
        if total_pages is None:
            total_pages = math.ceil(total_results / page_size) if page_size else 1

        return FeedPage(
            items=items,
            page=page,
            total_pages=total_pages,
            total_results=total_results,
            invalid_items=invalid,
            degraded=degraded,
        )

    # ==================== Reports ====================

    async def fetch_subid_clicks(self, day: date, tracking_id: str) -> int:
        """Click count for one SubId1 on one day from the performance report."""
        self.ensure_configured()
        params = {
            "START_DATE": day.isoformat(),
            "END_DATE": day.isoformat(),
            "SUBID1": tracking_id,
            "ResultFormat": "JSON",
        }
        key = make_cache_key("subid_clicks", params)

        async def fetch() -> int:
            data = await self._get_json(self.report_url(settings.IMPACT_PERFORMANCE_REPORT_ID), params)
            if not isinstance(data, dict) or not isinstance(data.get("Records"), list):
                raise MalformedResponseError("Report response has no Records list", {"day": day.isoformat()})
            return sum(_as_int(r.get("Clicks"), 0) for r in data["Records"] if isinstance(r, dict))

        return await self.cache.get_or_fetch(key, TTLClass.PERFORMANCE, fetch)

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch a single action to verify credentials."""
        if not self.is_configured:
            return {"success": False, "error": "Affiliate API credentials are not configured"}
        try:
            data = await self._get_json(self.actions_url, {"Page": 1, "PageSize": 1})
        except EarningsSyncError as e:
            return {"success": False, "error": str(e)}
        total = data.get("@total", data.get("TotalResults")) if isinstance(data, dict) else None
        return {"success": True, "total_results": total}


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default
