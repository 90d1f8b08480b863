"""Meta Insights API Client.

WHAT:
    Page-at-a-time access to the Graph API insights edge of an ad account:
    - Explicit cursor pagination (one request per call, `after` cursor in/out)
    - Proactive per-token rate limiting (sliding window)
    - Classification of every failure into the sync error taxonomy

WHY:
    - The worker must check for cancellation between pages, so pagination is
      driven by the caller instead of hidden in an SDK iterator
    - Rate-limit responses carry an advisory delay the worker must honor
    - Auth failures must be told apart from transient ones (no retry)

DEPENDENCIES:
    - httpx (transport)
    - facebook_business (insights field/level vocabulary)

RATE LIMITS:
    - META_CALLS_PER_HOUR calls per access token (client-side budget)
    - Server-side throttling: HTTP 429 / error codes 4, 17, 32, 613, 80000-80014

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
    - adsync/exceptions.py
"""

import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import date
from functools import wraps
from time import time
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx
from facebook_business.adobjects.adsinsights import AdsInsights

from adsync.deps import Settings, get_settings
from adsync.exceptions import (
    AuthError,
    PermanentFailure,
    RateLimitError,
    TransientNetworkError,
)
from adsync.security import decrypt_secret

logger = logging.getLogger(__name__)

# Graph API error codes
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80000, 80001, 80002, 80003, 80004, 80005, 80006, 80008, 80009, 80014}
AUTH_ERROR_CODES = {102, 190}
PERMISSION_ERROR_CODES = {10, 200}
TRANSIENT_ERROR_CODES = {1, 2}

METRIC_FIELDS = (
    AdsInsights.Field.date_start,
    AdsInsights.Field.date_stop,
    AdsInsights.Field.spend,
    AdsInsights.Field.impressions,
    AdsInsights.Field.clicks,
    AdsInsights.Field.reach,
    AdsInsights.Field.actions,
    AdsInsights.Field.action_values,
    AdsInsights.Field.account_currency,
)

LEVEL_FIELDS = {
    AdsInsights.Level.ad: (AdsInsights.Field.ad_id,),
    AdsInsights.Level.adset: (AdsInsights.Field.adset_id,),
    AdsInsights.Level.campaign: (AdsInsights.Field.campaign_id,),
    AdsInsights.Level.account: (),
}

# Timestamps of recent calls, per access token
_rate_limit_call_times: Dict[str, deque] = {}


def rate_limit(calls_per_hour: Optional[int] = None):
    """Decorator enforcing a sliding-window call budget per access token.

    WHAT:
        Tracks call timestamps per client token and raises RateLimitError when
        the budget for the last hour is used up. All decorated methods share
        the same budget for a token, because Meta counts calls per app/account,
        not per edge.

    WHY:
        The caller is a queue job holding a lease. Waiting out the window
        inside the job would outlive the lease, so the delay goes back to the
        queue as retry_after instead.

    Args:
        calls_per_hour: Budget override; defaults to the client's configured
            META_CALLS_PER_HOUR

    Returns:
        Decorated function that enforces rate limiting

    Raises:
        RateLimitError: Budget used up; retry_after is when the oldest call
            leaves the window
    """
    def decorator(func):
        @wraps(func)
        def wrapper(client, *args, **kwargs):
            budget = calls_per_hour or client.calls_per_hour
            call_times = _rate_limit_call_times.setdefault(client.access_token, deque())
            now = time()

            while call_times and call_times[0] <= now - 3600:
                call_times.popleft()

            if len(call_times) >= budget:
                retry_after = 3600 - (now - call_times[0]) + 1
                logger.warning(
                    "[META_CLIENT] Client budget reached (%d calls/hour). Retry in %.1fs",
                    budget, retry_after,
                )
                raise RateLimitError(
                    f"Client call budget of {budget} calls/hour reached",
                    retry_after=retry_after,
                    provider="meta",
                )

            call_times.append(now)
            return func(client, *args, **kwargs)
        return wrapper
    return decorator


@dataclass
class InsightsPage:
    """One page of insight rows and the cursor for the next one (None when done)."""

    rows: List[Dict[str, Any]]
    next_cursor: Optional[str]


class MetaInsightsClient:
    """Client for the ad account insights edge.

    Usage:
        client = MetaInsightsClient(access_token="TOKEN")
        cursor = None
        while True:
            page = client.get_insights_page("act_123", since, until, level="ad", after=cursor)
            ...
            if not page.next_cursor:
                break
            cursor = page.next_cursor
    """

    def __init__(
        self,
        access_token: str,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """Initialize with an access token.

        Args:
            access_token: Decrypted user/system-user token
            settings: Settings override (tests)
            http_client: Preconfigured httpx client (tests use MockTransport)
        """
        if not access_token:
            raise AuthError("No access token configured for connection", provider="meta")

        self.access_token = access_token
        self.settings = settings or get_settings()
        self.calls_per_hour = self.settings.META_CALLS_PER_HOUR
        self.base_url = f"{self.settings.META_GRAPH_URL.rstrip('/')}/{self.settings.META_API_VERSION}"
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=self.settings.META_REQUEST_TIMEOUT_SECONDS)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "MetaInsightsClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # Insights
    # =========================================================================

    @rate_limit()
    def get_insights_page(
        self,
        account_id: str,
        since: date,
        until: date,
        level: str = AdsInsights.Level.ad,
        breakdowns: Sequence[str] = (),
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> InsightsPage:
        """Fetch one page of daily insights for an inclusive date range.

        Args:
            account_id: Ad account id ("act_123")
            since: First day (inclusive)
            until: Last day (inclusive)
            level: account, campaign, adset or ad
            breakdowns: API breakdown names (demographic jobs)
            after: Cursor returned by the previous page
            limit: Page size (defaults depend on breakdowns)

        Returns:
            InsightsPage with rows and the next cursor (None on the last page)

        Raises:
            AuthError, RateLimitError, TransientNetworkError, PermanentFailure
        """
        fields = list(METRIC_FIELDS) + list(LEVEL_FIELDS.get(level, ()))
        if limit is None:
            limit = self.settings.DEMOGRAPHICS_PAGE_LIMIT if breakdowns else self.settings.INSIGHTS_PAGE_LIMIT

        params: Dict[str, Any] = {
            "access_token": self.access_token,
            "fields": ",".join(fields),
            "level": level,
            "time_increment": 1,
            "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
            "limit": limit,
        }
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)
        if after:
            params["after"] = after

        context = f"fetching {level} insights for {account_id} {since}..{until}"
        logger.debug("[META_CLIENT] %s (after=%s)", context, after)

        try:
            response = self._http.get(f"{self.base_url}/{account_id}/insights", params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout while {context}: {e}", provider="meta") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error while {context}: {e}", provider="meta") from e

        if response.status_code != 200:
            self._raise_for_error(response, context)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Unparseable response while {context}", provider="meta") from e

        rows = body.get("data") or []
        paging = body.get("paging") or {}
        next_cursor = None
        if paging.get("next"):
            next_cursor = (paging.get("cursors") or {}).get("after")
            if not next_cursor:
                raise PermanentFailure(f"Paging has next link but no cursor while {context}", provider="meta")

        return InsightsPage(rows=rows, next_cursor=next_cursor)

    def iter_insight_pages(
        self,
        account_id: str,
        since: date,
        until: date,
        level: str = AdsInsights.Level.ad,
        breakdowns: Sequence[str] = (),
    ) -> Iterator[InsightsPage]:
        """Yield pages until the API reports no next cursor."""
        cursor = None
        while True:
            page = self.get_insights_page(account_id, since, until, level=level, breakdowns=breakdowns, after=cursor)
            yield page
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    def get_daily_account_totals(self, account_id: str, since: date, until: date) -> List[Dict[str, Any]]:
        """All account-level daily rows for a range (used by stale detection)."""
        rows: List[Dict[str, Any]] = []
        for page in self.iter_insight_pages(account_id, since, until, level=AdsInsights.Level.account):
            rows.extend(page.rows)
        return rows

    # =========================================================================
    # Error classification
    # =========================================================================

    def _raise_for_error(self, response: httpx.Response, context: str) -> None:
        """Translate an error response into the sync error taxonomy.

        Raises:
            RateLimitError: 429 or throttling error codes (with advisory delay)
            AuthError: 401, token error codes, permission errors
            TransientNetworkError: 5xx or errors flagged is_transient
            PermanentFailure: Any other 4xx (malformed request)
        """
        try:
            error = (response.json() or {}).get("error") or {}
        except ValueError:
            error = {}

        status = response.status_code
        code = error.get("code")
        message = error.get("message") or response.text[:200]

        logger.error(
            "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
            context, status, code, message,
        )

        if status == 429 or code in RATE_LIMIT_ERROR_CODES:
            raise RateLimitError(
                f"Rate limited while {context}: {message}",
                retry_after=_advisory_delay(response),
                provider="meta",
            )
        if status == 401 or code in AUTH_ERROR_CODES:
            raise AuthError(f"Authentication failed while {context}. Token expired or revoked.", provider="meta")
        if status == 403 or code in PERMISSION_ERROR_CODES:
            raise AuthError(f"Permission denied while {context}. Token lacks ads_read.", provider="meta")
        if status >= 500 or error.get("is_transient") or code in TRANSIENT_ERROR_CODES:
            raise TransientNetworkError(f"Upstream error while {context}: HTTP {status}, {message}", provider="meta")
        raise PermanentFailure(f"Invalid request while {context}: {message}", provider="meta")


def _advisory_delay(response: httpx.Response) -> Optional[float]:
    """Seconds to wait according to Retry-After or the usage headers."""
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            logger.warning("[META_CLIENT] Non-numeric Retry-After header: %s", retry_after[:50])

    for header in ("x-business-use-case-usage", "x-ad-account-usage"):
        raw = response.headers.get(header)
        if not raw:
            continue
        try:
            usage = json.loads(raw)
        except ValueError:
            logger.warning("[META_CLIENT] Unparseable %s header: %s", header, raw[:200])
            continue

        minutes = _max_regain_minutes(usage)
        if minutes:
            return float(minutes) * 60
    return None


def _max_regain_minutes(usage: Any) -> Optional[float]:
    """Largest estimated_time_to_regain_access in a (possibly nested) usage payload."""
    found: List[float] = []

    def _walk(node: Any) -> None:
        if isinstance(node, dict):
            value = node.get("estimated_time_to_regain_access")
            if isinstance(value, (int, float)) and value > 0:
                found.append(float(value))
            for child in node.values():
                _walk(child)
        elif isinstance(node, list):
            for child in node:
                _walk(child)

    _walk(usage)
    return max(found) if found else None


def client_for_connection(connection, settings: Optional[Settings] = None) -> MetaInsightsClient:
    """Build a client from a Connection's stored (encrypted) token.

    Raises:
        AuthError: If the token is missing or cannot be decrypted; either way
            the user has to reconnect
    """
    if not connection.access_token_enc:
        raise AuthError(f"Connection {connection.id} has no stored access token", provider="meta")
    try:
        token = decrypt_secret(connection.access_token_enc, context=f"meta:{connection.external_account_id}")
    except ValueError as e:
        raise AuthError(f"Stored token for connection {connection.id} is unreadable", provider="meta") from e
    return MetaInsightsClient(access_token=token, settings=settings)
