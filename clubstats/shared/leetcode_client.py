import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import httpx

from clubstats.shared.config import LEETCODE_GRAPHQL_URL, PROVIDER_TIMEOUT_SECONDS
from clubstats.shared.errors import NotFound, RateLimited, UpstreamError
from clubstats.shared.normalizer import LeetCodeRawPayload, coerce_count
from clubstats.shared.snapshots import Provider
from clubstats.shared.throttle import parse_retry_after

logger = logging.getLogger("leetcode_client")

PROVIDER_LABEL = Provider.LEETCODE.value

_REQUEST_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "Referer": "https://leetcode.com/",
    "User-Agent": "clubstats-sync",
}

_PROFILE_QUERY = (
    "query getUserProfile($username: String!) {\n"
    "  matchedUser(username: $username) {\n"
    "    username\n"
    "    profile { ranking reputation realName userAvatar }\n"
    "    submitStats { acSubmissionNum { difficulty count } }\n"
    "    userCalendar { submissionCalendar streak totalActiveDays }\n"
    "  }\n"
    "}"
)


@contextmanager
def _http_client(timeout=PROVIDER_TIMEOUT_SECONDS) -> Iterator[httpx.Client]:
    with httpx.Client(timeout=timeout, headers=_REQUEST_HEADERS) as client:
        yield client


def graphql_query(query, variables) -> Dict[str, Any]:
    """
    Execute a LeetCode GraphQL query

    Args:
        query (str): GraphQL query string
        variables (dict): Variables for the query

    Returns:
        dict response data (may contain null matchedUser)

    Raises:
        RateLimited: On HTTP 429
        UpstreamError: On other HTTP errors, timeouts or malformed responses
    """
    try:
        with _http_client() as client:
            response = client.post(LEETCODE_GRAPHQL_URL, json={"query": query, "variables": variables})
    except httpx.HTTPError as exc:
        logger.warning("leetcode_client: request failed error=%s", type(exc).__name__)
        raise UpstreamError(PROVIDER_LABEL, f"LeetCode request failed: {type(exc).__name__}") from exc

    if response.status_code == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        logger.warning("leetcode_client: rate limited retry_after=%ss", retry_after)
        raise RateLimited(retry_after, message="LeetCode rate limit exceeded")

    if response.status_code >= 400:
        logger.error("leetcode_client: HTTP error %s", response.status_code)
        raise UpstreamError(PROVIDER_LABEL, f"LeetCode HTTP {response.status_code}", status_code=response.status_code)

    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamError(PROVIDER_LABEL, "LeetCode returned invalid JSON") from exc

    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        errors = (body or {}).get("errors") if isinstance(body, dict) else None
        message = ((errors or [{}])[0] or {}).get("message") or "LeetCode GraphQL error"
        raise UpstreamError(PROVIDER_LABEL, message)
    return data


def fetch_profile(username) -> Dict[str, Any]:
    """
    Fetch the LeetCode matchedUser block

    Args:
        username (str): LeetCode username

    Returns:
        dict matchedUser

    Raises:
        NotFound: When LeetCode has no such user
        RateLimited, UpstreamError
    """
    data = graphql_query(_PROFILE_QUERY, {"username": username})
    matched_user = data.get("matchedUser")
    if matched_user is None:
        raise NotFound(PROVIDER_LABEL, username)
    return matched_user


def _calendar_day(unix_seconds) -> Optional[date]:
    try:
        return datetime.fromtimestamp(int(float(unix_seconds)), tz=timezone.utc).date()
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def expand_submission_calendar(raw_calendar, start: Optional[date] = None, end: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Expand a sparse {unix_day_seconds: count} map into a dense daily series

    Args:
        raw_calendar (str | dict): JSON string or mapping from LeetCode
        start (date): First day of the series; defaults to the earliest entry
        end (date): Last day of the series; defaults to the latest entry

    Returns:
        list of {date: YYYY-MM-DD, count: int}, ascending, zero-filled
    """
    if isinstance(raw_calendar, str):
        try:
            raw_calendar = json.loads(raw_calendar or "{}")
        except json.JSONDecodeError:
            logger.warning("leetcode_client: submissionCalendar is not valid JSON")
            raw_calendar = {}
    if not isinstance(raw_calendar, dict):
        raw_calendar = {}

    counts: Dict[date, int] = {}
    for key, value in raw_calendar.items():
        day = _calendar_day(key)
        if day is None:
            continue
        counts[day] = counts.get(day, 0) + coerce_count(value)

    if start is None and counts:
        start = min(counts)
    if end is None and counts:
        end = max(counts)
    if start is None or end is None or end < start:
        return []

    series = []
    day = start
    while day <= end:
        series.append({"date": day.isoformat(), "count": counts.get(day, 0)})
        day += timedelta(days=1)
    return series


def fetch_contributions(username) -> LeetCodeRawPayload:
    """
    Fetch everything needed for a LeetCode snapshot

    Args:
        username (str): LeetCode username

    Returns:
        LeetCodeRawPayload
    """
    matched_user = fetch_profile(username)
    raw_calendar = (matched_user.get("userCalendar") or {}).get("submissionCalendar")
    return LeetCodeRawPayload(
        username=username,
        matched_user=matched_user,
        calendar=expand_submission_calendar(raw_calendar),
    )


class LeetCodeClient:
    provider = Provider.LEETCODE

    def fetch_profile(self, username):
        return fetch_profile(username)

    def fetch_contributions(self, username):
        return fetch_contributions(username)
