from typing import Any, Dict, List, Optional
import hashlib
import logging
import random
import time

import httpx

from clubstats.shared.config import (
    GH_BACKOFF_BASE_SECONDS,
    GH_BACKOFF_CAP_SECONDS,
    GH_MAX_RETRIES,
    GH_REPO_LANGUAGE_MAX_REPOS,
    GITHUB_API_URL,
)
from clubstats.shared.errors import NotFound, RateLimited, UpstreamError
from clubstats.shared.normalizer import GitHubRawPayload, contribution_level
from clubstats.shared.snapshots import LanguageUnit, Provider
from clubstats.shared.throttle import (
    DEFAULT_GITHUB_TIMEOUT,
    next_github_token,
    retry_after_from_response,
    send_github_graphql,
    send_github_request,
)

logger = logging.getLogger("github_client")

PROVIDER_LABEL = Provider.GITHUB.value
RECENT_EVENTS_PAGE_SIZE = 50

_CONTRIBUTIONS_QUERY = (
    "query($login:String!, $prQuery:String!, $issueQuery:String!){\n"
    "  user(login: $login) {\n"
    "    login\n"
    "    contributionsCollection {\n"
    "      totalCommitContributions\n"
    "      restrictedContributionsCount\n"
    "      contributionCalendar {\n"
    "        totalContributions\n"
    "        weeks { contributionDays { date contributionCount } }\n"
    "      }\n"
    "    }\n"
    "  }\n"
    "  prs: search(type: ISSUE, first: 1, query: $prQuery) { issueCount }\n"
    "  issues: search(type: ISSUE, first: 1, query: $issueQuery) { issueCount }\n"
    "}"
)


class GitHubAPIError(RuntimeError):
    """
    Raised when GitHub GraphQL API returns application-level errors in the JSON payload

    Attributes:
        errors (list): Raw error objects from GitHub
        operation (str): Best-effort label for the GraphQL operation type
    """

    def __init__(self, message, errors=None, operation=None):
        super().__init__(message)
        self.errors = errors or []
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        for err in self.errors:
            ext = err.get("extensions") or {}
            code = (ext.get("code") or "").upper()
            if code in {"INTERNAL", "RATE_LIMITED", "ABUSE_DETECTED"}:
                return True
        return False

    @property
    def is_not_found(self) -> bool:
        return any(str(err.get("type") or "").upper() == "NOT_FOUND" for err in self.errors)


def _compute_graphql_error_backoff_seconds(attempt):
    base = max(0, int(GH_BACKOFF_BASE_SECONDS))
    cap = max(0, int(GH_BACKOFF_CAP_SECONDS))

    if base <= 0:
        return 0.0

    raw = float(base) * (2.0 ** float(max(0, int(attempt))))
    wait = raw + random.uniform(0.0, 1.0)

    if cap > 0:
        return min(float(cap), wait)
    return wait


def graphql_query(github_token, query, variables) -> Dict[str, Any]:
    """
    Execute a GitHub GraphQL query using Redis-coordinated throttling

    Args:
        github_token (str): API token
        query (str): GraphQL query string
        variables (dict): Variables for the query

    Returns:
        dict response data

    Raises:
        GitHubAPIError: When GitHub returns errors that are not transient or retries run out
    """
    operation = "query"
    payload = {"query": query, "variables": variables}
    max_retries = max(0, int(GH_MAX_RETRIES))

    for attempt in range(max_retries + 1):
        r = send_github_graphql(github_token, payload, timeout=DEFAULT_GITHUB_TIMEOUT)
        data = r.json()

        errors = data.get("errors") or []
        if not errors:
            return data["data"]

        first = errors[0] if isinstance(errors, list) and errors else {}
        message = first.get("message") or "GitHub GraphQL error"
        code = ((first.get("extensions") or {}).get("code") or "").upper() or "UNKNOWN"
        token_hash = hashlib.sha256((github_token or "").encode("utf-8")).hexdigest()[:6]

        exc = GitHubAPIError(message=message, errors=errors, operation=operation)

        if exc.is_transient and attempt < max_retries:
            wait_seconds = _compute_graphql_error_backoff_seconds(attempt)
            logger.warning(
                "GitHub GraphQL transient error: op=%s code=%s token=%s retry_in=%.2fs",
                operation,
                code,
                token_hash,
                wait_seconds,
            )
            time.sleep(wait_seconds)
            continue

        logger.error(
            "GitHub GraphQL error: op=%s code=%s token=%s attempt=%s/%s msg=%s",
            operation,
            code,
            token_hash,
            attempt + 1,
            max_retries + 1,
            message,
        )
        raise exc

    raise RuntimeError("unreachable")


def _map_github_failure(exc, username):
    """
    Translate transport/HTTP failures into the shared error taxonomy

    Args:
        exc (Exception): Failure raised by the throttled request
        username (str): Username being fetched

    Returns:
        SyncError instance to raise
    """
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        if response.status_code == 404:
            return NotFound(PROVIDER_LABEL, username)
        if response.status_code in (403, 429):
            return RateLimited(retry_after_from_response(response), message="GitHub rate limit exceeded")
        return UpstreamError(PROVIDER_LABEL, f"GitHub HTTP {response.status_code}", status_code=response.status_code)
    if isinstance(exc, PermissionError):
        return UpstreamError(PROVIDER_LABEL, str(exc), status_code=401)
    if isinstance(exc, GitHubAPIError):
        if exc.is_not_found:
            return NotFound(PROVIDER_LABEL, username)
        return UpstreamError(PROVIDER_LABEL, f"GitHub GraphQL error: {exc}")
    return UpstreamError(PROVIDER_LABEL, f"GitHub request failed: {type(exc).__name__}")


def _rest_get(github_token, path, username, params=None):
    try:
        response = send_github_request(github_token, "GET", f"{GITHUB_API_URL}{path}", params=params)
        return response.json()
    except (httpx.HTTPError, PermissionError, TimeoutError, ValueError) as exc:
        raise _map_github_failure(exc, username) from exc


def _flatten_calendar(calendar) -> List[Dict[str, Any]]:
    days = []
    for week in (calendar or {}).get("weeks") or []:
        for day in (week or {}).get("contributionDays") or []:
            count = int((day or {}).get("contributionCount") or 0)
            days.append({"date": day.get("date"), "count": count, "level": contribution_level(count)})
    days.sort(key=lambda d: d["date"] or "")
    return days


def fetch_profile(username, github_token=None) -> Dict[str, Any]:
    """
    Fetch the public GitHub profile

    Args:
        username (str): GitHub login
        github_token (str): Optional token; defaults to the next configured token

    Returns:
        dict with login, name, avatar_url, public_repos, followers

    Raises:
        NotFound, RateLimited, UpstreamError
    """
    token = github_token or next_github_token()
    data = _rest_get(token, f"/users/{username}", username) or {}
    return {
        "login": data.get("login") or username,
        "name": data.get("name"),
        "avatar_url": data.get("avatar_url"),
        "public_repos": data.get("public_repos"),
        "followers": data.get("followers"),
    }


def _fetch_totals_graphql(github_token, username) -> Dict[str, Any]:
    data = graphql_query(
        github_token,
        _CONTRIBUTIONS_QUERY,
        {
            "login": username,
            "prQuery": f"author:{username} is:pr",
            "issueQuery": f"author:{username} is:issue",
        },
    )
    user = data.get("user")
    if user is None:
        raise NotFound(PROVIDER_LABEL, username)

    collection = user.get("contributionsCollection") or {}
    return {
        "totals": {
            "commits": collection.get("totalCommitContributions"),
            "pull_requests": ((data.get("prs") or {}).get("issueCount")),
            "issues": ((data.get("issues") or {}).get("issueCount")),
        },
        "calendar": _flatten_calendar(collection.get("contributionCalendar")),
    }


def _search_total(github_token, path, query, username) -> int:
    data = _rest_get(github_token, path, username, params={"q": query, "per_page": 1}) or {}
    return int(data.get("total_count") or 0)


def _fetch_totals_rest(github_token, username) -> Dict[str, Any]:
    return {
        "totals": {
            "commits": _search_total(github_token, "/search/commits", f"author:{username}", username),
            "pull_requests": _search_total(github_token, "/search/issues", f"author:{username} type:pr", username),
            "issues": _search_total(github_token, "/search/issues", f"author:{username} type:issue", username),
        },
        "calendar": [],
    }


def fetch_languages(username, github_token=None) -> Dict[str, int]:
    """
    Aggregate repository languages into whole-number percentages

    A failing languages call for one repository is skipped

    Args:
        username (str): GitHub login
        github_token (str): Optional token

    Returns:
        dict language -> percent
    """
    token = github_token or next_github_token()
    repos = []
    page = 1
    while len(repos) < GH_REPO_LANGUAGE_MAX_REPOS:
        batch = _rest_get(
            token,
            f"/users/{username}/repos",
            username,
            params={"type": "owner", "sort": "updated", "per_page": 100, "page": page},
        ) or []
        repos.extend(batch)
        if len(batch) < 100:
            break
        page += 1

    totals: Dict[str, int] = {}
    for repo in repos[:GH_REPO_LANGUAGE_MAX_REPOS]:
        name = (repo or {}).get("name")
        if not name:
            continue
        try:
            lang_data = _rest_get(token, f"/repos/{username}/{name}/languages", username) or {}
        except (NotFound, UpstreamError) as exc:
            logger.warning("github_client: languages skipped repo=%s/%s error=%s", username, name, exc)
            continue
        for language, size in lang_data.items():
            if isinstance(size, (int, float)) and size > 0:
                totals[language] = totals.get(language, 0) + int(size)

    total_size = sum(totals.values())
    if total_size <= 0:
        return {}
    return {language: round(size * 100 / total_size) for language, size in totals.items()}


def fetch_contributions(username, github_token=None) -> GitHubRawPayload:
    """
    Fetch everything needed for a GitHub snapshot

    GraphQL totals are preferred. When GraphQL fails with a soft error the
    REST search counts are used instead and the payload is marked approximate.

    Args:
        username (str): GitHub login
        github_token (str): Optional token

    Returns:
        GitHubRawPayload

    Raises:
        NotFound, RateLimited, UpstreamError
    """
    token = github_token or next_github_token()
    profile = fetch_profile(username, github_token=token)

    approximate = False
    try:
        result = _fetch_totals_graphql(token, username)
    except NotFound:
        raise
    except (GitHubAPIError, httpx.HTTPError, PermissionError, TimeoutError, ValueError) as exc:
        mapped = _map_github_failure(exc, username)
        if isinstance(mapped, NotFound):
            raise mapped from exc
        logger.warning(
            "github_client: GraphQL totals failed for %s error=%s; using REST approximations",
            username,
            type(exc).__name__,
        )
        result = _fetch_totals_rest(token, username)
        approximate = True

    try:
        languages = fetch_languages(username, github_token=token)
    except (RateLimited, UpstreamError) as exc:
        logger.warning("github_client: languages unavailable for %s error=%s", username, exc)
        languages = {}

    return GitHubRawPayload(
        username=username,
        profile=profile,
        totals=result["totals"],
        languages=languages,
        language_unit=LanguageUnit.PERCENT,
        calendar=result["calendar"],
        approximate=approximate,
    )


def _event_items(event) -> List[Dict[str, Any]]:
    event_type = event.get("type") or "unknown"
    repo = (event.get("repo") or {}).get("name") or "Unknown"
    date = event.get("created_at")
    payload = event.get("payload") or {}

    if event_type == "PushEvent":
        return [
            {"type": "Commit", "repo": repo, "date": date, "message": (c or {}).get("message") or "Pushed commit"}
            for c in payload.get("commits") or []
        ]
    if event_type == "PullRequestEvent":
        title = (payload.get("pull_request") or {}).get("title")
        return [{"type": "Pull Request", "repo": repo, "date": date,
                 "message": title or f"{payload.get('action') or 'updated'} PR"}]
    if event_type == "IssuesEvent":
        title = (payload.get("issue") or {}).get("title")
        return [{"type": "Issue", "repo": repo, "date": date,
                 "message": title or f"{payload.get('action') or 'updated'} issue"}]
    if event_type == "CreateEvent":
        return [{"type": "Create", "repo": repo, "date": date,
                 "message": f"Created {payload.get('ref_type') or 'resource'}"}]
    if event_type == "ForkEvent":
        return [{"type": "Fork", "repo": repo, "date": date, "message": "Forked repository"}]
    if event_type == "WatchEvent":
        return [{"type": "Star", "repo": repo, "date": date, "message": "Starred repository"}]
    return []


def fetch_recent_activity(username, limit=7, github_token=None) -> List[Dict[str, Any]]:
    """
    Recent public activity mapped to feed-ready items

    Args:
        username (str): GitHub login
        limit (int): Maximum items
        github_token (str): Optional token

    Returns:
        list of {type, repo, date, message}, newest first
    """
    token = github_token or next_github_token()
    events = _rest_get(
        token,
        f"/users/{username}/events/public",
        username,
        params={"per_page": RECENT_EVENTS_PAGE_SIZE},
    ) or []

    items = []
    for event in events:
        for item in _event_items(event or {}):
            items.append(item)
            if len(items) >= limit:
                return items
    return items


class GitHubClient:
    provider = Provider.GITHUB

    def __init__(self, github_token: Optional[str] = None):
        self._github_token = github_token

    def fetch_profile(self, username):
        return fetch_profile(username, github_token=self._github_token)

    def fetch_contributions(self, username):
        return fetch_contributions(username, github_token=self._github_token)

    def fetch_recent_activity(self, username, limit=7):
        return fetch_recent_activity(username, limit=limit, github_token=self._github_token)
