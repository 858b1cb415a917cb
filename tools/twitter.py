"""X/Twitter read tool — twitter (X API v2, app-only bearer token)."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from . import ToolInputError

log = logging.getLogger(__name__)

_API_BASE = "https://api.x.com/2"
_TWEET_FIELDS = "text,author_id,created_at,public_metrics"
_EXPANSIONS = "author_id"
_USER_FIELDS = "username,name"
_ERROR_BODY_MAX = 1000

_STATUS_URL = re.compile(r"status/(\d+)")

# Set at startup
_bearer_token: str = ""
_timeout: float = 30.0


def configure(bearer_token: str = "", timeout: float = 30.0) -> None:
    global _bearer_token, _timeout
    _bearer_token = bearer_token
    _timeout = timeout


def _tweet_params() -> dict[str, str]:
    return {
        "tweet.fields": _TWEET_FIELDS,
        "expansions": _EXPANSIONS,
        "user.fields": _USER_FIELDS,
    }


def extract_tweet_id(tweet_id: str) -> str:
    """Accept a bare id or a full status URL."""
    m = _STATUS_URL.search(tweet_id)
    return m.group(1) if m else tweet_id.strip()


def _clamp(value: Any, low: int, high: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = 10
    return min(max(n, low), high)


async def _get(client: httpx.AsyncClient, endpoint: str, params: dict | None = None) -> dict:
    resp = await client.get(f"{_API_BASE}{endpoint}", params=params)
    if resp.status_code >= 400:
        return {"error": f"X API {resp.status_code}: {resp.text[:_ERROR_BODY_MAX]}"}
    return resp.json()


async def tool_twitter(action: str, tweet_id: str = "", username: str = "",
                       query: str = "", max_results: int = 10) -> dict:
    """Read a tweet, a user's recent tweets, or search recent tweets."""
    if not _bearer_token:
        return {"error": "X_BEARER_TOKEN not configured"}

    headers = {"Authorization": f"Bearer {_bearer_token}"}
    async with httpx.AsyncClient(headers=headers, timeout=_timeout) as client:
        if action == "read_tweet":
            if not tweet_id:
                raise ToolInputError("tweet_id is required for read_tweet")
            return await _get(client, f"/tweets/{extract_tweet_id(tweet_id)}", _tweet_params())

        if action == "user_timeline":
            if not username:
                raise ToolInputError("username is required for user_timeline")
            handle = username.lstrip("@")
            user = await _get(client, f"/users/by/username/{handle}")
            if "error" in user:
                return user
            user_id = (user.get("data") or {}).get("id")
            if not user_id:
                return {"error": f"User not found: {handle}"}
            params = {"max_results": str(_clamp(max_results, 5, 100)), **_tweet_params()}
            return await _get(client, f"/users/{user_id}/tweets", params)

        if action == "search":
            if not query:
                raise ToolInputError("query is required for search")
            params = {"query": query, "max_results": str(_clamp(max_results, 10, 100)),
                      **_tweet_params()}
            return await _get(client, "/tweets/search/recent", params)

    raise ToolInputError(f"Unknown action: {action}")


TOOLS = [
    {
        "name": "twitter",
        "description": (
            "Read tweets, view user timelines, or search X/Twitter. Use read_tweet to fetch a "
            "specific tweet by URL or ID. Use user_timeline to get recent tweets from a user. "
            "Use search to find recent tweets."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["read_tweet", "user_timeline", "search"],
                           "description": "Action to perform"},
                "tweet_id": {"type": "string", "description": "Tweet ID or full URL (for read_tweet)"},
                "username": {"type": "string", "description": "X/Twitter username without @ (for user_timeline)"},
                "query": {"type": "string", "description": "Search query (for search)"},
                "max_results": {"type": "integer", "description": "Max results 10-100 (default 10, for search)"},
            },
            "required": ["action"],
        },
        "function": tool_twitter,
    },
]
