import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions


MOLTBOOK_BASE_URL = "https://www.moltbook.com/api/v1"
MOLTBOOK_BASE_ENV = "MOLTBOOK_API_BASE"
CREDENTIALS_PATH = Path.home() / ".config" / "moltbook" / "credentials.json"
_MOLTBOOK_ALLOWED_PREFIX = "https://www.moltbook.com/api/v1"
RATE_LIMIT_WARN_REMAINING = 5
VALID_SORTS = {"hot", "new", "rising", "top"}

logger = logging.getLogger("kleinbot")


def normalize_sort(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in VALID_SORTS:
        return text
    return "hot"


class MoltbookApiError(RuntimeError):
    """HTTP-level failure reported by the Moltbook API."""

    def __init__(self, status: int, code: str, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.hint = hint

    def __str__(self) -> str:
        base = f"Moltbook error {self.status}: {super().__str__()}"
        if self.hint:
            return f"{base} ({self.hint})"
        return base


class MoltbookAuthError(MoltbookApiError):
    pass


@dataclass
class MoltbookCredentials:
    api_key: str
    agent_name: Optional[str] = None
    source: str = "unknown"

    @classmethod
    def load(cls) -> "MoltbookCredentials":
        """Load credentials from env or ~/.config/moltbook/credentials.json.

        Priority:
        1. MOLTBOOK_API_KEY env var
        2. credentials.json file
        """
        api_key = os.getenv("MOLTBOOK_API_KEY")
        agent_name: Optional[str] = os.getenv("MOLTBOOK_AGENT_NAME") or None
        source = "env:MOLTBOOK_API_KEY"

        if not api_key and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            api_key = data.get("api_key")
            agent_name = data.get("agent_name")
            source = f"file:{CREDENTIALS_PATH}"

        if api_key is not None:
            api_key = str(api_key).strip()

        if not api_key:
            raise MoltbookAuthError(
                401,
                "MISSING_API_KEY",
                "Missing Moltbook API key. Set MOLTBOOK_API_KEY or create "
                f"{CREDENTIALS_PATH} with an 'api_key' field.",
            )

        return cls(api_key=api_key, agent_name=agent_name, source=source)

    @classmethod
    def load_optional(cls) -> Optional["MoltbookCredentials"]:
        try:
            return cls.load()
        except (MoltbookAuthError, OSError, ValueError):
            return None

    def save(self, path: Path = CREDENTIALS_PATH) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump({"api_key": self.api_key, "agent_name": self.agent_name}, f, indent=2)


def _error_from_response(resp: requests.Response) -> MoltbookApiError:
    try:
        data = resp.json()
    except Exception:
        data = {}
    if not isinstance(data, dict):
        data = {}
    code = str(data.get("code") or data.get("error") or "UNKNOWN")
    message = data.get("error") or data.get("message") or resp.text or f"HTTP {resp.status_code}"
    hint = data.get("hint")
    if resp.status_code in {401, 403}:
        return MoltbookAuthError(resp.status_code, code, str(message), hint)
    return MoltbookApiError(resp.status_code, code, str(message), hint)


def extract_posts(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    for key in ("posts", "data", "items", "results"):
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def flatten_comments(comments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    flat: List[Dict[str, Any]] = []
    for comment in comments:
        if not isinstance(comment, dict):
            continue
        flat.append(comment)
        replies = comment.get("replies")
        if isinstance(replies, list):
            flat.extend(flatten_comments(replies))
    return flat


class MoltbookClient:
    """Minimal Moltbook API client used by the feed cycle and the chat bridge.

    SECURITY: This client only ever sends your API key to https://www.moltbook.com.
    Never modify it to talk to other domains with your key.
    """

    def __init__(self, credentials: Optional[MoltbookCredentials] = None, timeout: int = 30):
        self.credentials = credentials or MoltbookCredentials.load()
        env_base = os.getenv(MOLTBOOK_BASE_ENV)
        self.base_url = self._normalize_base_url(env_base or MOLTBOOK_BASE_URL)
        self.timeout = timeout

    def _normalize_base_url(self, raw: str) -> str:
        candidate = str(raw).strip().rstrip("/")
        if candidate.startswith(_MOLTBOOK_ALLOWED_PREFIX):
            return candidate
        # Enforce the official API host so auth headers are never sent elsewhere.
        return MOLTBOOK_BASE_URL

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        auth: bool = True,
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout": timeout or self.timeout}
        if auth:
            kwargs["headers"] = self._headers
        else:
            kwargs["headers"] = {"Content-Type": "application/json"}
        if params:
            kwargs["params"] = params
        if payload is not None:
            kwargs["data"] = json.dumps(payload)
        try:
            resp = requests.request(method, self._url(path), **kwargs)
        except requests_exceptions.Timeout as e:
            raise MoltbookApiError(
                0,
                "TIMEOUT",
                f"Timed out while contacting Moltbook for /{path.lstrip('/')}.",
                "Check https://www.moltbook.com is reachable from your network and try again.",
            ) from e
        except requests_exceptions.RequestException as e:
            raise MoltbookApiError(0, "NETWORK", f"Request to Moltbook failed: {e}") from e

        headers = getattr(resp, "headers", None) or {}
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                if int(remaining) <= RATE_LIMIT_WARN_REMAINING:
                    logger.warning("Moltbook rate limit warning remaining=%s path=%s", remaining, path)
            except ValueError:
                pass

        if resp.status_code >= 400:
            raise _error_from_response(resp)

        # Some endpoints (upvote, subscribe) answer with an empty body.
        if not (resp.text or "").strip():
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {"ok": True}
        if isinstance(data, dict):
            return data
        return {"data": data}

    def register_agent(self, name: str, description: str) -> Dict[str, Any]:
        if not name.strip():
            raise ValueError("agent name must be provided.")
        return self._request(
            "POST",
            "agents/register",
            payload={"name": name, "description": description},
            auth=False,
        )

    def get_me(self) -> Dict[str, Any]:
        data = self._request("GET", "agents/me")
        agent = data.get("agent")
        return agent if isinstance(agent, dict) else data

    def get_claim_status(self) -> str:
        data = self._request("GET", "agents/status")
        status = data.get("status")
        if isinstance(status, str):
            return status
        return "unknown"

    def get_agent_profile(self, agent_name: str) -> Dict[str, Any]:
        if not agent_name.strip():
            raise ValueError("agent_name must be provided.")
        data = self._request("GET", "agents/profile", params={"name": agent_name})
        agent = data.get("agent")
        return agent if isinstance(agent, dict) else data

    def follow_agent(self, agent_name: str) -> Dict[str, Any]:
        name = agent_name.strip()
        if not name:
            raise ValueError("agent_name must be provided")
        return self._request("POST", f"agents/{name}/follow")

    def get_feed(self, sort: str = "hot", limit: int = 25) -> List[Dict[str, Any]]:
        data = self._request("GET", "posts", params={"sort": normalize_sort(sort), "limit": limit})
        return extract_posts(data)

    def get_personalized_feed(self, sort: str = "hot", limit: int = 25) -> List[Dict[str, Any]]:
        data = self._request("GET", "feed", params={"sort": normalize_sort(sort), "limit": limit})
        return extract_posts(data)

    def get_post_with_comments(self, post_id: str) -> Dict[str, Any]:
        if not post_id.strip():
            raise ValueError("post_id must be provided")
        data = self._request("GET", f"posts/{post_id}")
        post = data.get("post") if isinstance(data.get("post"), dict) else {}
        comments = data.get("comments") if isinstance(data.get("comments"), list) else []
        return {"post": post, "comments": comments}

    def create_post(self, submolt: str, title: str, content: Optional[str] = None, url: Optional[str] = None) -> Dict[str, Any]:
        if not content and not url:
            raise ValueError("Either 'content' or 'url' must be provided for a post.")
        payload: Dict[str, Any] = {"submolt": submolt, "title": title}
        if content:
            payload["content"] = content
        if url:
            payload["url"] = url
        data = self._request("POST", "posts", payload=payload, timeout=60)
        post = data.get("post")
        return post if isinstance(post, dict) else data

    def create_comment(self, post_id: str, content: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        if not content:
            raise ValueError("Comment content must be provided.")
        payload = {"content": content}
        if parent_id:
            payload["parent_id"] = parent_id
        data = self._request("POST", f"posts/{post_id}/comments", payload=payload, timeout=60)
        comment = data.get("comment")
        return comment if isinstance(comment, dict) else data

    def upvote_post(self, post_id: str) -> Dict[str, Any]:
        return self._request("POST", f"posts/{post_id}/upvote")

    def upvote_comment(self, comment_id: str) -> Dict[str, Any]:
        return self._request("POST", f"comments/{comment_id}/upvote")

    def list_submolts(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "submolts")
        submolts = data.get("submolts")
        if isinstance(submolts, list):
            return [item for item in submolts if isinstance(item, dict)]
        return []

    def subscribe_submolt(self, name: str) -> Dict[str, Any]:
        if not name.strip():
            raise ValueError("submolt name must be provided")
        return self._request("POST", f"submolts/{name}/subscribe")

    def search(self, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        if not query.strip():
            raise ValueError("Search query must be provided.")
        data = self._request("GET", "search", params={"q": query, "limit": limit})
        for key in ("results", "data"):
            value = data.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
        return []
