import os
import unittest
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from kleinbot.moltbook_client import MoltbookApiError, MoltbookAuthError, MoltbookClient, MoltbookCredentials


class _Resp:
    def __init__(self, status_code=200, payload=None, text=None, headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text if text is not None else ("{}" if payload is not None else "")
        self.headers = headers or {}

    def json(self):
        return self._payload


def _client():
    with patch.dict(os.environ, {}, clear=True):
        return MoltbookClient(credentials=MoltbookCredentials(api_key="k"))


class MoltbookClientHttpTests(unittest.TestCase):
    @patch("kleinbot.moltbook_client.requests.request")
    def test_get_feed_hits_posts_endpoint_with_sort(self, mock_request):
        mock_request.return_value = _Resp(payload={"posts": [{"id": "p1", "title": "t"}, "junk"]})
        posts = _client().get_feed(sort="NEW", limit=7)

        self.assertEqual(posts, [{"id": "p1", "title": "t"}])
        method, url = mock_request.call_args.args
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://www.moltbook.com/api/v1/posts")
        self.assertEqual(mock_request.call_args.kwargs["params"], {"sort": "new", "limit": 7})
        self.assertEqual(mock_request.call_args.kwargs["headers"]["Authorization"], "Bearer k")

    @patch("kleinbot.moltbook_client.requests.request")
    def test_unknown_sort_falls_back_to_hot(self, mock_request):
        mock_request.return_value = _Resp(payload={"data": []})
        _client().get_feed(sort="spicy")
        self.assertEqual(mock_request.call_args.kwargs["params"]["sort"], "hot")

    @patch("kleinbot.moltbook_client.requests.request")
    def test_unauthorized_raises_auth_error(self, mock_request):
        mock_request.return_value = _Resp(status_code=401, payload={"error": "bad key", "hint": "re-register"})
        with self.assertRaises(MoltbookAuthError) as ctx:
            _client().get_me()
        self.assertEqual(ctx.exception.status, 401)
        self.assertIn("re-register", str(ctx.exception))

    @patch("kleinbot.moltbook_client.requests.request")
    def test_server_error_raises_api_error(self, mock_request):
        mock_request.return_value = _Resp(status_code=500, text="boom")
        with self.assertRaises(MoltbookApiError) as ctx:
            _client().search("agents")
        self.assertNotIsInstance(ctx.exception, MoltbookAuthError)

    @patch("kleinbot.moltbook_client.requests.request")
    def test_timeout_becomes_api_error(self, mock_request):
        mock_request.side_effect = requests_exceptions.Timeout("slow")
        with self.assertRaises(MoltbookApiError) as ctx:
            _client().upvote_post("p1")
        self.assertEqual(ctx.exception.code, "TIMEOUT")

    @patch("kleinbot.moltbook_client.requests.request")
    def test_empty_body_returns_empty_dict(self, mock_request):
        mock_request.return_value = _Resp(text="")
        self.assertEqual(_client().upvote_post("p1"), {})

    @patch("kleinbot.moltbook_client.requests.request")
    def test_low_rate_limit_is_logged(self, mock_request):
        mock_request.return_value = _Resp(payload={"results": []}, headers={"X-RateLimit-Remaining": "2"})
        with self.assertLogs("kleinbot", level="WARNING") as logs:
            _client().search("agents")
        self.assertIn("remaining=2", logs.output[0])

    @patch("kleinbot.moltbook_client.requests.request")
    def test_register_is_unauthenticated(self, mock_request):
        mock_request.return_value = _Resp(payload={"agent": {"api_key": "new"}})
        _client().register_agent("kleinbot", "group chat agent")
        self.assertNotIn("Authorization", mock_request.call_args.kwargs["headers"])

    def test_base_url_override_must_stay_on_moltbook(self):
        with patch.dict(os.environ, {"MOLTBOOK_API_BASE": "https://evil.example/api/v1"}, clear=True):
            client = MoltbookClient(credentials=MoltbookCredentials(api_key="k"))
        self.assertEqual(client.base_url, "https://www.moltbook.com/api/v1")

    def test_create_post_requires_body(self):
        with self.assertRaises(ValueError):
            _client().create_post("general", "title")


if __name__ == "__main__":
    unittest.main()
