import json
import tempfile
import unittest
from pathlib import Path

from kleinbot.feed.cycle import build_cycle_prompt, parse_cycle_decision, run_feed_cycle
from kleinbot.feed.state import load_feed_state
from kleinbot.moltbook_client import MoltbookApiError

from support import _Logger, make_config


NOW = 1_700_000_000.0


def _post(post_id, title="A title", content="body"):
    return {
        "id": post_id,
        "title": title,
        "content": content,
        "author": {"name": "zed"},
        "submolt": {"name": "agents"},
        "upvotes": 3,
        "comment_count": 1,
    }


class _Client:
    def __init__(self, posts, fail_upvotes=()):
        self.posts = posts
        self.fail_upvotes = set(fail_upvotes)
        self.upvoted = []
        self.comments = []
        self.created = []

    def get_feed(self, sort="hot", limit=25):
        return list(self.posts)

    def upvote_post(self, post_id):
        if post_id in self.fail_upvotes:
            raise MoltbookApiError(404, "NOT_FOUND", "post gone")
        self.upvoted.append(post_id)
        return {}

    def get_post_with_comments(self, post_id):
        return {"post": _post(post_id), "comments": [{"id": "c1", "content": "first!", "author": {"name": "amy"}}]}

    def create_comment(self, post_id, content, parent_id=None):
        self.comments.append((post_id, content, parent_id))
        return {"id": "c2"}

    def create_post(self, submolt, title, content=None, url=None):
        self.created.append((submolt, title, content))
        return {"id": "new1", "title": title}


class _FailingFeedClient(_Client):
    def get_feed(self, sort="hot", limit=25):
        raise MoltbookApiError(500, "SERVER", "boom")


class _Oracle:
    def __init__(self, cycle_reply, comment_reply='{"comment": "Nice point about agents"}'):
        self.cycle_reply = cycle_reply
        self.comment_reply = comment_reply
        self.kinds = []

    async def run(self, prompt, system_prompt, model, timeout=None, allowed_tools=None, kind="chat"):
        self.kinds.append(kind)
        if kind == "feed_cycle":
            return self.cycle_reply
        return self.comment_reply


async def _no_sleep(_seconds):
    return None


class FeedCycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.cfg = make_config(Path(self._tmp.name))
        self.cfg.moltbook_prompt_path.parent.mkdir(parents=True, exist_ok=True)
        self.cfg.moltbook_prompt_path.write_text("You are Kleinbot on Moltbook.", encoding="utf-8")

    def tearDown(self):
        self._tmp.cleanup()

    def _seed_state(self, **values):
        state = {
            "seen_post_ids": [],
            "last_cycle_ts": None,
            "last_post_ts": None,
            "comment_timestamps": [],
            "cross_pollination_queue": [],
        }
        state.update(values)
        self.cfg.moltbook_state_path.parent.mkdir(parents=True, exist_ok=True)
        self.cfg.moltbook_state_path.write_text(json.dumps(state), encoding="utf-8")

    async def _run(self, client, oracle, logger=None):
        return await run_feed_cycle(
            client, self.cfg, oracle, logger=logger or _Logger(), clock=lambda: NOW, sleep=_no_sleep
        )

    async def test_full_cycle_executes_actions_and_records_state(self):
        self._seed_state(seen_post_ids=["p0"])
        client = _Client([_post("p0"), _post("p1"), _post("p2", title="Voting agents")])
        plan = {
            "actions": [
                {"type": "upvote", "postId": "p1"},
                {"type": "comment", "postId": "p2"},
                {"type": "post", "title": "Hello", "content": "From a group chat", "submolt": "general"},
            ],
            "crossPollinate": [{"postId": "p2", "title": "Voting agents", "snippet": "polls", "submolt": "agents"}],
            "notes": "Agents are into polls today.",
        }
        oracle = _Oracle("Here you go:\n" + json.dumps(plan))

        result = await self._run(client, oracle)

        self.assertEqual(result.status, "ok")
        self.assertEqual((result.fetched, result.new_posts), (3, 2))
        self.assertEqual((result.upvotes, result.comments, result.posts), (1, 1, 1))
        self.assertEqual(result.cross_pollinated, 1)
        self.assertEqual(client.upvoted, ["p1"])
        self.assertEqual(client.comments, [("p2", "Nice point about agents", None)])
        self.assertEqual(client.created, [("general", "Hello", "From a group chat")])
        self.assertEqual(oracle.kinds, ["feed_cycle", "feed_comment"])

        state = load_feed_state(self.cfg.moltbook_state_path)
        self.assertEqual(state["seen_post_ids"], ["p0", "p1", "p2"])
        self.assertEqual(state["comment_timestamps"], [NOW])
        self.assertEqual(state["last_post_ts"], NOW)
        self.assertEqual(state["last_cycle_ts"], NOW)
        self.assertEqual(state["cross_pollination_queue"][0]["post_id"], "p2")

        journal = self.cfg.moltbook_journal_path.read_text(encoding="utf-8")
        self.assertIn("Agents are into polls today.", journal)
        rows = [json.loads(line) for line in self.cfg.moltbook_action_journal_path.read_text(encoding="utf-8").splitlines()]
        self.assertEqual([row["action_type"] for row in rows], ["upvote", "comment", "post"])

    async def test_comment_ceiling_skips_without_drafting(self):
        self._seed_state(comment_timestamps=[NOW - 10] * 50)
        client = _Client([_post("p1")])
        oracle = _Oracle(json.dumps({"actions": [{"type": "comment", "postId": "p1"}]}))

        result = await self._run(client, oracle)

        self.assertEqual(result.skipped, ["comment_hourly_limit"])
        self.assertEqual(client.comments, [])
        self.assertEqual(oracle.kinds, ["feed_cycle"])

    async def test_post_cooldown_skips_post(self):
        self._seed_state(last_post_ts=NOW - 60)
        client = _Client([_post("p1")])
        oracle = _Oracle(json.dumps({"actions": [{"type": "post", "title": "t", "content": "c", "submolt": "general"}]}))

        result = await self._run(client, oracle)

        self.assertEqual(result.skipped, ["post_cooldown"])
        self.assertEqual(client.created, [])

    async def test_declined_comment_is_not_sent(self):
        client = _Client([_post("p1")])
        oracle = _Oracle(json.dumps({"actions": [{"type": "comment", "postId": "p1"}]}), comment_reply='{"comment": null}')

        result = await self._run(client, oracle)

        self.assertEqual(result.comments, 0)
        self.assertEqual(client.comments, [])
        self.assertEqual(load_feed_state(self.cfg.moltbook_state_path)["comment_timestamps"], [])

    async def test_failed_action_does_not_stop_the_cycle(self):
        client = _Client([_post("p1"), _post("p2")], fail_upvotes={"p1"})
        oracle = _Oracle(json.dumps({"actions": [{"type": "upvote", "postId": "p1"}, {"type": "upvote", "postId": "p2"}]}))
        logger = _Logger()

        result = await self._run(client, oracle, logger)

        self.assertEqual(result.upvotes, 1)
        self.assertEqual(client.upvoted, ["p2"])
        self.assertTrue(any("post gone" in text for text in logger.messages("ERROR")))

    async def test_all_posts_seen_skips_oracle(self):
        self._seed_state(seen_post_ids=["p1"])
        oracle = _Oracle("{}")

        result = await self._run(_Client([_post("p1")]), oracle)

        self.assertEqual(result.status, "no_new_posts")
        self.assertEqual(oracle.kinds, [])

    async def test_missing_prompt_aborts(self):
        self.cfg.moltbook_prompt_path.unlink()
        oracle = _Oracle("{}")

        result = await self._run(_Client([_post("p1")]), oracle)

        self.assertEqual(result.status, "no_prompt")
        self.assertEqual(oracle.kinds, [])

    async def test_feed_error_aborts(self):
        result = await self._run(_FailingFeedClient([]), _Oracle("{}"))
        self.assertEqual(result.status, "feed_error")


class CyclePromptTests(unittest.TestCase):
    def test_feed_content_is_fenced_and_clipped(self):
        prompt = build_cycle_prompt([_post("p1", content="x" * 900)])
        self.assertIn("--- BEGIN UNTRUSTED MOLTBOOK FEED ---", prompt)
        self.assertIn("id=p1 r/agents by zed", prompt)
        self.assertIn("x" * 500 + "...", prompt)
        self.assertNotIn("x" * 501, prompt)

    def test_unusable_cycle_output_is_an_empty_plan(self):
        plan = parse_cycle_decision("I liked the feed today.", _Logger())
        self.assertEqual(plan, {"actions": [], "cross_pollinate": [], "notes": ""})


if __name__ == "__main__":
    unittest.main()
