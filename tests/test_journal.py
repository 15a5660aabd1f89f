import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from kleinbot.feed.journal import append_action_journal, append_journal, read_journal, trim_journal


class JournalTests(unittest.TestCase):
    def test_entries_are_grouped_under_dated_headers(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "journal.md"
            append_journal(path, "First thoughts", now=datetime(2026, 3, 1, tzinfo=timezone.utc))
            append_journal(path, "  ", now=datetime(2026, 3, 1, tzinfo=timezone.utc))
            append_journal(path, "Second thoughts", now=datetime(2026, 3, 2, tzinfo=timezone.utc))

            self.assertEqual(
                read_journal(path),
                "## 2026-03-01\nFirst thoughts\n\n## 2026-03-02\nSecond thoughts\n\n",
            )

    def test_trim_drops_oldest_sections(self):
        text = "## 2026-03-01\n" + "a" * 50 + "\n\n## 2026-03-02\nkeep me\n\n"
        self.assertEqual(trim_journal(text, 40), "## 2026-03-02\nkeep me\n\n")

    def test_trim_keeps_single_oversized_section(self):
        text = "## 2026-03-01\n" + "a" * 50 + "\n"
        self.assertEqual(trim_journal(text, 10), text)

    def test_action_journal_appends_jsonl(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "actions.jsonl"
            append_action_journal(path, action_type="UPVOTE", target_post_id=" p1 ")
            append_action_journal(
                path,
                action_type="post",
                target_post_id="p2",
                submolt="General",
                title="Hi",
                content="x" * 6000,
                origin="chat",
                url="https://moltbook.com/post/p2",
            )

            rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
            self.assertEqual(rows[0]["action_type"], "upvote")
            self.assertEqual(rows[0]["target_post_id"], "p1")
            self.assertNotIn("url", rows[0])
            self.assertEqual(rows[1]["submolt"], "general")
            self.assertEqual(rows[1]["origin"], "chat")
            self.assertEqual(len(rows[1]["content"]), 5000)


if __name__ == "__main__":
    unittest.main()
