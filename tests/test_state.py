import json
import tempfile
import unittest
from pathlib import Path

from kleinbot.agent.models import ChatMessage
from kleinbot.agent.state import (
    MAX_STORED_IDS,
    BotState,
    allow_dm,
    chat_history,
    is_processed,
    load_state,
    mark_processed,
    save_state,
    trim_history_per_chat,
)


def _msg(msg_id, chat_id, ts):
    return ChatMessage(id=msg_id, chat_id=chat_id, timestamp=ts, sender="A", sender_id="a@s.whatsapp.net", text="x")


class StateTests(unittest.TestCase):
    def test_processed_survives_reload(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.json"
            state = BotState()
            mark_processed(state, _msg("m1", "g@g.us", 10))
            save_state(path, state, history_window=50)

            reloaded = load_state(path, history_window=50)
            self.assertTrue(is_processed(reloaded, "m1"))
            self.assertEqual(reloaded.last_processed_timestamp, 10)

    def test_history_entry_counts_as_processed_after_id_eviction(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.json"
            state = BotState()
            mark_processed(state, _msg("old", "dm@s.whatsapp.net", 1))
            for idx in range(MAX_STORED_IDS + 10):
                mark_processed(state, _msg(f"g{idx}", "g@g.us", 100 + idx))
            save_state(path, state, history_window=50)

            reloaded = load_state(path, history_window=50)
            self.assertEqual(len(reloaded.processed_message_ids), MAX_STORED_IDS)
            self.assertNotIn("old", reloaded.processed_message_ids)
            self.assertTrue(is_processed(reloaded, "old"))

    def test_trim_keeps_window_per_chat(self):
        messages = [_msg(f"g{i}", "g@g.us", 100 + i) for i in range(10)]
        messages.append(_msg("d0", "dm@s.whatsapp.net", 5))
        messages.append(_msg("orphan", "", 6))

        trimmed = trim_history_per_chat(messages, 3)

        self.assertEqual([m.id for m in trimmed], ["d0", "g7", "g8", "g9"])
        self.assertEqual(trim_history_per_chat(messages, 0), [])

    def test_last_processed_timestamp_never_moves_backwards(self):
        state = BotState()
        mark_processed(state, _msg("m2", "g@g.us", 200))
        mark_processed(state, _msg("m1", "g@g.us", 100))
        self.assertEqual(state.last_processed_timestamp, 200)

    def test_chat_history_returns_newest_entries_in_order(self):
        state = BotState()
        for i in (3, 1, 2):
            mark_processed(state, _msg(f"m{i}", "g@g.us", i))
        mark_processed(state, _msg("other", "h@g.us", 4))
        self.assertEqual([m.id for m in chat_history(state, "g@g.us", 2)], ["m2", "m3"])

    def test_corrupt_file_yields_default_state(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.json"
            path.write_text("{not json", encoding="utf-8")
            state = load_state(path, history_window=50)
            self.assertEqual(state.processed_message_ids, [])
            self.assertEqual(state.last_processed_timestamp, 0)

    def test_load_accepts_camel_case_layout(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.json"
            path.write_text(
                json.dumps(
                    {
                        "lastProcessedTimestamp": 42,
                        "processedMessageIds": ["a"],
                        "messageHistory": [
                            {"id": "b", "chatJid": "g@g.us", "timestamp": 41, "sender": "S", "senderJid": "s@x", "text": "t"}
                        ],
                        "allowedDmJids": ["1@s.whatsapp.net"],
                    }
                ),
                encoding="utf-8",
            )
            state = load_state(path, history_window=50)
            self.assertTrue(is_processed(state, "a"))
            self.assertTrue(is_processed(state, "b"))
            self.assertEqual(state.message_history[0].chat_id, "g@g.us")
            self.assertEqual(state.allowed_dm_ids, ["1@s.whatsapp.net"])

    def test_allow_dm_reports_new_entries_only(self):
        state = BotState()
        self.assertTrue(allow_dm(state, "1@s.whatsapp.net"))
        self.assertFalse(allow_dm(state, "1@s.whatsapp.net"))
        self.assertEqual(state.allowed_dm_ids, ["1@s.whatsapp.net"])


if __name__ == "__main__":
    unittest.main()
