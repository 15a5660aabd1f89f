import unittest

from kleinbot.agent.models import PollData
from kleinbot.agent.transport import (
    StdioTransport,
    TransportError,
    extract_messages,
    message_from_payload,
    outgoing_dm_ids,
    poll_payload,
)


def _raw(msg_id, ts, text="hi", chat="crew@g.us", participant="alice@s.whatsapp.net", from_me=False, **extra):
    record = {
        "key": {"id": msg_id, "remoteJid": chat, "participant": participant, "fromMe": from_me},
        "messageTimestamp": ts,
        "pushName": "Alice",
        "message": {"conversation": text},
    }
    record.update(extra)
    return record


class MessagePayloadTests(unittest.TestCase):
    def test_group_message_uses_participant_as_sender(self):
        msg = message_from_payload(_raw("m1", 1700000000))
        self.assertEqual(msg.id, "m1")
        self.assertEqual(msg.chat_id, "crew@g.us")
        self.assertEqual(msg.sender_id, "alice@s.whatsapp.net")
        self.assertEqual(msg.sender, "Alice")
        self.assertEqual(msg.timestamp, 1700000000)

    def test_dm_without_participant_uses_chat_id(self):
        msg = message_from_payload(_raw("m1", 1, chat="bob@s.whatsapp.net", participant=None, pushName=None))
        self.assertEqual(msg.sender_id, "bob@s.whatsapp.net")
        self.assertEqual(msg.sender, "bob")

    def test_quote_and_mentions_come_from_context_info(self):
        raw = _raw("m1", 1)
        raw["message"] = {
            "extendedTextMessage": {
                "text": "agreed",
                "contextInfo": {
                    "quotedMessage": {"conversation": "pizza?"},
                    "mentionedJid": ["bot@s.whatsapp.net"],
                },
            }
        }
        msg = message_from_payload(raw)
        self.assertEqual(msg.text, "agreed")
        self.assertEqual(msg.quoted_text, "pizza?")
        self.assertEqual(msg.mentioned_ids, ("bot@s.whatsapp.net",))

    def test_own_and_textless_messages_are_skipped(self):
        self.assertIsNone(message_from_payload(_raw("m1", 1, from_me=True)))
        no_text = _raw("m2", 1)
        no_text["message"] = {"imageMessage": {}}
        self.assertIsNone(message_from_payload(no_text))

    def test_extract_messages_sorts_by_timestamp(self):
        msgs = extract_messages([_raw("late", 20), "junk", _raw("early", 10), _raw("mine", 5, from_me=True)])
        self.assertEqual([m.id for m in msgs], ["early", "late"])

    def test_outgoing_dm_ids_only_reports_own_direct_messages(self):
        raws = [
            _raw("a", 1, chat="bob@s.whatsapp.net", from_me=True),
            _raw("b", 1, chat="crew@g.us", from_me=True),
            _raw("c", 1, chat="carol@s.whatsapp.net"),
        ]
        self.assertEqual(outgoing_dm_ids(raws), ["bob@s.whatsapp.net"])

    def test_poll_payload(self):
        payload = poll_payload(PollData(question="When?", options=["Sat", "Sun"], multi_select=True))
        self.assertEqual(payload, {"name": "When?", "values": ["Sat", "Sun"], "selectableCount": 0})


class StdioTransportTests(unittest.IsolatedAsyncioTestCase):
    def test_line_to_message(self):
        transport = StdioTransport(clock=lambda: 1700000000.5)
        first = transport.line_to_message("  hello bot \n")
        second = transport.line_to_message("again")

        self.assertEqual(first.text, "hello bot")
        self.assertEqual(first.chat_id, "console@g.us")
        self.assertEqual(first.timestamp, 1700000000)
        self.assertNotEqual(first.id, second.id)
        self.assertIsNone(transport.line_to_message("   "))

    async def test_send_requires_connection(self):
        transport = StdioTransport()
        with self.assertRaises(TransportError):
            await transport.send_text("console@g.us", "hi")

    async def test_metadata_only_for_console_chat(self):
        transport = StdioTransport(subject="Desk")
        self.assertEqual(await transport.fetch_chat_metadata("console@g.us"), {"subject": "Desk", "description": ""})
        self.assertIsNone(await transport.fetch_chat_metadata("other@g.us"))


if __name__ == "__main__":
    unittest.main()
