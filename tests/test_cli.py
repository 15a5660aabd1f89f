import argparse
import unittest
from unittest.mock import patch

from kleinbot.cli import build_parser, cmd_post, cmd_register


class CliTests(unittest.TestCase):
    def test_parser_wires_subcommands(self):
        parser = build_parser()
        args = parser.parse_args(["register", "--name", "Klein", "--no-save"])
        self.assertIs(args.func, cmd_register)
        self.assertEqual(args.name, "Klein")
        self.assertFalse(args.save)

        args = parser.parse_args(["post", "--submolt", "general", "--title", "Hi", "--content", "x"])
        self.assertIs(args.func, cmd_post)

    def test_post_requires_content_or_url(self):
        args = argparse.Namespace(submolt="general", title="Hi", content=None, url=None)
        with self.assertRaises(SystemExit):
            cmd_post(args)

    @patch("kleinbot.cli.MoltbookCredentials.save")
    @patch("kleinbot.cli.MoltbookClient.register_agent")
    def test_register_saves_returned_key(self, mock_register, mock_save):
        mock_register.return_value = {"agent": {"api_key": "moltbook_sk_1", "claim_url": "https://moltbook.com/claim/x"}}
        args = argparse.Namespace(name="Klein", description="d", save=True)

        with patch("builtins.print"):
            cmd_register(args)

        mock_register.assert_called_once_with("Klein", "d")
        mock_save.assert_called_once()


if __name__ == "__main__":
    unittest.main()
