import argparse
import asyncio
import json
from typing import Any

from .agent.config import ConfigError, load_config
from .agent.logging_utils import setup_logging
from .agent.oracle import ClaudeOracle, OracleError
from .agent.runner import run_agent
from .agent.transport import StdioTransport
from .feed.cycle import run_feed_cycle
from .moltbook_client import CREDENTIALS_PATH, MoltbookApiError, MoltbookAuthError, MoltbookClient, MoltbookCredentials


DEFAULT_AGENT_NAME = "Kleinbot"
DEFAULT_AGENT_DESCRIPTION = (
    "A WhatsApp group chat facilitator bot. Warm, concise, occasionally witty. "
    "Facilitates conversations, helps with scheduling, and connects communities."
)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _optional_client(enabled: bool):
    if not enabled:
        return None
    credentials = MoltbookCredentials.load_optional()
    if credentials is None:
        return None
    return MoltbookClient(credentials)


def cmd_run(_: argparse.Namespace) -> None:
    """Run the agent on the console transport (stdin lines become chat messages)."""
    cfg = load_config()
    logger = setup_logging(cfg)
    transport = StdioTransport(sender_id=cfg.admin_id or "operator@s.whatsapp.net")
    client = _optional_client(cfg.moltbook_enabled)
    asyncio.run(run_agent(cfg, transport, logger, client=client))


def cmd_feed_cycle(_: argparse.Namespace) -> None:
    """Run a single Moltbook participation cycle and print its summary."""
    cfg = load_config()
    logger = setup_logging(cfg)
    client = MoltbookClient()
    oracle = ClaudeOracle(command=cfg.oracle_command, timeout_seconds=cfg.oracle_timeout_seconds, log=logger)
    result = asyncio.run(run_feed_cycle(client, cfg, oracle, logger))
    print_json(result.__dict__)


def cmd_register(args: argparse.Namespace) -> None:
    """Register a new agent on Moltbook and store its API key.

    Example:

        kleinbot register --name Kleinbot --description "Group chat facilitator"
    """
    client = MoltbookClient(MoltbookCredentials(api_key="", source="unregistered"))
    resp = client.register_agent(args.name, args.description)
    agent = resp.get("agent") if isinstance(resp.get("agent"), dict) else resp
    api_key = str(agent.get("api_key") or "").strip()
    if api_key and args.save:
        MoltbookCredentials(api_key=api_key, agent_name=args.name, source="register").save(CREDENTIALS_PATH)
        print(f"Saved credentials to {CREDENTIALS_PATH}")
    print_json(resp)


def cmd_me(_: argparse.Namespace) -> None:
    """Show information about the current Moltbook agent."""
    client = MoltbookClient()
    print_json({"agent": client.get_me(), "claim_status": client.get_claim_status()})


def cmd_post(args: argparse.Namespace) -> None:
    """Create a text or link post on Moltbook.

    Example:

        kleinbot post --submolt general --title "Hello" --content "First post from the group bot"
    """
    if not args.content and not args.url:
        raise SystemExit("You must provide either --content or --url (or both).")

    client = MoltbookClient()
    resp = client.create_post(
        submolt=args.submolt,
        title=args.title,
        content=args.content,
        url=args.url,
    )
    print_json(resp)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Kleinbot: a group chat agent with Moltbook participation.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_run = subparsers.add_parser("run", help="Run the agent on the console transport")
    p_run.set_defaults(func=cmd_run)

    p_cycle = subparsers.add_parser("feed-cycle", help="Run one Moltbook participation cycle now")
    p_cycle.set_defaults(func=cmd_feed_cycle)

    p_register = subparsers.add_parser("register", help="Register a new Moltbook agent")
    p_register.add_argument("--name", default=DEFAULT_AGENT_NAME, help="Agent name")
    p_register.add_argument("--description", default=DEFAULT_AGENT_DESCRIPTION, help="Agent description")
    p_register.add_argument(
        "--no-save",
        dest="save",
        action="store_false",
        help=f"Do not write the API key to {CREDENTIALS_PATH}",
    )
    p_register.set_defaults(func=cmd_register)

    p_me = subparsers.add_parser("me", help="Show current agent profile and claim status")
    p_me.set_defaults(func=cmd_me)

    p_post = subparsers.add_parser("post", help="Create a post on Moltbook")
    p_post.add_argument("--submolt", required=True, help="Target submolt, e.g. 'general'")
    p_post.add_argument("--title", required=True, help="Title of the post")
    p_post.add_argument("--content", help="Text content of the post")
    p_post.add_argument("--url", help="Optional URL for link posts")
    p_post.set_defaults(func=cmd_post)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except MoltbookAuthError as e:
        raise SystemExit(str(e))
    except (MoltbookApiError, ConfigError, OracleError) as e:
        raise SystemExit(f"Error: {e}")
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main()
