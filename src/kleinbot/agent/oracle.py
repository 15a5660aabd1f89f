from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .chats import ChatConfig, clamp_verbosity
from .config import ConfigError
from .models import ChatMessage, Decision, normalize_str


VERBOSITY_INSTRUCTIONS = {
    1: "Almost never respond. Only respond when directly @mentioned by name. Ignore everything else.",
    2: "Rarely respond. Only respond to direct questions aimed at you or @mentions. Stay quiet during general conversation.",
    3: (
        "Respond moderately. Jump in when someone asks a question you can help with, when you're mentioned, "
        "or when the conversation would benefit from facilitation. Stay quiet during casual banter."
    ),
    4: (
        "Be fairly chatty. Respond to most questions, offer opinions, react to interesting topics, and join the banter. "
        "Still skip messages that don't need a response."
    ),
    5: (
        "Be very active. Participate freely in conversation like a regular group member. "
        "Respond to most messages, share thoughts, and be social."
    ),
}

DECISION_SCHEMA_HINT = (
    '{"shouldRespond": true/false, "response": "your message or null", '
    '"notes": "anything to remember, or null", '
    '"poll": {"question": "...", "options": ["A", "B", "C"], "multiSelect": false} or null, '
    '"moltbookAction": {"type": "search"|"hot"|"post", "query": "...", "title": "...", "content": "...", "submolt": "..."} or null}'
)
MAX_QUOTE_CHARS = 100
MAX_LOGGED_RAW_CHARS = 2000

logger = logging.getLogger("kleinbot")


class OracleError(RuntimeError):
    """The reasoning process timed out, could not start, or exited non-zero."""


def _clip_text(value: Any, max_chars: int) -> str:
    text = normalize_str(value).strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def format_transcript(messages: Sequence[ChatMessage]) -> str:
    lines: List[str] = []
    for msg in messages:
        clock = datetime.fromtimestamp(msg.timestamp).strftime("%H:%M")
        quote = ""
        if msg.quoted_text:
            quote = f' (replying to: "{msg.quoted_text[:MAX_QUOTE_CHARS]}")'
        lines.append(f"[{clock}] {msg.sender}: {msg.text}{quote}")
    return "\n".join(lines)


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()


def build_system_prompt(chat_config: ChatConfig, notes_text: str = "", base_dir: Optional[Path] = None) -> str:
    """Assemble persona, chat description, participation level, context and notes."""
    root = base_dir or Path.cwd()
    prompt_path = root / chat_config.prompt
    try:
        parts = [_read_text(prompt_path)]
    except OSError as e:
        raise ConfigError(f"prompt file unreadable: {prompt_path}: {e}") from e

    if chat_config.description:
        parts.append(f"\n## About this chat\n{chat_config.description}")

    level = clamp_verbosity(chat_config.verbosity)
    parts.append(f"\n## Participation level: {level}/5\n{VERBOSITY_INSTRUCTIONS[level]}")

    if chat_config.context:
        try:
            context_text = _read_text(root / chat_config.context)
        except OSError:
            context_text = ""
        if context_text:
            parts.append(f"\n## Context\n{context_text}")

    if notes_text:
        parts.append(
            "\n## Your notes (from previous conversations)\n"
            "These are notes you wrote to yourself. Use them for context.\n"
            f"{notes_text}"
        )
    return "\n".join(parts)


def build_chat_prompt(history: Sequence[ChatMessage], batch: Sequence[ChatMessage], moltbook_enabled: bool = False) -> str:
    lines = [
        "## Recent conversation history (for context)",
        format_transcript(history),
        "",
        "## New messages since last check",
        format_transcript(batch),
        "",
        "Based on the system prompt and conversation above, decide whether to respond.",
        (
            "If you have anything worth noting for future reference (facts about people, preferences, "
            "decisions made, instructions given to you), include it in the notes field."
        ),
        (
            "If a poll would help the group make a decision (e.g. choosing a date, picking a restaurant, "
            "voting on options), include a poll field."
        ),
    ]
    if moltbook_enabled:
        lines.append(
            "If someone asks about Moltbook (search it, what's hot, or to post something), "
            "include a moltbookAction field."
        )
    lines.extend(
        [
            "Reply ONLY with valid JSON (no markdown fences):",
            DECISION_SCHEMA_HINT,
        ]
    )
    return "\n".join(lines)


def _extract_first_fenced_block(text: str) -> str:
    blob = normalize_str(text)
    if "```" not in blob:
        return ""
    match = re.search(r"```(?:json)?\s*(.*?)```", blob, flags=re.IGNORECASE | re.DOTALL)
    if not match:
        return ""
    return normalize_str(match.group(1)).strip()


def _extract_first_balanced_json_object(text: str) -> str:
    blob = normalize_str(text)
    start = blob.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escape = False
        for idx in range(start, len(blob)):
            ch = blob[idx]
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return blob[start : idx + 1]
        # Unbalanced from this brace; try the next one.
        start = blob.find("{", start + 1)
    return ""


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    if not candidate:
        return None
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """Best-effort decode of the first JSON object in free-form model output."""
    raw = normalize_str(text).lstrip("\ufeff").strip()
    if not raw:
        return None

    parsed = _loads_object(raw)
    if parsed is not None:
        return parsed

    parsed = _loads_object(_extract_first_fenced_block(raw))
    if parsed is not None:
        return parsed

    parsed = _loads_object(_extract_first_balanced_json_object(raw))
    if parsed is not None:
        return parsed

    first, last = raw.find("{"), raw.rfind("}")
    if 0 <= first < last:
        return _loads_object(raw[first : last + 1])
    return None


def parse_decision(raw: str, log: Optional[logging.Logger] = None) -> Decision:
    log = log or logger
    payload = extract_json_object(raw)
    if payload is None:
        log.warning("Oracle output had no usable JSON; treating as no action raw=%s", _clip_text(raw, MAX_LOGGED_RAW_CHARS))
        return Decision.do_nothing()
    try:
        return Decision.from_payload(payload)
    except Exception as e:
        log.warning(
            "Oracle JSON could not be coerced into a decision error=%s raw=%s",
            e,
            _clip_text(raw, MAX_LOGGED_RAW_CHARS),
        )
        return Decision.do_nothing()


class ClaudeOracle:
    """Runs the external reasoning CLI once per request with a hard timeout."""

    def __init__(
        self,
        command: str = "claude",
        timeout_seconds: int = 90,
        allowed_tools: Optional[List[str]] = None,
        base_dir: Optional[Path] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.command = shlex.split(command) or ["claude"]
        self.timeout_seconds = timeout_seconds
        self.allowed_tools = list(allowed_tools or [])
        self.base_dir = base_dir
        self.logger = log or logger

    def build_argv(self, model: str, system_prompt: str, allowed_tools: Optional[List[str]] = None) -> List[str]:
        argv = list(self.command) + [
            "--print",
            "--model",
            model,
            "--no-session-persistence",
            "--system-prompt",
            system_prompt,
        ]
        if allowed_tools:
            argv.extend(["--allowedTools", ",".join(allowed_tools)])
        return argv

    async def run(
        self,
        prompt: str,
        system_prompt: str,
        model: str,
        timeout: Optional[float] = None,
        allowed_tools: Optional[List[str]] = None,
        kind: str = "chat",
    ) -> str:
        limit = timeout if timeout is not None else self.timeout_seconds
        argv = self.build_argv(model, system_prompt, allowed_tools)
        self.logger.info(
            "Oracle request kind=%s model=%s prompt_chars=%s system_chars=%s timeout=%s",
            kind,
            model,
            len(prompt),
            len(system_prompt),
            limit,
        )
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise OracleError(f"could not start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), timeout=limit)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise OracleError(f"{argv[0]} timed out after {limit}s") from e

        if proc.returncode != 0:
            err_text = stderr.decode("utf-8", errors="replace")[:500]
            self.logger.error("Oracle exited code=%s stderr=%s", proc.returncode, err_text)
            raise OracleError(f"{argv[0]} exited with code {proc.returncode}")

        output = stdout.decode("utf-8", errors="replace").strip()
        self.logger.info(
            "Oracle response kind=%s chars=%s elapsed_seconds=%.1f",
            kind,
            len(output),
            time.monotonic() - started,
        )
        return output

    async def decide(
        self,
        history: Sequence[ChatMessage],
        batch: Sequence[ChatMessage],
        chat_config: ChatConfig,
        notes_text: str = "",
    ) -> Decision:
        system_prompt = build_system_prompt(chat_config, notes_text=notes_text, base_dir=self.base_dir)
        prompt = build_chat_prompt(history, batch, moltbook_enabled=chat_config.moltbook)
        raw = await self.run(
            prompt,
            system_prompt,
            chat_config.model,
            allowed_tools=self.allowed_tools,
            kind="chat",
        )
        return parse_decision(raw, self.logger)
