from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Optional

from ..feed.bridge import MoltbookBridge
from ..feed.cycle import run_feed_cycle
from ..moltbook_client import MoltbookClient
from .config import Config
from .oracle import ClaudeOracle
from .orchestrator import Orchestrator
from .transport import ChatTransport, TransportLoggedOutError
from .ui import print_runtime_banner


async def _wait_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``. Returns True if shutdown was requested."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def _process_loop(orch: Orchestrator, cfg: Config, stop_event: asyncio.Event, logger: logging.Logger) -> None:
    # The next interval only starts once the previous pass returned, so passes never overlap.
    while not await _wait_or_stop(stop_event, cfg.process_interval_seconds):
        try:
            await orch.process_pending()
        except TransportLoggedOutError:
            raise
        except Exception as e:
            logger.exception("Processing pass failed error=%s", e)


async def _feed_loop(
    client: MoltbookClient,
    bridge: MoltbookBridge,
    cfg: Config,
    oracle: Any,
    stop_event: asyncio.Event,
    logger: logging.Logger,
) -> None:
    delay = cfg.moltbook_first_cycle_delay_seconds
    while not await _wait_or_stop(stop_event, delay):
        try:
            await run_feed_cycle(client, cfg, oracle, logger, state=bridge.feed_state)
        except Exception as e:
            logger.exception("Moltbook cycle error error=%s", e)
        delay = cfg.moltbook_heartbeat_seconds


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_agent(
    cfg: Config,
    transport: ChatTransport,
    logger: logging.Logger,
    client: Optional[MoltbookClient] = None,
    oracle: Optional[Any] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    if not cfg.bot_name.strip():
        logger.critical("KLEINBOT_BOT_NAME is empty; refusing to start")
        raise SystemExit(1)
    if not cfg.admin_id:
        logger.warning("KLEINBOT_ADMIN_ID not set; admin commands are disabled")

    oracle = oracle or ClaudeOracle(
        command=cfg.oracle_command,
        timeout_seconds=cfg.oracle_timeout_seconds,
        allowed_tools=cfg.oracle_allowed_tools,
        log=logger,
    )
    bridge = MoltbookBridge(client, cfg, logger)
    orch = Orchestrator.from_config(cfg, transport, oracle, bridge=bridge, logger=logger)

    print_runtime_banner(cfg)
    logger.info(
        "Kleinbot starting approved_dms=%s pending_restored=%s moltbook=%s",
        len(orch.state.allowed_dm_ids),
        orch.queue.total(),
        "on" if client is not None else "off",
    )

    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        await transport.start(orch.on_new_messages, orch.on_outgoing_dm)
    except TransportLoggedOutError as e:
        logger.critical("Transport logged out; re-pair and restart error=%s", e)
        raise SystemExit(1)

    tasks = [asyncio.create_task(_process_loop(orch, cfg, stop_event, logger))]
    if client is not None:
        tasks.append(asyncio.create_task(_feed_loop(client, bridge, cfg, oracle, stop_event, logger)))
    stop_task = asyncio.create_task(stop_event.wait())

    done, _ = await asyncio.wait([stop_task, *tasks], return_when=asyncio.FIRST_COMPLETED)
    fatal: Optional[BaseException] = None
    for task in done:
        if task is not stop_task and not task.cancelled():
            fatal = task.exception() or fatal

    logger.info("Shutting down")
    stop_event.set()
    for task in [stop_task, *tasks]:
        task.cancel()
    await asyncio.gather(stop_task, *tasks, return_exceptions=True)
    orch.flush()
    await transport.stop()

    if isinstance(fatal, TransportLoggedOutError):
        logger.critical("Transport logged out; re-pair and restart error=%s", fatal)
        raise SystemExit(1)
    if fatal is not None:
        raise fatal
