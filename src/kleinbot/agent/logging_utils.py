import logging
import os
import sys
import time

from .config import Config


LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    force = os.getenv("FORCE_COLOR", "").strip().lower()
    if force in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


class ColorFormatter(UTCFormatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _COLORS.get(record.levelname.upper(), "")
        if not color:
            return message

        # Highlight key runtime phases so operators can scan the console quickly.
        if "Oracle request" in message:
            painted = f"{_BOLD}{_CYAN}[ORACLE REQUEST] {message}{_RESET}"
        elif "Oracle response" in message:
            painted = f"{_BOLD}{_MAGENTA}[ORACLE RESPONSE] {message}{_RESET}"
        elif "Responding chat=" in message or "Sending poll chat=" in message:
            painted = f"{_BOLD}{_CYAN}[SEND] {message}{_RESET}"
        elif "Committed chat=" in message:
            painted = f"{_BOLD}{_GREEN}[COMMIT] {message}{_RESET}"
        elif "Dropping chat=" in message:
            painted = f"{_BOLD}{_YELLOW}[DROP] {message}{_RESET}"
        elif "Blocked DM" in message:
            painted = f"{_DIM}{color}{message}{_RESET}"
        elif message.split(" ", 3)[-1].startswith("Moltbook"):
            painted = f"{_BOLD}{_MAGENTA}{message}{_RESET}"
        else:
            painted = f"{color}{message}{_RESET}"
        return painted


def setup_logging(cfg: Config) -> logging.Logger:
    level = getattr(logging, cfg.log_level, logging.INFO)
    logger = logging.getLogger("kleinbot")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = UTCFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    stream_handler = logging.StreamHandler()
    if _stream_supports_color():
        stream_handler.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
