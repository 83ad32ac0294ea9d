from __future__ import annotations
import logging
import sys
from enum import Enum
from typing import Any, List, MutableMapping, Optional, Tuple


class AnsiEscapeCode:

    ESCAPE: str = "\x1b"
    value: int

    def __and__(self, other: AnsiEscapeCode) -> CompoundAnsiEscapeCode:
        if not isinstance(other, AnsiEscapeCode):
            raise TypeError
        return CompoundAnsiEscapeCode([self, other])

    def __str__(self) -> str:
        return f"{self.ESCAPE}[{self.value}m"


class CompoundAnsiEscapeCode(AnsiEscapeCode):
    def __init__(self, codes: List[AnsiEscapeCode]) -> None:
        self.codes = codes

    def __str__(self) -> str:
        value = ";".join(f"{x.value}" for x in self.codes)
        return f"{self.ESCAPE}[{value}m"


class Special(AnsiEscapeCode, Enum):
    RESET = 0


class Color(AnsiEscapeCode, Enum):
    RED = 31
    GREEN = 32
    YELLOW = 33
    CYAN = 36
    BRIGHT_BLACK = 90


class SGR(AnsiEscapeCode, Enum):
    BOLD = 1


class ColoredFormatter(logging.Formatter):
    """Colours the level and dims the source location, one line per record."""

    COLORS = {
        logging.DEBUG: Color.BRIGHT_BLACK,
        logging.WARNING: Color.YELLOW,
        logging.ERROR: Color.RED,
        logging.CRITICAL: Color.RED & SGR.BOLD,
    }

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color
        self._formatters = {}

    def _formatter_for(self, levelno: int) -> logging.Formatter:
        if levelno not in self._formatters:
            if self.use_color:
                color = self.COLORS.get(levelno, "")
                log_format = (
                    f"{Special.RESET}{Color.GREEN}[%(asctime)s]  "
                    f"{Special.RESET}{color}%(levelname)-8s | %(threadName)s | "
                    f"%(name)s - %(message)s "
                    f"{Special.RESET}{Color.BRIGHT_BLACK}(%(filename)s:%(lineno)d)"
                    f"{Special.RESET}"
                )
            else:
                log_format = (
                    "[%(asctime)s]  %(levelname)-8s | %(threadName)s | "
                    "%(name)s - %(message)s (%(filename)s:%(lineno)d)"
                )
            self._formatters[levelno] = logging.Formatter(log_format)
        return self._formatters[levelno]

    def format(self, record: logging.LogRecord) -> str:
        return self._formatter_for(record.levelno).format(record)


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the peer of the session, e.g.
    ``[127.0.0.1:50000] Sending DATA (block 3)``.
    """

    def __init__(self, logger: logging.Logger, peer: Optional[Tuple[Any, ...]]) -> None:
        super().__init__(logger, {"peer": peer})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        peer = self.extra.get("peer")
        if peer:
            msg = f"[{peer[0]}:{peer[1]}] {msg}"
        return msg, kwargs


class UserLogger:
    def __init__(self, logger: logging.Logger = None) -> None:
        if logger is None:
            # root logger
            self.logger = logging.getLogger(None)
        else:
            self.logger = logger

    def add_stderr(self, level=logging.INFO) -> UserLogger:
        handler = logging.StreamHandler(stream=sys.stderr)
        formatter = ColoredFormatter(use_color=sys.stderr.isatty())
        handler.setFormatter(formatter)
        handler.setLevel(level)
        self.logger.addHandler(handler)
        self.logger.setLevel(min(self.logger.level or logging.WARNING, level))
        return self
