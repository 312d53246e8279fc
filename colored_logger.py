import logging
import sys
from typing import Union

TRACE = 5
SUCCESS = 25
NOTICE = 35
FAILURE = 45

for _level, _name in ((TRACE, "TRACE"), (SUCCESS, "SUCCESS"), (NOTICE, "NOTICE"), (FAILURE, "FAILURE")):
    logging.addLevelName(_level, _name)

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - [%(threadName)s] %(name)s - %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    """Formatter that wraps each line in the ANSI color of its level."""

    LEVEL_COLORS = {
        TRACE: "\033[90m",
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        SUCCESS: "\033[92m",
        logging.WARNING: "\033[33m",
        NOTICE: "\033[96m",
        logging.ERROR: "\033[31m",
        FAILURE: "\033[91m",
        logging.CRITICAL: "\033[35m",
    }

    def __init__(self, fmt: str = DEFAULT_FORMAT, datefmt: str = DEFAULT_DATEFMT, use_color: bool = None):
        super().__init__(fmt, datefmt)
        # Plain text when stderr is redirected to a file or journal
        self.use_color = sys.stderr.isatty() if use_color is None else use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        return f"{color}{line}{_RESET}" if color else line


def parse_log_level(level: Union[str, int]) -> int:
    """
    Resolve a level name such as "info" or "SUCCESS" to its numeric value.

    Raises:
        ValueError: If the name is not a known level
    """
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def setup_colored_logging(level: Union[str, int] = logging.INFO) -> None:
    """
    Route every logger of the process to one colored stderr handler.

    Args:
        level: Logging level name or number (default: logging.INFO)
    """
    root = logging.getLogger()
    root.setLevel(parse_log_level(level))

    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColoredFormatter())
    root.addHandler(handler)


class EnhancedLogger(logging.LoggerAdapter):
    """Standard logger plus the scheduler's extra levels."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def trace(self, msg, *args, **kwargs):
        """Timer rearm and next-fire detail."""
        self.log(TRACE, msg, *args, **kwargs)

    def success(self, msg, *args, **kwargs):
        """Completed executions."""
        self.log(SUCCESS, msg, *args, **kwargs)

    def notice(self, msg, *args, **kwargs):
        """Controller lifecycle transitions."""
        self.log(NOTICE, msg, *args, **kwargs)

    def failure(self, msg, *args, **kwargs):
        """Executions that recorded an error."""
        self.log(FAILURE, msg, *args, **kwargs)


def get_colored_logger(name: str) -> EnhancedLogger:
    """
    Get a logger with trace/success/notice/failure methods.

    Args:
        name: Logger name (typically __name__)
    """
    return EnhancedLogger(logging.getLogger(name))
