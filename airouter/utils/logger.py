"""Logging helpers with colored console output and settings-driven levels"""

import logging
import sys


class Colors:
    """ANSI color codes for terminal output"""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    GREY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level and shortens the logger name"""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def __init__(self, *args, use_colors: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_colors = use_colors
        self._short_names: dict[str, str] = {}

    def _short_name(self, full_name: str) -> str:
        # "airouter.services.router" -> "ROUTER"
        if full_name not in self._short_names:
            self._short_names[full_name] = full_name.rsplit(".", 1)[-1].upper()
        return self._short_names[full_name]

    def format(self, record: logging.LogRecord) -> str:
        levelname, name = record.levelname, record.name
        short_name = self._short_name(name)

        if self.use_colors:
            color = self.LEVEL_COLORS.get(record.levelno, "")
            record.levelname = f"{color}{levelname}{Colors.RESET}"
            record.name = f"{Colors.CYAN}{short_name}{Colors.RESET}"
        else:
            record.name = short_name

        try:
            return super().format(record)
        finally:
            record.levelname, record.name = levelname, name


def setup_logger(
    name: str,
    level: int = logging.INFO,
    format_string: str | None = None,
) -> logging.Logger:
    """Set up a logger with a single colored stdout handler

    Args:
        name: Logger name (usually __name__)
        level: Logging level
        format_string: Custom format string (optional)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Handlers are attached once per logger name
    if logger.handlers:
        return logger

    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        ColoredFormatter(
            format_string or "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            use_colors=sys.stdout.isatty(),
        )
    )
    logger.addHandler(handler)

    return logger


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """Get or create a logger with standard configuration

    Args:
        name: Logger name (usually __name__)
        level: Logging level (if None, reads from settings.log_level)

    Returns:
        Logger instance
    """
    if level is None:
        try:
            from airouter.config import settings

            level = getattr(logging, settings.log_level.upper(), logging.INFO)
        except Exception:
            # Settings can be unavailable (e.g. missing API key) during tooling imports
            level = logging.INFO

    return setup_logger(name, level)
