import logging
import sys


class Colors:
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    BOLD = "\033[1m"


LEVEL_COLORS = {
    logging.DEBUG: Colors.CYAN,
    logging.INFO: Colors.GREEN,
    logging.WARNING: Colors.YELLOW,
    logging.ERROR: Colors.RED,
    logging.CRITICAL: Colors.RED + Colors.BOLD,
}


class ColorFormatter(logging.Formatter):
    """Wraps each message in the ANSI color of its level unless color is off."""

    def __init__(self, fmt="%(message)s", color=True):
        super().__init__(fmt)
        self.color = color

    def format(self, record):
        message = super().format(record)
        if not self.color:
            return message
        return f"{LEVEL_COLORS.get(record.levelno, Colors.RESET)}{message}{Colors.RESET}"


def _stderr_is_tty():
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def setup_logger(name="soarpy", level=logging.INFO, color=None):
    logger = logging.getLogger(name)
    # one handler per named logger, however often modules ask for it
    if not logger.handlers:
        logger.setLevel(level)
        handler = logging.StreamHandler()
        handler.setFormatter(ColorFormatter(color=_stderr_is_tty() if color is None else color))
        logger.addHandler(handler)
    return logger


def configure_logging(verbose: bool = False, quiet: bool = False, color: bool = True, name="soarpy"):
    """Apply the CLI's -v/-q/--no-color to the shared logger."""
    logger = setup_logger(name)
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
        handler.setFormatter(ColorFormatter(color=color and _stderr_is_tty()))
    return logger
