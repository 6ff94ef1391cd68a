import logging
import os
import sys

import colorama

# Initialize colorama for Windows terminals
colorama.init()

LOG_COLORS = {
    "DEBUG": colorama.Fore.BLUE,
    "INFO": colorama.Fore.GREEN,
    "WARNING": colorama.Fore.YELLOW,
    "ERROR": colorama.Fore.RED,
    "CRITICAL": colorama.Fore.RED + colorama.Style.BRIGHT,
}

# Per-module message colors (override the level color)
MODULE_MESSAGE_COLORS = {
    "nl2kindle.kindle": colorama.Fore.MAGENTA + colorama.Style.BRIGHT,
    "nl2kindle.pipeline": colorama.Fore.CYAN,
}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name and message body.

    Per-module overrides in ``MODULE_MESSAGE_COLORS`` win over the level color.
    The record is restored after formatting so file handlers stay uncolored.
    """

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        original_msg = record.msg
        original_args = record.args

        try:
            if record.levelname in LOG_COLORS:
                record.levelname = f"{LOG_COLORS[record.levelname]}{record.levelname}{colorama.Style.RESET_ALL}"

            raw_msg = record.getMessage()
            try:
                raw_msg.encode(sys.stdout.encoding or "utf-8", errors="strict")
            except (UnicodeEncodeError, AttributeError):
                raw_msg = raw_msg.encode("ascii", errors="replace").decode("ascii")

            color = MODULE_MESSAGE_COLORS.get(record.name) or LOG_COLORS.get(original_levelname)
            record.msg = f"{color}{raw_msg}{colorama.Style.RESET_ALL}" if color else raw_msg
            record.args = None

            formatted = super().format(record)
        finally:
            record.levelname = original_levelname
            record.msg = original_msg
            record.args = original_args

        return formatted


def _default_log_file() -> str:
    return os.path.abspath(
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "logs", "nl2kindle.log")
    )


def setup_logging(level: int = logging.INFO, log_file: str | None = None) -> logging.Logger:
    """Configure application logging with colored console output and file output"""
    logger = logging.getLogger("nl2kindle")
    logger.setLevel(level)
    logger.handlers = []

    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(log_format, datefmt="%H:%M:%S"))
    logger.addHandler(console_handler)

    log_file = log_file or os.getenv("NL2KINDLE_LOG_FILE") or _default_log_file()

    try:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(log_format))
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")
    except OSError as e:
        # A read-only deployment still gets console logs
        print(f"Warning: Could not set up file logging: {str(e)}")

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name"""
    return logging.getLogger(f"nl2kindle.{name}")


def colored_text(text: str, color_style: str) -> str:
    """Wrap text in a colorama color, replacing characters the console cannot encode"""
    try:
        console_encoding = sys.stdout.encoding or "utf-8"
        text.encode(console_encoding, errors="strict")
    except (UnicodeEncodeError, AttributeError):
        text = text.encode("ascii", errors="replace").decode("ascii")

    return f"{color_style}{text}{colorama.Style.RESET_ALL}"
