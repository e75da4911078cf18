import logging

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
MAGENTA = "\033[35m"

LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: GREEN,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED + BOLD,
}

# First matching prefix wins.
MESSAGE_STYLES = (
    ("State:", BOLD + CYAN),
    ("Transcript:", CYAN),
    ("Audio capture", MAGENTA),
    ("Live session", BOLD + GREEN),
)


def _message_style(record: logging.LogRecord, msg: str) -> str:
    if record.levelno >= logging.ERROR or (msg.startswith("State:") and "FAILED" in msg):
        return BOLD + RED
    for prefix, style in MESSAGE_STYLES:
        if msg.startswith(prefix):
            return style
    if "dropped" in msg:
        return YELLOW
    if record.levelno == logging.DEBUG:
        return DIM
    if record.levelno >= logging.WARNING:
        return LEVEL_COLORS.get(record.levelno, "")
    return ""


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        stamp = self.formatTime(record, self.datefmt)
        source = record.name.rsplit(".", 1)[-1]
        msg = record.getMessage()

        style = _message_style(record, msg)
        if style:
            msg = f"{style}{msg}{RESET}"
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"

        return f"{DIM}{stamp}{RESET} {color}{record.levelname:<7}{RESET} {DIM}{source:<20}{RESET} {msg}"
