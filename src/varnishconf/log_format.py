import logging
from datetime import datetime, timezone

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"

LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: "",
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED + BOLD,
}


class PrefixedFormatter(logging.Formatter):
    """``<ISO time> [<component>]: <line>`` for every line of a record."""

    def __init__(self, colored: bool = False) -> None:
        super().__init__()
        self._colored = colored

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        time = self.formatTime(record)
        component = record.name.rsplit(".", 1)[-1]
        text = record.getMessage()
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        if record.stack_info:
            text = f"{text}\n{self.formatStack(record.stack_info)}"

        prefix = f"{time} [{component}]: "
        color = LEVEL_COLORS.get(record.levelno, "") if self._colored else ""
        if self._colored:
            prefix = f"{DIM}{time}{RESET} {CYAN}[{component}]{RESET}: "
            if "Config reload" in text and record.levelno == logging.INFO:
                color = GREEN

        lines = text.rstrip("\n").split("\n")
        if color:
            return "\n".join(f"{prefix}{color}{line}{RESET}" for line in lines)
        return "\n".join(f"{prefix}{line}" for line in lines)
