import logging, json, sys, time, os

# Context fields that callers may attach through `extra=` and that are copied
# into the structured record.
CONTEXT_FIELDS = ("locality", "ingestor", "kind", "storage", "secret", "path")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamps."""

    converter = time.gmtime

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%SZ")

    def format(self, record):
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def console_formatter():
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    return formatter


def get_logger(name="keyrotator", level=None, to_file=None, console=None):
    """Unified structured logger for all keyrotator components.

    Handlers are attached to the root "keyrotator" logger only, so module
    loggers such as "keyrotator.storage" propagate to a single sink.
    `console=True` (or KEYROTATOR_CONSOLE_LOGS=1) switches to human-readable
    lines for workstation runs.
    """
    root = logging.getLogger("keyrotator")
    if level is None:
        level = os.getenv("KEYROTATOR_LOG_LEVEL", "INFO").upper()
    if console is None:
        console = os.getenv("KEYROTATOR_CONSOLE_LOGS", "0") == "1"

    if not root.handlers:
        root.setLevel(level)
        handler = logging.StreamHandler(sys.stdout if not console else sys.stderr)
        formatter = console_formatter() if console else JsonFormatter()
        handler.setFormatter(formatter)
        root.addHandler(handler)

        if to_file:
            # Ensure the directory exists before writing
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(JsonFormatter())
            root.addHandler(file_handler)

    return logging.getLogger(name)


def use_console_output(enabled=True):
    """Swap the formatter of already-installed handlers (used by the CLI)."""
    root = logging.getLogger("keyrotator")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setFormatter(console_formatter() if enabled else JsonFormatter())
