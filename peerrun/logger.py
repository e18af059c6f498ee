import logging
import os
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
JSON_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s - %(host)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "peerrun_stream"
_FILE_HANDLER_NAME = "peerrun_file"

# Silence httpx/httpcore INFO logs to prevent noise
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("paramiko").setLevel(logging.WARNING)


class _HostFilter(logging.Filter):
    """Attach the node's address to every record so multi-host logs can be told apart."""

    def filter(self, record):
        if not hasattr(record, "host") or record.host in (None, ""):
            record.host = os.getenv("PEERRUN_SELF", "-")
        return True


def _build_formatter() -> logging.Formatter:
    if os.getenv("PEERRUN_LOG_FORMAT", "").lower() == "json":
        from pythonjsonlogger import jsonlogger

        return jsonlogger.JsonFormatter(JSON_LOG_FORMAT, datefmt=DATE_FORMAT)
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def _root_logger() -> logging.Logger:
    root = logging.getLogger("peerrun")
    if any(getattr(h, "name", None) == _HANDLER_NAME for h in root.handlers):
        return root

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_build_formatter())
    handler.addFilter(_HostFilter())
    handler.name = _HANDLER_NAME
    root.addHandler(handler)
    root.propagate = False

    level = os.getenv("PEERRUN_LOG_LEVEL")
    root.setLevel(getattr(logging, level.upper(), logging.INFO) if level else logging.INFO)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``peerrun`` hierarchy, configuring the shared handler on first use."""
    _root_logger()
    if name != "peerrun" and not name.startswith("peerrun."):
        name = f"peerrun.{name}"
    return logging.getLogger(name)


def set_log_level(level: str):
    root = _root_logger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def add_file_handler(path: str) -> logging.Handler:
    """Mirror all peerrun logs into ``path`` (replaces a previously added file handler)."""
    root = _root_logger()
    for h in list(root.handlers):
        if getattr(h, "name", None) == _FILE_HANDLER_NAME:
            root.removeHandler(h)
            h.close()

    handler = logging.FileHandler(path, mode="w")
    handler.setFormatter(_build_formatter())
    handler.addFilter(_HostFilter())
    handler.name = _FILE_HANDLER_NAME
    root.addHandler(handler)
    return handler
