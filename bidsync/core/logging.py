import logging
import sys
from pythonjsonlogger import jsonlogger
from bidsync.core.config import Settings

# transport libraries log one line per packet at INFO
_CHATTY = ("socketio", "engineio", "urllib3")


def configure_logging(settings: Settings) -> None:
    """
    One JSON line per record on stdout, for the engine threads and the console alike.
    Calling it again replaces the handler instead of stacking a second one.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s",
        rename_fields={"levelname": "level", "name": "logger", "threadName": "thread"},
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in _CHATTY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for name in ("uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(level)
