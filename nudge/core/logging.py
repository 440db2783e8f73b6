"""
Logging setup.

Modules log through `logging.getLogger(__name__)`; `configure_logging` is
called once by the app factory and installs a single stdout handler so
gunicorn / the container runtime captures everything.
"""
import logging
import sys

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_HANDLER_NAME = "nudge-stdout"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("nudge")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reload
    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    root.addHandler(handler)
