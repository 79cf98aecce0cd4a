import logging
import sys

FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level="INFO", logfile=None, stream=None):
    """Configure the root logger once.

    The native host passes a ``logfile`` and no stream: its stdout carries
    the framed protocol and must never see a log line.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handlers = []
    if logfile:
        handlers.append(logging.FileHandler(logfile, encoding="utf-8"))
    if stream is not None or not logfile:
        handlers.append(logging.StreamHandler(stream or sys.stderr))
    fmt = logging.Formatter(FORMAT)
    for handler in handlers:
        handler.setFormatter(fmt)
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root
