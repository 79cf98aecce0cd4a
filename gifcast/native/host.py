"""stdio host loop for the native controller."""

import logging
import sys
import threading

from ..client import JobClient
from ..config import Settings
from ..errors import ProtocolError
from . import protocol
from .controller import NativeController

log = logging.getLogger(__name__)


class FramedWriter:
    """Serializes replies from the command worker and the poller."""

    def __init__(self, stream):
        self.stream = stream
        self._lock = threading.Lock()

    def __call__(self, message):
        with self._lock:
            protocol.write_message(self.stream, message)
        log.debug("sent %s", message.get("status"))


def run(stdin=None, stdout=None, settings=None, controller=None):
    """Read framed commands until EOF. Returns the number handled."""
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout.buffer
    settings = settings or Settings.from_env()
    send = FramedWriter(stdout)
    client = None
    if controller is None:
        client = JobClient(settings.api_url)
        controller = NativeController(send, client, settings=settings)
    handled = 0
    try:
        while True:
            try:
                message = protocol.read_message(stdin)
            except ProtocolError as e:
                log.error("bad frame: %s", e)
                send(protocol.error(str(e)))
                if e.recoverable:
                    continue
                break
            if message is None:
                log.info("host closed the channel")
                break
            log.info("received command %s", message.get("command"))
            controller.handle(message)
            handled += 1
    finally:
        controller.close()
        if client is not None:
            client.close()
    return handled
