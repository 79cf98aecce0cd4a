import io

from PIL import Image

from gifcast.cursor import CursorRelay, CursorState, draw_cursor, relay_to_stream
from gifcast.models import CursorSample


class FakeListener:
    def __init__(self, on_move, on_click):
        self.on_move = on_move
        self.on_click = on_click
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


def test_latest_received_sample_wins():
    state = CursorState()
    newer = CursorSample(5, 5, received_at=1.0)
    older = CursorSample(50, 50, received_at=0.5)
    state.offer(newer)
    state.offer(older)
    # arrival order decides, not the sample's own timestamp
    assert state.latest() is older
    assert state.received == 2


def test_relay_forwards_target_local_coordinates():
    got = []
    listeners = []

    def factory(**callbacks):
        listener = FakeListener(**callbacks)
        listeners.append(listener)
        return listener

    relay = CursorRelay(lambda x, y, down: got.append((x, y, down)), origin=(100, 50),
                        listener_factory=factory)
    relay.start()
    listener = listeners[0]
    listener.on_move(110, 60)
    listener.on_click(120, 70, "left", True)
    listener.on_move(121, 71)
    listener.on_click(121, 71, "left", False)
    relay.stop()
    assert got == [(10, 10, False), (20, 20, True), (21, 21, True), (21, 21, False)]
    assert listener.started and listener.stopped
    assert not relay.running


def test_relay_survives_a_failing_sink():
    listeners = []

    def boom(x, y, down):
        raise RuntimeError("monitor gone")

    relay = CursorRelay(boom, listener_factory=lambda **cb: listeners.append(FakeListener(**cb)) or listeners[-1])
    relay.start()
    listeners[0].on_move(1, 1)
    relay.stop()


def test_draw_cursor_ring_only_while_pressed():
    up = Image.new("RGB", (64, 48))
    down = Image.new("RGB", (64, 48))
    draw_cursor(up, CursorSample(30, 24, False))
    draw_cursor(down, CursorSample(30, 24, True))
    assert up.getpixel((19, 27)) == (0, 0, 0)
    assert down.getpixel((19, 27)) == (255, 100, 100)


def test_draw_cursor_ignores_samples_outside_the_frame():
    img = Image.new("RGB", (10, 10))
    draw_cursor(img, CursorSample(-5, 200))
    assert img.getbbox() is None


class ChattyListener(FakeListener):
    def start(self):
        super().start()
        self.on_move(3, 4)


def test_relay_to_stream_prints_json_lines():
    out = io.StringIO()
    listeners = []

    def factory(**callbacks):
        listener = ChattyListener(**callbacks)
        listeners.append(listener)
        return listener

    relay_to_stream(stdin=io.StringIO("noise\nSTOP\n"), stdout=out, listener_factory=factory)
    line = out.getvalue().splitlines()[0]
    assert '"x": 3' in line and '"buttonDown": false' in line
    assert listeners[0].stopped
