import queue
import threading
import time

import pytest

from plpncp.framing import encode_frame
from plpncp.packet import AUTO_BAUD_RATES, Packet


class FakePort:
    def __init__(self, speed):
        self.speed = speed
        self.written = bytearray()
        self.incoming = queue.Queue()
        self.dsr = True
        self.cts = True
        self.cd = True
        self.dtr = False
        self.rts = False
        self.rtscts = True
        self.closed = False

    @property
    def in_waiting(self):
        return 0

    def read(self, size=1):
        try:
            return self.incoming.get(timeout=0.02)
        except queue.Empty:
            return b""

    def write(self, data):
        self.written.extend(data)
        return len(data)

    def close(self):
        self.closed = True


class Recorder:
    def __init__(self):
        self.received = []
        self.event = threading.Event()

    def receive(self, payload):
        self.received.append(payload)
        self.event.set()


@pytest.fixture
def opened():
    return []


@pytest.fixture
def factory(opened):
    def make(device, speed):
        port = FakePort(speed)
        opened.append(port)
        return port
    return make


@pytest.fixture
def link():
    return Recorder()


def test_send_writes_encoded_frame(factory, opened, link):
    with Packet("dev", 115200, link, 0, factory) as p:
        p.send(b"\x30\x03data")
        assert bytes(opened[0].written) == encode_frame(b"\x30\x03data", False)


def test_epoc_mode_escapes_etx(factory, opened, link):
    with Packet("dev", 115200, link, 0, factory) as p:
        p.set_epoc(True)
        p.send(b"\x03")
        assert bytes(opened[0].written) == encode_frame(b"\x03", True)
        assert b"\x10\x04" in opened[0].written


def test_feed_delivers_payload(factory, link):
    with Packet("dev", 115200, link, 0, factory) as p:
        p.feed(encode_frame(b"hello") + encode_frame(b"world"))
        assert link.received == [b"hello", b"world"]


def test_feed_drops_corrupt_frame(factory, link):
    frame = bytearray(encode_frame(b"hello"))
    frame[4] ^= 0x01
    with Packet("dev", 115200, link, 0, factory) as p:
        p.feed(bytes(frame))
        assert link.received == []


def test_pump_reads_from_port(factory, opened, link):
    with Packet("dev", 115200, link, 0, factory):
        opened[0].incoming.put(encode_frame(b"pumped"))
        assert link.event.wait(2.0)
        assert link.received == [b"pumped"]


def test_auto_baud_cycles_on_garbage(factory, opened, link):
    with Packet("dev", -1, link, 0, factory) as p:
        assert opened[0].speed == AUTO_BAUD_RATES[0]
        expected = [AUTO_BAUD_RATES[1], AUTO_BAUD_RATES[2], AUTO_BAUD_RATES[3], AUTO_BAUD_RATES[0]]
        for speed in expected:
            p.feed(bytes(16))
            assert opened[-1].speed == speed
            assert p.speed == speed
        assert all(port.closed for port in opened[:-1])
        assert len(opened) == 5


def test_few_garbage_bytes_do_not_reset(factory, opened, link):
    with Packet("dev", -1, link, 0, factory) as p:
        p.feed(bytes(15))
        assert p.speed == AUTO_BAUD_RATES[0]
        assert len(opened) == 1


def test_fixed_speed_reset_reopens_same_speed(factory, opened, link):
    with Packet("dev", 57600, link, 0, factory) as p:
        p.reset()
        assert p.speed == 57600
        assert len(opened) == 2
        assert opened[0].closed
        assert opened[1].speed == 57600


def test_pump_survives_reset(factory, opened, link):
    with Packet("dev", 38400, link, 0, factory) as p:
        p.reset()
        opened[1].incoming.put(encode_frame(b"after"))
        assert link.event.wait(2.0)
        assert link.received == [b"after"]


def test_link_failed_raises_dtr_rts(factory, opened, link):
    with Packet("dev", 115200, link, 0, factory) as p:
        assert p.link_failed() is False
        assert opened[0].dtr is True
        assert opened[0].rts is True


def test_link_failed_when_dsr_down(factory, opened, link):
    with Packet("dev", 115200, link, 0, factory) as p:
        opened[0].dsr = False
        assert p.link_failed() is True
        opened[0].dsr = True
        assert p.link_failed() is False


def test_factory_error_propagates(link):
    def failing(device, speed):
        raise OSError("no such device")
    with pytest.raises(OSError):
        Packet("dev", 115200, link, 0, failing)


def test_close_closes_port_and_stops(factory, opened, link):
    p = Packet("dev", 115200, link, 0, factory)
    p.close()
    assert opened[0].closed
    assert opened[0].rtscts is False
    assert p.link_failed() is False
    p.send(b"ignored")
    time.sleep(0.05)
    assert bytes(opened[0].written) == b""