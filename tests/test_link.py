import pytest

from plpncp.link import Link, LinkType


class FakePacket:
    def __init__(self):
        self.sent = []
        self.epoc = False
        self.speed = 115200
        self.failed = False
        self.reset_count = 0
        self.closed = False
        self.verbose = 0

    def send(self, payload):
        self.sent.append(bytes(payload))

    def set_epoc(self, epoc):
        self.epoc = epoc

    def link_failed(self):
        return self.failed

    def reset(self):
        self.reset_count += 1

    def close(self):
        self.closed = True


class FakeController:
    def __init__(self):
        self.received = []

    def receive(self, payload):
        self.received.append(bytes(payload))


@pytest.fixture
def parts():
    packet = FakePacket()
    controller = FakeController()
    link = Link(
        "/dev/null",
        -1,
        controller,
        0,
        packet_factory=lambda device, baud, lnk, verbose: packet,
        start_thread=False,
    )
    return link, packet, controller


def make_sibo(link):
    link.receive(b"\x00")


def make_epoc(link):
    link.receive(b"\x24" + (1234).to_bytes(4, "little"))


def test_initial_link_request(parts):
    link, packet, _ = parts
    assert packet.sent == [b"\x21"]
    assert link.link_type is LinkType.UNKNOWN
    assert link.stuff_to_send()


def test_sibo_detected_from_ack_zero(parts):
    link, packet, _ = parts
    make_sibo(link)
    assert link.link_type is LinkType.SIBO
    assert packet.epoc is False
    assert not link.stuff_to_send()


def test_epoc_detected_from_link_confirm(parts):
    link, packet, _ = parts
    make_epoc(link)
    assert link.link_type is LinkType.EPOC
    assert packet.epoc is True
    assert packet.sent[-1] == b"\x00"
    assert not link.stuff_to_send()


def test_peer_request_epoc_answers_with_con(parts):
    link, packet, _ = parts
    link.receive(b"\x21")
    assert link.link_type is LinkType.EPOC
    frame = packet.sent[-1]
    assert frame[0] == 0x24
    assert int.from_bytes(frame[1:], "little") == link.con_magic


def test_peer_request_sibo_answers_with_ack(parts):
    link, packet, _ = parts
    link.receive(b"\x20")
    assert link.link_type is LinkType.SIBO
    assert packet.sent[-1] == b"\x00"
    assert link.tx_sequence == 1


def test_sibo_window_and_wait_queue(parts):
    link, packet, _ = parts
    make_sibo(link)
    link.send(b"\x05\x01\x01hi")
    assert packet.sent[-1] == b"\x31\x05\x01\x01hi"
    link.send(b"\x05\x01\x01yo")
    assert packet.sent[-1] == b"\x31\x05\x01\x01hi"
    assert link.wait_queue == [b"\x05\x01\x01yo"]
    link.receive(b"\x01")
    assert packet.sent[-1] == b"\x32\x05\x01\x01yo"
    assert link.wait_queue == []


def test_receive_data_and_duplicate(parts):
    link, packet, controller = parts
    make_sibo(link)
    link.receive(b"\x31\x01\x02\x01abc")
    assert controller.received == [b"\x01\x02\x01abc"]
    assert packet.sent[-1] == b"\x01"
    link.receive(b"\x31\x01\x02\x01abc")
    assert controller.received == [b"\x01\x02\x01abc"]
    assert packet.sent[-1] == b"\x01"


def test_xoff_holds_and_xon_releases(parts):
    link, packet, controller = parts
    make_sibo(link)
    link.receive(b"\x31\x00\x05\x01")
    assert link.xoff[5] is True
    count = len(packet.sent)
    link.send(b"\x05\x01\x01data")
    assert len(packet.sent) == count
    assert link.hold_queue == [b"\x05\x01\x01data"]
    link.receive(b"\x32\x00\x05\x02")
    assert link.xoff[5] is False
    assert packet.sent[-1] == b"\x31\x05\x01\x01data"
    assert controller.received == []


def test_purge_queue_drops_held_frames(parts):
    link, _, _ = parts
    make_sibo(link)
    link.receive(b"\x31\x00\x05\x01")
    link.send(b"\x05abc")
    link.send(b"\x06abc")
    link.receive(b"\x32\x00\x06\x01")
    link.send(b"\x06def")
    link.purge_queue(5)
    assert all(b[0] != 5 for b in link.hold_queue)
    assert b"\x06def" in link.hold_queue


def test_oversize_payload_fails_link(parts):
    link, _, _ = parts
    link.send(bytes(301))
    assert link.has_failed()


def test_disconnect_fails_link(parts):
    link, packet, _ = parts
    make_sibo(link)
    link.receive(b"\x10")
    assert link.has_failed()
    count = len(packet.sent)
    link.send(b"\x01x")
    assert len(packet.sent) == count


def test_packet_failure_propagates(parts):
    link, packet, _ = parts
    packet.failed = True
    assert link.has_failed()
    assert not link.stuff_to_send()


def test_extended_sequence_transmit_and_receive(parts):
    link, packet, controller = parts
    make_epoc(link)
    link.tx_sequence = 9
    link.send(b"\x01z")
    assert packet.sent[-1] == b"\x39\x01\x01z"
    assert link.ack_wait_queue[-1].seq == 9
    link.rx_sequence = 8
    link.receive(b"\x39\x01payload")
    assert controller.received == [b"payload"]
    assert link.rx_sequence == 9
    assert packet.sent[-1] == b"\x09\x01"


def test_ack_extended_seq_matches(parts):
    link, _, _ = parts
    make_epoc(link)
    link.tx_sequence = 9
    link.send(b"\x01z")
    link.receive(b"\x09\x01")
    assert link.ack_wait_queue == []


def test_unmatched_ack_resends_next(parts):
    link, packet, _ = parts
    make_epoc(link)
    link.send(b"\x01first")
    link.send(b"\x01second")
    first = packet.sent[-2]
    txcount = link.ack_wait_queue[0].txcount
    link.receive(b"\x00")
    assert packet.sent[-1] == first
    assert link.ack_wait_queue[0].txcount == txcount - 1
    assert len(link.ack_wait_queue) == 2


def test_multi_ack_clears_older_frames(parts):
    link, _, _ = parts
    make_epoc(link)
    link.send(b"\x01first")
    link.send(b"\x01second")
    link.ack_wait_queue[0].stamp -= 10
    link.receive(b"\x02")
    assert link.ack_wait_queue == []


def test_retransmit_then_timeout(parts):
    link, packet, _ = parts
    entry = link.ack_wait_queue[0]
    start = entry.txcount
    for expected in range(start - 1, -1, -1):
        entry.stamp -= 100
        link.retransmit()
        assert packet.sent[-1] == b"\x21"
        assert entry.txcount == expected
    entry.stamp -= 100
    link.retransmit()
    assert link.ack_wait_queue == []
    assert link.has_failed()


def test_retransmit_skips_fresh_frames(parts):
    link, packet, _ = parts
    count = len(packet.sent)
    link.retransmit()
    assert len(packet.sent) == count


def test_retrans_timeout_grows_with_speed(parts):
    link, packet, _ = parts
    packet.speed = 0
    assert link.retrans_timeout() == 200
    packet.speed = 9600
    slow = link.retrans_timeout()
    packet.speed = 115200
    assert link.retrans_timeout() > slow > 200


def test_reset_restarts_link(parts):
    link, packet, _ = parts
    make_epoc(link)
    link.receive(b"\x31\x00\x05\x01")
    link.reset()
    assert packet.reset_count == 1
    assert link.link_type is LinkType.UNKNOWN
    assert packet.sent[-1] == b"\x21"
    assert link.xoff[5] is False
    assert link.tx_sequence == 1


def test_verbose_is_passed_to_packet(parts):
    link, packet, _ = parts
    link.verbose = 12
    assert packet.verbose == 12
    assert link.verbose == 12


def test_close_after_failure(parts):
    link, packet, _ = parts
    packet.failed = True
    link.has_failed()
    link.close()
    assert packet.closed


@pytest.mark.parametrize(
    "value, name",
    [(0, "Unknown"), (1, "SIBO"), (2, "EPOC")],
)
def test_link_type_names(value, name):
    assert str(LinkType(value)) == name