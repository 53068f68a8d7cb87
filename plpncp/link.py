"""The link layer: sequencing, acknowledgement and retransmission of frames."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Protocol

from .packet import Packet

LNK_DEBUG_LOG = 4
LNK_DEBUG_DUMP = 8

MAX_PACKET_LEN = 300

log = logging.getLogger(__name__)


class LinkType(IntEnum):
    UNKNOWN = 0
    SIBO = 1
    EPOC = 2

    def __str__(self) -> str:
        return {0: "Unknown", 1: "SIBO", 2: "EPOC"}[int(self)]


@dataclass
class AckWaitEntry:
    """A transmitted frame that the peer has not yet acknowledged."""

    seq: int
    txcount: int
    stamp: float
    data: bytes


class PayloadReceiver(Protocol):
    def receive(self, payload: bytes) -> None: ...


def _default_packet_factory(device: str, baud: int, link: Link, verbose: int) -> Any:
    return Packet(device, baud, link, verbose)


def _seq_header(base: int, seq: int) -> bytes:
    """Encode a sequence number into a one or two byte frame header."""
    if seq > 7:
        return bytes((base + ((seq & 7) | 8), (seq >> 3) & 0xFF))
    return bytes(((base + seq) & 0xFF,))


class Link:
    """Reliable delivery of payloads to the peer over a :class:`Packet`.

    Received payloads that belong to the layer above are handed to
    ``controller.receive``. ``packet_factory(device, baud, link, verbose)``
    creates the frame transport. With ``start_thread`` a background
    thread retransmits unacknowledged frames.
    """

    def __init__(
        self,
        device: str,
        baud: int,
        controller: PayloadReceiver,
        verbose: int = 0,
        packet_factory: Callable[[str, int, Link, int], Any] | None = None,
        start_thread: bool = True,
    ) -> None:
        self.controller = controller
        self._verbose = verbose
        self._lock = threading.RLock()
        self.ack_wait_queue: list[AckWaitEntry] = []
        self.hold_queue: list[bytes] = []
        self.wait_queue: list[bytes] = []
        self.xoff = [False] * 256
        self.tx_sequence = 1
        self.rx_sequence = -1
        self.failed = False
        self.seq_mask = 7
        self.max_outstanding = 1
        self.link_type = LinkType.UNKNOWN
        self.con_magic = random.getrandbits(31)
        self.packet: Any = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        factory = packet_factory or _default_packet_factory
        self.packet = factory(device, baud, self, verbose)
        if start_thread:
            self._thread = threading.Thread(
                target=self._expire_check, name="link-retransmit", daemon=True
            )
            self._thread.start()
        self._send_req_req()

    def __enter__(self) -> Link:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def verbose(self) -> int:
        return self._verbose

    @verbose.setter
    def verbose(self, value: int) -> None:
        self._verbose = value
        self.packet.verbose = value

    @property
    def speed(self) -> int:
        return self.packet.speed

    def _logging(self, flag: int = LNK_DEBUG_LOG) -> bool:
        return bool(self._verbose & flag)

    def _dump(self, data: bytes) -> str:
        return data.hex(" ") if self._logging(LNK_DEBUG_DUMP) else f"len={len(data)}"

    def _expire_check(self) -> None:
        while not self._stop.wait(self.retrans_timeout() / 2000):
            try:
                self.retransmit()
            except Exception:
                log.exception("link: error during retransmission")

    def retrans_timeout(self) -> int:
        """Milliseconds to wait for an acknowledgement before resending."""
        return self.speed * 1000 // 13200 + 200

    def reset(self) -> None:
        """Reset the connection and ask the peer for a new link."""
        self.tx_sequence = 1
        self.rx_sequence = -1
        self.failed = False
        self.seq_mask = 7
        self.max_outstanding = 1
        self.link_type = LinkType.UNKNOWN
        self._purge_all_queues()
        self.xoff = [False] * 256
        self.packet.reset()
        self._send_req_req()

    def send(self, data: bytes) -> None:
        """Send one payload; oversized payloads mark the link as failed."""
        data = bytes(data)
        if len(data) > MAX_PACKET_LEN:
            self.failed = True
        else:
            self._transmit(data)

    def _purge_all_queues(self) -> None:
        with self._lock:
            self.ack_wait_queue.clear()
            self.hold_queue.clear()

    def purge_queue(self, channel: int) -> None:
        """Drop all queued frames whose first byte is ``channel``."""
        with self._lock:
            self.ack_wait_queue = [
                e for e in self.ack_wait_queue if not (e.data and e.data[0] == channel)
            ]
            self.hold_queue = [b for b in self.hold_queue if not (b and b[0] == channel)]

    def _send_ack(self, seq: int) -> None:
        if self.has_failed():
            return
        if self._logging():
            log.debug("Link: >> ack seq=%d", seq)
        self.packet.send(_seq_header(0, seq & 0x7FF) if seq >= 0 else bytes((seq & 0xFF,)))

    def _queue_control(self, data: bytes) -> None:
        with self._lock:
            self.ack_wait_queue.append(AckWaitEntry(0, 4, time.monotonic(), data))
        self.packet.send(data)

    def _send_req_con(self) -> None:
        if self.has_failed():
            return
        if self._logging():
            log.debug("Link: >> con seq=4")
        # The expected acknowledgement is 0, not 4.
        self._queue_control(bytes((0x24,)) + (self.con_magic & 0xFFFFFFFF).to_bytes(4, "little"))

    def _send_req_req(self) -> None:
        if self.has_failed():
            return
        if self._logging():
            log.debug("Link: >> con seq=1")
        self._queue_control(bytes((0x21,)))

    def _send_req(self) -> None:
        if self.has_failed():
            return
        if self._logging():
            log.debug("Link: >> con seq=1")
        self.packet.send(bytes((0x20,)))

    def _become_sibo(self) -> None:
        self.failed = False
        self.link_type = LinkType.SIBO
        self.seq_mask = 7
        self.max_outstanding = 1
        self.rx_sequence = 0
        self.tx_sequence = 1
        self._purge_all_queues()
        self.packet.set_epoc(False)

    def _become_epoc(self) -> None:
        self.link_type = LinkType.EPOC
        self.failed = False
        self.seq_mask = 0x7FF
        self.max_outstanding = 8
        self.packet.set_epoc(True)

    def receive(self, data: bytes) -> None:
        """Handle one frame payload received from the peer."""
        if self.packet is None or not data:
            return
        data = bytes(data)
        kind = data[0] & 0xF0
        seq = data[0] & 0x0F
        if seq & 8:
            seq = ((data[1] if len(data) > 1 else 0) << 3) + (seq & 7)
            body = data[2:]
        else:
            body = data[1:]

        if kind == 0x30:
            self._receive_data(seq, body)
        elif kind == 0x00:
            self._receive_ack(seq, body)
        elif kind == 0x20:
            self._receive_request(seq, body)
        elif kind == 0x10:
            if self._logging():
                log.debug("Link: << DISC")
            self.failed = True
        else:
            log.error("Link: FATAL: Unknown packet type %d", kind)

    def _receive_data(self, seq: int, body: bytes) -> None:
        if self._logging():
            log.debug("Link: << dat seq=%d %s", seq, self._dump(body))
        if ((self.rx_sequence + 1) & self.seq_mask) != seq:
            self._send_ack(self.rx_sequence)
            if self._logging():
                log.debug("Link: DUP")
            return
        self.rx_sequence = (self.rx_sequence + 1) & self.seq_mask
        self._send_ack(self.rx_sequence)
        if len(body) == 3 and body[0] == 0 and body[2] in (1, 2):
            channel = body[1]
            if body[2] == 1:
                self.xoff[channel] = True
                if self._logging():
                    log.debug("Link: got XOFF for channel %d", channel)
            else:
                self.xoff[channel] = False
                if self._logging():
                    log.debug("Link: got XON for channel %d", channel)
                self._transmit_hold_queue(channel)
        else:
            self.controller.receive(body)

    def _receive_ack(self, seq: int, body: bytes) -> None:
        refstamp: float | None = None
        with self._lock:
            for entry in self.ack_wait_queue:
                if entry.seq == seq:
                    refstamp = entry.stamp
                    self.ack_wait_queue.remove(entry)
                    if self._logging():
                        log.debug("Link: << ack seq=%d %s", seq, self._dump(body))
                    break
        if refstamp is not None:
            if self.link_type is LinkType.UNKNOWN and seq == 0:
                # A SIBO peer treats our ReqReq as a plain Req and acks it with 0.
                self._become_sibo()
                if self._logging():
                    log.debug("Link: 1-linkType set to %s", self.link_type)
            self._multi_ack(refstamp)
            self._transmit_wait_queue()
            return
        # An ack for a frame we are not waiting for hints at the last frame
        # the peer received: resend the one after it at once.
        next_found = False
        with self._lock:
            now = time.monotonic()
            for entry in self.ack_wait_queue:
                if entry.seq == seq + 1:
                    next_found = True
                    expired = entry.txcount == 0
                    entry.txcount -= 1
                    if expired:
                        if self._logging():
                            log.debug("Link: >> TRANSMIT timeout seq=%d", entry.seq)
                        self.ack_wait_queue.remove(entry)
                    else:
                        entry.stamp = now
                        if self._logging():
                            log.debug("Link: >> RETRANSMIT seq=%d", entry.seq)
                        self.packet.send(entry.data)
                    break
        if not next_found and self._logging():
            log.debug("Link: << UNMATCHED ack seq=%d %s", seq, self._dump(body))

    def _receive_request(self, seq: int, body: bytes) -> None:
        con_found = False
        if seq > 3:
            # Possibly an EPOC link confirm answering our ReqReq.
            with self._lock:
                for entry in self.ack_wait_queue:
                    if entry.seq == 0 and entry.data[:1] == b"\x21":
                        self.ack_wait_queue.remove(entry)
                        con_found = True
                        break
            if con_found:
                self._become_epoc()
                if self._logging():
                    log.debug("Link: 2-linkType set to %s", self.link_type)
                    log.debug("Link: << con seq=%d %s", seq, self._dump(body))
        if con_found:
            self.rx_sequence = 0
            self.tx_sequence = 1
            self._send_ack(self.rx_sequence)
            return
        if self._logging():
            log.debug("Link: << req seq=%d %s", seq, self._dump(body))
        self.rx_sequence = self.tx_sequence = 0
        if seq > 0:
            self._become_epoc()
            if self._logging():
                log.debug("Link: 3-linkType set to %s", self.link_type)
            self._send_req_con()
        else:
            self._become_sibo()
            if self._logging():
                log.debug("Link: 4-linkType set to %s", self.link_type)
            self._send_ack(self.rx_sequence)

    def _transmit_hold_queue(self, channel: int) -> None:
        with self._lock:
            ready = [b for b in self.hold_queue if b and b[0] == channel]
            self.hold_queue = [b for b in self.hold_queue if not (b and b[0] == channel)]
        for data in ready:
            self._transmit(data)

    def _transmit_wait_queue(self) -> None:
        pending, self.wait_queue = self.wait_queue, []
        for data in pending:
            self._transmit(data)

    def _transmit(self, data: bytes) -> None:
        if self.has_failed():
            return
        remote_channel = data[0] if data else 0
        if self.xoff[remote_channel]:
            with self._lock:
                self.hold_queue.append(data)
            return
        with self._lock:
            outstanding = len(self.ack_wait_queue)
        if outstanding >= self.max_outstanding:
            self.wait_queue.append(data)
            return
        seq = self.tx_sequence
        self.tx_sequence = (self.tx_sequence + 1) & self.seq_mask
        if not data:
            # An empty payload is a request for a new link.
            txcount = 4
            if self._logging():
                log.debug("Link: >> req seq=%d", seq)
            frame = bytes(((0x20 + seq) & 0xFF,))
        else:
            txcount = 8
            if self._logging():
                log.debug("Link: >> dat seq=%d %s", seq, self._dump(data))
            frame = _seq_header(0x30, seq) + data
        with self._lock:
            self.ack_wait_queue.append(AckWaitEntry(seq, txcount, time.monotonic(), frame))
        self.packet.send(frame)

    def _multi_ack(self, refstamp: float) -> None:
        # Frames sent before the acknowledged one are implicitly acknowledged.
        with self._lock:
            self.ack_wait_queue = [e for e in self.ack_wait_queue if not e.stamp < refstamp]

    def retransmit(self) -> None:
        """Resend frames whose acknowledgement is overdue; give up on exhausted ones."""
        if self.has_failed():
            self._purge_all_queues()
            return
        with self._lock:
            now = time.monotonic()
            expired = now - self.retrans_timeout() / 1000
            for entry in list(self.ack_wait_queue):
                if not entry.stamp < expired:
                    continue
                exhausted = entry.txcount == 0
                entry.txcount -= 1
                if exhausted:
                    if self._logging():
                        log.debug("Link: >> TRANSMIT timeout seq=%d", entry.seq)
                    self.ack_wait_queue.remove(entry)
                    self.failed = True
                else:
                    entry.stamp = now
                    if self._logging():
                        log.debug("Link: >> RETRANSMIT seq=%d", entry.seq)
                    self.packet.send(entry.data)

    def flush(self) -> None:
        """Wait until all outstanding frames are acknowledged or timed out."""
        while self.stuff_to_send():
            time.sleep(1)

    def stuff_to_send(self) -> bool:
        """True if frames are still waiting for acknowledgement."""
        return not self.failed and bool(self.ack_wait_queue)

    def has_failed(self) -> bool:
        """True if the peer disconnected or stopped answering."""
        packet_failed = bool(self.packet.link_failed())
        if (self.failed or packet_failed) and self._logging():
            log.debug("Link: hasFailed: %s, %s", self.failed, packet_failed)
        self.failed = self.failed or packet_failed
        return self.failed

    def close(self) -> None:
        """Flush outstanding frames, stop retransmission and close the line."""
        self.flush()
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self.packet.close()