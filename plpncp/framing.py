"""Serial link framing: CRC-16 and the SYN/DLE/STX ... DLE/ETX frame format."""

from __future__ import annotations

from enum import Enum, auto

SYN = 0x16
DLE = 0x10
STX = 0x02
ETX = 0x03
EOT = 0x04

_CRC_POLY = 0x1021


def _build_crc_table() -> tuple[int, ...]:
    table = [0] * 256
    for i in range(128):
        carry = table[i] & 0x8000
        shifted = (table[i] << 1) & 0xFFFF
        if carry:
            table[i * 2] = shifted ^ _CRC_POLY
            table[i * 2 + 1] = shifted
        else:
            table[i * 2] = shifted
            table[i * 2 + 1] = shifted ^ _CRC_POLY
    return tuple(table)


_CRC_TABLE = _build_crc_table()


def crc_update(crc: int, byte: int) -> int:
    """Fold one byte into a running 16-bit CRC."""
    return ((crc << 8) ^ _CRC_TABLE[((crc >> 8) ^ byte) & 0xFF]) & 0xFFFF


def crc16(data: bytes) -> int:
    """Return the CRC of ``data``, starting from zero."""
    crc = 0
    for byte in data:
        crc = crc_update(crc, byte)
    return crc


def encode_frame(payload: bytes, epoc: bool = False) -> bytes:
    """Wrap ``payload`` in a link frame, escaping as the peer expects.

    DLE bytes are doubled. On EPOC links an ETX byte in the payload is
    sent as DLE EOT; on SIBO links it is sent unchanged.
    """
    out = bytearray((SYN, DLE, STX))
    crc = 0
    for byte in payload:
        crc = crc_update(crc, byte)
        if byte == ETX and epoc:
            out += bytes((DLE, EOT))
        elif byte == DLE:
            out += bytes((DLE, DLE))
        else:
            out.append(byte)
    out += bytes((DLE, ETX, crc >> 8, crc & 0xFF))
    return bytes(out)


class _State(Enum):
    HUNT_SYN = auto()
    HUNT_DLE = auto()
    HUNT_STX = auto()
    DATA = auto()
    CRC_HIGH = auto()
    CRC_LOW = auto()


class FrameDecoder:
    """Incremental decoder that turns a byte stream into frame payloads.

    ``started`` tells whether a frame start was ever seen since the last
    reset, ``pending`` counts the bytes received since the last complete
    frame, and ``bad_crc`` counts frames dropped for a CRC mismatch.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Forget all partial state and counters."""
        self._state = _State.HUNT_SYN
        self._buffer = bytearray()
        self._crc = 0
        self._received_crc = 0
        self._escape = False
        self.started = False
        self.pending = 0
        self.bad_crc = 0

    def _start_frame(self) -> None:
        self._state = _State.DATA
        self._buffer = bytearray()
        self._crc = 0
        self._escape = False
        self.started = True

    def _add(self, byte: int) -> None:
        self._crc = crc_update(self._crc, byte)
        self._buffer.append(byte)

    def feed(self, data: bytes) -> list[bytes]:
        """Consume ``data`` and return the payloads of all good frames."""
        frames: list[bytes] = []
        for byte in data:
            self.pending += 1
            state = self._state
            if state is _State.HUNT_SYN:
                if byte == SYN:
                    self._state = _State.HUNT_DLE
            elif state is _State.HUNT_DLE:
                self._state = _State.HUNT_STX if byte == DLE else _State.HUNT_SYN
            elif state is _State.HUNT_STX:
                if byte == STX:
                    self._start_frame()
                else:
                    self._state = _State.HUNT_SYN
            elif state is _State.DATA:
                if self._escape:
                    self._escape = False
                    if byte == ETX:
                        self._state = _State.CRC_HIGH
                    elif byte == EOT:
                        self._add(ETX)
                    else:
                        self._add(byte)
                elif byte == DLE:
                    self._escape = True
                else:
                    self._add(byte)
            elif state is _State.CRC_HIGH:
                self._received_crc = byte << 8
                self._state = _State.CRC_LOW
            else:
                self._received_crc |= byte
                self._state = _State.HUNT_SYN
                self.pending = 0
                if self._received_crc == self._crc:
                    frames.append(bytes(self._buffer))
                else:
                    self.bad_crc += 1
                self._buffer = bytearray()
        return frames