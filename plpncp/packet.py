"""Frame-level transport over a serial line."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Protocol

from .framing import FrameDecoder, encode_frame
from .serialport import close_serial, open_serial

PKT_DEBUG_LOG = 16
PKT_DEBUG_DUMP = 32
PKT_DEBUG_HANDSHAKE = 64

AUTO_BAUD_RATES = (115200, 57600, 38400, 19200)

# Bytes received without any frame start before the speed is deemed wrong.
_AUTO_BAUD_LIMIT = 15

log = logging.getLogger(__name__)


class FrameReceiver(Protocol):
    def receive(self, payload: bytes) -> None: ...


@dataclass(frozen=True)
class _ModemStatus:
    dtr: bool
    rts: bool
    cd: bool
    dsr: bool
    cts: bool

    def __str__(self) -> str:
        return (
            f"DTR:{int(self.dtr)} RTS:{int(self.rts)} DCD:{int(self.cd)} "
            f"DSR:{int(self.dsr)} CTS:{int(self.cts)}"
        )


def _default_factory(device: str, speed: int) -> Any:
    return open_serial(device, speed, False)


class Packet:
    """Sends and receives link frames on a serial device.

    A background thread reads the port and hands every good frame to
    ``link.receive``. A negative ``baud`` cycles through
    :data:`AUTO_BAUD_RATES` whenever the line looks like it runs at the
    wrong speed. ``port_factory(device, speed)`` opens the port.
    """

    def __init__(
        self,
        device: str,
        baud: int,
        link: FrameReceiver,
        verbose: int = 0,
        port_factory: Callable[[str, int], Any] | None = None,
    ) -> None:
        self.device = device
        self.baud = baud
        self.link = link
        self.verbose = verbose
        self.epoc = False
        self.last_fatal = False
        self._port_factory = port_factory or _default_factory
        self._decoder = FrameDecoder()
        self._write_lock = threading.Lock()
        self._serial_status: _ModemStatus | None = None
        self._stop = threading.Event()
        self._pump: threading.Thread | None = None
        if baud < 0:
            self._baud_index = 1
            self.speed = AUTO_BAUD_RATES[0]
        else:
            self._baud_index = 0
            self.speed = baud
        self._port = self._port_factory(device, self.speed)
        self._start_pump()

    def __enter__(self) -> Packet:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _logging(self, flag: int) -> bool:
        return bool(self.verbose & flag)

    def _start_pump(self) -> None:
        self._stop = threading.Event()
        self._pump = threading.Thread(target=self._run_pump, name="packet-pump", daemon=True)
        self._pump.start()

    def _stop_pump(self) -> None:
        self._stop.set()
        pump = self._pump
        if pump is not None and pump is not threading.current_thread():
            pump.join()
        self._pump = None

    def _run_pump(self) -> None:
        stop = self._stop
        while not stop.is_set():
            port = self._port
            if port is None:
                break
            try:
                data = port.read(max(1, port.in_waiting))
            except (OSError, ValueError):
                if not stop.is_set():
                    self.last_fatal = True
                break
            if not data:
                continue
            if self._logging(PKT_DEBUG_DUMP):
                log.debug("pump: read %d bytes: (%s)", len(data), data.hex(" "))
            try:
                self.feed(data)
            except Exception:
                log.exception("packet: error while handling received data")

    def set_epoc(self, epoc: bool) -> None:
        """Select EPOC (True) or SIBO (False) escaping for outgoing frames."""
        self.epoc = bool(epoc)

    def send(self, payload: bytes) -> None:
        """Frame ``payload`` and write it to the serial line."""
        payload = bytes(payload)
        if self._logging(PKT_DEBUG_LOG):
            if self._logging(PKT_DEBUG_DUMP):
                log.debug("packet: >> %s", payload.hex(" "))
            else:
                log.debug("packet: >>  len=%d", len(payload))
        frame = encode_frame(payload, self.epoc)
        with self._write_lock:
            port = self._port
            if port is None:
                return
            try:
                port.write(frame)
            except (OSError, ValueError):
                self.last_fatal = True
                return
        if self._logging(PKT_DEBUG_DUMP):
            log.debug("pump: wrote %d bytes: (%s)", len(frame), frame.hex(" "))

    def feed(self, data: bytes) -> None:
        """Process bytes read from the line, delivering complete frames."""
        bad_before = self._decoder.bad_crc
        for payload in self._decoder.feed(data):
            if self._logging(PKT_DEBUG_LOG):
                if self._logging(PKT_DEBUG_DUMP):
                    log.debug("packet: << %s", payload.hex(" "))
                else:
                    log.debug("packet: << len=%d", len(payload))
            self.link.receive(payload)
        if self._decoder.bad_crc > bad_before and self._logging(PKT_DEBUG_LOG):
            log.debug("packet: BAD CRC")
        if not self._decoder.started and self._decoder.pending > _AUTO_BAUD_LIMIT:
            self.reset()

    def _internal_reset(self) -> None:
        if self._logging(PKT_DEBUG_LOG):
            log.debug("resetting serial connection")
        port, self._port = self._port, None
        if port is not None:
            close_serial(port)
        time.sleep(0.1)
        self._decoder.reset()
        self.last_fatal = False
        self._serial_status = None
        self.speed = self.baud
        if self.baud < 0:
            self.speed = AUTO_BAUD_RATES[self._baud_index]
            self._baud_index = (self._baud_index + 1) % len(AUTO_BAUD_RATES)
        self._port = self._port_factory(self.device, self.speed)
        if self._logging(PKT_DEBUG_LOG):
            log.debug("serial connection set to %d baud", self.speed)

    def reset(self) -> None:
        """Reopen the serial line, moving on to the next speed when cycling."""
        in_pump = threading.current_thread() is self._pump
        if not in_pump:
            self._stop_pump()
        self._internal_reset()
        if not in_pump and self._port is not None:
            self._start_pump()

    def link_failed(self) -> bool:
        """Check the modem lines; raise DTR/RTS if needed. True if DSR is down."""
        port = self._port
        if port is None:
            return False
        failed = False
        try:
            status: _ModemStatus | None = _ModemStatus(
                dtr=bool(port.dtr), rts=bool(port.rts), cd=bool(port.cd),
                dsr=bool(port.dsr), cts=bool(port.cts),
            )
        except (OSError, ValueError):
            self.last_fatal = True
            status = None
        if status is None:
            failed = True
        else:
            if status != self._serial_status:
                if self._logging(PKT_DEBUG_HANDSHAKE):
                    log.debug("packet: < %s", status)
                if not (status.rts and status.dtr):
                    try:
                        port.dtr = True
                        port.rts = True
                    except (OSError, ValueError):
                        self.last_fatal = True
                    status = replace(status, dtr=True, rts=True)
                    if self._logging(PKT_DEBUG_HANDSHAKE):
                        log.debug("packet: > %s", status)
                self._serial_status = status
            if not status.dsr:
                failed = True
        if self._logging(PKT_DEBUG_LOG):
            if self.last_fatal:
                log.debug("packet: linkFATAL")
            if failed:
                log.debug("packet: linkFAILED")
        return self.last_fatal or failed

    def close(self) -> None:
        """Stop the reader thread and close the serial line."""
        self._stop_pump()
        port, self._port = self._port, None
        if port is not None:
            close_serial(port)