"""Opening and closing the serial device used for the link."""

from __future__ import annotations

import contextlib
import os
from collections.abc import Iterator

import serial

SUPPORTED_SPEEDS = (
    9600, 19200, 38400, 57600, 115200, 4800, 2400, 1200, 300, 75, 50,
)

# Read timeout in seconds, so that reader threads can notice shutdown.
READ_TIMEOUT = 0.1


class SerialSpeedError(ValueError):
    """Raised when the requested line speed is not supported."""


@contextlib.contextmanager
def _as_real_user() -> Iterator[None]:
    """Open the device with the real, not the effective, user id."""
    if not (hasattr(os, "geteuid") and hasattr(os, "seteuid")):
        yield
        return
    euid = os.geteuid()
    uid = os.getuid()
    if euid == uid:
        yield
        return
    os.seteuid(uid)
    try:
        yield
    finally:
        os.seteuid(euid)


def open_serial(device: str, speed: int, debug: bool = False) -> serial.SerialBase:
    """Open ``device`` at ``speed`` baud, 8N1, with RTS/CTS handshake.

    A speed of 0 leaves the line at zero baud. The port is opened for
    exclusive use. Raises :class:`SerialSpeedError` for an unsupported
    speed and ``OSError`` when the device cannot be opened.
    """
    if speed and speed not in SUPPORTED_SPEEDS:
        raise SerialSpeedError(f"Cannot match selected speed {speed}")
    if debug:
        print(f"using {device}...")
    port = serial.serial_for_url(device, do_not_open=True)
    port.baudrate = speed
    port.bytesize = serial.EIGHTBITS
    port.parity = serial.PARITY_NONE
    port.stopbits = serial.STOPBITS_ONE
    port.rtscts = True
    port.xonxoff = False
    port.timeout = READ_TIMEOUT
    port.exclusive = True
    with _as_real_user():
        port.open()
    if debug:
        print("open done")
    return port


def close_serial(port: serial.SerialBase) -> None:
    """Drop hardware handshake and close ``port``."""
    try:
        port.rtscts = False
    except (OSError, ValueError):
        pass
    port.close()