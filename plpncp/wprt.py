"""Client for the remote print service reached through the link daemon."""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any

E_PSI_GEN_NONE = 0
E_PSI_GEN_FAIL = -1
E_PSI_FILE_DISC = -50

CONNECT_NAME = "SYS$WPRT"

PRINTER_MAJOR_VERSION = 2
PRINTER_MINOR_VERSION = 0

log = logging.getLogger(__name__)


class _Command(IntEnum):
    INIT = 0x00
    GET = 0xF0
    CANCEL = 0xF1
    STOP = 0xFF


class WprtError(Exception):
    """A print service request failed; ``status`` holds the error code."""

    def __init__(self, status: int, message: str | None = None) -> None:
        super().__init__(message or f"print service error {status}")
        self.status = status


class Wprt:
    """Remote print services.

    ``sock`` is a connection to the link daemon offering
    ``send_buffer(data)``, ``get_buffer(wait)``, ``reconnect()`` and
    ``close()``; failures are reported as ``OSError``.
    """

    def __init__(self, sock: Any) -> None:
        self.sock = sock
        self.status = E_PSI_FILE_DISC
        self.reset()

    def __enter__(self) -> Wprt:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self.status != E_PSI_FILE_DISC

    def reset(self) -> None:
        """Announce the print service to the daemon and await its answer."""
        self.status = E_PSI_FILE_DISC
        try:
            self.sock.send_buffer(CONNECT_NAME.encode("latin-1") + b"\0")
            reply = self.sock.get_buffer(True)
        except OSError:
            return
        if reply is not None and bytes(reply).split(b"\0", 1)[0] == b"Ok":
            self.status = E_PSI_GEN_NONE

    def reconnect(self) -> None:
        """Reopen the connection to the daemon and announce the service again."""
        try:
            self.sock.reconnect()
        except OSError:
            self.status = E_PSI_FILE_DISC
            return
        self.reset()

    def _send_command(self, command: _Command, data: bytes = b"") -> bool:
        if not self.connected:
            self.reconnect()
            if not self.connected:
                return False
        message = bytes((int(command),)) + bytes(data)
        try:
            self.sock.send_buffer(message)
            return True
        except OSError:
            pass
        self.reconnect()
        try:
            self.sock.send_buffer(message)
            return True
        except OSError:
            self.status = E_PSI_FILE_DISC
            return False

    def _get_response(self) -> bytes:
        try:
            reply = self.sock.get_buffer(True)
        except OSError:
            reply = None
        if reply is None:
            self.status = E_PSI_FILE_DISC
            raise WprtError(E_PSI_FILE_DISC, "print service disconnected")
        return bytes(reply)

    def _request(self, command: _Command, data: bytes = b"") -> bytes:
        if not self._send_command(command, data):
            raise WprtError(E_PSI_FILE_DISC, "print service disconnected")
        try:
            return self._get_response()
        except WprtError:
            log.error("WPRT ERR: no response to command 0x%02x", int(command))
            raise

    def init_printer(self) -> None:
        """Initialise the remote printer; raise :class:`WprtError` on a bad answer."""
        reply = self._request(
            _Command.INIT, bytes((PRINTER_MAJOR_VERSION, PRINTER_MINOR_VERSION))
        )
        version = int.from_bytes(reply[1:3], "little")
        if len(reply) != 3 or reply[0] != 0 or version != PRINTER_MAJOR_VERSION:
            raise WprtError(E_PSI_GEN_FAIL, "unexpected printer initialisation reply")

    def get_data(self, data: bytes = b"") -> bytes:
        """Fetch the next block of print data."""
        return self._request(_Command.GET, data)

    def cancel_job(self) -> bytes:
        """Cancel the running print job; return the peer's answer."""
        return self._request(_Command.CANCEL)

    def stop(self) -> bool:
        """Stop the remote print server; True if the request was sent."""
        return self._send_command(_Command.STOP)

    def close(self) -> None:
        """Close the connection to the daemon."""
        self.sock.close()