# plpncp

`plpncp` holds the lower layers for talking to a Psion handheld
(SIBO / Series 3 or EPOC / Series 5) over a serial cable: the byte-stuffed
frame format with its CRC-16, framed I/O on a serial port, and the link layer
that numbers, acknowledges and retransmits frames. It also has a small client
for the remote print service offered through a link daemon.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

### `plpncp.framing`

- `crc_update(crc, byte)` folds one byte into a running 16-bit CRC;
  `crc16(data)` computes the CRC of a whole byte string from zero.
- `encode_frame(payload, epoc=False)` wraps a payload as
  `SYN DLE STX ... DLE ETX crc-high crc-low`. DLE bytes are doubled; on EPOC
  links an ETX byte in the payload is sent as `DLE EOT`.
- `FrameDecoder` turns a byte stream back into payloads. `feed(data)` returns
  the payloads of every complete frame with a good CRC; frames with a bad CRC
  are dropped and counted in `bad_crc`. `started` tells whether a frame start
  has been seen and `pending` counts bytes since the last complete frame.
  `reset()` clears all of it.

```python
from plpncp.framing import encode_frame, FrameDecoder, crc16

frame = encode_frame(b"\x30hello", epoc=True)
decoder = FrameDecoder()
print(decoder.feed(frame))   # [b'0hello']
```

### `plpncp.serialport`

- `open_serial(device, speed, debug=False)` opens a port for exclusive use at
  8N1 with RTS/CTS handshake. Supported speeds are 50 to 115200 baud; any
  other non-zero speed raises `SerialSpeedError`. Where the process runs with
  a different effective user id, the device is opened as the real user.
- `close_serial(port)` turns hardware handshake off and closes the port.

### `plpncp.packet`

`Packet(device, baud, link, verbose=0, port_factory=None)` opens the port and
starts a reader thread that hands every good frame to `link.receive(payload)`.
`send(payload)` frames and writes a payload; `set_epoc(epoc)` selects the
escaping. A negative `baud` cycles through 115200, 57600, 38400 and 19200,
moving on whenever more than 15 bytes arrive without a frame start.
`link_failed()` checks the modem lines, raises DTR and RTS if they are down,
and reports failure when DSR is low or the port has failed. `reset()` reopens
the line; `close()` stops the reader and closes the port. `Packet` is also a
context manager.

### `plpncp.link`

`Link(device, baud, controller, verbose=0, packet_factory=None, start_thread=True)`
builds a `Packet` and immediately asks the peer for a link. It detects
whether the peer speaks SIBO (3-bit sequence numbers, one frame in flight) or
EPOC (11-bit sequence numbers, up to eight frames in flight), sets
`link_type` to a `LinkType`, and passes incoming data payloads to
`controller.receive(payload)`. It honours per-channel XOFF/XON, resends
frames whose acknowledgement is overdue (`retransmit()`, run by a background
thread when `start_thread` is true) and gives up on a frame after its retries
run out.

Other members: `send(data)` (payloads over 300 bytes mark the link failed),
`has_failed()`, `stuff_to_send()`, `flush()`, `purge_queue(channel)`,
`reset()`, `retrans_timeout()` and `close()`.

### `plpncp.wprt`

`Wprt(sock)` talks to the `SYS$WPRT` print service. `sock` must offer
`send_buffer(data)`, `get_buffer(wait)`, `reconnect()` and `close()`, and
report failures as `OSError`. Methods: `init_printer()`, `get_data(data=b"")`,
`cancel_job()`, `stop()`, `reset()`, `reconnect()` and `close()`. Failed
requests raise `WprtError`, whose `status` holds the error code.

## What this package does not do

There is no daemon and no command to run. The package does not multiplex
channels on top of the link layer, does not answer the peer's channel
control messages, and does not accept connections from local clients; a
`Link` needs a `controller` of your own to receive its payloads, and `Wprt`
needs a connection object of your own that reaches a running link daemon.