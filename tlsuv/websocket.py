"""WebSocket client: frame codec and a connection that upgrades over HTTP."""

from __future__ import annotations

import os
import random
import string
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

import h11

from .debug import LogLevel, log
from .engine import HandshakeState, TlsContext, get_default_tls
from .http import parse_url
from .stream import Source, TcpSource
from .tls_link import Link, LinkError, TlsLink, WriteCallback

DEFAULT_PATH = "/"

_FIN = 0x80
_OP_BITS = 0x0F
_MASK_BIT = 0x80
_LEN_BITS = 0x7F

# 22 random characters followed by "==", drawn from this 64-symbol table.
_KEY_ALPHABET = (
    string.ascii_uppercase + string.ascii_lowercase + string.ascii_lowercase[:10] + "+/"
)

ConnectCallback = Callable[["WebSocket", Optional[BaseException]], None]
DataCallback = Callable[["WebSocket", Optional[bytes], Optional[BaseException]], None]
CloseCallback = Callable[["WebSocket"], None]


class OpCode(IntEnum):
    """WebSocket frame opcodes."""

    TXT = 0x1
    BIN = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA


@dataclass(frozen=True)
class Frame:
    """A decoded WebSocket frame with its payload already unmasked."""

    opcode: int
    payload: bytes
    fin: bool = True
    masked: bool = False


def generate_key(rng=None) -> str:
    """Return a random ``Sec-WebSocket-Key`` value of 24 characters."""
    source = rng if rng is not None else random
    return "".join(_KEY_ALPHABET[source.getrandbits(6)] for _ in range(22)) + "=="


def _apply_mask(data: bytes, mask: bytes) -> bytes:
    if not mask or not data:
        return data
    size = len(data)
    key = (mask * (size // 4 + 1))[:size]
    return (int.from_bytes(data, "big") ^ int.from_bytes(key, "big")).to_bytes(size, "big")


def encode_frame(payload: bytes, opcode: int = OpCode.BIN, mask: Optional[bytes] = None) -> bytes:
    """Build a final frame carrying ``payload``.

    ``mask`` is the 4-byte masking key; ``None`` picks a random one and an
    empty value sends the payload unmasked.
    """
    payload = bytes(payload)
    mask = os.urandom(4) if mask is None else bytes(mask)
    if len(mask) not in (0, 4):
        raise ValueError("mask must be 4 bytes long")

    size = len(payload)
    mask_bit = _MASK_BIT if mask else 0
    header = bytearray([_FIN | (int(opcode) & _OP_BITS)])
    if size < 126:
        header.append(mask_bit | size)
    elif size <= 0xFFFF:
        header.append(mask_bit | 126)
        header += struct.pack(">H", size)
    else:
        header.append(mask_bit | 127)
        header += struct.pack(">Q", size)
    return bytes(header) + mask + _apply_mask(payload, mask)


def decode_frame(data: bytes) -> tuple[Frame, int]:
    """Decode one frame from the start of ``data``.

    Returns the frame and the number of bytes it occupied.  Raises
    ValueError if ``data`` does not hold a whole frame.
    """
    data = bytes(data)
    if len(data) < 2:
        raise ValueError("incomplete frame header")
    first, second = data[0], data[1]
    masked = bool(second & _MASK_BIT)
    size = second & _LEN_BITS
    pos = 2
    if size == 126:
        if len(data) < pos + 2:
            raise ValueError("incomplete frame length")
        (size,) = struct.unpack_from(">H", data, pos)
        pos += 2
    elif size == 127:
        if len(data) < pos + 8:
            raise ValueError("incomplete frame length")
        (size,) = struct.unpack_from(">Q", data, pos)
        pos += 8

    mask = b""
    if masked:
        if len(data) < pos + 4:
            raise ValueError("incomplete frame mask")
        mask = data[pos:pos + 4]
        pos += 4

    end = pos + size
    if len(data) < end:
        raise ValueError("incomplete frame payload")
    frame = Frame(
        opcode=first & _OP_BITS,
        payload=_apply_mask(data[pos:end], mask),
        fin=bool(first & _FIN),
        masked=masked,
    )
    return frame, end


def _unchain(link: Link) -> None:
    child = link.child
    if child is not None:
        child.parent = None
        link.child = None


class _WsLink(Link):
    """Top link of a websocket chain; hands traffic to its websocket."""

    def __init__(self, ws: WebSocket) -> None:
        super().__init__()
        self._ws = ws
        self.data = ws

    def read_start(self) -> None:
        log(LogLevel.VERB, "starting ws")
        self.reading = True
        if self.parent is not None and not self.parent.reading:
            self.parent.read_start()
        self._ws._send_upgrade()

    def on_data(self, data: bytes) -> None:
        self._ws._on_data(data)

    def on_error(self, error: BaseException) -> None:
        self._ws._on_error(error)


class WebSocket:
    """Client websocket connection over a transport source, optionally with TLS."""

    def __init__(self, loop=None, src: Optional[Source] = None) -> None:
        self.loop = loop
        self.src: Optional[Source] = src if src is not None else TcpSource(loop)
        self.tls: Optional[TlsContext] = None
        self.host: Optional[str] = None
        self.closed = False
        self.read_cb: Optional[DataCallback] = None
        self._conn_cb: Optional[ConnectCallback] = None
        self._close_cb: Optional[CloseCallback] = None
        self._pending = False
        self._path = DEFAULT_PATH
        self._headers: dict[str, tuple[str, str]] = {}
        self._http: Optional[h11.Connection] = None
        self._buffer = b""
        self._ws_link: Optional[_WsLink] = None
        self._tls_link: Optional[TlsLink] = None

        self.set_header("Upgrade", "websocket")
        self.set_header("Connection", "Upgrade")
        self.set_header("Sec-WebSocket-Key", generate_key())
        self.set_header("Sec-WebSocket-Version", "13")

    def set_tls(self, context: Optional[TlsContext]) -> None:
        """Use ``context`` for TLS on the next connection."""
        self.tls = context

    def set_header(self, name: str, value: Optional[str]) -> None:
        """Set a header of the upgrade request; ``None`` removes it."""
        key = name.lower()
        if value is None:
            self._headers.pop(key, None)
        else:
            self._headers[key] = (name, value)

    def connect(self, url: str, conn_cb: ConnectCallback, data_cb: DataCallback) -> None:
        """Connect to ``url`` (ws:// or wss://).

        ``conn_cb(ws, error)`` reports the upgrade result and
        ``data_cb(ws, data, error)`` receives messages and read errors.
        """
        try:
            parsed = parse_url(url)
        except ValueError:
            log(LogLevel.ERR, "invalid websocket URL: %s", url)
            raise

        if parsed.scheme is None:
            log(LogLevel.ERR, "invalid URL: no scheme")
            raise ValueError(f"invalid URL: no scheme in {url!r}")
        scheme = parsed.scheme.lower()
        if scheme == "ws":
            port, secure = 80, False
        elif scheme == "wss":
            port, secure = 443, True
        else:
            log(LogLevel.ERR, "scheme(%s) is not supported", parsed.scheme)
            raise ValueError(f"scheme {parsed.scheme!r} is not supported")

        if secure and self.tls is None:
            self.set_tls(get_default_tls())

        host = parsed.hostname
        if host is None:
            log(LogLevel.ERR, "invalid URL: no host")
            raise ValueError(f"invalid URL: no host in {url!r}")
        if parsed.port:
            port = parsed.port

        if self.src is None:
            raise LinkError("websocket is closed")

        self._conn_cb = conn_cb
        if self.tls is not None:
            tls_link = TlsLink(self.tls.new_engine(host), self._on_tls_handshake)
            tls_link.data = self
            self._tls_link = tls_link

        self._path = parsed.path or DEFAULT_PATH
        self.set_header("host", host)
        self.host = host
        self.read_cb = data_cb
        log(LogLevel.DEBG, "connecting to '%s:%d'", host, port)
        self.src.connect(host, str(port), self._on_src_connect)

    def write(self, data: bytes, callback: Optional[WriteCallback] = None) -> None:
        """Send ``data`` as one binary frame; ``callback(error)`` runs once written."""
        if self.closed:
            raise ConnectionResetError("websocket is closed")
        if self._ws_link is None:
            raise LinkError("websocket is not connected")
        self._ws_link.write(encode_frame(data, OpCode.BIN), self._write_done(callback))

    def close(self, callback: Optional[CloseCallback] = None) -> None:
        """Close the websocket; ``callback(ws)`` runs if it was still open."""
        self._close_cb = callback
        link = self._ws_link
        if link is not None:
            link.close(self._on_link_closed)
        else:
            self._on_closed()

    def _write_done(self, callback: Optional[WriteCallback]) -> WriteCallback:
        def done(error: Optional[BaseException]) -> None:
            log(LogLevel.VERB, "write complete: %s", error)
            if error is not None:
                self.closed = True
            if callback is not None:
                callback(error)

        return done

    def _finish_connect(self, error: Optional[BaseException]) -> None:
        self._pending = False
        callback = self._conn_cb
        if callback is not None:
            callback(self, error)

    def _on_src_connect(self, src: Source, error: Optional[BaseException]) -> None:
        log(LogLevel.DEBG, "connect result: %s", error)
        if error is not None:
            self.closed = True
            if self._conn_cb is not None:
                self._conn_cb(self, error)
            return

        self._pending = True
        self._http = h11.Connection(our_role=h11.CLIENT)
        self._buffer = b""
        ws_link = _WsLink(self)
        self._ws_link = ws_link

        _unchain(src.link)
        try:
            if self._tls_link is not None:
                src.link.chain(self._tls_link)
                self._tls_link.chain(ws_link)
                self._tls_link.read_start()
            else:
                src.link.chain(ws_link)
                ws_link.read_start()
        except (LinkError, OSError) as exc:
            log(LogLevel.WARN, "failed to start websocket: %s", exc)
            self._finish_connect(exc)

    def _on_tls_handshake(self, link: TlsLink, status: HandshakeState) -> None:
        log(LogLevel.DEBG, "tls HS complete %d", status)
        if status is HandshakeState.COMPLETE and self._ws_link is not None:
            self._ws_link.read_start()
        elif self._pending:
            reason = link.engine.strerror()
            self._finish_connect(ConnectionAbortedError(reason or "TLS handshake failed"))

    def _send_upgrade(self) -> None:
        conn = self._http
        if conn is None or self._ws_link is None:
            return
        request = h11.Request(
            method="GET", target=self._path, headers=list(self._headers.values())
        )
        payload = conn.send(request) + conn.send(h11.EndOfMessage())
        log(LogLevel.VERB, "starting WebSocket handshake(sending %d bytes)", len(payload))
        self._ws_link.write(payload, self._write_done(None))

    def _process_upgrade(self, data: bytes) -> Optional[bytes]:
        conn = self._http
        try:
            conn.receive_data(data)
            while True:
                event = conn.next_event()
                if event is h11.NEED_DATA or event is h11.PAUSED:
                    return None
                if isinstance(event, h11.InformationalResponse):
                    if event.status_code == 101:
                        self._http = None
                        log(LogLevel.VERB, "websocket connected")
                        self._finish_connect(None)
                        return conn.trailing_data[0]
                    continue
                if isinstance(event, h11.Response):
                    self._http = None
                    reason = event.reason.decode("latin-1")
                    log(
                        LogLevel.ERR,
                        "failed to connect to websocket: %s(%d)",
                        reason, event.status_code,
                    )
                    self._finish_connect(
                        ConnectionRefusedError(
                            f"failed to connect to websocket: {reason}({event.status_code})"
                        )
                    )
                    return None
                if isinstance(event, h11.ConnectionClosed):
                    return None
        except h11.RemoteProtocolError as exc:
            log(LogLevel.ERR, "failed to parse connect/upgrade response")
            self._http = None
            self._finish_connect(
                ConnectionError(f"failed to parse connect/upgrade response: {exc}")
            )
            return None

    def _on_data(self, data: bytes) -> None:
        if self._http is not None:
            rest = self._process_upgrade(data)
            if rest is None:
                return
            data = rest

        self._buffer += data
        while self._buffer:
            try:
                frame, used = decode_frame(self._buffer)
            except ValueError:
                break
            self._buffer = self._buffer[used:]
            self._handle_frame(frame)

    def _handle_frame(self, frame: Frame) -> None:
        op = frame.opcode
        if op in (OpCode.TXT, OpCode.BIN):
            log(LogLevel.TRACE, "got data %d masked=%d", len(frame.payload), frame.masked)
            self._deliver(frame.payload, None)
        elif op == OpCode.CLOSE:
            log(LogLevel.TRACE, "got close")
            self._deliver(None, EOFError("websocket closed by peer"))
        elif op == OpCode.PING:
            log(LogLevel.TRACE, "got ping masked=%d len=%d", frame.masked, len(frame.payload))
            self._send_pong(frame.payload)
        elif op == OpCode.PONG:
            log(LogLevel.TRACE, "got pong")
        else:
            log(LogLevel.INFO, "got unsupported frame %x", op)

    def _deliver(self, data: Optional[bytes], error: Optional[BaseException]) -> None:
        if self.read_cb is not None:
            self.read_cb(self, data, error)

    def _send_pong(self, payload: bytes) -> None:
        log(LogLevel.TRACE, "send_pong len=%d", len(payload))
        if self._ws_link is None:
            return
        self._ws_link.write(encode_frame(payload, OpCode.PONG), self._write_done(None))

    def _on_error(self, error: BaseException) -> None:
        self.closed = True
        if self._pending:
            self._finish_connect(error)
        else:
            self._deliver(None, error)

    def _on_link_closed(self, link: Link) -> None:
        self._on_closed()
        self._ws_link = None

    def _on_closed(self) -> None:
        if not self.closed and self._close_cb is not None:
            self._close_cb(self)
        self._http = None
        self.host = None
        self._tls_link = None
        if self.src is not None:
            self.src.cancel()
            self.src.release()
            self.src = None
        self.closed = True