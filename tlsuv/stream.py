"""TLS client streams on top of pluggable transport sources."""

from __future__ import annotations

import asyncio
import socket
from abc import ABC, abstractmethod
from importlib import metadata
from typing import Callable, Iterable, Optional, Union

from .debug import LogLevel, log
from .engine import HandshakeState, TlsContext, TlsEngine, get_default_tls
from .tls_link import Link, LinkError, TlsLink, WriteCallback

SourceConnectCallback = Callable[["Source", Optional[BaseException]], None]
StreamConnectCallback = Callable[["TlsStream", Optional[BaseException]], None]
StreamReadCallback = Callable[["TlsStream", Optional[bytes], Optional[BaseException]], None]
StreamCloseCallback = Callable[["TlsStream"], None]


def version() -> str:
    """Return the installed version of the library, or ``"<unknown>"``."""
    try:
        return metadata.version("tlsuv")
    except metadata.PackageNotFoundError:
        return "<unknown>"


def _unchain(link: Link) -> None:
    child = link.child
    if child is not None:
        child.parent = None
        link.child = None


class Source(ABC):
    """A transport that connects to a host and exposes the connection as a link.

    The ``link`` is the bottom of a link chain: writes sent to it go to the
    network and bytes received are passed to its child.
    """

    def __init__(self, link: Optional[Link] = None) -> None:
        self.link: Link = link if link is not None else Link()

    @abstractmethod
    def connect(self, host: str, port: Union[str, int], callback: SourceConnectCallback) -> None:
        """Start connecting; ``callback(source, error)`` runs when done."""

    @abstractmethod
    def cancel(self) -> None:
        """Abort a pending connect and stop any I/O."""

    @abstractmethod
    def release(self) -> None:
        """Drop the connection so the source can be connected again."""


class _SocketLink(Link):
    """Bottom link that reads from and writes to an asyncio transport."""

    def __init__(self) -> None:
        super().__init__()
        self.transport: Optional[asyncio.Transport] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def read_start(self) -> None:
        self.reading = True
        transport = self.transport
        if transport is not None and not transport.is_closing():
            transport.resume_reading()

    def write(self, data: bytes, callback: Optional[WriteCallback] = None) -> None:
        transport = self.transport
        if transport is None or transport.is_closing():
            raise LinkError("socket is not connected")
        transport.write(data)
        if callback is not None and self.loop is not None:
            self.loop.call_soon(callback, None)

    def close(self, callback=None) -> None:
        self.shutdown()
        self.reading = False
        if callback is not None:
            callback(self)

    def shutdown(self) -> None:
        transport, self.transport = self.transport, None
        if transport is not None:
            transport.close()


class _TcpProtocol(asyncio.Protocol):
    def __init__(self, link: _SocketLink) -> None:
        self._link = link
        self._transport: Optional[asyncio.BaseTransport] = None
        self._finished = False

    def _active(self) -> bool:
        return not self._finished and self._link.transport is self._transport

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport
        transport.pause_reading()  # type: ignore[attr-defined]

    def data_received(self, data: bytes) -> None:
        if self._active():
            self._link.on_data(data)

    def eof_received(self) -> bool:
        if self._active():
            self._finished = True
            self._link.on_error(EOFError("connection closed by peer"))
        return False

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self._active():
            self._finished = True
            self._link.on_error(exc if exc is not None else EOFError("connection closed"))


class TcpSource(Source):
    """Source that opens a TCP connection on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._socket_link = _SocketLink()
        super().__init__(self._socket_link)
        self.loop = loop
        self.nodelay = False
        self.keepalive = False
        self.keepalive_delay = 0
        self._task: Optional[asyncio.Task] = None

    def connect(self, host: str, port: Union[str, int], callback: SourceConnectCallback) -> None:
        if self._task is not None:
            raise LinkError("connect already in progress")
        if self._socket_link.transport is not None:
            raise LinkError("source is already connected")
        loop = self.loop if self.loop is not None else asyncio.get_running_loop()
        self._socket_link.loop = loop
        self._task = loop.create_task(self._connect(loop, host, port, callback))

    async def _connect(
        self,
        loop: asyncio.AbstractEventLoop,
        host: str,
        port: Union[str, int],
        callback: SourceConnectCallback,
    ) -> None:
        try:
            transport, _ = await loop.create_connection(
                lambda: _TcpProtocol(self._socket_link), host, port
            )
        except OSError as exc:
            self._task = None
            log(LogLevel.WARN, "failed to connect to %s:%s: %s", host, port, exc)
            callback(self, exc)
            return
        self._task = None
        self._socket_link.transport = transport
        self._apply_options()
        callback(self, None)

    def _apply_options(self) -> None:
        transport = self._socket_link.transport
        if transport is None:
            return
        sock = transport.get_extra_info("socket")
        if sock is None:
            return
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self.nodelay))
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(self.keepalive))
            if self.keepalive and self.keepalive_delay > 0:
                idle = getattr(socket, "TCP_KEEPIDLE", None)
                if idle is None:
                    idle = getattr(socket, "TCP_KEEPALIVE", None)
                if idle is not None:
                    sock.setsockopt(socket.IPPROTO_TCP, idle, int(self.keepalive_delay))
        except OSError as exc:
            log(LogLevel.WARN, "failed to set socket options: %s", exc)

    def set_nodelay(self, enabled: bool) -> None:
        """Enable or disable Nagle's algorithm being bypassed."""
        self.nodelay = bool(enabled)
        self._apply_options()

    def set_keepalive(self, enabled: bool, delay: int) -> None:
        """Enable TCP keepalive with ``delay`` seconds of idle time."""
        self.keepalive = bool(enabled)
        self.keepalive_delay = int(delay) if enabled else 0
        self._apply_options()

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        self._socket_link.shutdown()

    def release(self) -> None:
        self.cancel()
        _unchain(self._socket_link)
        self._socket_link.reading = False


class TlsStream:
    """A client connection that runs TLS over a transport source."""

    def __init__(
        self,
        tls: Optional[TlsContext] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        source_factory: Optional[Callable[[], Source]] = None,
    ) -> None:
        self.loop = loop
        self.tls: TlsContext = tls if tls is not None else get_default_tls()
        self._source_factory = (
            source_factory if source_factory is not None else (lambda: TcpSource(self.loop))
        )
        self.socket: Optional[Source] = self._source_factory()
        self.tls_engine: Optional[TlsEngine] = None
        self.tls_link: Optional[TlsLink] = None
        self._app_link: Optional[Link] = None
        self.host: Optional[str] = None
        self.alpn_protocols: tuple[str, ...] = ()
        self._conn_cb: Optional[StreamConnectCallback] = None
        self._read_cb: Optional[StreamReadCallback] = None
        self._close_cb: Optional[StreamCloseCallback] = None

    def _tcp_source(self) -> TcpSource:
        if not isinstance(self.socket, TcpSource):
            raise TypeError("stream is not using a TCP source")
        return self.socket

    def set_protocols(self, protocols: Iterable[str]) -> None:
        """Offer these ALPN protocols on the next connection."""
        self.alpn_protocols = tuple(protocols)

    def get_protocol(self) -> Optional[str]:
        """Return the negotiated ALPN protocol, if any."""
        if self.tls_engine is not None:
            return self.tls_engine.get_alpn()
        return None

    def keepalive(self, enabled: bool, delay: int) -> None:
        """Configure TCP keepalive on the underlying socket."""
        self._tcp_source().set_keepalive(enabled, delay)

    def nodelay(self, enabled: bool) -> None:
        """Configure TCP_NODELAY on the underlying socket."""
        self._tcp_source().set_nodelay(enabled)

    def connect(self, host: str, port: int, callback: StreamConnectCallback) -> None:
        """Connect and run the TLS handshake; ``callback(stream, error)`` reports the result."""
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 0xFFFF:
            raise ValueError(f"invalid port: {port!r}")
        if self._conn_cb is not None:
            raise LinkError("connection already in progress")

        self.host = host
        self._conn_cb = callback
        if self.socket is None:
            self.socket = self._source_factory()
        try:
            self.socket.connect(host, str(port), self._on_src_connect)
        except BaseException:
            self._conn_cb = None
            raise

    def _finish_connect(self, error: Optional[BaseException]) -> None:
        callback, self._conn_cb = self._conn_cb, None
        if callback is not None:
            callback(self, error)

    def _on_src_connect(self, src: Source, error: Optional[BaseException]) -> None:
        if self._conn_cb is None:
            return
        if error is not None:
            log(LogLevel.WARN, "failed to connect: %s", error)
            self._finish_connect(error)
            return

        engine = self.tls.new_engine(self.host)
        if self.alpn_protocols:
            engine.set_protocols(list(self.alpn_protocols))
        self.tls_engine = engine

        tls_link = TlsLink(engine, self._on_handshake)
        tls_link.data = self
        app_link = Link(self._on_app_read)
        app_link.data = self

        _unchain(src.link)
        src.link.chain(tls_link)
        tls_link.chain(app_link)
        self.tls_link = tls_link
        self._app_link = app_link

        try:
            app_link.read_start()
        except (LinkError, OSError) as exc:
            log(LogLevel.WARN, "failed to start handshake: %s", exc)
            self._finish_connect(exc)

    def _on_handshake(self, link: TlsLink, status: HandshakeState) -> None:
        if self._conn_cb is None:
            return
        if status is HandshakeState.COMPLETE:
            self._finish_connect(None)
        elif status is HandshakeState.ERROR:
            reason = link.engine.strerror()
            log(LogLevel.WARN, "handshake failed: %s", reason)
            self._finish_connect(ConnectionAbortedError(reason or "TLS handshake failed"))
        else:
            log(LogLevel.WARN, "unexpected handshake status[%d]", status)
            self._finish_connect(ValueError(f"unexpected handshake status {int(status)}"))

    def _on_app_read(self, data: Optional[bytes], error: Optional[BaseException]) -> None:
        if self._read_cb is not None:
            self._read_cb(self, data, error)

    def read(self, read_cb: StreamReadCallback) -> None:
        """Set ``read_cb(stream, data, error)`` to receive decrypted data and errors."""
        self._read_cb = read_cb

    def write(self, data: bytes, callback: Optional[WriteCallback] = None) -> None:
        """Encrypt and send ``data``; ``callback(error)`` runs once it is written."""
        if self._app_link is None:
            raise LinkError("stream is not connected")
        self._app_link.write(data, callback)

    def close(self, callback: Optional[StreamCloseCallback] = None) -> None:
        """Close the connection; a pending connect is reported as cancelled."""
        self._close_cb = callback
        if self._app_link is not None:
            self._app_link.close(None)
        self._app_link = None
        self.tls_link = None

        if self._conn_cb is not None:
            self._finish_connect(asyncio.CancelledError("connect canceled"))
        if self.socket is not None:
            self.socket.cancel()
            self.socket.release()
            self.socket = None

        close_cb, self._close_cb = self._close_cb, None
        if close_cb is not None:
            close_cb(self)

    def free(self) -> None:
        """Release the host name, engine and socket held by the stream."""
        self.host = None
        self.tls_engine = None
        if self.socket is not None:
            self.socket.release()
            self.socket = None