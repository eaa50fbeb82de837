"""TLS engine interface and a default implementation on the ssl module."""

from __future__ import annotations

import ssl
from abc import ABC, abstractmethod
from enum import Enum, IntEnum
from typing import Callable, Iterable, Optional, Union

TLS_BUF_SIZE = 32 * 1024


class HandshakeState(IntEnum):
    """Progress of a TLS handshake."""

    BEFORE = 0
    CONTINUE = 1
    COMPLETE = 2
    ERROR = 3


class TlsResult(IntEnum):
    """Outcome of processing inbound TLS records."""

    OK = 0
    ERR = -1
    EOF = -2
    READ_AGAIN = -3
    MORE_AVAILABLE = -4
    HAS_WRITE = -5


class HashAlgo(Enum):
    """Digest algorithms used for signatures."""

    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"


class TlsError(Exception):
    """Raised when a TLS engine or context cannot do what was asked."""


class TlsEngine(ABC):
    """A memory-only TLS state machine for one connection.

    The engine never touches the network: it consumes bytes received from
    the peer and returns the bytes that must be sent back.
    """

    @abstractmethod
    def set_protocols(self, protocols: Iterable[str]) -> None:
        """Offer these ALPN protocols in the next handshake."""

    @abstractmethod
    def handshake_state(self) -> HandshakeState:
        """Return the current handshake state."""

    @abstractmethod
    def handshake(self, data: bytes = b"") -> tuple[HandshakeState, bytes]:
        """Start or continue the handshake with bytes from the peer.

        Returns the new state and the bytes to send to the peer.
        """

    @abstractmethod
    def get_alpn(self) -> Optional[str]:
        """Return the negotiated ALPN protocol, if any."""

    @abstractmethod
    def close(self) -> bytes:
        """Return the close-notify bytes to send to the peer."""

    @abstractmethod
    def write(self, data: bytes) -> bytes:
        """Wrap application data; returns the bytes to send to the peer.

        Bytes the engine still has pending are included, so ``write(b"")``
        fetches them.
        """

    @abstractmethod
    def read(self, data: bytes) -> tuple[TlsResult, bytes]:
        """Process bytes from the peer; returns a result and application data."""

    @abstractmethod
    def strerror(self) -> Optional[str]:
        """Describe the last error, or return None."""

    @abstractmethod
    def reset(self) -> None:
        """Return the engine to its initial state for a new connection."""


class TlsContext(ABC):
    """Shared TLS configuration that produces engines."""

    @abstractmethod
    def new_engine(self, host: Optional[str]) -> TlsEngine:
        """Create an engine for a connection to ``host``."""


CaSource = Union[str, bytes, None]


class SslContext(TlsContext):
    """TLS context backed by the standard ssl module.

    ``ca`` may be PEM text or the path of a CA bundle; ``None`` uses the
    system trust store.
    """

    def __init__(self, ca: CaSource = None) -> None:
        if isinstance(ca, bytes):
            ca = ca.decode("ascii")
        self._ca = ca or None
        self._contexts: dict[tuple[tuple[str, ...], bool], ssl.SSLContext] = {}
        self._ssl_context((), True)

    def _ssl_context(self, protocols: tuple[str, ...], verify_host: bool) -> ssl.SSLContext:
        key = (protocols, verify_host)
        ctx = self._contexts.get(key)
        if ctx is not None:
            return ctx
        try:
            if self._ca is None:
                ctx = ssl.create_default_context()
            elif "-----BEGIN" in self._ca:
                ctx = ssl.create_default_context(cadata=self._ca)
            else:
                ctx = ssl.create_default_context(cafile=self._ca)
        except (OSError, ssl.SSLError) as exc:
            raise TlsError(f"failed to load CA: {exc}") from exc
        ctx.check_hostname = verify_host
        if protocols:
            ctx.set_alpn_protocols(list(protocols))
        self._contexts[key] = ctx
        return ctx

    def new_engine(self, host: Optional[str]) -> SslEngine:
        return SslEngine(self, host)


class SslEngine(TlsEngine):
    """Client-side TLS engine built on ``ssl.SSLObject`` and memory BIOs."""

    def __init__(self, context: SslContext, host: Optional[str]) -> None:
        self._context = context
        self._host = host or None
        self._protocols: tuple[str, ...] = ()
        self.reset()

    def _new_object(self) -> None:
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        ctx = self._context._ssl_context(self._protocols, self._host is not None)
        self._ssl = ctx.wrap_bio(
            self._incoming, self._outgoing, server_side=False, server_hostname=self._host
        )

    def _fail(self, exc: ssl.SSLError) -> None:
        self._error = str(exc)

    def set_protocols(self, protocols: Iterable[str]) -> None:
        if self._state is not HandshakeState.BEFORE:
            raise TlsError("protocols must be set before the handshake starts")
        self._protocols = tuple(protocols)
        self._new_object()

    def handshake_state(self) -> HandshakeState:
        return self._state

    def handshake(self, data: bytes = b"") -> tuple[HandshakeState, bytes]:
        if self._state in (HandshakeState.COMPLETE, HandshakeState.ERROR):
            return self._state, b""
        if data:
            self._incoming.write(data)
        self._state = HandshakeState.CONTINUE
        try:
            self._ssl.do_handshake()
        except ssl.SSLWantReadError:
            pass
        except ssl.SSLError as exc:
            self._fail(exc)
            self._state = HandshakeState.ERROR
        else:
            self._state = HandshakeState.COMPLETE
        return self._state, self._outgoing.read()

    def get_alpn(self) -> Optional[str]:
        if self._state is not HandshakeState.COMPLETE:
            return None
        return self._ssl.selected_alpn_protocol()

    def close(self) -> bytes:
        if self._state is not HandshakeState.COMPLETE:
            return b""
        try:
            self._ssl.unwrap()
        except ssl.SSLWantReadError:
            pass
        except ssl.SSLError as exc:
            self._fail(exc)
        return self._outgoing.read()

    def write(self, data: bytes) -> bytes:
        if self._state is not HandshakeState.COMPLETE:
            raise TlsError("handshake is not complete")
        if data:
            try:
                self._ssl.write(data)
            except ssl.SSLError as exc:
                self._fail(exc)
                raise TlsError(self._error) from exc
        return self._outgoing.read()

    def read(self, data: bytes) -> tuple[TlsResult, bytes]:
        if self._state is not HandshakeState.COMPLETE:
            raise TlsError("handshake is not complete")
        if data:
            self._incoming.write(data)
        chunks = []
        result = TlsResult.OK
        while True:
            try:
                chunk = self._ssl.read(TLS_BUF_SIZE)
            except ssl.SSLWantReadError:
                break
            except ssl.SSLZeroReturnError:
                result = TlsResult.EOF
                break
            except ssl.SSLError as exc:
                self._fail(exc)
                result = TlsResult.ERR
                break
            if not chunk:
                result = TlsResult.EOF
                break
            chunks.append(chunk)
        if result is TlsResult.OK and self._outgoing.pending:
            result = TlsResult.HAS_WRITE
        return result, b"".join(chunks)

    def strerror(self) -> Optional[str]:
        return self._error

    def reset(self) -> None:
        self._state = HandshakeState.BEFORE
        self._error: Optional[str] = None
        self._new_object()


ContextFactory = Callable[[CaSource], TlsContext]

_factory: ContextFactory = SslContext
_default: Optional[TlsContext] = None


def set_default_tls_impl(factory: Optional[ContextFactory]) -> None:
    """Choose the factory used by :func:`default_tls_context`; None restores the built-in one."""
    global _factory
    _factory = factory if factory is not None else SslContext


def default_tls_context(ca: CaSource = None) -> TlsContext:
    """Create a TLS context with the current default implementation."""
    return _factory(ca)


def get_default_tls() -> TlsContext:
    """Return the process-wide shared TLS context, creating it on first use."""
    global _default
    if _default is None:
        _default = default_tls_context(None)
    return _default