"""Chainable stream links and a link that runs TLS over its parent."""

from __future__ import annotations

from typing import Callable, Optional

from .debug import LogLevel, log
from .engine import HandshakeState, TlsEngine, TlsError, TlsResult

ReadCallback = Callable[[Optional[bytes], Optional[BaseException]], None]
WriteCallback = Callable[[Optional[BaseException]], None]
CloseCallback = Callable[["Link"], None]
HandshakeCallback = Callable[["TlsLink", HandshakeState], None]


class LinkError(Exception):
    """Raised when a link is used in a way its chain does not allow."""


class Link:
    """One stage of a bidirectional byte pipeline.

    The parent is the stage nearer the network and the child the stage
    nearer the application.  Writes travel towards the parent; received
    data and errors travel towards the child.  A link without a child
    hands what it receives to ``read_cb(data, error)``.
    """

    def __init__(self, read_cb: Optional[ReadCallback] = None) -> None:
        self.parent: Optional[Link] = None
        self.child: Optional[Link] = None
        self.read_cb = read_cb
        self.reading = False
        self.data: object = None

    def chain(self, child: Link) -> None:
        """Attach ``child`` on top of this link."""
        if self.child is not None:
            raise LinkError("link already has a child")
        if child.parent is not None:
            raise LinkError("child link is already chained")
        self.child = child
        child.parent = self

    def read_start(self) -> None:
        """Start reading, asking the parent to start as well."""
        self.reading = True
        if self.parent is not None:
            self.parent.read_start()

    def write(self, data: bytes, callback: Optional[WriteCallback] = None) -> None:
        """Send ``data`` towards the network through the parent."""
        if self.parent is None:
            raise LinkError("link has no parent to write to")
        self.parent.write(data, callback)

    def close(self, callback: Optional[CloseCallback] = None) -> None:
        """Close this link and the links beneath it."""
        if self.parent is not None:
            self.parent.close(None)
        self.reading = False
        if callback is not None:
            callback(self)

    def on_data(self, data: bytes) -> None:
        """Receive data from the parent and pass it on."""
        if self.child is not None:
            self.child.on_data(data)
        elif self.read_cb is not None:
            self.read_cb(data, None)

    def on_error(self, error: BaseException) -> None:
        """Receive a read error (or ``EOFError``) from the parent and pass it on."""
        if self.child is not None:
            self.child.on_error(error)
        elif self.read_cb is not None:
            self.read_cb(None, error)


def _ignore_write(error: Optional[BaseException]) -> None:
    if error is not None:
        log(LogLevel.WARN, "TLS write failed: %s", error)


class TlsLink(Link):
    """Link that performs a TLS handshake and encrypts traffic to its parent."""

    def __init__(
        self,
        engine: TlsEngine,
        hs_cb: Optional[HandshakeCallback] = None,
        read_cb: Optional[ReadCallback] = None,
    ) -> None:
        super().__init__(read_cb)
        self.engine = engine
        self.hs_cb = hs_cb

    def _handshake_done(self, state: HandshakeState) -> None:
        if self.hs_cb is not None:
            self.hs_cb(self, state)

    def _send(self, data: bytes, callback: WriteCallback = _ignore_write) -> None:
        if self.parent is None:
            raise LinkError("TLS link has no parent to write to")
        self.parent.write(data, callback)

    def read_start(self) -> None:
        """Start reading and send the first handshake flight."""
        state = self.engine.handshake_state()
        log(LogLevel.TRACE, "TLS(%x) starting handshake(st = %d)", id(self), state)
        if state is HandshakeState.CONTINUE:
            log(LogLevel.TRACE, "TLS(%x) is in the middle of handshake, resetting", id(self))
            self.engine.reset()

        super().read_start()

        state, out = self.engine.handshake(b"")
        log(
            LogLevel.TRACE,
            "TLS(%x) starting handshake(sending %d bytes, st = %d)",
            id(self), len(out), state,
        )
        self._send(out)

    def write(self, data: bytes, callback: Optional[WriteCallback] = None) -> None:
        """Encrypt ``data`` and send it; ``callback(error)`` runs when it is written."""
        try:
            out = self.engine.write(data)
        except TlsError as exc:
            log(LogLevel.ERR, "TLS(%x) engine failed to wrap: %s", id(self), exc)
            raise

        if not out:
            if callback is not None:
                callback(None)
            return

        self._send(out, callback if callback is not None else _ignore_write)

    def close(self, callback: Optional[CloseCallback] = None) -> None:
        """Reset the engine for reuse and report the link closed."""
        log(LogLevel.TRACE, "closing TLS link")
        self.reading = False
        self.engine.reset()
        if callback is not None:
            callback(self)

    def on_error(self, error: BaseException) -> None:
        """Handle a read failure from the parent."""
        log(LogLevel.ERR, "TLS read error: %s", error)
        if self.engine.handshake_state() is HandshakeState.CONTINUE:
            self.engine.reset()
            self._handshake_done(HandshakeState.ERROR)
        else:
            super().on_error(error)

    def on_data(self, data: bytes) -> None:
        """Feed bytes from the peer to the handshake or decrypt them."""
        state = self.engine.handshake_state()
        log(LogLevel.TRACE, "TLS(%x)[%d]: %d", id(self), state, len(data))

        if state is HandshakeState.CONTINUE:
            self._continue_handshake(data)
        elif state is HandshakeState.COMPLETE:
            self._process(data)
        else:
            log(LogLevel.VERB, "hs_state = %d", state)

    def _continue_handshake(self, data: bytes) -> None:
        if not data:
            log(LogLevel.ERR, "should not be here")
            return

        log(LogLevel.TRACE, "TLS(%x) continuing handshake(%d bytes received)", id(self), len(data))
        state, out = self.engine.handshake(data)
        log(
            LogLevel.TRACE,
            "TLS(%x) continuing handshake(sending %d bytes, st = %d)",
            id(self), len(out), state,
        )
        if out:
            try:
                self._send(out)
            except (LinkError, OSError) as exc:
                log(LogLevel.WARN, "TLS(%x) failed to write during handshake: %s", id(self), exc)

        if state is HandshakeState.COMPLETE:
            log(LogLevel.TRACE, "TLS(%x) handshake completed", id(self))
            self._handshake_done(HandshakeState.COMPLETE)
        elif state is HandshakeState.ERROR:
            reason = self.engine.strerror()
            log(LogLevel.ERR, "TLS(%x) handshake error %s", id(self), reason)
            self._handshake_done(state)
            super().on_error(ConnectionAbortedError(reason or "TLS handshake failed"))

    def _process(self, data: bytes) -> None:
        log(LogLevel.TRACE, "TLS(%x) processing %d bytes", id(self), len(data))
        pending = data
        while True:
            result, plain = self.engine.read(pending)
            pending = b""
            log(
                LogLevel.TRACE,
                "TLS(%x) produced %d application bytes (rc=%d)",
                id(self), len(plain), result,
            )

            if result is TlsResult.OK:
                super().on_data(plain)
                return
            if result is TlsResult.EOF:
                if plain:
                    super().on_data(plain)
                super().on_error(EOFError("TLS peer closed the connection"))
                return
            if result in (TlsResult.READ_AGAIN, TlsResult.MORE_AVAILABLE):
                super().on_data(plain)
                continue
            if result is TlsResult.HAS_WRITE:
                if plain:
                    super().on_data(plain)
                out = self.engine.write(b"")
                if out:
                    self._send(out)
                return

            if plain:
                super().on_data(plain)
            if result is TlsResult.ERR:
                reason = self.engine.strerror()
                log(LogLevel.ERR, "aborting after TLS engine error: %s", reason)
            else:
                reason = f"unexpected TLS engine result: {int(result)}"
                log(LogLevel.ERR, "aborting after %s", reason)
            super().on_error(ConnectionAbortedError(reason or "TLS engine error"))
            return