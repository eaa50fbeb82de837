import asyncio
import socket

import pytest

from tlsuv.engine import HandshakeState, TlsContext, TlsEngine, TlsError, TlsResult
from tlsuv.stream import Source, TcpSource, TlsStream
from tlsuv.tls_link import Link, LinkError


class FakeEngine(TlsEngine):
    """Plaintext engine: sends HELLO, completes on WELCOME, fails on REJECT."""

    def __init__(self, host):
        self.host = host
        self.protocols = []
        self.state = HandshakeState.BEFORE
        self.error = None

    def set_protocols(self, protocols):
        self.protocols = list(protocols)

    def handshake_state(self):
        return self.state

    def handshake(self, data=b""):
        if self.state is HandshakeState.BEFORE:
            self.state = HandshakeState.CONTINUE
            return self.state, b"HELLO"
        if data == b"WELCOME":
            self.state = HandshakeState.COMPLETE
        elif data == b"REJECT":
            self.state = HandshakeState.ERROR
            self.error = "handshake rejected"
        return self.state, b""

    def get_alpn(self):
        if self.state is HandshakeState.COMPLETE and self.protocols:
            return self.protocols[0]
        return None

    def close(self):
        return b""

    def write(self, data):
        if self.state is not HandshakeState.COMPLETE:
            raise TlsError("handshake is not complete")
        return data

    def read(self, data):
        return TlsResult.OK, data

    def strerror(self):
        return self.error

    def reset(self):
        self.state = HandshakeState.BEFORE


class FakeContext(TlsContext):
    def __init__(self):
        self.hosts = []

    def new_engine(self, host):
        self.hosts.append(host)
        return FakeEngine(host)


class RecordingLink(Link):
    def __init__(self):
        super().__init__()
        self.sent = []

    def read_start(self):
        self.reading = True

    def write(self, data, callback=None):
        self.sent.append(data)
        if callback is not None:
            callback(None)

    def close(self, callback=None):
        self.reading = False
        if callback is not None:
            callback(self)


class FakeSource(Source):
    def __init__(self):
        super().__init__(RecordingLink())
        self.calls = []
        self.callback = None
        self.cancelled = False
        self.released = False

    def connect(self, host, port, callback):
        self.calls.append((host, port))
        self.callback = callback

    def cancel(self):
        self.cancelled = True

    def release(self):
        self.released = True


@pytest.fixture
def setup():
    sources = []

    def factory():
        src = FakeSource()
        sources.append(src)
        return src

    ctx = FakeContext()
    stream = TlsStream(ctx, source_factory=factory)
    return stream, sources, ctx


def _connect(stream, sources, results, reply=b"WELCOME"):
    stream.connect("example.com", 443, lambda s, err: results.append((s, err)))
    src = sources[-1]
    src.callback(src, None)
    src.link.on_data(reply)
    return src


@pytest.mark.parametrize("port", [0, -1, 65536])
def test_connect_rejects_invalid_port(setup, port):
    stream, sources, _ = setup
    with pytest.raises(ValueError):
        stream.connect("example.com", port, lambda s, e: None)
    assert sources[0].calls == []


def test_connect_twice_while_pending_fails(setup):
    stream, sources, _ = setup
    stream.connect("example.com", 443, lambda s, e: None)
    with pytest.raises(LinkError):
        stream.connect("example.com", 443, lambda s, e: None)
    assert len(sources[0].calls) == 1


def test_connect_passes_host_and_port_string(setup):
    stream, sources, _ = setup
    stream.connect("example.com", 8443, lambda s, e: None)
    assert sources[0].calls == [("example.com", "8443")]
    assert stream.host == "example.com"


def test_handshake_success_reports_connected(setup):
    stream, sources, ctx = setup
    results = []
    src = _connect(stream, sources, results)
    assert src.link.sent == [b"HELLO"]
    assert results == [(stream, None)]
    assert ctx.hosts == ["example.com"]


def test_handshake_failure_reports_aborted(setup):
    stream, sources, ctx = setup
    results = []
    src = _connect(stream, sources, results, reply=b"REJECT")
    assert src.link.sent == [b"HELLO"]
    assert ctx.hosts == ["example.com"]
    assert len(results) == 1
    reported_stream, error = results[0]
    assert reported_stream is stream
    assert type(error) is ConnectionAbortedError
    assert "handshake rejected" in str(error)


def test_source_failure_is_reported_and_allows_retry(setup):
    stream, sources, _ = setup
    results = []
    stream.connect("example.com", 443, lambda s, err: results.append(err))
    failure = ConnectionRefusedError("refused")
    sources[0].callback(sources[0], failure)
    assert results == [failure]
    stream.connect("example.com", 443, lambda s, err: results.append(err))
    assert len(sources[0].calls) == 2


def test_read_delivers_application_data(setup):
    stream, sources, _ = setup
    received = []
    stream.read(lambda s, data, err: received.append((s, data, err)))
    src = _connect(stream, sources, [])
    src.link.on_data(b"payload")
    assert received == [(stream, b"payload", None)]


def test_peer_eof_reaches_reader(setup):
    stream, sources, _ = setup
    received = []
    stream.read(lambda s, data, err: received.append((data, err)))
    src = _connect(stream, sources, [])
    src.link.on_error(EOFError("closed"))
    assert len(received) == 1
    assert received[0][0] is None
    assert isinstance(received[0][1], EOFError)


def test_write_goes_through_engine_to_source(setup):
    stream, sources, _ = setup
    src = _connect(stream, sources, [])
    done = []
    stream.write(b"abc", done.append)
    assert src.link.sent[-1] == b"abc"
    assert done == [None]


def test_write_before_connect_fails(setup):
    stream, _, _ = setup
    with pytest.raises(LinkError):
        stream.write(b"abc")


def test_alpn_protocol_negotiated(setup):
    stream, sources, _ = setup
    stream.set_protocols(["h2", "http/1.1"])
    assert stream.get_protocol() is None
    _connect(stream, sources, [])
    assert stream.get_protocol() == "h2"
    assert stream.tls_engine.protocols == ["h2", "http/1.1"]


def test_close_while_connecting_cancels(setup):
    stream, sources, _ = setup
    results = []
    closed = []
    stream.connect("example.com", 443, lambda s, err: results.append(err))
    stream.close(closed.append)
    assert len(results) == 1
    assert isinstance(results[0], asyncio.CancelledError)
    assert sources[0].cancelled and sources[0].released
    assert closed == [stream]
    assert stream.socket is None


def test_close_then_reconnect_uses_new_source(setup):
    stream, sources, _ = setup
    _connect(stream, sources, [])
    stream.close()
    with pytest.raises(LinkError):
        stream.write(b"x")
    results = []
    _connect(stream, sources, results)
    assert len(sources) == 2
    assert results == [(stream, None)]


def test_socket_options_need_tcp_source(setup):
    stream, _, _ = setup
    with pytest.raises(TypeError):
        stream.keepalive(True, 30)
    with pytest.raises(TypeError):
        stream.nodelay(True)


def test_tcp_source_stores_options_before_connect():
    src = TcpSource()
    src.set_nodelay(True)
    src.set_keepalive(True, 15)
    assert src.nodelay is True
    assert (src.keepalive, src.keepalive_delay) == (True, 15)
    src.set_keepalive(False, 15)
    assert (src.keepalive, src.keepalive_delay) == (False, 0)


def test_free_releases_socket(setup):
    stream, sources, _ = setup
    _connect(stream, sources, [])
    stream.free()
    assert sources[0].released
    assert stream.socket is None and stream.host is None
    assert stream.get_protocol() is None


@pytest.mark.asyncio
async def test_tcp_round_trip():
    loop = asyncio.get_running_loop()

    async def handle(reader, writer):
        await reader.readexactly(5)
        writer.write(b"WELCOME")
        await writer.drain()
        data = await reader.read(100)
        writer.write(data)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    stream = TlsStream(FakeContext(), loop=loop)
    connected = loop.create_future()
    received = loop.create_future()

    def on_read(s, data, err):
        if not received.done():
            received.set_result((data, err))

    stream.read(on_read)
    stream.connect("127.0.0.1", port, lambda s, err: connected.set_result(err))
    assert await asyncio.wait_for(connected, 5) is None

    written = loop.create_future()
    stream.write(b"ping", written.set_result)
    assert await asyncio.wait_for(written, 5) is None
    data, err = await asyncio.wait_for(received, 5)
    assert (data, err) == (b"ping", None)

    closed = []
    stream.close(closed.append)
    assert closed == [stream]
    server.close()
    await server.wait_closed()


@pytest.mark.asyncio
async def test_tcp_connect_refused():
    loop = asyncio.get_running_loop()
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    src = TcpSource(loop)
    result = loop.create_future()
    src.connect("127.0.0.1", port, lambda s, err: result.set_result((s, err)))
    source, err = await asyncio.wait_for(result, 5)
    assert source is src
    assert isinstance(err, OSError)
    src.release()