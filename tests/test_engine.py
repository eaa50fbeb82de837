import pytest

from tlsuv.engine import (
    HandshakeState,
    SslContext,
    SslEngine,
    TlsContext,
    TlsEngine,
    TlsError,
    default_tls_context,
    get_default_tls,
    set_default_tls_impl,
)

TLS_HANDSHAKE_RECORD = 0x16


@pytest.fixture(scope="module")
def context():
    return SslContext()


@pytest.fixture
def engine(context):
    return context.new_engine("example.com")


def test_abstract_classes_cannot_be_instantiated():
    with pytest.raises(TypeError):
        TlsEngine()
    with pytest.raises(TypeError):
        TlsContext()


def test_new_engine_starts_before_handshake(context):
    eng = context.new_engine("example.com")
    assert isinstance(eng, SslEngine)
    assert eng.handshake_state() is HandshakeState.BEFORE
    assert eng.strerror() is None


def test_first_handshake_step_emits_client_hello(engine):
    state, out = engine.handshake()
    assert state is HandshakeState.CONTINUE
    assert engine.handshake_state() is HandshakeState.CONTINUE
    assert out[0] == TLS_HANDSHAKE_RECORD
    assert b"example.com" in out


def test_engine_without_host_still_handshakes(context):
    eng = context.new_engine(None)
    state, out = eng.handshake(b"")
    assert state is HandshakeState.CONTINUE
    assert out[0] == TLS_HANDSHAKE_RECORD


def test_alpn_protocols_are_offered(context):
    eng = context.new_engine("example.com")
    eng.set_protocols(["h2", "http/1.1"])
    _, out = eng.handshake()
    assert b"h2" in out
    assert b"http/1.1" in out


def test_protocols_cannot_change_after_handshake_starts(engine):
    engine.handshake()
    with pytest.raises(TlsError):
        engine.set_protocols(["h2"])


def test_garbage_from_peer_fails_handshake(engine):
    engine.handshake()
    state, _ = engine.handshake(b"HTTP/1.1 400 Bad Request\r\n\r\n")
    assert state is HandshakeState.ERROR
    assert engine.handshake_state() is HandshakeState.ERROR
    assert engine.strerror()
    again, out = engine.handshake(b"more")
    assert again is HandshakeState.ERROR
    assert out == b""


def test_reset_returns_to_initial_state(engine):
    engine.handshake()
    engine.handshake(b"HTTP/1.1 400 Bad Request\r\n\r\n")
    engine.reset()
    assert engine.handshake_state() is HandshakeState.BEFORE
    assert engine.strerror() is None
    engine.set_protocols(["h2"])
    state, out = engine.handshake()
    assert state is HandshakeState.CONTINUE
    assert b"h2" in out


def test_data_operations_require_completed_handshake(engine):
    with pytest.raises(TlsError):
        engine.write(b"payload")
    with pytest.raises(TlsError):
        engine.read(b"payload")
    engine.handshake()
    with pytest.raises(TlsError):
        engine.write(b"payload")


def test_close_and_alpn_before_handshake(engine):
    assert engine.close() == b""
    assert engine.get_alpn() is None


def test_missing_ca_file_raises():
    with pytest.raises(TlsError):
        SslContext("/nonexistent/dir/ca-bundle.pem")


def test_invalid_ca_pem_raises():
    with pytest.raises(TlsError):
        SslContext("-----BEGIN CERTIFICATE-----\nplaceholder\n-----END CERTIFICATE-----\n")


def test_default_context_uses_configured_factory():
    seen = []
    produced = SslContext()

    def factory(ca):
        seen.append(ca)
        return produced

    set_default_tls_impl(factory)
    try:
        result = default_tls_context("ca-data")
    finally:
        set_default_tls_impl(None)
    assert result is produced
    assert seen == ["ca-data"]


def test_default_impl_restored():
    ctx = default_tls_context(None)
    assert isinstance(ctx, SslContext)
    assert ctx.new_engine("example.com").handshake_state() is HandshakeState.BEFORE


def test_get_default_tls_is_shared():
    first = get_default_tls()
    assert first is get_default_tls()
    assert first.new_engine("example.com").handshake()[0] is HandshakeState.CONTINUE