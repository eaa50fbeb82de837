# tlsuv

`tlsuv` is a small client-side networking library built from layers that are
chained together: a transport source at the bottom, an optional TLS link in
the middle, and the application on top. On top of these layers it offers a
TLS client stream and a WebSocket client. Networking runs on an `asyncio`
event loop; results are reported through callbacks.

## Installation

```
pip install tlsuv
```

To run the tests, install the test extra:

```
pip install "tlsuv[test]"
```

## Modules

- `tlsuv.debug` – log levels (`LogLevel`: `NONE`, `ERR`, `WARN`, `INFO`,
  `DEBG`, `VERB`, `TRACE`) and a pluggable log output. `set_debug(level, output)`
  sets the level and a callback receiving `(level, file, line, message)`;
  `get_level()` returns the current level (`ERR` by default); `log(level,
  message, *args)` formats with `%` and emits when enabled. Messages are cut
  to 1023 characters. Nothing is emitted until an output is set.
- `tlsuv.engine` – the TLS engine interface (`TlsEngine`, `TlsContext`), the
  enums `HandshakeState`, `TlsResult` and `HashAlgo`, the exception
  `TlsError`, and a default implementation built on the standard `ssl`
  module with memory BIOs (`SslContext`, `SslEngine`). `SslContext(ca)`
  accepts PEM text, the path of a CA bundle, or `None` for the system trust
  store. `default_tls_context(ca)` creates a context with the current
  implementation, `set_default_tls_impl(factory)` replaces it (`None`
  restores `SslContext`), and `get_default_tls()` returns a shared context
  created on first use.
- `tlsuv.tls_link` – `Link`, one stage of a bidirectional byte pipeline
  (`chain`, `read_start`, `write`, `close`, `on_data`, `on_error`), and
  `TlsLink`, which runs the handshake when reading starts, encrypts writes and
  decrypts received data. `LinkError` is raised on misuse of a chain.
- `tlsuv.stream` – `Source`, the abstract transport; `TcpSource`, a TCP
  transport on an `asyncio` loop with `set_nodelay` and `set_keepalive`; and
  `TlsStream`, a TLS client connection with ALPN (`set_protocols`,
  `get_protocol`), `keepalive`, `nodelay`, `connect`, `read`, `write`,
  `close` and `free`. `version()` returns the installed package version, or
  `"<unknown>"`.
- `tlsuv.http` – `parse_url(url)` returning a frozen `Url` (`scheme`,
  `hostname`, `port`, `path`, `query`; missing parts are `None`, a missing
  port is `0`; `ValueError` on malformed input), and `RequestState`, the
  stages of an HTTP request.
- `tlsuv.websocket` – the frame codec (`encode_frame`, `decode_frame`,
  `Frame`, `OpCode`), `generate_key()` for `Sec-WebSocket-Key` values, and
  the `WebSocket` client.

## Parsing a URL

```python
from tlsuv.http import parse_url

url = parse_url("wss://example.com:8443/chat?room=1")
print(url.scheme, url.hostname, url.port, url.path, url.query)
# wss example.com 8443 /chat room=1
```

## WebSocket frames

`encode_frame(payload, opcode=OpCode.BIN, mask=None)` builds one final frame.
A `mask` of `None` picks a random 4-byte key; `b""` sends the payload
unmasked. `decode_frame(data)` returns the frame and the number of bytes it
used, and raises `ValueError` if `data` does not hold a whole frame.

```python
from tlsuv.websocket import OpCode, decode_frame, encode_frame

raw = encode_frame(b"hello", OpCode.BIN, mask=b"\x01\x02\x03\x04")
frame, used = decode_frame(raw)
assert frame.opcode == OpCode.BIN
assert frame.payload == b"hello"
assert frame.masked and used == len(raw)
```

## A WebSocket client

`connect(url, conn_cb, data_cb)` accepts `ws://` and `wss://` URLs and raises
`ValueError` for anything else. `conn_cb(ws, error)` reports the result of the
HTTP upgrade (`error` is `None` on success); `data_cb(ws, data, error)`
receives the payload of each text or binary frame, and an error (`EOFError`
when the peer sends a close frame) otherwise. Pings are answered with pongs
automatically. `write(data, callback)` sends one binary frame and raises
`ConnectionResetError` once the websocket is closed.

```python
import asyncio

from tlsuv.websocket import WebSocket


async def main():
    loop = asyncio.get_running_loop()
    finished = loop.create_future()

    ws = WebSocket(loop)
    ws.set_header("Authorization", "Bearer token")

    def on_connect(ws, error):
        if error is not None:
            finished.set_exception(error)
            return
        ws.write(b"ping")

    def on_data(ws, data, error):
        if error is not None:
            finished.set_result(None)
        else:
            print("received", data)
            ws.close()
            finished.set_result(None)

    ws.connect("ws://localhost:8080/", on_connect, on_data)
    await finished


asyncio.run(main())
```

For `wss://` URLs the shared default TLS context is used unless another one
was set with `set_tls`.

## A TLS stream

```python
import asyncio

from tlsuv.stream import TlsStream


async def main():
    loop = asyncio.get_running_loop()
    connected = loop.create_future()

    stream = TlsStream(loop=loop)
    stream.set_protocols(["http/1.1"])
    stream.read(lambda s, data, error: print(data if error is None else error))

    def on_connect(stream, error):
        if error is None:
            connected.set_result(stream.get_protocol())
        else:
            connected.set_exception(error)

    stream.connect("example.com", 443, on_connect)
    print("ALPN:", await connected)
    stream.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
    await asyncio.sleep(1)
    stream.close()


asyncio.run(main())
```

`connect` raises `ValueError` for a port outside 1–65535 and `LinkError` if a
connection is already in progress. Closing during a connect reports
`asyncio.CancelledError` to the connect callback. `keepalive` and `nodelay`
need the default `TcpSource`; with another source they raise `TypeError`.

## Logging

```python
from tlsuv.debug import LogLevel, set_debug


def output(level, file, line, message):
    print(f"[{LogLevel(level).name}] {file}:{line} {message}")


set_debug(LogLevel.DEBG, output)
```

## What the package does not do

- It has no general HTTP client: `tlsuv.http` only parses URLs and names the
  request states. HTTP is spoken only for the WebSocket upgrade.
- It is client-side only; there is no server and no command-line tool.
- The WebSocket client sends binary frames only, does not reassemble
  fragmented messages and does not send a close frame when it is closed.
- `SslContext` offers no client certificates, key generation or certificate
  handling beyond choosing the trusted CAs.