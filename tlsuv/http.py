"""HTTP request states and a URL parser for client connections."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

_SCHEME_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789+-."
)
_MAX_PORT = 0xFFFF


class RequestState(IntEnum):
    """Progress of an HTTP request, in the order the states are reached."""

    CREATED = 0
    HEADERS_SENT = 1
    BODY_SENT = 2
    HEADERS_RECEIVED = 3
    COMPLETED = 4


@dataclass(frozen=True)
class Url:
    """A parsed URL.

    Parts missing from the URL are ``None``; a missing port is ``0``.
    """

    scheme: Optional[str] = None
    hostname: Optional[str] = None
    port: int = 0
    path: Optional[str] = None
    query: Optional[str] = None

    def __str__(self) -> str:
        parts = []
        if self.scheme is not None:
            parts.append(f"{self.scheme}://")
        if self.hostname is not None:
            host = self.hostname
            parts.append(f"[{host}]" if ":" in host else host)
        if self.port:
            parts.append(f":{self.port}")
        if self.path is not None:
            parts.append(self.path)
        if self.query is not None:
            parts.append(f"?{self.query}")
        return "".join(parts)


def _split_scheme(url: str) -> tuple[Optional[str], str]:
    sep = url.find("://")
    if sep > 0 and all(ch in _SCHEME_CHARS for ch in url[:sep]):
        return url[:sep], url[sep + 3:]
    return None, url


def _authority_end(rest: str) -> int:
    positions = [pos for pos in (rest.find(ch) for ch in "/?#") if pos >= 0]
    return min(positions) if positions else len(rest)


def _parse_port(tail: str, hostname: Optional[str], url: str) -> int:
    if not tail:
        return 0
    if not tail.startswith(":"):
        raise ValueError(f"invalid URL: unexpected text after host in {url!r}")
    if hostname is None:
        raise ValueError(f"invalid URL: port without host in {url!r}")
    digits = tail[1:]
    if not (digits.isascii() and digits.isdigit()):
        raise ValueError(f"invalid URL: bad port in {url!r}")
    port = int(digits)
    if not 0 < port <= _MAX_PORT:
        raise ValueError(f"invalid URL: port out of range in {url!r}")
    return port


def parse_url(url: str) -> Url:
    """Split ``url`` into scheme, host, port, path and query.

    Raises ValueError if the URL cannot be parsed.
    """
    scheme, rest = _split_scheme(url)

    end = _authority_end(rest)
    authority, rest = rest[:end], rest[end:]

    at = authority.rfind("@")
    if at >= 0:
        authority = authority[at + 1:]

    if authority.startswith("["):
        close = authority.find("]")
        if close < 0:
            raise ValueError(f"invalid URL: unterminated IPv6 address in {url!r}")
        hostname: Optional[str] = authority[1:close]
        if not hostname:
            raise ValueError(f"invalid URL: empty IPv6 address in {url!r}")
        tail = authority[close + 1:]
    else:
        host, colon, port_text = authority.partition(":")
        hostname = host or None
        tail = colon + port_text

    port = _parse_port(tail, hostname, url)

    rest = rest.split("#", 1)[0]
    path_part, has_query, query = rest.partition("?")
    return Url(
        scheme=scheme,
        hostname=hostname,
        port=port,
        path=path_part or None,
        query=query if has_query else None,
    )