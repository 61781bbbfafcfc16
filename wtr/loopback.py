"""Loopback-aware URL rewriting for code running inside containers.

Wildcard DNS answers ``<anything>.<ip>.nip.io`` with ``<ip>``. When ``<ip>`` is
127.0.0.1 and the lookup happens inside a container, the connection lands on the
container itself instead of the host's reverse proxy. The fix is to connect to the
host-gateway alias and keep the original name in the ``Host`` header so the proxy
can still pick the right vhost.

This module is imported by service processes, so it must not touch the state file.
"""
from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import httpx

from .settings import settings


Resolver = Callable[[str], str]


@dataclass(frozen=True)
class LoopbackRewrite:
    url: str
    host_header: str | None = None

    @property
    def rewritten(self) -> bool:
        return self.host_header is not None


def resolve_host(hostname: str) -> str:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return infos[0][4][0]


def is_loopback(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    # 127.0.0.0/8 for IPv4, exactly ::1 for IPv6.
    return ip.is_loopback


def rewrite_url(url: str, gateway_alias: str | None = None, resolve: Resolver = resolve_host) -> LoopbackRewrite:
    """Rewrite `url` to go through the host gateway when its host resolves to loopback.

    Returns the (possibly rewritten) URL and, when rewritten, the original
    ``host[:port]`` to send as the Host header. Unresolvable names are returned
    untouched; the caller's own request will report the real problem.
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        # Bad brackets or an out-of-range port.
        return LoopbackRewrite(url)
    if not hostname:
        return LoopbackRewrite(url)

    try:
        address = resolve(hostname)
    except (OSError, UnicodeError, IndexError):
        return LoopbackRewrite(url)

    if not is_loopback(address):
        return LoopbackRewrite(url)

    alias = gateway_alias or settings.gateway_alias
    original_host = parts.netloc.rsplit("@", 1)[-1]
    netloc = alias if port is None else f"{alias}:{port}"
    if "@" in parts.netloc:
        netloc = f"{parts.netloc.rsplit('@', 1)[0]}@{netloc}"
    new_url = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    return LoopbackRewrite(new_url, host_header=original_host)


class LoopbackRewriteTransport(httpx.BaseTransport):
    """httpx transport that applies `rewrite_url` to every outgoing request."""

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        gateway_alias: str | None = None,
        resolve: Resolver = resolve_host,
    ) -> None:
        self._transport = transport or httpx.HTTPTransport()
        self._gateway_alias = gateway_alias
        self._resolve = resolve

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        rw = rewrite_url(str(request.url), gateway_alias=self._gateway_alias, resolve=self._resolve)
        if rw.rewritten:
            request.url = httpx.URL(rw.url)
            request.headers["Host"] = rw.host_header
        return self._transport.handle_request(request)

    def close(self) -> None:
        self._transport.close()


def loopback_client(gateway_alias: str | None = None, resolve: Resolver = resolve_host, **kwargs) -> httpx.Client:
    """An httpx.Client whose requests are loopback-rewritten."""
    transport = LoopbackRewriteTransport(kwargs.pop("transport", None), gateway_alias=gateway_alias, resolve=resolve)
    return httpx.Client(transport=transport, **kwargs)
