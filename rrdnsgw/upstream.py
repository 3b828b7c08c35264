"""Forwarding of DNS questions to upstream servers over UDP."""

from __future__ import annotations

import queue
import socket
import threading
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

from rrdnsgw.messages import DNSCodec, Question, ResourceRecord

DEFAULT_TIMEOUT = 5.0
_MAX_PACKET = 512


class UpstreamError(Exception):
    """Raised when upstream resolution fails or cannot be configured."""


class Connection(Protocol):
    """The subset of a datagram socket the resolver needs."""

    def settimeout(self, value: float | None) -> None: ...

    def send(self, data: bytes) -> int: ...

    def recv(self, bufsize: int) -> bytes: ...

    def close(self) -> None: ...


DialFunc = Callable[[str, float], Connection]


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise UpstreamError(f"missing port in address {address!r}")
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError as exc:
        raise UpstreamError(f"invalid port in address {address!r}") from exc


def _udp_dial(address: str, timeout: float) -> socket.socket:
    """Open a connected UDP socket to ``host:port``."""
    host, port = _split_address(address)
    family, kind, proto, _, sockaddr = socket.getaddrinfo(
        host, port, type=socket.SOCK_DGRAM
    )[0]
    sock = socket.socket(family, kind, proto)
    try:
        sock.settimeout(timeout)
        sock.connect(sockaddr)
    except OSError:
        sock.close()
        raise
    return sock


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}s"


class Resolver:
    """Forwards questions to upstream DNS servers, serially or in parallel."""

    def __init__(
        self,
        servers: Sequence[str],
        codec: DNSCodec | None,
        timeout: float | None = DEFAULT_TIMEOUT,
        parallel: bool = False,
        dial: DialFunc | None = None,
    ) -> None:
        if not servers:
            raise UpstreamError("no upstream DNS servers provided")
        if codec is None:
            raise UpstreamError("DNS codec is required")
        self.servers = tuple(servers)
        self.codec = codec
        self.timeout = timeout if timeout is not None and timeout > 0 else DEFAULT_TIMEOUT
        self.parallel = parallel
        self.dial: DialFunc = dial if dial is not None else _udp_dial

    def resolve(
        self, query: Question, now: datetime, timeout: float | None = None
    ) -> list[ResourceRecord]:
        """Resolve ``query`` upstream and return the answer records.

        ``timeout`` overrides the resolver's default deadline for this call.
        """
        limit = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + limit
        if self.parallel:
            return self._resolve_parallel(query, now, deadline, limit)
        return self._resolve_serial(query, now, deadline)

    def _resolve_serial(
        self, query: Question, now: datetime, deadline: float
    ) -> list[ResourceRecord]:
        last_error: UpstreamError | None = None
        for server in self.servers:
            try:
                return self._query_server(server, query, now, deadline)
            except UpstreamError as exc:
                last_error = exc
        raise UpstreamError(
            f"all {len(self.servers)} upstream servers failed: {last_error}"
        ) from last_error

    def _resolve_parallel(
        self, query: Question, now: datetime, deadline: float, limit: float
    ) -> list[ResourceRecord]:
        results: queue.Queue[tuple[bool, object]] = queue.Queue()
        cancelled = threading.Event()

        def worker(server: str) -> None:
            try:
                answers = self._query_server(server, query, now, deadline, cancelled)
            except UpstreamError as exc:
                if not cancelled.is_set():
                    results.put((False, UpstreamError(f"server {server}: {exc}")))
                return
            results.put((True, answers))

        for server in self.servers:
            threading.Thread(target=worker, args=(server,), daemon=True).start()

        timeout_error = UpstreamError(f"query timeout after {_format_seconds(limit)}")
        errors: list[UpstreamError] = []
        for _ in self.servers:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                ok, value = results.get(timeout=remaining)
            except queue.Empty:
                cancelled.set()
                raise timeout_error from None
            if ok:
                cancelled.set()
                return value  # type: ignore[return-value]
            errors.append(value)  # type: ignore[arg-type]

        cancelled.set()
        if time.monotonic() >= deadline:
            raise timeout_error
        joined = "; ".join(str(err) for err in errors)
        raise UpstreamError(
            f"all {len(self.servers)} upstream servers failed: [{joined}]"
        )

    def _query_server(
        self,
        server: str,
        query: Question,
        now: datetime,
        deadline: float,
        cancelled: threading.Event | None = None,
    ) -> list[ResourceRecord]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamError("deadline exceeded")
        try:
            conn = self.dial(server, remaining)
        except Exception as exc:
            raise UpstreamError(f"failed to connect: {exc}") from exc
        try:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise UpstreamError("deadline exceeded")
            try:
                conn.settimeout(remaining)
            except Exception as exc:
                raise UpstreamError(
                    f"failed to set connection deadline: {exc}"
                ) from exc
            try:
                payload = self.codec.encode_query(query)
            except Exception as exc:
                raise UpstreamError(f"encode failed: {exc}") from exc
            if cancelled is not None and cancelled.is_set():
                raise UpstreamError("query cancelled")
            try:
                conn.send(payload)
            except Exception as exc:
                raise UpstreamError(f"write failed: {exc}") from exc
            try:
                reply = conn.recv(_MAX_PACKET)
            except Exception as exc:
                raise UpstreamError(f"read failed: {exc}") from exc
            try:
                response = self.codec.decode_response(reply, query.id, now)
            except Exception as exc:
                raise UpstreamError(str(exc)) from exc
            return response.answers
        finally:
            try:
                conn.close()
            except Exception:
                pass