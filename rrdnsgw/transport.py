"""Network transports that carry DNS queries to a responder and back."""

from __future__ import annotations

import enum
import logging
import socket
import threading
from typing import Protocol

from rrdnsgw.messages import DNSCodec, DNSResponse, Question

_MAX_PACKET = 512  # standard DNS UDP packet size limit
_POLL_INTERVAL = 0.1
_JOIN_TIMEOUT = 1.0

ClientAddress = tuple


class TransportType(str, enum.Enum):
    """Transport protocols a DNS server may listen on."""

    UDP = "udp"  # RFC 1035
    DOH = "doh"  # RFC 8484
    DOT = "dot"  # RFC 7858
    DOQ = "doq"  # RFC 9250

    def __str__(self) -> str:
        return self.value


class TransportError(Exception):
    """Raised when a transport cannot be created, started or stopped."""


class DNSResponder(Protocol):
    """Answers a decoded question on behalf of a client."""

    def handle_query(self, query: Question, client: ClientAddress) -> DNSResponse: ...


class ServerTransport(Protocol):
    """What every server transport offers."""

    def start(self, handler: DNSResponder) -> None: ...

    def stop(self) -> None: ...

    def address(self) -> str: ...


def _resolve_bind_address(addr: str) -> tuple[int, tuple]:
    host, sep, port_text = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    host = host.strip("[]") or None
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port {port_text!r}") from exc
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"invalid port {port}")
    family, _, _, _, sockaddr = socket.getaddrinfo(
        host, port, type=socket.SOCK_DGRAM, flags=socket.AI_PASSIVE
    )[0]
    return family, sockaddr


def _client_text(client: ClientAddress) -> str:
    return f"{client[0]}:{client[1]}"


class UDPTransport:
    """Serves DNS over UDP, decoding queries and encoding responses with a codec."""

    def __init__(
        self, addr: str, codec: DNSCodec, logger: logging.Logger | None = None
    ) -> None:
        self._addr = addr
        self._codec = codec
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._listener: threading.Thread | None = None
        self._running = False

    @property
    def running(self) -> bool:
        """Whether the transport has been started and not yet stopped."""
        with self._lock:
            return self._running

    @property
    def bound_address(self) -> tuple | None:
        """The socket address actually bound, or None when not running."""
        with self._lock:
            if not self._running or self._sock is None:
                return None
            return self._sock.getsockname()

    def address(self) -> str:
        """The configured address the transport listens on."""
        return self._addr

    def _log(self, level: int, msg: str, **fields: object) -> None:
        self._logger.log(level, msg, extra={"fields": fields})

    def start(self, handler: DNSResponder) -> None:
        """Bind the socket and start answering queries in the background."""
        with self._lock:
            if self._running:
                raise TransportError("UDP transport already running")
            try:
                family, sockaddr = _resolve_bind_address(self._addr)
            except (ValueError, OSError) as exc:
                raise TransportError(
                    f"failed to resolve UDP address {self._addr}: {exc}"
                ) from exc
            sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                sock.bind(sockaddr)
            except OSError as exc:
                sock.close()
                raise TransportError(
                    f"failed to bind UDP socket on {self._addr}: {exc}"
                ) from exc
            sock.settimeout(_POLL_INTERVAL)

            self._sock = sock
            self._stop_event = threading.Event()
            self._running = True
            self._log(
                logging.INFO, "DNS transport started", transport="udp", address=self._addr
            )
            self._listener = threading.Thread(
                target=self._listen,
                args=(sock, self._stop_event, handler),
                name="udp-transport-listener",
                daemon=True,
            )
            self._listener.start()

    def stop(self) -> None:
        """Stop listening and close the socket; stopping twice is harmless."""
        with self._lock:
            if not self._running:
                return
            self._stop_event.set()
            close_error: OSError | None = None
            if self._sock is not None:
                try:
                    self._sock.close()
                except OSError as exc:
                    close_error = exc
                    self._log(
                        logging.WARNING,
                        "Error closing UDP connection",
                        error=str(exc),
                    )
            self._running = False
            listener, self._listener = self._listener, None
            self._log(
                logging.INFO, "DNS transport stopped", transport="udp", address=self._addr
            )
        if listener is not None and listener is not threading.current_thread():
            listener.join(_JOIN_TIMEOUT)
        if close_error is not None:
            raise TransportError(f"error closing UDP connection: {close_error}")

    def _listen(
        self, sock: socket.socket, stop_event: threading.Event, handler: DNSResponder
    ) -> None:
        while not stop_event.is_set():
            try:
                data, client = sock.recvfrom(_MAX_PACKET)
            except socket.timeout:
                continue
            except OSError as exc:
                if stop_event.is_set() or sock.fileno() == -1:
                    break
                self._log(logging.WARNING, "Failed to read UDP packet", error=str(exc))
                continue
            threading.Thread(
                target=self._handle_packet,
                args=(sock, data, client, handler),
                daemon=True,
            ).start()
        self._log(logging.DEBUG, "UDP transport stopping due to stop signal")

    def _handle_packet(
        self,
        sock: socket.socket,
        data: bytes,
        client: ClientAddress,
        handler: DNSResponder,
    ) -> None:
        client_text = _client_text(client)
        self._log(
            logging.DEBUG,
            "Received raw DNS query data",
            client=client_text,
            size=len(data),
            raw=data.hex(),
        )
        try:
            query = self._codec.decode_query(data)
        except Exception as exc:
            self._log(
                logging.WARNING,
                "Failed to decode DNS query",
                client=client_text,
                error=str(exc),
                size=len(data),
            )
            return

        self._log(
            logging.DEBUG,
            "Received DNS query",
            client=client_text,
            query_id=query.id,
            name=query.name,
            type=query.type,
        )
        try:
            response = handler.handle_query(query, client)
        except Exception as exc:
            self._log(
                logging.ERROR,
                "Failed to handle DNS query",
                client=client_text,
                query_id=query.id,
                error=str(exc),
            )
            return

        try:
            payload = self._codec.encode_response(response)
        except Exception as exc:
            self._log(
                logging.ERROR,
                "Failed to encode DNS response",
                client=client_text,
                query_id=query.id,
                error=str(exc),
            )
            return

        self._log(
            logging.DEBUG,
            "Encoded DNS response data",
            client=client_text,
            query_id=response.id,
            size=len(payload),
            raw=payload.hex(),
        )
        try:
            sock.sendto(payload, client)
        except OSError as exc:
            self._log(
                logging.ERROR,
                "Failed to send DNS response",
                client=client_text,
                query_id=response.id,
                error=str(exc),
            )
            return

        self._log(
            logging.DEBUG,
            "Sent DNS response",
            client=client_text,
            query_id=response.id,
            rcode=response.rcode,
            answers=len(response.answers),
            size=len(payload),
        )


_NOT_YET = {
    TransportType.DOH: "DNS over HTTPS transport not yet implemented",
    TransportType.DOT: "DNS over TLS transport not yet implemented",
    TransportType.DOQ: "DNS over QUIC transport not yet implemented",
}


def new_transport(
    transport_type: TransportType | str,
    addr: str,
    codec: DNSCodec,
    logger: logging.Logger | None = None,
) -> UDPTransport:
    """Create a transport of the given type."""
    try:
        kind = TransportType(transport_type)
    except ValueError:
        raise TransportError(
            f"unsupported transport type: {transport_type}"
        ) from None
    if kind is TransportType.UDP:
        return UDPTransport(addr, codec, logger)
    raise TransportError(_NOT_YET[kind])


def supported_transports() -> list[TransportType]:
    """Return a fresh list of the transport types that can be created."""
    return [TransportType.UDP]


def is_transport_supported(transport_type: TransportType | str) -> bool:
    """Whether ``transport_type`` can currently be created."""
    return transport_type in supported_transports()